"""
Shell / Git 动作

- run_command：受限的 shell 命令，拒绝危险操作（rm -rf / sudo 等）
- git：常用 git 操作，直接调用 git 可执行文件，不经过 shell
"""
import asyncio
import re
from pathlib import Path
from typing import List, Optional

from loguru import logger

from config.settings import settings

from ..models import ActionName, ActionResult
from .base import ActionRegistry

# 危险命令黑名单正则
_DENY_PATTERNS: List[re.Pattern] = [
    re.compile(r"\brm\s+(-\w+\s+)*-r", re.IGNORECASE),
    re.compile(r"\brm\s+(-\w+\s+)*/", re.IGNORECASE),
    re.compile(r"\bsudo\b", re.IGNORECASE),
    re.compile(r"\bmkfs\b", re.IGNORECASE),
    re.compile(r"\bdd\s+if=", re.IGNORECASE),
    re.compile(r":\(\)\s*\{\s*:\|:&\s*\};:"),
    re.compile(r"\bchmod\s+(-\w+\s+)*777\s+/", re.IGNORECASE),
    re.compile(r"\bshutdown\b", re.IGNORECASE),
    re.compile(r"\breboot\b", re.IGNORECASE),
]

# 允许的 git 子命令
_GIT_OPERATIONS = ("status", "diff", "log", "branch", "add", "commit", "push", "clone", "checkout")

_MAX_OUTPUT_CHARS = 8000


def check_command(command: str) -> Optional[str]:
    """
    安全检查

    Returns:
        Optional[str]: 命中黑名单时返回拒绝原因
    """
    for pattern in _DENY_PATTERNS:
        if pattern.search(command):
            return f"安全拒绝：命令包含危险操作 ({pattern.pattern})"
    return None


def _truncate(text: str) -> str:
    if len(text) <= _MAX_OUTPUT_CHARS:
        return text
    return text[:_MAX_OUTPUT_CHARS] + f"\n... (truncated {len(text) - _MAX_OUTPUT_CHARS} chars)"


async def run_shell(command: str, cwd: Optional[str] = None, timeout: Optional[int] = None) -> ActionResult:
    """
    执行 shell 命令

    Args:
        command: 命令
        cwd: 工作目录
        timeout: 超时（秒）

    Returns:
        ActionResult: payload 包含 returncode / stdout / stderr
    """
    if not command:
        return ActionResult(success=False, error="缺少 command 参数")

    refusal = check_command(command)
    if refusal:
        logger.warning(f"🚫 [Shell] {refusal}: {command}")
        return ActionResult(success=False, error=refusal)

    timeout = timeout or settings.shell_command_timeout
    proc = await asyncio.create_subprocess_shell(
        command,
        cwd=cwd,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        return ActionResult(success=False, error=f"命令执行超时（{timeout}秒）")
    return _to_result(proc.returncode, stdout, stderr)


async def run_git(args: List[str], cwd: str, timeout: Optional[int] = None) -> ActionResult:
    """执行 git 命令（不经过 shell）"""
    timeout = timeout or settings.shell_command_timeout
    proc = await asyncio.create_subprocess_exec(
        "git",
        *args,
        cwd=cwd,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        return ActionResult(success=False, error=f"git {args[0]} 超时（{timeout}秒）")
    return _to_result(proc.returncode, stdout, stderr)


def _to_result(returncode: int, stdout: bytes, stderr: bytes) -> ActionResult:
    stdout_text = _truncate(stdout.decode(errors="replace")) if stdout else ""
    stderr_text = _truncate(stderr.decode(errors="replace")) if stderr else ""
    payload = {"returncode": returncode, "stdout": stdout_text, "stderr": stderr_text}
    if returncode == 0:
        return ActionResult(success=True, message=stdout_text or "命令执行成功", payload=payload)
    return ActionResult(
        success=False,
        error=f"命令失败 (exit {returncode}): {stderr_text or stdout_text}",
        payload=payload,
    )


def register_shell_actions(registry: ActionRegistry, workspace: Path) -> None:
    """向注册表注册 shell / git 动作，命令都在 workspace 下执行"""

    @registry.register(
        ActionName.RUN_COMMAND,
        "在工作目录中执行 shell 命令（禁止危险命令，默认 30 秒超时）",
        {
            "type": "object",
            "properties": {
                "command": {"type": "string", "description": "shell 命令"},
                "timeout": {"type": "integer", "description": "超时秒数"},
            },
            "required": ["command"],
        },
    )
    async def run_command(command: str, timeout: Optional[int] = None) -> ActionResult:
        logger.info(f"💻 [Shell] 执行命令: {command}")
        return await run_shell(command, cwd=str(workspace), timeout=timeout)

    @registry.register(
        ActionName.GIT,
        f"执行 git 操作（{' / '.join(_GIT_OPERATIONS)}）",
        {
            "type": "object",
            "properties": {
                "operation": {"type": "string", "enum": list(_GIT_OPERATIONS)},
                "args": {"type": "array", "items": {"type": "string"}, "description": "额外参数"},
                "message": {"type": "string", "description": "commit 信息"},
            },
            "required": ["operation"],
        },
    )
    async def git(operation: str, args: Optional[List[str]] = None, message: Optional[str] = None) -> ActionResult:
        if operation not in _GIT_OPERATIONS:
            return ActionResult(success=False, error=f"不支持的 git 操作: {operation}")

        git_args = [operation]
        if operation == "commit":
            if not message:
                return ActionResult(success=False, error="commit 需要 message 参数")
            git_args += ["-m", message]
        elif operation == "log" and not args:
            git_args += ["--oneline", "-20"]
        elif operation == "add" and not args:
            git_args.append("-A")
        git_args += list(args or [])

        logger.info(f"🌿 [Git] git {' '.join(git_args)}")
        return await run_git(git_args, cwd=str(workspace))
