"""
工作区文件动作：list_dir / read_file / write_file / grep_code

所有路径都相对于工作区根目录解析，越界路径一律拒绝。
"""
import fnmatch
import os
import re
from pathlib import Path
from typing import Iterator, Optional

from loguru import logger

from ..errors import ActionError
from ..models import ActionName, ActionResult
from .base import ActionRegistry

_MAX_READ_CHARS = 20000
_IGNORED_DIRS = {".git", "node_modules", "__pycache__", ".venv"}
_MAX_GREP_MATCHES = 100
_MAX_GREP_LINE_CHARS = 300


def resolve_in_workspace(workspace: Path, relative: str) -> Path:
    """
    将相对路径解析到工作区内

    Raises:
        ActionError: 路径越出工作区
    """
    root = workspace.resolve()
    target = (root / relative).resolve()
    if not target.is_relative_to(root):
        raise ActionError(f"Path escapes workspace: {relative}")
    return target


def register_workspace_actions(registry: ActionRegistry, workspace: Path) -> None:
    """向注册表注册工作区文件动作"""

    @registry.register(
        ActionName.LIST_DIR,
        "列出工作区目录内容",
        {
            "type": "object",
            "properties": {"path": {"type": "string", "description": "相对路径，默认根目录"}},
        },
    )
    async def list_dir(path: str = ".") -> ActionResult:
        target = resolve_in_workspace(workspace, path)
        if not target.is_dir():
            return ActionResult(success=False, error=f"Not a directory: {path}")
        entries = sorted(
            f"{child.name}/" if child.is_dir() else child.name
            for child in target.iterdir()
            if child.name not in _IGNORED_DIRS
        )
        return ActionResult(success=True, message="\n".join(entries) or "(empty)", payload={"entries": entries})

    @registry.register(
        ActionName.READ_FILE,
        "读取工作区文件（可指定行范围）",
        {
            "type": "object",
            "properties": {
                "path": {"type": "string"},
                "start_line": {"type": "integer", "description": "起始行（从 1 开始）"},
                "end_line": {"type": "integer", "description": "结束行（包含）"},
            },
            "required": ["path"],
        },
    )
    async def read_file(path: str, start_line: Optional[int] = None, end_line: Optional[int] = None) -> ActionResult:
        target = resolve_in_workspace(workspace, path)
        if not target.is_file():
            return ActionResult(success=False, error=f"File not found: {path}")
        text = target.read_text(encoding="utf-8", errors="replace")
        if start_line or end_line:
            lines = text.splitlines()
            start = max(int(start_line or 1), 1)
            end = int(end_line or len(lines))
            text = "\n".join(f"{n}: {line}" for n, line in enumerate(lines[start - 1:end], start=start))
        if len(text) > _MAX_READ_CHARS:
            text = text[:_MAX_READ_CHARS] + "\n... (truncated)"
        return ActionResult(success=True, message=f"Read {path}", payload={"content": text})

    @registry.register(
        ActionName.WRITE_FILE,
        "写入工作区文件（覆盖）",
        {
            "type": "object",
            "properties": {"path": {"type": "string"}, "content": {"type": "string"}},
            "required": ["path", "content"],
        },
    )
    async def write_file(path: str, content: str) -> ActionResult:
        target = resolve_in_workspace(workspace, path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")
        logger.info(f"📝 [Workspace] 写入文件 {path} ({len(content)} chars)")
        return ActionResult(success=True, message=f"Wrote {len(content)} characters to {path}", payload={"path": path})

    @registry.register(
        ActionName.GREP_CODE,
        "在工作区文件中按正则搜索，返回 文件:行号:内容",
        {
            "type": "object",
            "properties": {
                "pattern": {"type": "string", "description": "正则表达式（非法时按字面量匹配）"},
                "path": {"type": "string", "description": "搜索的相对路径，默认根目录"},
                "file_pattern": {"type": "string", "description": "文件名通配符，如 *.py"},
            },
            "required": ["pattern"],
        },
    )
    async def grep_code(pattern: str, path: str = ".", file_pattern: Optional[str] = None) -> ActionResult:
        target = resolve_in_workspace(workspace, path)
        if not target.exists():
            return ActionResult(success=False, error=f"Path not found: {path}")
        try:
            regex = re.compile(pattern)
        except re.error:
            regex = re.compile(re.escape(pattern))

        root = workspace.resolve()
        matches = []
        for file_path in _iter_files(target):
            if file_pattern and not fnmatch.fnmatch(file_path.name, file_pattern):
                continue
            data = file_path.read_bytes()
            if b"\0" in data[:8192]:
                continue
            relative = file_path.relative_to(root).as_posix()
            for number, line in enumerate(data.decode("utf-8", errors="replace").splitlines(), start=1):
                if regex.search(line):
                    matches.append(f"{relative}:{number}:{line[:_MAX_GREP_LINE_CHARS]}")

        logger.info(f"🔎 [Workspace] 搜索 '{pattern}' 于 {path}: {len(matches)} 处匹配")
        if not matches:
            return ActionResult(success=True, message="No matches found.", payload={"matches": [], "total": 0})
        shown = matches[:_MAX_GREP_MATCHES]
        message = "\n".join(shown)
        if len(matches) > _MAX_GREP_MATCHES:
            message = (
                f"Found {len(matches)} matches (showing first {_MAX_GREP_MATCHES}):\n\n{message}\n\n"
                f"... and {len(matches) - _MAX_GREP_MATCHES} more matches"
            )
        return ActionResult(success=True, message=message, payload={"matches": shown, "total": len(matches)})


def _iter_files(target: Path) -> Iterator[Path]:
    """遍历文件，跳过忽略的目录"""
    if target.is_file():
        yield target
        return
    for dirpath, dirnames, filenames in os.walk(target):
        dirnames[:] = sorted(d for d in dirnames if d not in _IGNORED_DIRS)
        for filename in sorted(filenames):
            yield Path(dirpath) / filename
