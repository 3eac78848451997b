"""
后台进程动作 - 包装 ProcessManager

start_process 在进程就绪或超时后立即返回，从不等待进程退出。
"""
from pathlib import Path
from typing import Any, Dict, Optional

from ..models import ActionName
from ..process_manager import ProcessManager
from .base import ActionRegistry


def register_process_actions(registry: ActionRegistry, manager: ProcessManager, workspace: Path) -> None:
    """向注册表注册后台进程动作"""

    @registry.register(
        ActionName.START_PROCESS,
        "启动后台进程（如 dev server），就绪或超时后返回",
        {
            "type": "object",
            "properties": {
                "command": {"type": "string", "description": "启动命令"},
                "cwd": {"type": "string", "description": "相对工作目录的子目录"},
                "ready_pattern": {"type": "string", "description": "输出中表示就绪的文本（忽略大小写）"},
                "timeout_ms": {"type": "integer", "description": "等待就绪的超时（毫秒）"},
                "port": {"type": "integer", "description": "服务端口"},
            },
            "required": ["command"],
        },
    )
    async def start_process(
        command: str,
        cwd: Optional[str] = None,
        ready_pattern: Optional[str] = None,
        timeout_ms: Optional[int] = None,
        port: Optional[int] = None,
    ) -> Dict[str, Any]:
        work_dir = (workspace / cwd).resolve() if cwd else workspace.resolve()
        if not work_dir.is_relative_to(workspace.resolve()):
            return {"success": False, "error": f"Path escapes workspace: {cwd}"}
        return await manager.start_process(
            command,
            cwd=str(work_dir),
            ready_pattern=ready_pattern,
            timeout_ms=int(timeout_ms) if timeout_ms is not None else None,
            port=int(port) if port is not None else None,
        )

    @registry.register(
        ActionName.STOP_PROCESS,
        "停止后台进程",
        {
            "type": "object",
            "properties": {"process_id": {"type": "string"}},
            "required": ["process_id"],
        },
    )
    async def stop_process(process_id: str) -> Dict[str, Any]:
        return await manager.stop_process(process_id)

    @registry.register(ActionName.LIST_PROCESSES, "列出所有后台进程", {"type": "object", "properties": {}})
    async def list_processes() -> Dict[str, Any]:
        processes = manager.list_processes()
        return {"success": True, "message": f"{len(processes)} process(es)", "processes": processes}

    @registry.register(
        ActionName.PROCESS_LOGS,
        "查看后台进程最近的日志",
        {
            "type": "object",
            "properties": {
                "process_id": {"type": "string"},
                "tail_lines": {"type": "integer", "description": "返回最后 N 行"},
            },
            "required": ["process_id"],
        },
    )
    async def process_logs(process_id: str, tail_lines: int = 50) -> Dict[str, Any]:
        return manager.get_process_logs(process_id, tail_lines=int(tail_lines))
