"""
后台进程生命周期管理器

负责启动、监控、终止动作处理器派生出的长时间运行进程（如 dev server）：
- 每个进程运行在独立的进程组中（start_new_session=True）
- stdout / stderr 逐行写入有界环形日志缓冲区
- 就绪模式匹配后立即返回；超时后按"运行中"返回，不无限阻塞
- 停止时先 SIGTERM，宽限期后仍未退出则 SIGKILL
- 进程退出后从进程表中移除，之后只能通过 list / logs 观察

进程表只属于管理器：外部只能拿到快照（普通 dict），拿不到进程句柄。
"""
import asyncio
import os
import re
import signal
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Deque, Dict, List, Optional, Pattern, Union

from loguru import logger

from config.settings import settings

from .errors import ProcessError
from .models import ProcessSnapshot, ProcessStatus

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def _to_base36(number: int) -> str:
    digits = []
    while number:
        number, rem = divmod(number, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits)) or "0"


def _generate_process_id() -> str:
    return f"proc-{_to_base36(int(time.time() * 1000))}-{uuid.uuid4().hex[:6]}"


@dataclass
class ProcessRecord:
    """
    进程记录（只由管理器自身的事件处理修改）

    Attributes:
        id: 进程 ID（proc-<base36 时间戳>-<随机串>）
        command: 启动命令
        cwd: 工作目录
        pid: 操作系统进程号
        status: 进程状态
        logs: 环形日志缓冲区
        started_at: 启动时间
        port: 可选端口
        url: 由端口推导出的访问地址
        exit_code: 退出码（负数表示被信号终止）
    """
    id: str
    command: str
    cwd: str
    logs: Deque[str]
    pid: Optional[int] = None
    status: ProcessStatus = ProcessStatus.STARTING
    started_at: datetime = field(default_factory=datetime.now)
    port: Optional[int] = None
    url: Optional[str] = None
    exit_code: Optional[int] = None

    def add_log(self, line: str) -> None:
        self.logs.append(line)

    def snapshot(self) -> ProcessSnapshot:
        return ProcessSnapshot(
            id=self.id,
            command=self.command,
            cwd=self.cwd,
            pid=self.pid,
            status=self.status,
            started_at=self.started_at,
            logs=list(self.logs),
            port=self.port,
            url=self.url,
            exit_code=self.exit_code,
        )


@dataclass
class _ManagedProcess:
    """进程表条目：记录 + 进程句柄 + 监控任务"""
    record: ProcessRecord
    proc: asyncio.subprocess.Process
    ready: asyncio.Future
    pattern: Optional[Pattern] = None
    exited: asyncio.Event = field(default_factory=asyncio.Event)
    tasks: List[asyncio.Task] = field(default_factory=list)
    stopping: bool = False


class ProcessManager:
    """
    后台进程管理器

    使用方式：
        manager = ProcessManager()
        result = await manager.start_process("npm run dev", ready_pattern="ready on")
        await manager.stop_process(result["process_id"])
    """

    def __init__(
        self,
        stop_grace_seconds: Optional[float] = None,
        initial_output_delay: Optional[float] = None,
    ):
        self.stop_grace_seconds = (
            stop_grace_seconds if stop_grace_seconds is not None else settings.process_stop_grace_seconds
        )
        self.initial_output_delay = (
            initial_output_delay if initial_output_delay is not None else settings.process_initial_output_delay
        )
        self._processes: Dict[str, _ManagedProcess] = {}

    async def start_process(
        self,
        command: str,
        cwd: Optional[str] = None,
        ready_pattern: Union[str, Pattern, None] = None,
        timeout_ms: Optional[int] = None,
        max_log_lines: Optional[int] = None,
        port: Optional[int] = None,
    ) -> Dict[str, Any]:
        """
        启动后台进程，在就绪、超时或提前退出时返回

        Args:
            command: shell 命令
            cwd: 工作目录，默认当前目录
            ready_pattern: 就绪模式（字符串按忽略大小写编译，或已编译的正则）
            timeout_ms: 等待就绪的超时时间（毫秒）
            max_log_lines: 日志缓冲区容量
            port: 进程监听的端口（用于生成 url）

        Returns:
            Dict: success / process_id / status / logs，失败时带 error 和 exit_code
        """
        timeout_ms = timeout_ms if timeout_ms is not None else settings.process_ready_timeout_ms
        max_log_lines = max_log_lines or settings.process_max_log_lines
        work_dir = str(Path(cwd).resolve()) if cwd else os.getcwd()

        if isinstance(ready_pattern, str) and ready_pattern:
            pattern: Optional[Pattern] = re.compile(ready_pattern, re.IGNORECASE)
        elif isinstance(ready_pattern, re.Pattern):
            pattern = ready_pattern
        else:
            pattern = None

        record = ProcessRecord(
            id=_generate_process_id(),
            command=command,
            cwd=work_dir,
            logs=deque(maxlen=max_log_lines),
            port=port,
            url=f"http://localhost:{port}" if port else None,
        )
        logger.info(f"🚀 [ProcessManager] 启动进程 {record.id}: {command} (cwd={work_dir})")

        try:
            proc = await asyncio.create_subprocess_shell(
                command,
                cwd=work_dir,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
                env={**os.environ, "FORCE_COLOR": "0"},
            )
        except Exception as e:
            record.status = ProcessStatus.FAILED
            error = ProcessError(f"Failed to start process: {e}")
            logger.error(f"❌ [ProcessManager] 进程 {record.id} 启动失败: {e}")
            return {
                "success": False,
                "process_id": record.id,
                "status": record.status.value,
                "error": str(error),
                "logs": [],
            }

        record.pid = proc.pid
        loop = asyncio.get_running_loop()
        entry = _ManagedProcess(record=record, proc=proc, ready=loop.create_future(), pattern=pattern)
        self._processes[record.id] = entry

        entry.tasks = [
            asyncio.create_task(self._read_stream(entry, proc.stdout, "stdout")),
            asyncio.create_task(self._read_stream(entry, proc.stderr, "stderr")),
        ]
        entry.tasks.append(asyncio.create_task(self._watch_exit(entry, entry.tasks[:2])))

        if pattern is None:
            # 没有就绪模式：短暂等待以收集初始输出
            delay = min(self.initial_output_delay, timeout_ms / 1000)
            loop.call_later(delay, self._mark_ready, entry)

        try:
            ready = await asyncio.wait_for(asyncio.shield(entry.ready), timeout=timeout_ms / 1000)
        except asyncio.TimeoutError:
            record.status = ProcessStatus.RUNNING
            logger.warning(
                f"⚠️ [ProcessManager] 进程 {record.id} 在 {timeout_ms}ms 内未匹配就绪模式 "
                f"'{pattern.pattern if pattern else ''}'，按运行中处理"
            )
            return self._started_result(
                record, f"Process started; ready pattern not seen within {timeout_ms}ms"
            )

        if not ready:
            error = ProcessError(f"Process exited with code {record.exit_code} before becoming ready")
            logger.error(f"❌ [ProcessManager] 进程 {record.id} 在就绪前退出 (exit={record.exit_code})")
            return {
                "success": False,
                "process_id": record.id,
                "status": record.status.value,
                "exit_code": record.exit_code,
                "error": str(error),
                "logs": list(record.logs),
            }

        logger.info(f"✅ [ProcessManager] 进程 {record.id} 已就绪 (pid={record.pid})")
        return self._started_result(record, "Process started")

    async def stop_process(self, process_id: str) -> Dict[str, Any]:
        """
        停止进程：SIGTERM → 宽限期 → SIGKILL

        对未知或已停止的进程是幂等的，返回 success=False 而不是抛异常。
        """
        entry = self._processes.get(process_id)
        if entry is None:
            return {"success": False, "error": f"Process {process_id} not found"}

        record = entry.record
        entry.stopping = True
        logger.info(f"🛑 [ProcessManager] 停止进程 {process_id} (pid={record.pid})")

        if entry.proc.returncode is None:
            self._signal_group(entry, signal.SIGTERM)
            try:
                await asyncio.wait_for(entry.exited.wait(), timeout=self.stop_grace_seconds)
            except asyncio.TimeoutError:
                logger.warning(
                    f"⚠️ [ProcessManager] 进程 {process_id} 在 {self.stop_grace_seconds}s 内未退出，发送 SIGKILL"
                )
                record.add_log("[system] Process did not exit after SIGTERM, sending SIGKILL")
                self._signal_group(entry, signal.SIGKILL)
                try:
                    await asyncio.wait_for(entry.exited.wait(), timeout=self.stop_grace_seconds)
                except asyncio.TimeoutError:
                    record.status = ProcessStatus.FAILED
                    logger.error(f"❌ [ProcessManager] 进程 {process_id} 无法终止")
                    return {
                        "success": False,
                        "process_id": process_id,
                        "status": record.status.value,
                        "error": f"Process {process_id} did not exit after SIGKILL",
                        "logs": list(record.logs),
                    }
        else:
            await entry.exited.wait()

        record.status = ProcessStatus.STOPPED
        self._processes.pop(process_id, None)
        return {
            "success": True,
            "process_id": process_id,
            "status": record.status.value,
            "exit_code": record.exit_code,
            "logs": list(record.logs),
        }

    def list_processes(self) -> List[Dict[str, Any]]:
        return [entry.record.snapshot().to_dict() for entry in self._processes.values()]

    def get_process(self, process_id: str) -> Optional[Dict[str, Any]]:
        entry = self._processes.get(process_id)
        return entry.record.snapshot().to_dict() if entry else None

    def get_process_logs(self, process_id: str, tail_lines: int = 50) -> Dict[str, Any]:
        entry = self._processes.get(process_id)
        if entry is None:
            return {"success": False, "error": f"Process {process_id} not found"}
        logs = list(entry.record.logs)
        if tail_lines > 0:
            logs = logs[-tail_lines:]
        return {
            "success": True,
            "process_id": process_id,
            "status": entry.record.status.value,
            "logs": logs,
        }

    def is_running(self, process_id: str) -> bool:
        entry = self._processes.get(process_id)
        return entry is not None and entry.record.status == ProcessStatus.RUNNING

    async def shutdown(self) -> None:
        """强制停止所有进程"""
        if not self._processes:
            return
        logger.info(f"🛑 [ProcessManager] 关闭中，停止 {len(self._processes)} 个进程")
        await asyncio.gather(
            *(self.stop_process(process_id) for process_id in list(self._processes))
        )

    # ============================================================
    # 内部事件处理
    # ============================================================

    @staticmethod
    def _started_result(record: ProcessRecord, message: str) -> Dict[str, Any]:
        result = {
            "success": True,
            "process_id": record.id,
            "pid": record.pid,
            "status": record.status.value,
            "message": message,
            "logs": list(record.logs),
        }
        if record.url:
            result["url"] = record.url
        return result

    @staticmethod
    def _mark_ready(entry: _ManagedProcess) -> None:
        if entry.ready.done() or entry.exited.is_set():
            return
        entry.record.status = ProcessStatus.RUNNING
        entry.ready.set_result(True)

    async def _read_stream(self, entry: _ManagedProcess, stream: asyncio.StreamReader, source: str) -> None:
        """逐行读取输出，写入日志缓冲区并检测就绪模式"""
        while True:
            try:
                line = await stream.readline()
            except (ValueError, asyncio.LimitOverrunError) as e:
                # 超长行已被 StreamReader 丢弃，继续读取后续输出
                logger.debug(f"🔍 [ProcessManager] 进程 {entry.record.id} {source} 行过长，已丢弃: {e}")
                continue
            except ConnectionResetError as e:
                logger.debug(f"🔍 [ProcessManager] 进程 {entry.record.id} {source} 读取中断: {e}")
                break
            if not line:
                break
            text = line.decode(errors="replace").rstrip()
            if not text:
                continue
            entry.record.add_log(f"[{source}] {text}")
            if entry.pattern is not None and not entry.ready.done() and entry.pattern.search(text):
                logger.debug(f"🔍 [ProcessManager] 进程 {entry.record.id} 匹配就绪模式: {text[:100]}")
                self._mark_ready(entry)

    async def _watch_exit(self, entry: _ManagedProcess, readers: List[asyncio.Task]) -> None:
        """等待进程退出，更新状态并从进程表移除"""
        record = entry.record
        code = await entry.proc.wait()
        # 进程组内的子进程可能仍持有管道，最多等待 1 秒收尾输出
        _, pending = await asyncio.wait(readers, timeout=1.0)
        for task in pending:
            task.cancel()

        record.exit_code = code
        if code < 0:
            record.add_log(f"[system] Process terminated by signal {-code}")
        else:
            record.add_log(f"[system] Process exited with code {code}")

        if entry.stopping:
            record.status = ProcessStatus.STOPPED
        elif not entry.ready.done() or code != 0:
            record.status = ProcessStatus.FAILED
        else:
            record.status = ProcessStatus.STOPPED

        if not entry.ready.done():
            entry.ready.set_result(False)
        entry.exited.set()
        self._processes.pop(record.id, None)
        logger.info(
            f"🏁 [ProcessManager] 进程 {record.id} 已退出 (exit={code}, status={record.status.value})"
        )

    @staticmethod
    def _signal_group(entry: _ManagedProcess, sig: signal.Signals) -> None:
        # start_new_session=True 时进程组 ID 等于 pid
        try:
            os.killpg(entry.proc.pid, sig)
        except ProcessLookupError:
            logger.debug(f"🔍 [ProcessManager] 进程 {entry.record.id} 已不存在")
        except PermissionError:
            entry.proc.send_signal(sig)


_process_manager: Optional[ProcessManager] = None


def get_process_manager() -> ProcessManager:
    """获取全局进程管理器"""
    global _process_manager
    if _process_manager is None:
        _process_manager = ProcessManager()
    return _process_manager
