"""
进度与结果报告

- ProgressNotifier：包装 on_progress 回调，即发即忘，不阻塞控制循环
- generate_summary：根据执行状态生成运行摘要
- report：将运行结果转换为用户友好的文本
"""
import asyncio
import inspect
from typing import Any, Callable, Optional, Set

from loguru import logger

from .models import ExecutionState, RunResult, RunStatus

ProgressCallback = Callable[[str], Any]


class ProgressNotifier:
    """
    进度通知器

    回调可以是普通函数或协程函数：协程被调度为后台任务，
    回调抛出的异常只记录日志，不会传播到控制循环。
    """

    def __init__(self, callback: Optional[ProgressCallback] = None):
        self.callback = callback
        self._pending: Set[asyncio.Task] = set()

    def notify(self, message: str) -> None:
        if self.callback is None:
            return
        try:
            outcome = self.callback(message)
        except Exception as e:
            logger.warning(f"⚠️ [Reporter] 进度回调异常: {e}")
            return
        if inspect.isawaitable(outcome):
            task = asyncio.ensure_future(outcome)
            self._pending.add(task)
            task.add_done_callback(self._on_done)

    def _on_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning(f"⚠️ [Reporter] 进度回调异常: {task.exception()}")

    async def drain(self) -> None:
        """等待尚未完成的进度回调（运行结束时调用）"""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


def generate_summary(state: ExecutionState) -> str:
    """根据最终状态生成摘要"""
    if state.status == RunStatus.COMPLETED:
        parts = [f"Completed {len(state.completed_steps)} step(s)"]
        if state.extracted_data:
            parts.append(f"extracted {len(state.extracted_data)} item(s)")
        if state.screenshots:
            parts.append(f"captured {len(state.screenshots)} screenshot(s)")
        summary = ", ".join(parts) + "."
        if state.extracted_data:
            summary += "\n\n" + "\n".join(
                f"- {item.get('description', '')}: {item.get('text', '')}" for item in state.extracted_data
            )
        return summary

    done = len(state.completed_steps)
    return f"Task failed after {done} completed step(s): {state.error or 'unknown error'}"


def report(result: RunResult) -> str:
    """
    生成用户友好的运行报告

    Args:
        result: 运行结果

    Returns:
        str: 自然语言回复
    """
    if result.needs_user_input:
        return f"❓ {result.question or '需要你的输入'}"

    if result.success:
        text = f"✅ {result.summary}"
        if result.screenshots:
            text += "\n\n📸 截图：\n" + "\n".join(result.screenshots)
        if result.running_processes:
            lines = [
                f"- {p['id']}: {p['command']}" + (f" ({p['url']})" if p.get("url") else "")
                for p in result.running_processes
            ]
            text += "\n\n⚙️ 运行中的进程：\n" + "\n".join(lines)
        return text

    return f"❌ {result.summary}"
