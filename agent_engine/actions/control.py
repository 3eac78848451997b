"""
流程控制动作：wait / complete
"""
import asyncio
import math
from typing import Any, Optional

from loguru import logger

from ..models import ActionName, ActionResult
from .base import ActionRegistry


def register_control_actions(registry: ActionRegistry, wait_ceiling_ms: int) -> None:
    """向注册表注册流程控制动作"""

    @registry.register(
        ActionName.WAIT,
        f"等待指定毫秒数（上限 {wait_ceiling_ms}ms）",
        {
            "type": "object",
            "properties": {
                "milliseconds": {"type": "integer", "description": "等待时长（毫秒）"},
                "capped_from": {"type": "integer", "description": "被截断前请求的时长"},
            },
        },
    )
    async def wait(milliseconds: Any = 1000, capped_from: Optional[Any] = None) -> ActionResult:
        try:
            requested = float(milliseconds)
        except (TypeError, ValueError):
            requested = 1000.0
        if math.isnan(requested):
            requested = 1000.0
        effective = int(max(0.0, min(requested, float(wait_ceiling_ms))))
        if requested > wait_ceiling_ms:
            capped_from = int(requested) if math.isfinite(requested) else requested
        await asyncio.sleep(effective / 1000)

        if capped_from is not None and capped_from > effective:
            logger.debug(f"⏱️ [Wait] 等待 {effective}ms（请求 {capped_from}ms，已截断）")
            message = f"Waited {effective}ms (capped from {capped_from}ms)"
        else:
            message = f"Waited {effective}ms"
        return ActionResult(success=True, message=message, payload={"waited_ms": effective})

    @registry.register(
        ActionName.COMPLETE,
        "标记任务完成并给出总结",
        {
            "type": "object",
            "properties": {"summary": {"type": "string", "description": "任务完成总结"}},
        },
    )
    async def complete(summary: str = "") -> ActionResult:
        return ActionResult(success=True, message=summary or "Task complete", payload={"completed": True})
