"""
步骤解析器 - 把计划步骤映射为具体的动作调用

- 无歧义的步骤（wait / screenshot / 带目标的 navigate / 提取 / scroll / complete）
  直接确定性映射，不询问决策模型
- 有歧义的步骤（click / type / verify / 无目标的 navigate）交给决策模型，
  提供步骤信息、最近 5 个动作和当前页面快照，要求返回 {action, params, reasoning}
- 决策模型选择了注册表中不存在的动作 → ActionError
"""
import math
from typing import Any, Dict, Optional

from loguru import logger

from config.settings import settings

from .actions.base import ActionRegistry
from .errors import ActionError
from .models import ActionDecision, ActionName, ExecutionState, StepAction, TaskStep
from .oracle import ChatOracle
from .parsing import coerce_params, extract_json_object, sanitize

_DEFAULT_WAIT_MS = 1000

_DECIDE_GUIDE = """根据页面快照和步骤要求确定要执行的动作。点击和输入时，从快照中找到最匹配的元素 ref。

只返回以下 JSON，不要添加任何其他文本：
{"action": "动作名称", "params": {...}, "reasoning": "简短理由"}

可用动作：
"""


class StepResolver:
    """
    步骤解析器

    使用方式：
        resolver = StepResolver(registry, oracle)
        decision = await resolver.resolve(step, state)
    """

    def __init__(self, registry: ActionRegistry, oracle: ChatOracle, wait_ceiling_ms: Optional[int] = None):
        self.registry = registry
        self.oracle = oracle
        self.wait_ceiling_ms = wait_ceiling_ms or settings.hard_wait_ceiling_ms

    async def resolve(self, step: TaskStep, state: ExecutionState) -> ActionDecision:
        """
        解析单个步骤

        Raises:
            ActionError: 动作未知或决策模型输出无法解析
        """
        decision = self._resolve_deterministic(step)
        if decision is None:
            decision = await self._resolve_with_oracle(step, state)
        # 确保确定性映射的动作也已注册
        self.registry.resolve_name(decision.action)
        return decision

    def _resolve_deterministic(self, step: TaskStep) -> Optional[ActionDecision]:
        action = step.action

        if action == StepAction.WAIT:
            return self._resolve_wait(step)

        if action == StepAction.SCREENSHOT:
            return ActionDecision(ActionName.SCREENSHOT, {"full_page": False}, "Deterministic screenshot")

        if action == StepAction.NAVIGATE and step.target:
            return ActionDecision(ActionName.NAVIGATE, {"url": step.target}, f"Navigate to {step.target}")

        if action in (StepAction.EXTRACT, StepAction.EXTRACT_VISION):
            return ActionDecision(
                ActionName.EXTRACT_VISION,
                {"description": step.value or step.description},
                "Vision extraction",
            )

        if action == StepAction.ANSWER_VISION:
            return ActionDecision(
                ActionName.ANSWER_VISION,
                {"question": step.value or step.description},
                "Vision question",
            )

        if action == StepAction.EXTRACT_HTML:
            params: Dict[str, Any] = {"selector": step.target} if step.target else {}
            return ActionDecision(ActionName.EXTRACT_TEXT, params, "HTML text extraction")

        if action == StepAction.SCROLL:
            direction = (step.value or "down").lower()
            if direction not in ("up", "down"):
                direction = "down"
            return ActionDecision(ActionName.SCROLL, {"direction": direction, "amount": 500}, f"Scroll {direction}")

        if action == StepAction.COMPLETE:
            return ActionDecision(ActionName.COMPLETE, {"summary": step.description}, "Task complete")

        return None

    def _resolve_wait(self, step: TaskStep) -> ActionDecision:
        try:
            requested = float(step.value) if step.value else float(_DEFAULT_WAIT_MS)
        except ValueError:
            requested = float(_DEFAULT_WAIT_MS)
        if math.isnan(requested):
            requested = float(_DEFAULT_WAIT_MS)

        # 先在浮点域截断再取整
        effective = int(max(0.0, min(requested, float(self.wait_ceiling_ms))))
        if requested > self.wait_ceiling_ms:
            shown = int(requested) if math.isfinite(requested) else requested
            logger.warning(f"⏱️ [Resolver] 等待时长被截断: 请求 {shown}ms → 实际 {effective}ms")
            return ActionDecision(
                ActionName.WAIT,
                {"milliseconds": effective, "capped_from": shown},
                f"Wait {effective}ms (capped from {shown}ms)",
            )
        logger.debug(f"⏱️ [Resolver] 等待 {effective}ms")
        return ActionDecision(ActionName.WAIT, {"milliseconds": effective}, f"Wait {effective}ms")

    async def _resolve_with_oracle(self, step: TaskStep, state: ExecutionState) -> ActionDecision:
        snapshot = await self.observe()
        previous = "\n".join(sanitize(s, 200) for s in state.completed_steps[-5:]) or "无"

        system_prompt = (
            "你正在执行一个网页自动化步骤。\n\n"
            f"当前步骤：\n"
            f"- 动作：{sanitize(step.action.value, 100)}\n"
            f"- 描述：{sanitize(step.description, 500)}\n"
            f"- 目标：{sanitize(step.target or '未指定', 500)}\n"
            f"- 取值：{sanitize(step.value or '未指定', 500)}\n\n"
            f"之前的动作：\n{previous}\n\n"
            f"页面快照：\n{sanitize(snapshot, 8000) or '不可用'}\n\n"
            + _DECIDE_GUIDE
            + self.registry.describe()
        )
        messages = [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": "请根据以上信息确定下一步动作。"},
        ]

        reply = await self.oracle.invoke(messages, temperature=0.3)
        data = extract_json_object(reply.content if reply else "")
        if data is None or not data.get("action"):
            raise ActionError(f"Could not resolve step {step.step_number}: oracle output unparseable")

        action = self.registry.resolve_name(str(data["action"]).strip())
        params = data.get("params") if isinstance(data.get("params"), dict) else {}
        params = coerce_params(params, self.registry.get(action).parameters)
        logger.debug(f"🧭 [Resolver] Step {step.step_number} → {action.value} {params}")
        return ActionDecision(action, params, str(data.get("reasoning") or ""))

    async def observe(self) -> str:
        """通过 snapshot 动作获取当前观察，失败时返回空字符串"""
        if ActionName.SNAPSHOT not in self.registry:
            return ""
        result = await self.registry.invoke(ActionName.SNAPSHOT, {})
        if not result.success:
            logger.debug(f"🔍 [Resolver] 获取快照失败: {result.error}")
            return ""
        return str(result.payload.get("snapshot") or result.message or "")
