"""
动作注册表

每个动作是一个具名、可独立调用的处理函数，带 OpenAI function 格式的参数 schema。
确定性解析器和决策模型看到的"可用动作列表"都来自同一个注册表。

注册表边界保证：
- 未知动作名称 → ActionError（get）或失败结果（invoke），不会静默忽略
- 处理函数抛出的任何异常都被转换为 ActionResult(success=False)
"""
import json
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from loguru import logger

from ..errors import ActionError
from ..models import ActionName, ActionResult
from ..parsing import coerce_params

HandlerReturn = Union[ActionResult, Dict[str, Any], str]
HandlerFn = Callable[..., Awaitable[HandlerReturn]]


@dataclass
class ActionHandler:
    """
    单个动作处理器

    Attributes:
        name: 动作名称
        description: 给决策模型看的描述
        parameters: JSON schema（OpenAI function 参数格式）
        fn: 异步处理函数，以关键字参数接收 params
    """
    name: ActionName
    description: str
    fn: HandlerFn
    parameters: Dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )

    @property
    def param_names(self) -> List[str]:
        return list(self.parameters.get("properties", {}).keys())

    def to_tool_definition(self) -> Dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name.value,
                "description": self.description,
                "parameters": self.parameters,
            },
        }

    def describe(self) -> str:
        params = ", ".join(self.param_names) or "无参数"
        return f"- {self.name.value}({params}): {self.description}"


class ActionRegistry:
    """
    动作注册表

    使用方式：
        registry = ActionRegistry()

        @registry.register(ActionName.WAIT, "等待", {...})
        async def wait(milliseconds: int = 1000): ...

        result = await registry.invoke("wait", {"milliseconds": 500})
    """

    def __init__(self):
        self._handlers: Dict[ActionName, ActionHandler] = {}

    def register(
        self,
        name: ActionName,
        description: str,
        parameters: Optional[Dict[str, Any]] = None,
    ) -> Callable[[HandlerFn], HandlerFn]:
        """注册动作的装饰器"""
        def decorator(fn: HandlerFn) -> HandlerFn:
            handler = ActionHandler(name=name, description=description, fn=fn)
            if parameters is not None:
                handler.parameters = parameters
            self.add(handler)
            return fn
        return decorator

    def add(self, handler: ActionHandler) -> None:
        if handler.name in self._handlers:
            logger.warning(f"⚠️ [ActionRegistry] 动作 {handler.name.value} 被重复注册，覆盖旧处理器")
        self._handlers[handler.name] = handler

    def resolve_name(self, name: Union[str, ActionName]) -> ActionName:
        """
        将动作名称解析为已注册的 ActionName

        Raises:
            ActionError: 名称未知或未注册
        """
        try:
            action = ActionName(name)
        except ValueError:
            raise ActionError(f"Unknown action: {name}", action=str(name))
        if action not in self._handlers:
            raise ActionError(f"Action not available: {action.value}", action=action.value)
        return action

    def get(self, name: Union[str, ActionName]) -> ActionHandler:
        return self._handlers[self.resolve_name(name)]

    def __contains__(self, name: object) -> bool:
        try:
            return ActionName(name) in self._handlers
        except ValueError:
            return False

    def names(self) -> List[str]:
        return [name.value for name in self._handlers]

    def describe(self) -> str:
        """生成给决策模型看的可用动作列表"""
        return "\n".join(handler.describe() for handler in self._handlers.values())

    def tool_definitions(self) -> List[Dict[str, Any]]:
        return [handler.to_tool_definition() for handler in self._handlers.values()]

    async def invoke(self, name: Union[str, ActionName], params: Optional[Dict[str, Any]] = None) -> ActionResult:
        """
        调用动作，任何异常都转换为失败结果

        Args:
            name: 动作名称
            params: 动作参数

        Returns:
            ActionResult: 执行结果
        """
        try:
            handler = self.get(name)
        except ActionError as e:
            logger.warning(f"⚠️ [ActionRegistry] {e}")
            return ActionResult(success=False, error=str(e))

        kwargs = coerce_params(params or {}, handler.parameters)
        declared = set(handler.param_names)
        dropped = [key for key in kwargs if key not in declared]
        if dropped:
            logger.debug(f"🔧 [ActionRegistry] {handler.name.value} 忽略未声明参数: {dropped}")
            kwargs = {key: value for key, value in kwargs.items() if key in declared}

        try:
            raw = await handler.fn(**kwargs)
        except Exception as e:
            logger.error(f"❌ [ActionRegistry] {handler.name.value} 执行异常: {e}")
            return ActionResult(success=False, error=f"{handler.name.value} failed: {e}")

        return to_action_result(raw)


def to_action_result(raw: HandlerReturn) -> ActionResult:
    """将处理函数的返回值统一为 ActionResult"""
    if isinstance(raw, ActionResult):
        return raw

    if isinstance(raw, str):
        try:
            parsed = json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            return ActionResult(success=True, message=raw)
        if not isinstance(parsed, dict):
            return ActionResult(success=True, message=raw, payload={"data": parsed})
        raw = parsed

    if isinstance(raw, dict):
        payload = {k: v for k, v in raw.items() if k not in ("success", "message", "error")}
        error = raw.get("error")
        return ActionResult(
            success=bool(raw.get("success", error is None)),
            message=str(raw.get("message") or ""),
            payload=payload,
            error=str(error) if error else None,
        )

    return ActionResult(success=True, message=str(raw))
