"""
Test configuration
"""
import pytest
import sys
import os
from pathlib import Path

# Add project root to path
src_path = Path(__file__).parent.parent
sys.path.insert(0, str(src_path))

# Keep tests independent from any local oracle / browser server
os.environ.setdefault("EXECUTOR_LLM_URL", "")
os.environ.setdefault("VLM_API_URL", "")


class ScriptedOracle:
    """按顺序返回预设回复的决策模型替身"""

    def __init__(self, replies):
        self.replies = list(replies)
        self.calls = []

    async def invoke(self, messages, tools=None, temperature=0.1):
        from agent_engine.oracle import OracleReply

        self.calls.append(messages)
        if not self.replies:
            return None
        reply = self.replies.pop(0)
        if reply is None or isinstance(reply, OracleReply):
            return reply
        return OracleReply(content=reply)


def build_fake_registry(calls, failing=(), snapshot=True):
    """
    构建记录调用的动作注册表

    Args:
        calls: 用于记录 (动作名, 参数) 的列表
        failing: 总是失败的动作名称
        snapshot: 是否注册 snapshot 动作
    """
    from agent_engine.actions.base import ActionRegistry
    from agent_engine.actions.control import register_control_actions
    from agent_engine.models import ActionName, ActionResult

    registry = ActionRegistry()

    def _outcome(name, message, payload=None):
        if name in failing:
            return ActionResult(success=False, error=f"{name} exploded")
        return ActionResult(success=True, message=message, payload=payload or {})

    @registry.register(
        ActionName.NAVIGATE, "打开 URL",
        {"type": "object", "properties": {"url": {"type": "string"}}},
    )
    async def navigate(url):
        calls.append(("navigate", {"url": url}))
        return _outcome("navigate", f"Navigated to {url}")

    @registry.register(
        ActionName.SCREENSHOT, "截图",
        {"type": "object", "properties": {"full_page": {"type": "boolean"}}},
    )
    async def screenshot(full_page=False):
        calls.append(("screenshot", {"full_page": full_page}))
        shots = sum(1 for name, _ in calls if name == "screenshot")
        return _outcome("screenshot", "Screenshot saved", {"path": f"/tmp/shot-{shots}.png"})

    if snapshot:
        @registry.register(ActionName.SNAPSHOT, "页面快照", {"type": "object", "properties": {}})
        async def take_snapshot():
            calls.append(("snapshot", {}))
            return _outcome("snapshot", "Snapshot captured", {"snapshot": "- button \"Submit\" [ref=e1]"})

    @registry.register(
        ActionName.CLICK, "点击",
        {"type": "object", "properties": {"ref": {"type": "string"}}},
    )
    async def click(ref=None):
        calls.append(("click", {"ref": ref}))
        return _outcome("click", f"Clicked {ref}")

    @registry.register(
        ActionName.TYPE, "输入",
        {
            "type": "object",
            "properties": {
                "ref": {"type": "string"},
                "text": {"type": "string"},
                "press_enter": {"type": "boolean"},
            },
        },
    )
    async def type_text(ref, text, press_enter=False):
        calls.append(("type", {"ref": ref, "text": text, "press_enter": press_enter}))
        return _outcome("type", f"Typed {text}")

    @registry.register(
        ActionName.EXTRACT_VISION, "视觉提取",
        {"type": "object", "properties": {"description": {"type": "string"}}},
    )
    async def extract_vision(description):
        calls.append(("extract_vision", {"description": description}))
        return _outcome("extract_vision", "Example Domain", {"text": "Example Domain"})

    @registry.register(
        ActionName.EXTRACT_TEXT, "文本提取",
        {"type": "object", "properties": {"selector": {"type": "string"}}},
    )
    async def extract_text(selector=None):
        calls.append(("extract_text", {"selector": selector}))
        return _outcome("extract_text", "text", {"text": "<h1>Example</h1>"})

    register_control_actions(registry, 5000)
    return registry


@pytest.fixture
def scripted_oracle():
    """返回 ScriptedOracle 类，测试中用回复列表实例化"""
    return ScriptedOracle


@pytest.fixture
def fake_registry():
    """返回 build_fake_registry 工厂函数"""
    return build_fake_registry
