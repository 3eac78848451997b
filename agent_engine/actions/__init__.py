"""
动作注册表与标准动作集

- build_browser_registry：网页任务（浏览器 + 视觉 + 流程控制）
- build_coder_registry：编码任务（shell / git / 后台进程 / 工作区文件 + 流程控制）
"""
from pathlib import Path
from typing import Optional

from config.settings import settings

from ..process_manager import ProcessManager, get_process_manager
from .base import ActionHandler, ActionRegistry, to_action_result
from .browser import BrowserClient, register_browser_actions
from .control import register_control_actions
from .process import register_process_actions
from .shell import register_shell_actions
from .vision import VisionClient, register_vision_actions
from .workspace import register_workspace_actions


def build_browser_registry(
    client: Optional[BrowserClient] = None,
    vision: Optional[VisionClient] = None,
) -> ActionRegistry:
    """构建网页任务的动作注册表"""
    client = client or BrowserClient()
    registry = ActionRegistry()
    register_browser_actions(registry, client)
    register_vision_actions(registry, client, vision or VisionClient())
    register_control_actions(registry, settings.hard_wait_ceiling_ms)
    return registry


def build_coder_registry(
    workspace: Optional[str] = None,
    manager: Optional[ProcessManager] = None,
) -> ActionRegistry:
    """构建编码任务的动作注册表，所有操作限定在 workspace 内"""
    root = Path(workspace or settings.workspace_root).resolve()
    root.mkdir(parents=True, exist_ok=True)
    registry = ActionRegistry()
    register_workspace_actions(registry, root)
    register_shell_actions(registry, root)
    register_process_actions(registry, manager or get_process_manager(), root)
    register_control_actions(registry, settings.hard_wait_ceiling_ms)
    return registry


__all__ = [
    "ActionHandler",
    "ActionRegistry",
    "BrowserClient",
    "VisionClient",
    "build_browser_registry",
    "build_coder_registry",
    "to_action_result",
]
