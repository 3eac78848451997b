"""
任务执行引擎 - 自然语言任务的自主执行

给定自然语言任务，由规划器生成有界的步骤序列，逐步解析为具体动作，
在可插拔的动作处理器（网页、shell/git、后台进程、工作区文件）上执行，
最终返回结构化结果。

核心流程：Plan → Resolve → Act → Verify（→ Retry / Replan）
交互式变体：逐轮询问决策模型，可暂停等待用户回答
"""
from .actions import ActionRegistry, build_browser_registry, build_coder_registry
from .engine import TaskEngine
from .interactive import CODER_AGENT_INTRO, WEB_AGENT_INTRO, InteractiveEngine
from .models import (
    ActionName,
    ActionResult,
    ExecutionState,
    RunResult,
    RunStatus,
    StepAction,
    TaskPlan,
    TaskStep,
)
from .oracle import ChatOracle, OracleReply
from .process_manager import ProcessManager, get_process_manager

__all__ = [
    "TaskEngine",
    "InteractiveEngine",
    "WEB_AGENT_INTRO",
    "CODER_AGENT_INTRO",
    "ActionRegistry",
    "build_browser_registry",
    "build_coder_registry",
    "ChatOracle",
    "OracleReply",
    "ProcessManager",
    "get_process_manager",
    "ActionName",
    "ActionResult",
    "ExecutionState",
    "RunResult",
    "RunStatus",
    "StepAction",
    "TaskPlan",
    "TaskStep",
]
