"""
任务引擎 - Plan → Execute → Verify（→ Replan）

显式有限状态机：每个状态对应一个处理方法，由 run() 中的 while 循环驱动，
直到进入 completed / failed。从 verifying 出发的每一次转移都先检查
全局执行次数（安全阀），因此无论重试、重新规划还是决策模型如何表现，运行必然终止。
"""
from typing import Awaitable, Callable, Dict, Optional

from loguru import logger

from config.settings import settings

from .actions.base import ActionRegistry
from .errors import ActionError, SafetyLimitExceeded
from .models import (
    ActionDecision,
    ActionName,
    ActionResult,
    ExecutionState,
    RunResult,
    RunStatus,
)
from .oracle import ChatOracle
from .planner import TaskPlanner, format_plan_for_display
from .process_manager import ProcessManager
from .reporter import ProgressCallback, ProgressNotifier, generate_summary
from .resolver import StepResolver

# 提取类动作 → extracted_data 中的 method 字段
_EXTRACTION_METHODS: Dict[ActionName, str] = {
    ActionName.EXTRACT_VISION: "vision",
    ActionName.ANSWER_VISION: "vision_answer",
    ActionName.EXTRACT_TEXT: "html",
}


class TaskEngine:
    """
    任务引擎

    使用方式：
        engine = TaskEngine(oracle, build_browser_registry())
        result = await engine.run("打开 https://example.com 并截图")
    """

    def __init__(
        self,
        oracle: ChatOracle,
        registry: ActionRegistry,
        process_manager: Optional[ProcessManager] = None,
        max_step_executions: Optional[int] = None,
        max_retries: Optional[int] = None,
        max_replans: Optional[int] = None,
        max_plan_steps: Optional[int] = None,
    ):
        self.registry = registry
        self.process_manager = process_manager
        self.planner = TaskPlanner(oracle, max_plan_steps=max_plan_steps)
        self.resolver = StepResolver(registry, oracle)
        self.max_step_executions = max_step_executions or settings.max_step_executions
        self.max_retries = max_retries if max_retries is not None else settings.max_retries
        self.max_replans = max_replans if max_replans is not None else settings.max_replans

    async def run(self, task: str, on_progress: Optional[ProgressCallback] = None) -> RunResult:
        """
        运行完整任务流程

        Args:
            task: 自然语言任务描述
            on_progress: 可选的进度回调

        Returns:
            RunResult: 结构化运行结果
        """
        logger.debug(f"🚀 [TaskEngine] ===== 开始任务 =====")
        logger.debug(f"🚀 [TaskEngine] 输入: {task}")

        notifier = ProgressNotifier(on_progress)
        state = ExecutionState(task=task)
        handlers: Dict[RunStatus, Callable[[ExecutionState, ProgressNotifier], Awaitable[None]]] = {
            RunStatus.PLANNING: self._plan,
            RunStatus.EXECUTING: self._execute,
            RunStatus.VERIFYING: self._verify,
            RunStatus.REPLANNING: self._replan,
        }

        while state.status not in (RunStatus.COMPLETED, RunStatus.FAILED):
            status = state.status
            try:
                await handlers[status](state, notifier)
            except Exception as e:
                logger.exception(f"❌ [TaskEngine] 状态 {status.value} 处理异常: {e}")
                state.error = f"Unexpected error during {status.value}: {e}"
                state.status = RunStatus.FAILED

        result = self._build_result(state)
        notifier.notify(("✅ " if result.success else "❌ ") + result.summary.splitlines()[0])
        await notifier.drain()
        logger.debug(
            f"🏁 [TaskEngine] ===== 任务结束 ===== status={state.status.value}, "
            f"executions={state.total_executions}, steps={len(state.completed_steps)}"
        )
        return result

    # ============================================================
    # 状态处理
    # ============================================================

    async def _plan(self, state: ExecutionState, notifier: ProgressNotifier) -> None:
        try:
            state.plan = await self.planner.plan_task(state.task)
        except Exception as e:
            logger.error(f"❌ [TaskEngine] 规划失败: {e}")
            state.error = f"Planning failed: {e}"
            state.status = RunStatus.FAILED
            return

        logger.debug(f"📋 [TaskEngine] 规划完成: steps={len(state.plan.steps)}")
        for step in state.plan.steps:
            logger.debug(
                f"📋 [TaskEngine] Step[{step.step_number}]: action={step.action.value}, "
                f"desc='{step.description}', target={step.target}, value={step.value}"
            )
        notifier.notify(format_plan_for_display(state.plan))
        state.current_step_index = 0
        state.status = RunStatus.EXECUTING

    async def _execute(self, state: ExecutionState, notifier: ProgressNotifier) -> None:
        step = state.current_step
        if step is None:
            state.status = RunStatus.VERIFYING
            return

        notifier.notify(f"⚙️ Step {step.step_number}/{len(state.plan.steps)}: {step.description}")
        state.total_executions += 1

        try:
            decision = await self.resolver.resolve(step, state)
        except ActionError as e:
            logger.warning(f"⚠️ [TaskEngine] Step {step.step_number} 解析失败: {e}")
            state.error = str(e)
            state.status = RunStatus.VERIFYING
            return

        logger.debug(
            f"⚙️ [TaskEngine] 执行 Step {step.step_number}: {decision.action.value} "
            f"params={decision.params} ({decision.reasoning})"
        )
        result = await self.registry.invoke(decision.action, decision.params)
        state.last_action = f"{decision.action.value}: {result.message or result.error or ''}"[:200]

        if result.success:
            self._accumulate(state, decision, result)
            state.completed_steps.append(f"Step {step.step_number}: {step.description}")
            state.current_step_index += 1
            state.retry_count = 0
            state.error = None
            logger.debug(f"⚙️ [TaskEngine] Step {step.step_number} 成功: {result.message[:200]}")
        else:
            state.error = result.error or f"{decision.action.value} failed"
            logger.debug(f"⚙️ [TaskEngine] Step {step.step_number} 失败: {state.error}")

        state.status = RunStatus.VERIFYING

    async def _verify(self, state: ExecutionState, notifier: ProgressNotifier) -> None:
        # 安全阀：先于任何其他转移检查
        if state.total_executions >= self.max_step_executions:
            error = SafetyLimitExceeded(
                f"Task exceeded maximum execution limit ({self.max_step_executions} steps)",
                limit=self.max_step_executions,
            )
            logger.warning(f"🛑 [TaskEngine] {error}")
            state.error = str(error)
            state.status = RunStatus.FAILED
            return

        if state.error:
            if state.retry_count < self.max_retries:
                state.retry_count += 1
                logger.debug(
                    f"🔁 [TaskEngine] 重试当前步骤 ({state.retry_count}/{self.max_retries}): {state.error}"
                )
                notifier.notify(f"🔁 Retrying ({state.retry_count}/{self.max_retries}): {state.error}")
                state.error = None
                state.status = RunStatus.EXECUTING
                return

            if state.replans < self.max_replans:
                logger.debug(f"🧭 [TaskEngine] 重试耗尽，重新规划 ({state.replans + 1}/{self.max_replans})")
                state.status = RunStatus.REPLANNING
                return

            logger.warning(f"❌ [TaskEngine] 重试耗尽: {state.error}")
            state.status = RunStatus.FAILED
            return

        state.status = RunStatus.EXECUTING if state.steps_remaining else RunStatus.COMPLETED

    async def _replan(self, state: ExecutionState, notifier: ProgressNotifier) -> None:
        failure_reason = state.error
        notifier.notify(f"🧭 Replanning: {failure_reason}")
        observation = await self.resolver.observe()
        try:
            new_plan = await self.planner.replan_from_state(
                state.plan, state.completed_steps, observation, failure_reason,
                last_action=state.last_action,
            )
        except Exception as e:
            logger.error(f"❌ [TaskEngine] 重新规划失败: {e}")
            state.error = f"Replanning failed: {e}"
            state.status = RunStatus.FAILED
            return

        state.plan = new_plan
        state.current_step_index = 0
        state.retry_count = 0
        state.replans += 1
        state.error = None
        notifier.notify(format_plan_for_display(new_plan))
        state.status = RunStatus.EXECUTING

    # ============================================================
    # 结果
    # ============================================================

    @staticmethod
    def _accumulate(state: ExecutionState, decision: ActionDecision, result: ActionResult) -> None:
        step = state.current_step
        method = _EXTRACTION_METHODS.get(decision.action)
        if method:
            item = {
                "step": step.step_number,
                "description": step.description,
                "text": result.payload.get("text", result.message),
                "method": method,
            }
            if result.payload.get("screenshot_path"):
                item["screenshot_path"] = result.payload["screenshot_path"]
            state.extracted_data.append(item)
        if decision.action == ActionName.SCREENSHOT and result.payload.get("path"):
            state.screenshots.append(result.payload["path"])

    def _build_result(self, state: ExecutionState) -> RunResult:
        success = state.status == RunStatus.COMPLETED
        running = self.process_manager.list_processes() if self.process_manager else []
        return RunResult(
            success=success,
            summary=generate_summary(state),
            steps_completed=list(state.completed_steps),
            extracted_data=list(state.extracted_data),
            screenshots=list(state.screenshots),
            error=None if success else state.error,
            running_processes=running,
        )
