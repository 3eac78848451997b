"""
任务规划器 - 将自然语言任务转换为有界的步骤序列

设计理念：
- 由决策模型给出 JSON 计划，但其输出是不可信文本，必须防御性解析
- 解析顺序：```json 代码块 → 原始花括号扫描 → 兜底计划
- 无论模型返回什么编号，步骤都会重新编号为 1..N
- 超长计划被截断，并在末尾追加合成的 complete 步骤
"""
import re
from typing import Any, Dict, List, Optional

from loguru import logger

from config.settings import settings

from .errors import PlanningError
from .models import StepAction, TaskPlan, TaskStep
from .oracle import ChatOracle
from .parsing import extract_json_object, sanitize

_URL_RE = re.compile(r"https?://[^\s]+")

_PLAN_FORMAT = """只返回以下 JSON，不要添加任何其他文本：
{
  "taskDescription": "任务的简短描述",
  "steps": [
    {"stepNumber": 1, "action": "navigate", "description": "打开网站", "target": "https://...", "value": null, "expectedOutcome": "页面加载完成"}
  ],
  "estimatedComplexity": "simple" | "moderate" | "complex",
  "potentialChallenges": ["可能遇到的困难"]
}

可用的 action：navigate, click, type, scroll, screenshot, extract, extract_vision,
extract_html, answer_vision, wait, verify, complete

规则：
- 最后一步必须是 complete
- 提取页面数据优先使用 extract_vision；回答"页面上有没有 X"使用 answer_vision
- wait 的 value 为毫秒数
"""

_PLAN_SYSTEM_PROMPT = "你是一个网页自动化任务规划器。把用户任务拆解为可执行的步骤序列。\n\n" + _PLAN_FORMAT

_REPLAN_SYSTEM_PROMPT = (
    "你是一个网页自动化任务规划器。任务已经部分执行，请只规划剩余的工作，"
    "不要重复已完成的步骤。\n\n" + _PLAN_FORMAT
)


def parse_plan(content: Optional[str], task_description: str) -> TaskPlan:
    """
    从决策模型输出中解析计划

    Raises:
        PlanningError: 无法提取 JSON 或没有任何合法步骤
    """
    data = extract_json_object(content)
    if data is None:
        raise PlanningError("Oracle plan output is not valid JSON")

    raw_steps = data.get("steps")
    if not isinstance(raw_steps, list):
        raise PlanningError("Oracle plan has no steps list")

    steps: List[TaskStep] = []
    for raw in raw_steps:
        step = _parse_step(raw)
        if step is not None:
            steps.append(step)
    if not steps:
        raise PlanningError("Oracle plan contains no valid steps")

    challenges = data.get("potentialChallenges") or data.get("potential_challenges") or []
    return TaskPlan(
        task_description=str(data.get("taskDescription") or data.get("task_description") or task_description),
        steps=steps,
        estimated_complexity=str(data.get("estimatedComplexity") or data.get("estimated_complexity") or "moderate"),
        potential_challenges=[str(c) for c in challenges] if isinstance(challenges, list) else [],
    )


def _parse_step(raw: Any) -> Optional[TaskStep]:
    if not isinstance(raw, dict):
        return None
    try:
        action = StepAction(str(raw.get("action", "")).strip().lower())
    except ValueError:
        logger.warning(f"⚠️ [Planner] 丢弃未知动作的步骤: {raw}")
        return None

    def _optional(*keys: str) -> Optional[str]:
        for key in keys:
            value = raw.get(key)
            if value is not None and value != "":
                return str(value)
        return None

    return TaskStep(
        step_number=0,
        action=action,
        description=_optional("description") or action.value,
        target=_optional("target"),
        value=_optional("value"),
        expected_outcome=_optional("expectedOutcome", "expected_outcome"),
    )


def normalize_plan(plan: TaskPlan, max_steps: int) -> TaskPlan:
    """重新编号并截断到 max_steps，截断时末尾追加合成的 complete 步骤"""
    if len(plan.steps) > max_steps:
        logger.warning(f"⚠️ [Planner] 计划有 {len(plan.steps)} 步，截断为 {max_steps} 步")
        plan.steps = plan.steps[:max_steps - 1]
        plan.steps.append(
            TaskStep(
                step_number=0,
                action=StepAction.COMPLETE,
                description="Complete task (plan truncated)",
            )
        )
    for number, step in enumerate(plan.steps, start=1):
        step.step_number = number
    return plan


def create_fallback_plan(task_description: str) -> TaskPlan:
    """
    确定性兜底计划：发现 URL 则先导航，然后视觉提取，最后完成
    """
    steps: List[TaskStep] = []
    url_match = _URL_RE.search(task_description)
    if url_match:
        steps.append(
            TaskStep(
                step_number=0,
                action=StepAction.NAVIGATE,
                description="Navigate to the URL",
                target=url_match.group(0),
            )
        )
    steps.append(
        TaskStep(
            step_number=0,
            action=StepAction.EXTRACT_VISION,
            description="Extract relevant information from the page",
            value=task_description,
        )
    )
    steps.append(TaskStep(step_number=0, action=StepAction.COMPLETE, description="Complete task"))
    return TaskPlan(
        task_description=task_description,
        steps=steps,
        estimated_complexity="simple",
        potential_challenges=["Plan generated without the decision oracle"],
    )


def format_plan_for_display(plan: TaskPlan) -> str:
    """将计划格式化为用户可读的文本"""
    lines = [f"📋 计划：{plan.task_description}（{len(plan.steps)} 步，复杂度 {plan.estimated_complexity}）"]
    for step in plan.steps:
        line = f"{step.step_number}. [{step.action.value}] {step.description}"
        if step.target:
            line += f" → {step.target}"
        lines.append(line)
    if plan.potential_challenges:
        lines.append("⚠️ 可能的困难：" + "；".join(plan.potential_challenges))
    return "\n".join(lines)


class TaskPlanner:
    """
    任务规划器

    使用方式：
        planner = TaskPlanner(oracle)
        plan = await planner.plan_task("打开 https://example.com 并截图")
    """

    def __init__(self, oracle: ChatOracle, max_plan_steps: Optional[int] = None):
        self.oracle = oracle
        self.max_plan_steps = max_plan_steps or settings.max_plan_steps

    async def plan_task(self, description: str, context: Optional[str] = None) -> TaskPlan:
        """
        生成任务计划

        Args:
            description: 任务描述
            context: 可选的先前观察上下文

        Returns:
            TaskPlan: 计划（决策模型失败时为兜底计划）
        """
        user_content = f"任务：{sanitize(description)}"
        if context:
            user_content += f"\n\n当前页面状态：\n{sanitize(context, 8000)}"

        messages = [
            {"role": "system", "content": _PLAN_SYSTEM_PROMPT},
            {"role": "user", "content": user_content},
        ]
        return await self._request_plan(messages, description, fallback_description=description)

    async def replan_from_state(
        self,
        original: TaskPlan,
        completed_steps: List[str],
        current_context: str,
        failure_reason: Optional[str] = None,
        last_action: Optional[str] = None,
    ) -> TaskPlan:
        """
        根据已完成的步骤和当前观察重新规划剩余工作

        Args:
            original: 原计划
            completed_steps: 已完成步骤摘要（只取最后 10 条）
            current_context: 当前页面观察
            failure_reason: 可选的失败原因
            last_action: 可选的最后一个动作摘要（动作名和结果）

        Returns:
            TaskPlan: 剩余工作的计划
        """
        recent = "\n".join(f"- {sanitize(s, 200)}" for s in completed_steps[-10:]) or "无"
        user_content = (
            f"原始任务：{sanitize(original.task_description)}\n\n"
            f"已完成的步骤：\n{recent}\n\n"
            f"当前页面状态：\n{sanitize(current_context, 8000) or '未知'}"
        )
        if failure_reason:
            user_content += f"\n\n上一步失败原因：{sanitize(failure_reason, 500)}"
        if last_action:
            user_content += f"\n最后执行的动作：{sanitize(last_action, 300)}"

        messages = [
            {"role": "system", "content": _REPLAN_SYSTEM_PROMPT},
            {"role": "user", "content": user_content},
        ]
        return await self._request_plan(
            messages,
            original.task_description,
            fallback_description=f"Complete: {original.task_description}",
        )

    async def _request_plan(
        self,
        messages: List[Dict[str, Any]],
        task_description: str,
        fallback_description: str,
    ) -> TaskPlan:
        reply = await self.oracle.invoke(messages)
        content = reply.content if reply else ""
        try:
            plan = parse_plan(content, task_description)
            logger.debug(f"📋 [Planner] 决策模型给出 {len(plan.steps)} 步计划")
        except PlanningError as e:
            logger.warning(f"⚠️ [Planner] {e}，使用兜底计划")
            plan = create_fallback_plan(fallback_description)
        return normalize_plan(plan, self.max_plan_steps)
