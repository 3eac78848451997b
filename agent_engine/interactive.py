"""
交互式任务引擎 - 逐轮询问决策模型，可暂停等待用户输入

每一轮决策模型的输出必须被归类为以下之一：
- execute_tool：执行一个动作（每轮只执行一个）
- ask_user：暂停并向用户提问（会话进入 waiting_for_input）
- complete：任务完成
- error：任务失败
- unknown：无法解析（包括空响应）

解析顺序：原生 tool_calls → ```json 代码块 → 原始 JSON → 关键词启发式 → unknown。
同一轮中同时出现工具调用和终止文本时，工具调用优先。

连续 unknown 达到阈值后进入恢复流程：获取最新观察注入对话并重置计数；
恢复后的下一轮仍无法解析则运行失败。
"""
import asyncio
import json
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

from loguru import logger

from config.settings import settings

from .actions.base import ActionRegistry
from .errors import OracleProtocolError, SafetyLimitExceeded
from .models import ActionName, ActionResult, InteractiveSession, RunResult, SessionStatus
from .oracle import ChatOracle, OracleReply
from .parsing import extract_json_object
from .process_manager import ProcessManager
from .reporter import ProgressCallback, ProgressNotifier

WEB_AGENT_INTRO = "你是一个网页自动化助手，通过调用浏览器动作完成用户的任务。"

CODER_AGENT_INTRO = (
    "你是一个编码助手，在项目工作区中通过读写文件、执行命令、git 操作和管理后台进程完成用户的任务。"
)

_SYSTEM_PROMPT_TEMPLATE = """{intro}

每一轮只返回一个 JSON 代码块，格式为以下之一：

执行动作（每次只执行一个）：
```json
{{"action": "execute_tool", "tool": "动作名称", "args": {{...}}, "description": "这一步做什么"}}
```

需要用户补充信息时提问：
```json
{{"action": "ask_user", "question": "问题"}}
```

任务完成：
```json
{{"action": "complete", "message": "完成总结"}}
```

无法完成：
```json
{{"action": "error", "message": "失败原因"}}
```

可用动作：
{actions}

记住：只返回一个 JSON 代码块，不要在 JSON 之外输出解释。"""

_FORMAT_REMINDER = (
    "你的回复无法解析。请只返回一个 JSON 代码块，例如：\n"
    '```json\n{"action": "execute_tool", "tool": "snapshot", "args": {}, "description": "查看页面"}\n```'
)

_RECOVERY_TEMPLATE = (
    "我无法理解你之前的回复。请只返回一个 JSON 代码块。\n\n"
    "当前状态：\n{observation}\n\n"
    '格式：\n```json\n{{"action": "execute_tool", "tool": "动作名称", "args": {{}}, "description": "说明"}}\n```'
)

_QUESTION_RE = re.compile(r"would you|should i|do you want", re.IGNORECASE)

_TOOL_ALIASES = ("execute_tool", "tool")
_ASK_ALIASES = ("ask_user", "ask")
_COMPLETE_ALIASES = ("complete", "done")
_ERROR_ALIASES = ("error", "fail")


class TurnKind(str, Enum):
    """决策模型单轮响应类型"""
    EXECUTE_TOOL = "execute_tool"
    ASK_USER = "ask_user"
    COMPLETE = "complete"
    ERROR = "error"
    UNKNOWN = "unknown"


@dataclass
class OracleTurn:
    """解析后的单轮响应"""
    kind: TurnKind
    tool: Optional[str] = None
    args: Dict[str, Any] = field(default_factory=dict)
    description: str = ""
    question: Optional[str] = None
    message: str = ""
    raw: str = ""


def parse_oracle_turn(reply: Optional[OracleReply]) -> OracleTurn:
    """
    将决策模型的一轮回复归类为唯一的响应类型

    Args:
        reply: 模型回复，None 视为空响应

    Returns:
        OracleTurn: 解析结果
    """
    if reply is None or reply.is_empty:
        return OracleTurn(kind=TurnKind.UNKNOWN)

    content = reply.content or ""

    # 原生工具调用优先于文本
    if reply.tool_calls:
        if len(reply.tool_calls) > 1:
            logger.debug(f"🔍 [Interactive] 一轮返回 {len(reply.tool_calls)} 个工具调用，只执行第一个")
        function = reply.tool_calls[0].get("function") or {}
        name = function.get("name")
        arguments = function.get("arguments") or {}
        if isinstance(arguments, str):
            try:
                arguments = json.loads(arguments) if arguments.strip() else {}
            except json.JSONDecodeError:
                logger.warning(f"⚠️ [Interactive] 工具参数不是合法 JSON: {arguments[:200]}")
                arguments = {}
        if name:
            return OracleTurn(
                kind=TurnKind.EXECUTE_TOOL,
                tool=name,
                args=arguments if isinstance(arguments, dict) else {},
                description=content.strip()[:200],
                raw=content or json.dumps({"tool": name, "args": arguments}, ensure_ascii=False),
            )

    data = extract_json_object(content)
    if data is not None:
        return _turn_from_json(data, content)

    # JSON 提取完全失败时才使用关键词启发式
    lowered = content.lower()
    if "task completed" in lowered or "successfully" in lowered:
        return OracleTurn(kind=TurnKind.COMPLETE, message=content.strip(), raw=content)
    if "?" in lowered and _QUESTION_RE.search(lowered):
        return OracleTurn(kind=TurnKind.ASK_USER, question=content.strip(), raw=content)

    return OracleTurn(kind=TurnKind.UNKNOWN, message=content, raw=content)


def _turn_from_json(data: Dict[str, Any], raw: str) -> OracleTurn:
    action = str(data.get("action", "")).strip().lower()

    if action in _TOOL_ALIASES:
        tool = data.get("tool") or data.get("toolName")
        args = data.get("args") or data.get("parameters") or {}
        if tool:
            return OracleTurn(
                kind=TurnKind.EXECUTE_TOOL,
                tool=str(tool),
                args=args if isinstance(args, dict) else {},
                description=str(data.get("description") or ""),
                raw=raw,
            )

    if action in _ASK_ALIASES and data.get("question"):
        return OracleTurn(kind=TurnKind.ASK_USER, question=str(data["question"]), raw=raw)

    if action in _COMPLETE_ALIASES:
        return OracleTurn(
            kind=TurnKind.COMPLETE,
            message=str(data.get("message") or data.get("summary") or ""),
            raw=raw,
        )

    if action in _ERROR_ALIASES:
        return OracleTurn(
            kind=TurnKind.ERROR,
            message=str(data.get("message") or data.get("error") or ""),
            raw=raw,
        )

    return OracleTurn(kind=TurnKind.UNKNOWN, message=raw, raw=raw)


class InteractiveEngine:
    """
    交互式任务引擎

    使用方式：
        engine = InteractiveEngine(oracle, build_browser_registry())
        result = await engine.execute_task("帮我在网站上订一张票")
        if result.needs_user_input:
            result = await engine.continue_with_input(result.session_id, "明天下午")
    """

    def __init__(
        self,
        oracle: ChatOracle,
        registry: ActionRegistry,
        process_manager: Optional[ProcessManager] = None,
        intro: str = WEB_AGENT_INTRO,
        max_steps: Optional[int] = None,
        max_retries_per_step: Optional[int] = None,
        max_malformed_responses: Optional[int] = None,
        max_step_executions: Optional[int] = None,
        cleanup_interval: Optional[int] = None,
        session_max_age: Optional[int] = None,
    ):
        self.oracle = oracle
        self.registry = registry
        self.process_manager = process_manager
        self.intro = intro
        self.max_steps = max_steps or settings.interactive_max_steps
        self.max_retries_per_step = max_retries_per_step or settings.interactive_max_retries_per_step
        self.max_malformed_responses = max_malformed_responses or settings.max_malformed_responses
        self.max_step_executions = max_step_executions or settings.max_step_executions
        self.cleanup_interval = cleanup_interval or settings.session_cleanup_interval
        self.session_max_age = session_max_age or settings.session_max_age
        self._sessions: Dict[str, InteractiveSession] = {}
        self._running = False
        self._task: Optional[asyncio.Task] = None

    # ============================================================
    # 公共接口
    # ============================================================

    async def execute_task(
        self,
        task: str,
        chat_id: Optional[str] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> RunResult:
        """开始一个新的交互式任务"""
        session = InteractiveSession(
            id=f"session-{uuid.uuid4().hex[:12]}",
            task=task,
            chat_id=chat_id,
            messages=[{"role": "user", "content": f"任务：{task}"}],
        )
        self._sessions[session.id] = session
        logger.info(f"🚀 [Interactive] 新会话 {session.id}: {task}")
        return await self._run_session(session, on_progress)

    async def continue_with_input(
        self,
        session_id: str,
        user_input: str,
        on_progress: Optional[ProgressCallback] = None,
    ) -> RunResult:
        """用户回答问题后继续会话"""
        session = self._sessions.get(session_id)
        if session is None:
            return RunResult(
                success=False,
                summary="Session not found or expired",
                error=f"Session {session_id} not found",
            )
        if session.status != SessionStatus.WAITING_FOR_INPUT:
            return RunResult(
                success=False,
                summary="Session is not waiting for input",
                steps_completed=list(session.steps_completed),
                error=f"Session status is {session.status.value}, not waiting_for_input",
                session_id=session.id,
            )

        session.messages.append({"role": "user", "content": user_input})
        session.status = SessionStatus.RUNNING
        session.pending_question = None
        session.touch()
        logger.info(f"💬 [Interactive] 会话 {session_id} 收到用户输入: {user_input[:100]}")
        return await self._run_session(session, on_progress)

    def get_session(self, session_id: str) -> Optional[InteractiveSession]:
        return self._sessions.get(session_id)

    def cleanup_sessions(self, max_age_seconds: Optional[int] = None) -> int:
        """
        清理空闲超时的会话（不论状态）

        Returns:
            int: 清理的会话数量
        """
        max_age = timedelta(seconds=max_age_seconds if max_age_seconds is not None else self.session_max_age)
        cutoff = datetime.now() - max_age
        expired = [sid for sid, s in self._sessions.items() if s.updated_at < cutoff]
        for sid in expired:
            del self._sessions[sid]
            logger.debug(f"🧹 [Interactive] 清理过期会话: {sid}")
        return len(expired)

    async def start(self) -> None:
        """启动定期清理任务"""
        if self._running:
            logger.warning("Session sweeper is already running")
            return
        self._running = True
        self._task = asyncio.create_task(self._sweep_loop())
        logger.info("🧹 Session sweeper started")

    async def stop(self) -> None:
        """停止定期清理任务"""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("🧹 Session sweeper stopped")

    async def _sweep_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.cleanup_interval)
            try:
                removed = self.cleanup_sessions()
                if removed:
                    logger.info(f"🧹 Cleaned up {removed} expired session(s)")
            except Exception as e:
                logger.error(f"Error in session sweeper: {e}", exc_info=True)

    # ============================================================
    # 主循环
    # ============================================================

    async def _run_session(self, session: InteractiveSession, on_progress: Optional[ProgressCallback]) -> RunResult:
        notifier = ProgressNotifier(on_progress)
        try:
            result = await self._drive(session, notifier)
        except Exception as e:
            logger.exception(f"❌ [Interactive] 会话 {session.id} 异常: {e}")
            result = self._finish(session, SessionStatus.FAILED, f"Task failed: {e}", error=str(e))
        icon = "❓" if result.needs_user_input else ("✅" if result.success else "❌")
        notifier.notify(f"{icon} {result.question if result.needs_user_input else result.summary}")
        await notifier.drain()
        return result

    async def _drive(self, session: InteractiveSession, notifier: ProgressNotifier) -> RunResult:
        malformed = 0
        malformed_total = 0
        recovered = False
        tool_failures = 0
        tools = self.registry.tool_definitions()

        for turn_number in range(1, self.max_steps + 1):
            reply = await self.oracle.invoke(self._conversation(session), tools=tools)
            turn = parse_oracle_turn(reply)
            session.touch()

            if turn.kind == TurnKind.UNKNOWN:
                malformed += 1
                malformed_total += 1
                logger.warning(
                    f"⚠️ [Interactive] 第 {turn_number} 轮无法解析 "
                    f"(连续 {malformed} 次): {turn.message[:200]!r}"
                )
                if turn.raw:
                    session.messages.append({"role": "assistant", "content": turn.raw})

                if recovered:
                    error = OracleProtocolError(
                        f"Could not parse oracle output after {malformed_total} attempts",
                        attempts=malformed_total,
                    )
                    return self._finish(session, SessionStatus.FAILED, "Agent produced unparseable responses", error=str(error))

                if malformed >= self.max_malformed_responses:
                    observation = await self._observe()
                    if observation is None:
                        error = OracleProtocolError(
                            f"Could not parse oracle output after {malformed_total} attempts",
                            attempts=malformed_total,
                        )
                        return self._finish(
                            session, SessionStatus.FAILED, "Agent stopped responding and recovery failed", error=str(error)
                        )
                    logger.warning(f"🩹 [Interactive] 连续 {malformed} 次无法解析，注入最新观察进行恢复")
                    session.messages.append(
                        {"role": "user", "content": _RECOVERY_TEMPLATE.format(observation=observation[:4000])}
                    )
                    malformed = 0
                    recovered = True
                else:
                    session.messages.append({"role": "user", "content": _FORMAT_REMINDER})
                continue

            malformed = 0
            malformed_total = 0
            recovered = False
            session.messages.append({"role": "assistant", "content": turn.raw})

            if turn.kind == TurnKind.COMPLETE:
                return self._finish(session, SessionStatus.COMPLETED, turn.message or "Task completed successfully")

            if turn.kind == TurnKind.ERROR:
                return self._finish(session, SessionStatus.FAILED, turn.message or "Task failed", error=turn.message or "Task failed")

            if turn.kind == TurnKind.ASK_USER:
                session.status = SessionStatus.WAITING_FOR_INPUT
                session.pending_question = turn.question
                logger.info(f"❓ [Interactive] 会话 {session.id} 等待用户输入: {turn.question}")
                return self._result(session, True, "Waiting for your input", needs_user_input=True)

            # execute_tool
            if session.tool_executions >= self.max_step_executions:
                error = SafetyLimitExceeded(
                    f"Task exceeded maximum execution limit ({self.max_step_executions} steps)",
                    limit=self.max_step_executions,
                )
                return self._finish(session, SessionStatus.FAILED, str(error), error=str(error))

            notifier.notify(f"⚙️ {turn.tool}: {turn.description or '执行中'}")
            session.tool_executions += 1
            result = await self.registry.invoke(turn.tool, turn.args)

            if result.success:
                tool_failures = 0
                session.steps_completed.append(f"{turn.tool}: {turn.description or 'completed'}")
                self._collect(session, turn.tool, result)
                feedback = json.dumps(result.to_dict(), ensure_ascii=False, default=str)
                session.messages.append({"role": "user", "content": f"{turn.tool} completed: {feedback[:2000]}"})
                logger.debug(f"✅ [Interactive] {turn.tool} 成功: {result.message[:200]}")
            else:
                tool_failures += 1
                logger.warning(f"⚠️ [Interactive] {turn.tool} 失败 ({tool_failures}/{self.max_retries_per_step}): {result.error}")
                if tool_failures >= self.max_retries_per_step:
                    return self._finish(
                        session,
                        SessionStatus.FAILED,
                        f"Failed after {tool_failures} retries: {result.error}",
                        error=result.error,
                    )
                session.messages.append({"role": "user", "content": f"{turn.tool} FAILED: {result.error}"})

        return self._finish(
            session,
            SessionStatus.FAILED,
            f"Task exceeded maximum steps ({self.max_steps})",
            error="Maximum step limit reached",
        )

    def _conversation(self, session: InteractiveSession) -> List[Dict[str, Any]]:
        system_prompt = _SYSTEM_PROMPT_TEMPLATE.format(intro=self.intro, actions=self.registry.describe())
        return [{"role": "system", "content": system_prompt}] + session.messages

    async def _observe(self) -> Optional[str]:
        """获取最新观察：网页任务用 snapshot，编码任务用 list_dir"""
        for action in (ActionName.SNAPSHOT, ActionName.LIST_DIR):
            if action not in self.registry:
                continue
            result = await self.registry.invoke(action, {})
            if result.success:
                return str(result.payload.get("snapshot") or result.message)
            logger.warning(f"⚠️ [Interactive] 获取观察失败: {result.error}")
        return None

    @staticmethod
    def _collect(session: InteractiveSession, tool: str, result: ActionResult) -> None:
        if tool == ActionName.SCREENSHOT.value and result.payload.get("path"):
            session.screenshots.append(result.payload["path"])
        if tool in (ActionName.EXTRACT_VISION.value, ActionName.ANSWER_VISION.value, ActionName.EXTRACT_TEXT.value):
            session.extracted_data.append({"tool": tool, "data": result.payload.get("text", result.message)})

    def _finish(
        self,
        session: InteractiveSession,
        status: SessionStatus,
        summary: str,
        error: Optional[str] = None,
    ) -> RunResult:
        session.status = status
        session.pending_question = None
        logger.info(f"🏁 [Interactive] 会话 {session.id} 结束: status={status.value}, summary={summary[:100]}")
        return self._result(session, status == SessionStatus.COMPLETED, summary, error=error)

    def _result(
        self,
        session: InteractiveSession,
        success: bool,
        summary: str,
        error: Optional[str] = None,
        needs_user_input: bool = False,
    ) -> RunResult:
        session.touch()
        return RunResult(
            success=success,
            summary=summary,
            steps_completed=list(session.steps_completed),
            extracted_data=list(session.extracted_data),
            screenshots=list(session.screenshots),
            error=error,
            session_id=session.id,
            running_processes=self.process_manager.list_processes() if self.process_manager else [],
            needs_user_input=needs_user_input,
            question=session.pending_question if needs_user_input else None,
        )
