"""
任务引擎数据模型

定义任务引擎的核心数据结构，包括：
- TaskPlan / TaskStep：规划器输出的有界步骤序列
- ExecutionState：控制循环状态机的运行状态
- ActionResult / ActionDecision：动作调用的决策与结果
- ProcessSnapshot：后台进程的只读快照
- InteractiveSession：可暂停的交互式会话
- RunResult：一次运行的最终结果
"""
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class StepAction(str, Enum):
    """规划步骤的动作类型"""
    NAVIGATE = "navigate"
    CLICK = "click"
    TYPE = "type"
    SCROLL = "scroll"
    SCREENSHOT = "screenshot"
    EXTRACT = "extract"
    EXTRACT_VISION = "extract_vision"
    EXTRACT_HTML = "extract_html"
    ANSWER_VISION = "answer_vision"
    WAIT = "wait"
    VERIFY = "verify"
    COMPLETE = "complete"


class ActionName(str, Enum):
    """动作注册表中所有已知的动作名称"""
    NAVIGATE = "navigate"
    SNAPSHOT = "snapshot"
    CLICK = "click"
    TYPE = "type"
    SCROLL = "scroll"
    SCREENSHOT = "screenshot"
    EXTRACT_VISION = "extract_vision"
    ANSWER_VISION = "answer_vision"
    EXTRACT_TEXT = "extract_text"
    CLOSE_BROWSER = "close_browser"
    WAIT = "wait"
    COMPLETE = "complete"
    RUN_COMMAND = "run_command"
    GIT = "git"
    START_PROCESS = "start_process"
    STOP_PROCESS = "stop_process"
    LIST_PROCESSES = "list_processes"
    PROCESS_LOGS = "process_logs"
    LIST_DIR = "list_dir"
    READ_FILE = "read_file"
    WRITE_FILE = "write_file"
    GREP_CODE = "grep_code"


class RunStatus(str, Enum):
    """控制循环状态"""
    PLANNING = "planning"
    EXECUTING = "executing"
    VERIFYING = "verifying"
    REPLANNING = "replanning"
    COMPLETED = "completed"
    FAILED = "failed"


class ProcessStatus(str, Enum):
    """后台进程状态"""
    STARTING = "starting"
    RUNNING = "running"
    STOPPED = "stopped"
    FAILED = "failed"


class SessionStatus(str, Enum):
    """交互式会话状态"""
    RUNNING = "running"
    WAITING_FOR_INPUT = "waiting_for_input"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class TaskStep:
    """
    单个规划步骤

    Attributes:
        step_number: 步骤序号（从 1 开始，由规划器重新编号）
        action: 动作类型
        description: 步骤描述
        target: 目标（URL、元素描述、选择器等）
        value: 取值（输入文本、等待毫秒数等）
        expected_outcome: 预期结果
    """
    step_number: int
    action: StepAction
    description: str
    target: Optional[str] = None
    value: Optional[str] = None
    expected_outcome: Optional[str] = None


@dataclass
class TaskPlan:
    """
    任务执行计划

    Attributes:
        task_description: 任务描述
        steps: 有序步骤列表，长度不超过 max_plan_steps
        estimated_complexity: 复杂度（simple / moderate / complex）
        potential_challenges: 预计的困难点
    """
    task_description: str
    steps: List[TaskStep] = field(default_factory=list)
    estimated_complexity: str = "moderate"
    potential_challenges: List[str] = field(default_factory=list)


@dataclass
class ActionResult:
    """
    动作执行结果

    Attributes:
        success: 是否成功
        message: 结果描述
        payload: 结构化数据（提取文本、文件路径、URL 等）
        error: 错误信息
    """
    success: bool
    message: str = ""
    payload: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"success": self.success}
        if self.message:
            data["message"] = self.message
        if self.payload:
            data.update(self.payload)
        if self.error:
            data["error"] = self.error
        return data


@dataclass
class ActionDecision:
    """解析器给出的具体动作调用"""
    action: ActionName
    params: Dict[str, Any] = field(default_factory=dict)
    reasoning: str = ""


@dataclass
class ExecutionState:
    """
    控制循环运行状态

    Attributes:
        task: 原始任务描述
        plan: 当前计划
        current_step_index: 当前步骤下标
        completed_steps: 已完成步骤摘要
        extracted_data: 累积的提取数据
        screenshots: 累积的截图路径
        error: 最近一次错误
        status: 状态机当前状态
        retry_count: 当前步骤的重试次数
        total_executions: 全局执行次数（安全阀）
        replans: 已重新规划次数
        last_action: 最近一次动作摘要
    """
    task: str
    plan: Optional[TaskPlan] = None
    current_step_index: int = 0
    completed_steps: List[str] = field(default_factory=list)
    extracted_data: List[Dict[str, Any]] = field(default_factory=list)
    screenshots: List[str] = field(default_factory=list)
    error: Optional[str] = None
    status: RunStatus = RunStatus.PLANNING
    retry_count: int = 0
    total_executions: int = 0
    replans: int = 0
    last_action: Optional[str] = None

    @property
    def current_step(self) -> Optional[TaskStep]:
        if self.plan is None or self.current_step_index >= len(self.plan.steps):
            return None
        return self.plan.steps[self.current_step_index]

    @property
    def steps_remaining(self) -> bool:
        return self.current_step is not None


@dataclass(frozen=True)
class ProcessSnapshot:
    """后台进程的只读快照（不持有任何进程句柄）"""
    id: str
    command: str
    cwd: str
    pid: Optional[int]
    status: ProcessStatus
    started_at: datetime
    logs: List[str] = field(default_factory=list)
    port: Optional[int] = None
    url: Optional[str] = None
    exit_code: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        data["started_at"] = self.started_at.isoformat()
        return data


@dataclass
class InteractiveSession:
    """
    交互式会话

    Attributes:
        id: 会话 ID
        task: 任务描述
        status: 会话状态
        messages: 与决策模型的对话历史
        pending_question: 等待用户回答的问题
        chat_id: 来源对话 ID
    """
    id: str
    task: str
    status: SessionStatus = SessionStatus.RUNNING
    messages: List[Dict[str, Any]] = field(default_factory=list)
    pending_question: Optional[str] = None
    chat_id: Optional[str] = None
    steps_completed: List[str] = field(default_factory=list)
    extracted_data: List[Dict[str, Any]] = field(default_factory=list)
    screenshots: List[str] = field(default_factory=list)
    tool_executions: int = 0
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)

    def touch(self) -> None:
        self.updated_at = datetime.now()


@dataclass
class RunResult:
    """一次任务运行的最终结果"""
    success: bool
    summary: str
    steps_completed: List[str] = field(default_factory=list)
    extracted_data: List[Dict[str, Any]] = field(default_factory=list)
    screenshots: List[str] = field(default_factory=list)
    error: Optional[str] = None
    session_id: Optional[str] = None
    running_processes: List[Dict[str, Any]] = field(default_factory=list)
    needs_user_input: bool = False
    question: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "success": self.success,
            "summary": self.summary,
            "steps_completed": list(self.steps_completed),
        }
        if self.extracted_data:
            data["extracted_data"] = list(self.extracted_data)
        if self.screenshots:
            data["screenshots"] = list(self.screenshots)
        if self.error:
            data["error"] = self.error
        if self.session_id:
            data["session_id"] = self.session_id
        if self.running_processes:
            data["running_processes"] = list(self.running_processes)
        if self.needs_user_input:
            data["needs_user_input"] = True
            data["question"] = self.question
        return data
