"""
任务引擎异常类型

- PlanningError：决策模型输出无法解析为计划（由规划器吸收，回退到兜底计划）
- ActionError：动作失败或动作名称未知（记为步骤失败，可重试）
- OracleProtocolError：决策模型输出无法归类（触发恢复流程）
- ProcessError：后台进程启动/退出/终止异常（只体现在进程记录中）
- SafetyLimitExceeded：触达安全上限（总是终止运行）
"""


class EngineError(Exception):
    """任务引擎异常基类"""


class PlanningError(EngineError):
    """计划生成失败"""


class ActionError(EngineError):
    """动作执行失败或动作未知"""

    def __init__(self, message: str, action: str = ""):
        super().__init__(message)
        self.action = action


class OracleProtocolError(EngineError):
    """决策模型输出不符合约定格式"""

    def __init__(self, message: str, attempts: int = 0):
        super().__init__(message)
        self.attempts = attempts


class ProcessError(EngineError):
    """后台进程生命周期异常"""


class SafetyLimitExceeded(EngineError):
    """安全上限被触达"""

    def __init__(self, message: str, limit: int = 0):
        super().__init__(message)
        self.limit = limit
