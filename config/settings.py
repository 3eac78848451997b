"""
Configuration settings for agent-engine
"""
from pydantic_settings import BaseSettings
from typing import Optional
from enum import Enum


class Environment(str, Enum):
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


class Settings(BaseSettings):
    # Decision Oracle (OpenAI-compatible chat completion service)
    executor_llm_url: Optional[str] = None
    executor_llm_model: str = "default"
    executor_llm_token: Optional[str] = None
    executor_llm_timeout: int = 120  # 单次调用超时（秒）

    # Vision Model Configuration (视觉模型，用于截图识别)
    vlm_api_url: Optional[str] = None
    vlm_model: str = "default"
    vlm_api_token: Optional[str] = None

    # Browser Control Server
    browser_server_url: str = "http://localhost:9222"
    screenshots_dir: str = "data/screenshots"

    # Application Configuration
    app_env: Environment = Environment.DEVELOPMENT
    debug: bool = True
    log_level: str = "INFO"

    # Control Loop Limits (控制循环安全上限)
    max_plan_steps: int = 20
    max_step_executions: int = 50
    max_retries: int = 3
    max_replans: int = 0  # 0 表示重试耗尽后直接失败，不进入重新规划
    hard_wait_ceiling_ms: int = 5000

    # Interactive Loop (交互式循环)
    interactive_max_steps: int = 30
    interactive_max_retries_per_step: int = 2
    max_malformed_responses: int = 3
    session_cleanup_interval: int = 1800  # 会话清理间隔（秒），默认30分钟
    session_max_age: int = 3600  # 会话最大空闲时间（秒），默认1小时

    # Process Manager (后台进程管理)
    process_ready_timeout_ms: int = 30000
    process_max_log_lines: int = 100
    process_stop_grace_seconds: float = 5.0
    process_initial_output_delay: float = 1.0

    # Shell / Workspace
    shell_command_timeout: int = 30
    workspace_root: str = "data/workspace"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False


# Global settings instance
settings = Settings()
