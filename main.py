"""
Agent Engine - 命令行入口
==========================================

使用方法:
  python main.py run "打开 https://example.com 并截图"          # 计划/执行模式
  python main.py interactive "帮我在网站上搜索机票"              # 交互模式（可回答提问）
  python main.py code "给项目加一个 README" --workspace ./proj   # 编码任务模式
"""
import asyncio
import json
import sys

from loguru import logger

from config.settings import settings
from agent_engine import (
    CODER_AGENT_INTRO,
    WEB_AGENT_INTRO,
    ChatOracle,
    InteractiveEngine,
    RunResult,
    TaskEngine,
    build_browser_registry,
    build_coder_registry,
    get_process_manager,
)
from agent_engine.actions import BrowserClient
from agent_engine.reporter import report


def setup_logging() -> None:
    """配置日志输出"""
    logger.remove()
    logger.add(sys.stderr, level=settings.log_level, colorize=True)
    logger.add(
        "logs/agent_engine_{time}.log",
        rotation="1 day",
        retention="7 days",
        level="DEBUG" if settings.debug else "INFO",
        format="{time:YYYY-MM-DD HH:mm:ss} | {level} | {name}:{function}:{line} - {message}",
    )


def print_progress(message: str) -> None:
    print(message, flush=True)


def print_result(result: RunResult) -> None:
    print("\n" + report(result))
    print(json.dumps(result.to_dict(), ensure_ascii=False, indent=2, default=str))


async def run_plan_mode(task: str) -> RunResult:
    client = BrowserClient()
    engine = TaskEngine(ChatOracle(), build_browser_registry(client=client))
    try:
        return await engine.run(task, on_progress=print_progress)
    finally:
        await client.close()


async def run_interactive_mode(task: str, coder: bool, workspace: str) -> RunResult:
    manager = get_process_manager()
    client = None
    if coder:
        registry = build_coder_registry(workspace, manager=manager)
        engine = InteractiveEngine(ChatOracle(), registry, process_manager=manager, intro=CODER_AGENT_INTRO)
    else:
        client = BrowserClient()
        engine = InteractiveEngine(
            ChatOracle(), build_browser_registry(client=client), process_manager=manager, intro=WEB_AGENT_INTRO
        )

    await engine.start()
    try:
        result = await engine.execute_task(task, on_progress=print_progress)
        while result.needs_user_input:
            answer = await asyncio.to_thread(input, f"\n❓ {result.question}\n> ")
            result = await engine.continue_with_input(result.session_id, answer, on_progress=print_progress)
        return result
    finally:
        await engine.stop()
        if client is not None:
            await client.close()
        await manager.shutdown()


async def main():
    """主入口"""
    import argparse

    parser = argparse.ArgumentParser(description="Agent Engine - 自然语言任务执行引擎")
    parser.add_argument("mode", choices=["run", "interactive", "code"], help="运行模式")
    parser.add_argument("task", type=str, help="自然语言任务描述")
    parser.add_argument("--workspace", type=str, default=settings.workspace_root, help="编码任务的工作区目录")

    args = parser.parse_args()
    setup_logging()

    if args.mode == "run":
        result = await run_plan_mode(args.task)
    else:
        result = await run_interactive_mode(args.task, coder=args.mode == "code", workspace=args.workspace)

    print_result(result)
    sys.exit(0 if result.success else 1)


def cli():
    asyncio.run(main())


if __name__ == "__main__":
    cli()
