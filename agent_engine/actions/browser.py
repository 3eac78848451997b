"""
网页动作 - 通过 browser control server 控制浏览器

所有浏览器操作通过 HTTP 调用 browser control server（POST {server}/browser）完成，
服务端返回的原始错误会被转义为决策模型可理解的提示。

注册的动作：navigate / snapshot / click / type / scroll / screenshot /
extract_text / close_browser
"""
import base64
import time
from pathlib import Path
from typing import Any, Dict, Optional

import aiohttp
from loguru import logger

from config.settings import settings

from ..models import ActionName, ActionResult
from ..parsing import validate_url
from .base import ActionRegistry


# ============================================================
# 错误转义层 - 将浏览器原始错误转为决策模型可理解的提示
# ============================================================

def to_ai_friendly_error(error_msg: str, ref: Optional[str] = None) -> str:
    """
    将 browser server 原始错误转为带建议的提示

    Args:
        error_msg: 原始错误字符串
        ref: 当前操作的元素 ref

    Returns:
        str: 可理解的错误提示
    """
    ref_hint = f' (ref="{ref}")' if ref else ""
    lowered = error_msg.lower()

    if "strict mode violation" in lowered:
        return (
            f"元素{ref_hint}匹配到多个元素，无法确定操作目标。"
            f"【建议】执行 snapshot 获取最新页面快照，使用更精确的 ref。"
        )

    if "intercepts pointer events" in lowered or "not receive pointer events" in lowered:
        return (
            f"元素{ref_hint}被其他元素遮挡，无法点击。"
            f"【建议】先 scroll 将目标滚动到视口中，或关闭弹窗后重试。"
        )

    if "not visible" in lowered or "to be visible" in lowered:
        return (
            f"元素{ref_hint}未找到或不可见（页面可能尚未加载完成）。"
            f"【建议】先 wait 再执行 snapshot 获取最新元素列表。"
        )

    if "detached" in lowered or "no longer attached" in lowered:
        return (
            f"元素{ref_hint}已从页面 DOM 中移除（页面发生了导航或动态更新）。"
            f"【建议】执行 snapshot 获取最新快照，使用新的 ref 重试。"
        )

    if "timeout" in lowered:
        return (
            f"操作{ref_hint}超时，元素可能不可交互或页面状态已变化。"
            f"【建议】执行 snapshot 查看当前页面状态。"
        )

    return f"操作失败{ref_hint}: {error_msg[:300]}。【建议】执行 snapshot 查看当前页面状态后重试。"


class BrowserClient:
    """
    browser control server 客户端

    首次操作前自动发送 start，close 之后再次操作会重新启动。
    """

    def __init__(self, server_url: Optional[str] = None, timeout: int = 120):
        self.server_url = (server_url or settings.browser_server_url).rstrip("/")
        self.timeout = timeout
        self._started = False

    async def call(self, payload: Dict[str, Any], ref: Optional[str] = None) -> Dict[str, Any]:
        """
        发送一次浏览器操作

        Args:
            payload: 操作负载，必须包含 action
            ref: 元素 ref，用于错误提示

        Returns:
            Dict: 服务端返回结果，失败时为 {"success": False, "error": ...}
        """
        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    f"{self.server_url}/browser",
                    json=payload,
                    timeout=aiohttp.ClientTimeout(total=self.timeout),
                ) as resp:
                    if resp.status != 200:
                        error_text = await resp.text()
                        friendly_error = to_ai_friendly_error(error_text, ref=ref)
                        logger.error(f"❌ [BrowserClient] payload={payload} {friendly_error}")
                        return {"success": False, "error": friendly_error}

                    result = await resp.json()
                    if not result.get("success", True) and "error" in result:
                        result["error"] = to_ai_friendly_error(str(result["error"]), ref=ref)
                    logger.info(f"✅ [BrowserClient] action={payload.get('action')} 完成")
                    return result

        except aiohttp.ClientConnectorError:
            error_msg = f"无法连接到 browser control server ({self.server_url})，请确认服务已启动。"
            logger.error(f"❌ [BrowserClient] payload={payload} {error_msg}")
            return {"success": False, "error": error_msg}
        except Exception as e:
            friendly_error = to_ai_friendly_error(str(e), ref=ref)
            logger.error(f"❌ [BrowserClient] payload={payload} {friendly_error}")
            return {"success": False, "error": friendly_error}

    async def ensure_started(self) -> Optional[Dict[str, Any]]:
        """确保浏览器已启动，失败时返回错误结果"""
        if self._started:
            return None
        result = await self.call({"action": "start"})
        if not result.get("success", True):
            return result
        self._started = True
        return None

    async def act(self, payload: Dict[str, Any], ref: Optional[str] = None) -> Dict[str, Any]:
        failure = await self.ensure_started()
        if failure is not None:
            return failure
        return await self.call(payload, ref=ref)

    async def close(self) -> Dict[str, Any]:
        if not self._started:
            return {"success": True, "message": "Browser not running"}
        self._started = False
        return await self.call({"action": "close"})


def save_base64_screenshot(data: str, directory: Optional[str] = None) -> str:
    """将 base64 截图保存为 PNG 文件，返回文件路径"""
    target_dir = Path(directory or settings.screenshots_dir)
    target_dir.mkdir(parents=True, exist_ok=True)
    # 去掉 data URI 前缀
    clean = data.split(",", 1)[1] if data.startswith("data:") else data
    path = target_dir / f"screenshot-{int(time.time() * 1000)}.png"
    path.write_bytes(base64.b64decode(clean))
    return str(path)


async def take_screenshot(client: BrowserClient, full_page: bool = False) -> ActionResult:
    """截图并返回本地文件路径"""
    result = await client.act({"action": "screenshot", "fullPage": full_page})
    if not result.get("success", True):
        return ActionResult(success=False, error=result.get("error", "Screenshot failed"))

    path = result.get("path")
    if not path:
        data = result.get("data") or result.get("base64")
        if not data:
            return ActionResult(success=False, error="Screenshot returned no image data")
        path = save_base64_screenshot(data)
    return ActionResult(success=True, message=f"Screenshot saved to {path}", payload={"path": path})


def register_browser_actions(registry: ActionRegistry, client: BrowserClient) -> None:
    """向注册表注册网页动作"""

    @registry.register(
        ActionName.NAVIGATE,
        "打开指定 URL",
        {
            "type": "object",
            "properties": {"url": {"type": "string", "description": "目标 URL（http/https）"}},
            "required": ["url"],
        },
    )
    async def navigate(url: str) -> ActionResult:
        if "://" not in url:
            url = f"https://{url}"
        blocked = validate_url(url)
        if blocked:
            return ActionResult(success=False, error=blocked)
        result = await client.act({"action": "navigate", "url": url})
        if not result.get("success", True):
            return ActionResult(success=False, error=result.get("error"))
        return ActionResult(
            success=True,
            message=f"Navigated to {url}",
            payload={"url": result.get("url", url), "title": result.get("title", "")},
        )

    @registry.register(
        ActionName.SNAPSHOT,
        "获取当前页面的可访问性树快照（包含元素 ref）",
        {"type": "object", "properties": {}},
    )
    async def snapshot() -> ActionResult:
        result = await client.act({"action": "snapshot"})
        if not result.get("success", True):
            return ActionResult(success=False, error=result.get("error"))
        text = result.get("snapshot") or result.get("content") or ""
        return ActionResult(
            success=True,
            message="Snapshot captured",
            payload={"snapshot": text, "url": result.get("url", "")},
        )

    @registry.register(
        ActionName.CLICK,
        "点击页面元素（ref 来自 snapshot）",
        {
            "type": "object",
            "properties": {
                "ref": {"type": "string", "description": "元素 ref"},
                "selector": {"type": "string", "description": "CSS 选择器（ref 不可用时）"},
            },
        },
    )
    async def click(ref: Optional[str] = None, selector: Optional[str] = None) -> ActionResult:
        if not ref and not selector:
            return ActionResult(success=False, error="click requires ref or selector")
        payload: Dict[str, Any] = {"action": "act", "actKind": "click"}
        if ref:
            payload["ref"] = ref
        if selector:
            payload["selector"] = selector
        result = await client.act(payload, ref=ref)
        if not result.get("success", True):
            return ActionResult(success=False, error=result.get("error"))
        return ActionResult(success=True, message=f"Clicked {ref or selector}")

    @registry.register(
        ActionName.TYPE,
        "在输入框中输入文本",
        {
            "type": "object",
            "properties": {
                "ref": {"type": "string", "description": "输入框 ref"},
                "text": {"type": "string", "description": "要输入的文本"},
                "press_enter": {"type": "boolean", "description": "输入后是否按 Enter"},
                "clear_first": {"type": "boolean", "description": "输入前是否清空"},
            },
            "required": ["ref", "text"],
        },
    )
    async def type_text(
        ref: str,
        text: str,
        press_enter: bool = False,
        clear_first: bool = True,
    ) -> ActionResult:
        payload = {
            "action": "act",
            "actKind": "fill" if clear_first else "type",
            "ref": ref,
            "value": text,
            "submit": press_enter,
        }
        result = await client.act(payload, ref=ref)
        if not result.get("success", True):
            return ActionResult(success=False, error=result.get("error"))
        suffix = " and pressed Enter" if press_enter else ""
        return ActionResult(success=True, message=f"Typed '{text}' into {ref}{suffix}")

    @registry.register(
        ActionName.SCROLL,
        "滚动页面",
        {
            "type": "object",
            "properties": {
                "direction": {"type": "string", "enum": ["up", "down"]},
                "amount": {"type": "integer", "description": "滚动像素"},
            },
        },
    )
    async def scroll(direction: str = "down", amount: int = 500) -> ActionResult:
        result = await client.act(
            {"action": "act", "actKind": "scroll", "value": direction, "amount": int(amount)}
        )
        if not result.get("success", True):
            return ActionResult(success=False, error=result.get("error"))
        return ActionResult(success=True, message=f"Scrolled {direction} {amount}px")

    @registry.register(
        ActionName.SCREENSHOT,
        "截取当前页面",
        {
            "type": "object",
            "properties": {"full_page": {"type": "boolean", "description": "是否整页截图"}},
        },
    )
    async def screenshot(full_page: bool = False) -> ActionResult:
        return await take_screenshot(client, full_page=full_page)

    @registry.register(
        ActionName.EXTRACT_TEXT,
        "提取页面文本（视觉提取失败时的备选方案）",
        {
            "type": "object",
            "properties": {"selector": {"type": "string", "description": "可选的 CSS 选择器"}},
        },
    )
    async def extract_text(selector: Optional[str] = None) -> ActionResult:
        payload: Dict[str, Any] = {"action": "extract"}
        if selector:
            payload["selector"] = selector
        result = await client.act(payload)
        if not result.get("success", True):
            return ActionResult(success=False, error=result.get("error"))
        text = result.get("text") or result.get("content") or ""
        return ActionResult(success=True, message=f"Extracted {len(text)} characters", payload={"text": text})

    @registry.register(ActionName.CLOSE_BROWSER, "关闭浏览器", {"type": "object", "properties": {}})
    async def close_browser() -> Dict[str, Any]:
        return await client.close()
