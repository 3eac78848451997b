"""
视觉动作 - 截图后交给视觉语言模型（VLM）理解

- extract_vision：按描述从截图中提取数据（首选的数据提取方式）
- answer_vision：回答关于当前页面可见内容的问题（"有没有 X？"）

VLM 使用 OpenAI 兼容的 /v1/chat/completions，图片以 base64 data URI 发送。
"""
import base64
import io
import os
from typing import Optional

import aiohttp
from loguru import logger
from PIL import Image

from config.settings import settings

from ..models import ActionName, ActionResult
from .base import ActionRegistry
from .browser import BrowserClient, take_screenshot

# 发送给 VLM 前的最大图片宽度
_MAX_IMAGE_WIDTH = 1600

_EXTRACT_SYSTEM_PROMPT = (
    "你是一个网页数据提取助手。根据截图和用户描述，提取页面上可见的数据。\n"
    "只输出提取到的内容本身，使用简洁的纯文本或列表；看不到的内容不要编造。"
)

_ANSWER_SYSTEM_PROMPT = (
    "你是一个网页视觉问答助手。根据截图回答用户关于页面可见内容的问题。\n"
    "先给出明确的 是/否 或直接答案，再用一句话说明依据。"
)


def _get_mime_type(image_path: str) -> str:
    """根据文件扩展名获取 MIME 类型"""
    ext = os.path.splitext(image_path)[1].lower()
    mime_map = {
        ".png": "image/png",
        ".jpg": "image/jpeg",
        ".jpeg": "image/jpeg",
        ".webp": "image/webp",
    }
    return mime_map.get(ext, "image/png")


def _encode_image(image_path: str) -> str:
    """将图片编码为 base64，过宽的图片先等比缩小"""
    with Image.open(image_path) as img:
        if img.width <= _MAX_IMAGE_WIDTH:
            with open(image_path, "rb") as f:
                return base64.b64encode(f.read()).decode("utf-8")
        ratio = _MAX_IMAGE_WIDTH / img.width
        resized = img.resize((_MAX_IMAGE_WIDTH, int(img.height * ratio)))
        buffer = io.BytesIO()
        resized.save(buffer, format=img.format or "PNG")
        return base64.b64encode(buffer.getvalue()).decode("utf-8")


class VisionClient:
    """视觉语言模型客户端"""

    def __init__(self, api_url: Optional[str] = None, model: Optional[str] = None, token: Optional[str] = None):
        self.api_url = (api_url or settings.vlm_api_url or settings.executor_llm_url or "").rstrip("/")
        self.model = model or settings.vlm_model
        self.token = token or settings.vlm_api_token or settings.executor_llm_token

    async def analyze(self, image_path: str, system_prompt: str, question: str) -> ActionResult:
        """
        让 VLM 分析截图

        Args:
            image_path: 截图文件路径
            system_prompt: 系统提示词
            question: 用户问题或提取描述

        Returns:
            ActionResult: payload["text"] 为模型回答
        """
        if not self.api_url:
            return ActionResult(success=False, error="VLM URL is not configured")

        try:
            image_data = _encode_image(image_path)
        except OSError as e:
            return ActionResult(success=False, error=f"Cannot read screenshot {image_path}: {e}")

        messages = [
            {"role": "system", "content": system_prompt},
            {
                "role": "user",
                "content": [
                    {
                        "type": "image_url",
                        "image_url": {"url": f"data:{_get_mime_type(image_path)};base64,{image_data}"},
                    },
                    {"type": "text", "text": question},
                ],
            },
        ]
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"

        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    f"{self.api_url}/v1/chat/completions",
                    json={"model": self.model, "messages": messages, "temperature": 0.1},
                    headers=headers,
                    timeout=aiohttp.ClientTimeout(total=120),
                ) as resp:
                    if resp.status != 200:
                        error_text = await resp.text()
                        logger.error(f"❌ [Vision] VLM API 错误: {resp.status} - {error_text[:200]}")
                        return ActionResult(success=False, error=f"VLM API error {resp.status}")

                    data = await resp.json()
                    text = (data.get("choices") or [{}])[0].get("message", {}).get("content") or ""
        except Exception as e:
            logger.error(f"❌ [Vision] VLM 调用异常: {e}")
            return ActionResult(success=False, error=f"VLM request failed: {e}")

        if not text.strip():
            return ActionResult(success=False, error="VLM returned an empty answer")
        logger.debug(f"👁️ [Vision] VLM 回答: {text[:200]}")
        return ActionResult(success=True, message=text.strip()[:200], payload={"text": text.strip()})


def register_vision_actions(registry: ActionRegistry, client: BrowserClient, vision: VisionClient) -> None:
    """向注册表注册视觉动作"""

    @registry.register(
        ActionName.EXTRACT_VISION,
        "截图并用视觉模型提取页面数据（首选的数据提取方式）",
        {
            "type": "object",
            "properties": {"description": {"type": "string", "description": "要提取的数据"}},
            "required": ["description"],
        },
    )
    async def extract_vision(description: str) -> ActionResult:
        shot = await take_screenshot(client)
        if not shot.success:
            return shot
        result = await vision.analyze(shot.payload["path"], _EXTRACT_SYSTEM_PROMPT, f"需要提取的数据：{description}")
        result.payload["screenshot_path"] = shot.payload["path"]
        return result

    @registry.register(
        ActionName.ANSWER_VISION,
        "截图并回答关于页面可见内容的问题",
        {
            "type": "object",
            "properties": {"question": {"type": "string", "description": "关于页面的问题"}},
            "required": ["question"],
        },
    )
    async def answer_vision(question: str) -> ActionResult:
        shot = await take_screenshot(client)
        if not shot.success:
            return shot
        result = await vision.analyze(shot.payload["path"], _ANSWER_SYSTEM_PROMPT, question)
        result.payload["screenshot_path"] = shot.payload["path"]
        return result
