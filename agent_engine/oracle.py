"""
决策模型客户端 - OpenAI 兼容的 /v1/chat/completions

决策模型被视为不可信的黑盒：只负责返回文本（以及可选的 tool_calls），
调用失败时返回 None，由调用方按空响应处理。
"""
import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import aiohttp
from loguru import logger

from config.settings import settings


@dataclass
class OracleReply:
    """
    决策模型的一次回复

    Attributes:
        content: 文本内容
        tool_calls: 原生 function-calling 返回的工具调用（OpenAI 格式）
    """
    content: str = ""
    tool_calls: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.content.strip() and not self.tool_calls


class ChatOracle:
    """
    决策模型客户端

    使用方式：
        oracle = ChatOracle()
        reply = await oracle.invoke([{"role": "user", "content": "..."}])
    """

    def __init__(
        self,
        api_url: Optional[str] = None,
        model: Optional[str] = None,
        token: Optional[str] = None,
        timeout: Optional[int] = None,
    ):
        self.api_url = (api_url or settings.executor_llm_url or "").rstrip("/")
        self.model = model or settings.executor_llm_model
        self.token = token or settings.executor_llm_token
        self.timeout = timeout or settings.executor_llm_timeout

    async def invoke(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
        temperature: float = 0.1,
    ) -> Optional[OracleReply]:
        """
        调用决策模型

        Args:
            messages: 对话消息列表
            tools: 可选的工具定义（OpenAI function 格式）
            temperature: 采样温度

        Returns:
            Optional[OracleReply]: 模型回复，失败返回 None
        """
        if not self.api_url:
            logger.warning("⚠️ [Oracle] LLM URL 未配置")
            return None

        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "temperature": temperature,
        }
        if tools:
            payload["tools"] = tools
            payload["tool_choice"] = "auto"

        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"

        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    f"{self.api_url}/v1/chat/completions",
                    json=payload,
                    headers=headers,
                    timeout=aiohttp.ClientTimeout(total=self.timeout),
                ) as resp:
                    if resp.status != 200:
                        error_text = await resp.text()
                        logger.warning(
                            f"⚠️ [Oracle] LLM API 返回 HTTP {resp.status}: {error_text[:200]}"
                        )
                        return None

                    data = await resp.json()
                    choice = (data.get("choices") or [{}])[0]
                    msg = choice.get("message") or {}
                    logger.debug(
                        f"📝 [Oracle] LLM 输入: {json.dumps(messages, ensure_ascii=False)[:500]}"
                    )
                    return OracleReply(
                        content=msg.get("content") or "",
                        tool_calls=msg.get("tool_calls") or [],
                    )
        except Exception as exc:
            logger.error(f"❌ [Oracle] LLM 调用异常: {exc}")
            return None
