"""
决策模型输出解析与提示词清洗

决策模型的输出是不可信的自由文本，所有结构化数据都必须经过这里提取：
1. ```json 代码块
2. 原始花括号扫描
3. 失败返回 None，由调用方决定兜底策略
"""
import ipaddress
import json
import re
import unicodedata
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

from loguru import logger

_FENCED_JSON_RE = re.compile(r"```(?:json)?\s*(\{[\s\S]*?\})\s*```")

_TRUE_STRINGS = {"true", "yes", "1"}
_FALSE_STRINGS = {"false", "no", "0"}

# 提示词注入过滤规则
_INJECTION_PATTERNS: List[re.Pattern] = [
    re.compile(r"(ignore|disregard|forget) (previous|above|all|prior|earlier) (instructions?|prompts?|rules?|context)", re.IGNORECASE),
    re.compile(r"override (previous|above|all|prior|earlier|system)", re.IGNORECASE),
    re.compile(r"new instructions?:?", re.IGNORECASE),
    re.compile(r"<\|?(system|user|assistant|im_start|im_end)\|?>", re.IGNORECASE),
    re.compile(r"\bDAN\b"),
    re.compile(r"do anything now", re.IGNORECASE),
    re.compile(r"jailbreak", re.IGNORECASE),
    re.compile(r"bypass (filter|safety|restriction)", re.IGNORECASE),
]

# SSRF 黑名单主机
_BLOCKED_HOST_PATTERNS: List[re.Pattern] = [
    re.compile(r"^localhost$", re.IGNORECASE),
    re.compile(r"\.local$", re.IGNORECASE),
    re.compile(r"\.internal$", re.IGNORECASE),
    re.compile(r"\.localhost$", re.IGNORECASE),
    re.compile(r"metadata\.google\.internal", re.IGNORECASE),
    re.compile(r"metadata\.azure\.com", re.IGNORECASE),
]


def extract_json_object(content: Optional[str]) -> Optional[Dict[str, Any]]:
    """
    从决策模型输出中提取 JSON 对象

    Args:
        content: 模型原始输出

    Returns:
        Optional[Dict]: 解析成功返回字典，否则返回 None
    """
    if not content or not isinstance(content, str):
        return None

    fenced = _FENCED_JSON_RE.search(content)
    if fenced:
        try:
            parsed = json.loads(fenced.group(1))
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, dict):
            return parsed

    # 从每个 "{" 起尝试解码一个完整对象，忽略对象之后的文字
    decoder = json.JSONDecoder()
    index = content.find("{")
    while index != -1:
        try:
            parsed, _ = decoder.raw_decode(content, index)
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, dict):
            return parsed
        index = content.find("{", index + 1)

    logger.debug(f"🔍 [Parsing] 未能从输出中提取 JSON: {content[:200]}")
    return None


def coerce_bool(value: Any) -> Any:
    """将 "true" / "false" 之类的字符串转换为布尔值，其他值原样返回"""
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_STRINGS:
            return True
        if lowered in _FALSE_STRINGS:
            return False
    return value


def coerce_params(params: Dict[str, Any], schema: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """
    按参数 schema 把字符串形式的布尔参数转换为真正的布尔值

    Args:
        params: 决策模型给出的参数
        schema: 动作的 JSON schema（OpenAI function 参数格式）

    Returns:
        Dict: 转换后的新参数字典
    """
    coerced = dict(params or {})
    properties = (schema or {}).get("properties", {})
    for key, spec in properties.items():
        if key in coerced and spec.get("type") == "boolean":
            coerced[key] = coerce_bool(coerced[key])
    return coerced


def sanitize(text: Optional[str], max_length: int = 2000) -> str:
    """
    清洗放入提示词中的外部文本：截断长度、转义代码块、过滤注入语句

    Args:
        text: 原始文本
        max_length: 最大长度

    Returns:
        str: 清洗后的文本
    """
    if not text or not isinstance(text, str):
        return ""

    cleaned = text[:max_length].replace("```", "\\`\\`\\`")
    cleaned = re.sub(r"\n{3,}", "\n\n", cleaned).strip()
    cleaned = unicodedata.normalize("NFKD", cleaned)
    for pattern in _INJECTION_PATTERNS:
        cleaned = pattern.sub("[filtered]", cleaned)
    cleaned = re.sub(r"^(system|assistant|user):", lambda m: m.group(1).capitalize() + ":", cleaned, flags=re.IGNORECASE | re.MULTILINE)
    return cleaned


def validate_url(url: str) -> Optional[str]:
    """
    SSRF 校验：只允许 http/https 且不指向内网地址

    Returns:
        Optional[str]: 校验通过返回 None，否则返回错误描述
    """
    try:
        parsed = urlparse(url)
    except ValueError:
        return "Invalid URL format."

    if parsed.scheme not in ("http", "https"):
        return f"Protocol {parsed.scheme or '(none)'}: not allowed. Use http or https."

    hostname = (parsed.hostname or "").lower()
    if not hostname:
        return "Invalid URL format."

    for pattern in _BLOCKED_HOST_PATTERNS:
        if pattern.search(hostname):
            return f"Access to {hostname} is blocked for security reasons."

    try:
        address = ipaddress.ip_address(hostname)
    except ValueError:
        return None
    if address.is_private or address.is_loopback or address.is_link_local or address.is_unspecified:
        return f"Access to {hostname} is blocked for security reasons."
    return None
