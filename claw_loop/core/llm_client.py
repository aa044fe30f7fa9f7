"""
模型后端接口 - Provider 抽象与 OpenAI 兼容实现
"""
import json
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import openai
from openai import AsyncOpenAI

from .errors import ProviderError
from .scrubber import SecretScrubber
from .types import Message, Role

logger = logging.getLogger(__name__)

MAX_API_ERROR_CHARS = 200

GEMINI_OPENAI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta/openai/"


@dataclass(frozen=True)
class ProviderCapabilities:
    """后端能力声明"""
    supports_native_tools: bool = False
    supports_streaming: bool = False
    supports_vision: bool = False


class Provider(ABC):
    """模型后端协作者"""

    name: str = "provider"

    @abstractmethod
    async def chat(
        self,
        history: List[Message],
        system_prompt: str,
        tools_spec: Optional[List[Dict[str, Any]]] = None
    ) -> str:
        """
        发送历史并返回模型文本

        Raises:
            ProviderError: retryable=True 表示可以重试
        """

    def capabilities(self) -> ProviderCapabilities:
        return ProviderCapabilities()


_scrubber = SecretScrubber()


def sanitize_api_error(text: str) -> str:
    """脱敏并截断后端错误信息"""
    scrubbed = _scrubber.scrub(text)
    if len(scrubbed) <= MAX_API_ERROR_CHARS:
        return scrubbed
    return scrubbed[:MAX_API_ERROR_CHARS] + "..."


def render_history(history: List[Message], system_prompt: Optional[str] = None) -> List[Dict[str, Any]]:
    """转换为 chat completions 消息列表；工具结果以 user 消息回灌"""
    msgs: List[Dict[str, Any]] = []
    if system_prompt:
        msgs.append({"role": "system", "content": system_prompt})

    for msg in history:
        if msg.role == Role.TOOL:
            name = msg.name or "tool"
            msgs.append({
                "role": "user",
                "content": f"<tool_result name=\"{name}\">\n{msg.content}\n</tool_result>"
            })
        else:
            msgs.append({"role": msg.role.value, "content": msg.content or ""})
    return msgs


class OpenAIProvider(Provider):
    """OpenAI 兼容的 chat completions 后端"""

    name = "openai"

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        model: str = "gpt-4o-mini",
        provider: str = "openai",
        temperature: float = 0.7,
        max_tokens: Optional[int] = None,
        native_tools: bool = True,
        client: Optional[AsyncOpenAI] = None
    ):
        self.name = provider
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.native_tools = native_tools

        # 支持Gemini API (OpenAI兼容模式)
        if provider == "gemini":
            base_url = base_url or GEMINI_OPENAI_BASE_URL

        self.client = client or AsyncOpenAI(
            api_key=api_key or os.getenv("OPENAI_API_KEY"),
            base_url=base_url
        )

    def capabilities(self) -> ProviderCapabilities:
        return ProviderCapabilities(
            supports_native_tools=self.native_tools,
            supports_streaming=True,
            supports_vision=False
        )

    async def chat(
        self,
        history: List[Message],
        system_prompt: str,
        tools_spec: Optional[List[Dict[str, Any]]] = None
    ) -> str:
        kwargs: Dict[str, Any] = {
            "model": self.model,
            "messages": render_history(history, system_prompt),
            "temperature": self.temperature,
        }
        if self.max_tokens:
            kwargs["max_tokens"] = self.max_tokens
        if tools_spec and self.native_tools:
            kwargs["tools"] = tools_spec
            kwargs["tool_choice"] = "auto"

        try:
            response = await self.client.chat.completions.create(**kwargs)
        except (openai.APIConnectionError, openai.RateLimitError, openai.InternalServerError) as e:
            raise ProviderError(sanitize_api_error(str(e)), retryable=True, provider=self.name) from e
        except openai.APIStatusError as e:
            retryable = e.status_code == 429 or e.status_code >= 500
            raise ProviderError(
                f"{self.name} API error ({e.status_code}): {sanitize_api_error(str(e))}",
                retryable=retryable,
                provider=self.name
            ) from e
        except openai.OpenAIError as e:
            raise ProviderError(sanitize_api_error(str(e)), retryable=False, provider=self.name) from e

        if not response.choices:
            raise ProviderError(f"{self.name} returned no choices", retryable=True, provider=self.name)

        message = response.choices[0].message
        content = message.content or ""

        # 原生工具调用重新编码为文本，交给统一的解析器
        if message.tool_calls:
            blocks = []
            for tc in message.tool_calls:
                payload = {"name": tc.function.name, "arguments": tc.function.arguments or "{}"}
                blocks.append(f"<tool_call>{json.dumps(payload, ensure_ascii=False)}</tool_call>")
            content = "\n".join([content, *blocks]) if content else "\n".join(blocks)

        return content
