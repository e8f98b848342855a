"""
LLM客户端 - 支持 Claude (Anthropic) 与 OpenAI (含 Gemini OpenAI 兼容模式)
"""
import json
import logging
import os
from typing import Any, Dict, List, Optional

from anthropic import AsyncAnthropic
from openai import AsyncOpenAI
from openai.types.chat.chat_completion_message_param import ChatCompletionMessageParam

from .errors import LLMError
from .types import LLMResponse, Message, ToolCall, ToolSchema, Usage

logger = logging.getLogger(__name__)

GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta/openai/"

DEFAULT_MODELS = {
    "claude": "claude-opus-4-20250514",
    "openai": "gpt-4o-mini",
    "gemini": "gemini-2.0-flash",
}

API_KEY_ENV = {
    "claude": "ANTHROPIC_API_KEY",
    "openai": "OPENAI_API_KEY",
    "gemini": "GEMINI_API_KEY",
}


class LLMClient:
    """
    LLM客户端封装

    provider 可以在每次调用时指定；各后端的SDK客户端按需创建并缓存在内存中，
    API key 在构造时解析一次。
    """

    def __init__(
        self,
        provider: str = "claude",
        api_keys: Optional[Dict[str, Optional[str]]] = None,
        models: Optional[Dict[str, str]] = None,
        base_urls: Optional[Dict[str, Optional[str]]] = None,
        max_tokens: int = 4096,
        temperature: float = 0.7,
    ):
        self.provider = provider
        self.models = {**DEFAULT_MODELS, **(models or {})}
        self.base_urls = base_urls or {}
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.api_keys = {
            name: (api_keys or {}).get(name) or os.getenv(env)
            for name, env in API_KEY_ENV.items()
        }
        self._clients: Dict[str, Any] = {}

    def _client_for(self, provider: str):
        if provider in self._clients:
            return self._clients[provider]

        api_key = self.api_keys.get(provider)
        if not api_key:
            raise LLMError(f"No API key available for provider: {provider}")

        if provider == "claude":
            client = AsyncAnthropic(api_key=api_key, base_url=self.base_urls.get("claude"))
        elif provider in ("openai", "gemini"):
            base_url = self.base_urls.get(provider)
            if provider == "gemini":
                base_url = base_url or GEMINI_BASE_URL
            client = AsyncOpenAI(api_key=api_key, base_url=base_url)
        else:
            raise LLMError(f"Unsupported LLM provider: {provider}")

        self._clients[provider] = client
        return client

    async def complete(
        self,
        messages: List[Message],
        tools: Optional[List[ToolSchema]] = None,
        provider: Optional[str] = None,
    ) -> LLMResponse:
        """生成一轮响应（内容或工具调用）"""
        provider = provider or self.provider
        client = self._client_for(provider)
        logger.debug(
            "LLM request provider=%s messages=%d tools=%d",
            provider, len(messages), len(tools or []),
        )

        try:
            if provider == "claude":
                return await self._complete_claude(client, messages, tools or [])
            return await self._complete_openai(client, provider, messages, tools or [])
        except LLMError:
            raise
        except Exception as e:
            raise LLMError(f"{provider} API error: {e}") from e

    async def _complete_claude(
        self,
        client: AsyncAnthropic,
        messages: List[Message],
        tools: List[ToolSchema],
    ) -> LLMResponse:
        system_parts: List[str] = []
        conversation: List[Dict[str, Any]] = []

        for msg in messages:
            if msg.role == "system":
                # 开头的 system 消息合并为 system 参数，之后的作为系统提示插入对话
                if not conversation:
                    system_parts.append(msg.content or "")
                else:
                    conversation.append({"role": "user", "content": f"[System note] {msg.content or ''}"})
            elif msg.role == "tool":
                conversation.append({
                    "role": "user",
                    "content": [{
                        "type": "tool_result",
                        "tool_use_id": msg.tool_call_id or "",
                        "content": msg.content or "",
                    }],
                })
            elif msg.tool_calls:
                blocks: List[Dict[str, Any]] = []
                if msg.content:
                    blocks.append({"type": "text", "text": msg.content})
                blocks.extend(
                    {"type": "tool_use", "id": tc.id, "name": tc.name, "input": tc.arguments}
                    for tc in msg.tool_calls
                )
                conversation.append({"role": "assistant", "content": blocks})
            else:
                conversation.append({"role": msg.role, "content": msg.content or ""})

        kwargs: Dict[str, Any] = {
            "model": self.models["claude"],
            "max_tokens": self.max_tokens,
            "messages": conversation,
            "temperature": self.temperature,
        }
        if system_parts:
            kwargs["system"] = "\n\n".join(p for p in system_parts if p)
        if tools:
            kwargs["tools"] = [t.to_anthropic() for t in tools]

        response = await client.messages.create(**kwargs)

        text = [block.text for block in response.content if block.type == "text"]
        tool_calls = [
            ToolCall(id=block.id, name=block.name, arguments=dict(block.input or {}))
            for block in response.content
            if block.type == "tool_use"
        ]
        return LLMResponse(
            content="\n".join(text) if text else None,
            tool_calls=tool_calls,
            usage=Usage(
                prompt_tokens=response.usage.input_tokens,
                completion_tokens=response.usage.output_tokens,
            ),
        )

    async def _complete_openai(
        self,
        client: AsyncOpenAI,
        provider: str,
        messages: List[Message],
        tools: List[ToolSchema],
    ) -> LLMResponse:
        msgs: List[ChatCompletionMessageParam] = []
        for msg in messages:
            if msg.role == "tool":
                msgs.append({
                    "role": "tool",
                    "tool_call_id": msg.tool_call_id or "",
                    "content": msg.content or "",
                })
            elif msg.tool_calls:
                msgs.append({
                    "role": "assistant",
                    "content": msg.content,
                    "tool_calls": [
                        {
                            "id": tc.id,
                            "type": "function",
                            "function": {"name": tc.name, "arguments": json.dumps(tc.arguments)},
                        }
                        for tc in msg.tool_calls
                    ],
                })
            else:
                msgs.append({"role": msg.role, "content": msg.content or ""})

        kwargs: Dict[str, Any] = {
            "model": self.models[provider],
            "messages": msgs,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }
        if tools:
            kwargs["tools"] = [t.to_openai() for t in tools]
            kwargs["tool_choice"] = "auto"

        response = await client.chat.completions.create(**kwargs)

        message = response.choices[0].message
        tool_calls = [
            ToolCall(
                id=tc.id,
                name=tc.function.name,
                arguments=json.loads(tc.function.arguments or "{}"),
            )
            for tc in (message.tool_calls or [])
        ]
        usage = None
        if response.usage:
            usage = Usage(
                prompt_tokens=response.usage.prompt_tokens,
                completion_tokens=response.usage.completion_tokens,
            )
        return LLMResponse(content=message.content, tool_calls=tool_calls, usage=usage)

    async def ask(self, system: str, prompt: str, provider: Optional[str] = None) -> str:
        """无工具的单轮问答，供验证器和工具内部使用"""
        response = await self.complete(
            [Message(role="system", content=system), Message(role="user", content=prompt)],
            [],
            provider,
        )
        return response.content or ""
