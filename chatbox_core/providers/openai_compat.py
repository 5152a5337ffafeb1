"""OpenAI 兼容后端调用方。

OpenAI、Moonshot/Kimi、DeepSeek、OpenRouter、AIML、Ollama、ChatGLM 以及
用户自定义接口都使用 chat/completions 端点：

- URL: {base_url}/chat/completions（自定义接口直接使用完整 URL）
- 认证: Authorization: Bearer <api_key>
- 流式: SSE，每行 "data: {...}"，以 "data: [DONE]" 结束

本模块负责：

1. 由会话历史与本轮问题构造请求 payload。
2. 流式读取增量，累积为完整回答，并以快照形式推送 {"answer", "done": False}。
3. 结束时把本轮问答追加到自己的会话快照中，推送 {"answer", "done": True, "session"}。
4. 网络/API 异常直接抛出，由编排层转换为 error 事件。

在真实通道上，UI 发送 {"stop": True} 会中止读取并以已收到的部分作为最终回答；
fanout 子通道不会转发该信号。
"""

import asyncio
import json
from typing import Any, Dict, List, Optional

import httpx

from chatbox_core.domain.exceptions import ApiError, NetworkError, RateLimitError, ValidationError
from chatbox_core.domain.models import ConversationRecord, Session
from chatbox_core.infrastructure.logging.logger import logger
from chatbox_core.prompts import build_conversation_pairs, recent_records
from chatbox_core.providers.registry import model_value
from chatbox_core.transport.channel import Channel

DEFAULT_CUSTOM_URL = "http://localhost:8000/v1/chat/completions"


class OpenAICompatibleInvoker:
    """OpenAI 兼容接口的流式调用方实现。

    - name: 后端名称（供日志使用）。
    - base_url_attr: 配置中基础 URL 的字段名，如 "moonshot_base_url"。
    - requires_key: 为 True 时缺少凭据直接报错，不发请求。
    """

    def __init__(self, name: str, base_url_attr: str, requires_key: bool = True):
        self.name = name
        self._base_url_attr = base_url_attr
        self._requires_key = requires_key

    def endpoint(self, session: Session, config: Any) -> str:
        base = getattr(config, self._base_url_attr, "") or ""
        return f"{base.rstrip('/')}/chat/completions"

    def model(self, session: Session, config: Any) -> str:
        return model_value(session, config)

    async def invoke(
        self,
        channel: Channel,
        question: str,
        session: Session,
        config: Any,
        credentials: Optional[str] = None,
    ) -> None:
        if self._requires_key and not credentials:
            raise ValidationError(code="MISSING_API_KEY", message=f"API key for {self.name} not set")

        payload = self._build_payload(question, session, config)
        headers = {"Content-Type": "application/json"}
        if credentials:
            headers["Authorization"] = f"Bearer {credentials}"

        stop = asyncio.Event()

        def on_message(msg: Dict[str, Any]) -> None:
            if msg.get("stop"):
                stop.set()

        channel.on_message.add_listener(on_message)
        answer = ""
        try:
            async for delta in self._stream(self.endpoint(session, config), payload, headers, config, stop):
                answer += delta
                channel.send({"answer": answer, "done": False, "session": None})
        finally:
            channel.on_message.remove_listener(on_message)

        if stop.is_set():
            logger.info(
                "Backend call stopped by client",
                extra={"extra": {"provider": self.name, "session_id": session.session_id}},
            )
        finished = session.with_record(ConversationRecord(question=question, answer=answer))
        channel.send({"answer": answer, "done": True, "session": finished.to_dict()})

    async def _stream(self, url: str, payload: dict, headers: dict, config: Any, stop: asyncio.Event):
        """逐个 yield 文本增量。"""

        try:
            async with httpx.AsyncClient(timeout=config.http_timeout, trust_env=False) as client:
                async with client.stream("POST", url, json=payload, headers=headers) as resp:
                    if resp.status_code == 429:
                        raise RateLimitError(code="RATE_LIMIT", message=f"{self.name} rate limit")
                    if resp.status_code >= 400:
                        body = await resp.aread()
                        raise ApiError(
                            code="API_ERROR",
                            message=body.decode("utf-8", errors="replace"),
                            http_status=resp.status_code,
                        )
                    async for line in resp.aiter_lines():
                        if stop.is_set():
                            return
                        delta = self._parse_line(line)
                        if delta:
                            yield delta
        except httpx.RequestError as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e) or type(e).__name__)

    def _build_payload(self, question: str, session: Session, config: Any) -> dict:
        """将会话转成 chat/completions 请求 JSON。"""

        history = recent_records(session.conversation_records, config.max_conversation_context_length)
        messages: List[Dict[str, str]] = build_conversation_pairs(history)  # type: ignore[assignment]
        messages.append({"role": "user", "content": question})
        return {
            "model": self.model(session, config),
            "messages": messages,
            "stream": True,
            "temperature": config.temperature,
            "max_tokens": config.max_response_token_length,
        }

    @staticmethod
    def _parse_line(line: str) -> str:
        """解析一行 SSE，返回其中的文本增量（可能为空）。"""

        data_str = line.strip()
        if not data_str:
            return ""
        if data_str.startswith("data:"):
            data_str = data_str[5:].strip()
        if not data_str or data_str == "[DONE]":
            return ""
        try:
            chunk = json.loads(data_str)
        except json.JSONDecodeError:
            return ""
        parts = []
        for choice in chunk.get("choices") or []:
            delta = choice.get("delta") or choice.get("message") or {}
            content = delta.get("content")
            if isinstance(content, str):
                parts.append(content)
        return "".join(parts)


class CustomApiInvoker(OpenAICompatibleInvoker):
    """用户自定义接口：URL、密钥、模型名都可由会话的 api_mode 覆盖。"""

    def __init__(self):
        super().__init__(name="custom", base_url_attr="custom_model_api_url", requires_key=False)

    def endpoint(self, session: Session, config: Any) -> str:
        api_mode = session.api_mode
        url = (api_mode.custom_url.strip() if api_mode else "") or (config.custom_model_api_url or "").strip()
        return url or DEFAULT_CUSTOM_URL

    def model(self, session: Session, config: Any) -> str:
        api_mode = session.api_mode
        if api_mode is not None and api_mode.custom_name:
            return api_mode.custom_name
        return config.custom_model_name
