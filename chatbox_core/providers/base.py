"""Backend 调用协议。

编排层不直接依赖具体后端的 HTTP/WebSocket 客户端，而是依赖此协议：

- 每个后端实现一个 BackendInvoker（如 OpenAICompatibleInvoker）。
- invoke 在给定通道上推送零到多条进度事件 {"answer", "done": False}，
  最后恰好一条终止事件（done 或 error），并可在事件的 session 中
  带回该后端的续聊状态：放在 session["providerState"] 下，
  或直接放在 session 顶层（网页类后端的写法），两处同名时前者优先。
- 失败时直接抛出 domain.exceptions 中的异常，由调用方转换为 error 事件。

这样可以在不改编排代码的前提下接入更多后端。
"""

from typing import Any, Awaitable, Callable, Optional, Protocol

from chatbox_core.domain.models import Session
from chatbox_core.transport.channel import Channel


class BackendInvoker(Protocol):
    """后端调用方协议。

    - name: 后端名称，用于日志。
    - invoke: 执行一次提问，credentials 由注册表按需获取后传入。
    """

    name: str

    async def invoke(
        self,
        channel: Channel,
        question: str,
        session: Session,
        config: Any,
        credentials: Optional[str] = None,
    ) -> None:
        ...


# 只会对命中的 Provider 调用，避免无谓地去取 token / cookie
CredentialFetcher = Callable[[Session, Any], Awaitable[Optional[str]]]
