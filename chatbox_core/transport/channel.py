"""双工通信通道。

Channel 是后台与 UI 之间的消息通道抽象：send 推送一条 JSON 风格的消息，
on_message / on_disconnect 用于注册监听器。LocalChannel 提供进程内实现，
两个端点互相投递，供后台服务、UI 侧 reducer 与测试使用。
"""

from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional, Protocol

from chatbox_core.domain.exceptions import ChannelClosedError

Message = Dict[str, Any]
Listener = Callable[..., Any]


class ListenerRegistry(Protocol):
    def add_listener(self, listener: Listener) -> None:
        ...

    def remove_listener(self, listener: Listener) -> None:
        ...


class Channel(Protocol):
    """后端调用方只依赖这三个成员。"""

    on_message: ListenerRegistry
    on_disconnect: ListenerRegistry

    def send(self, message: Message) -> None:
        ...


class ListenerSet:
    """按注册顺序同步调用监听器。"""

    def __init__(self) -> None:
        self._listeners: List[Listener] = []

    def add_listener(self, listener: Listener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def has_listener(self, listener: Listener) -> bool:
        return listener in self._listeners

    def emit(self, *args: Any) -> None:
        # 复制一份，监听器内部可以安全地注销自己
        for listener in list(self._listeners):
            listener(*args)


class LocalChannel:
    """进程内通道的一端。用 LocalChannel.pair() 创建相连的两端。"""

    def __init__(self, name: str = "channel") -> None:
        self.name = name
        self.on_message = ListenerSet()
        self.on_disconnect = ListenerSet()
        self._peer: Optional[LocalChannel] = None
        self._closed = False

    @classmethod
    def pair(cls) -> tuple[LocalChannel, LocalChannel]:
        """返回 (background, ui) 两端。"""

        background, ui = cls("background"), cls("ui")
        background._peer, ui._peer = ui, background
        return background, ui

    @property
    def closed(self) -> bool:
        return self._closed

    def send(self, message: Message) -> None:
        if self._closed or self._peer is None:
            raise ChannelClosedError(code="CHANNEL_CLOSED", message=f"{self.name} is disconnected")
        self._peer.on_message.emit(message)

    def disconnect(self) -> None:
        """断开两端；对端的 on_disconnect 监听器会被调用一次。"""

        if self._closed:
            return
        peer = self._peer
        self._closed = True
        if peer is not None and not peer._closed:
            peer._closed = True
            peer.on_disconnect.emit(peer)
