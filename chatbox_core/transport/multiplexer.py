"""Fanout 通道复用。

一次 fanout 中每个目标得到一个虚拟子通道：它发送的每条消息都会带上
{"runId", "targetId"} 标签再转发到真实通道，UI 侧据此把交错到达的事件
拆回各个目标。

子通道的监听器注册是空操作，因此 stop 之类的入站信号不会送达 fanout
中的后端调用。
"""

from __future__ import annotations

from chatbox_core.domain.events import tag_message
from chatbox_core.infrastructure.logging.logger import logger
from chatbox_core.transport.channel import Channel, Listener, Message


class InertListeners:
    """什么也不做的监听器注册表。"""

    def add_listener(self, listener: Listener) -> None:
        return None

    def remove_listener(self, listener: Listener) -> None:
        return None


class ChildChannel:
    """绑定到 (run_id, target_id) 的虚拟子通道。"""

    def __init__(self, channel: Channel, run_id: str, target_id: str) -> None:
        self._channel = channel
        self.run_id = run_id
        self.target_id = target_id
        self.on_message = InertListeners()
        self.on_disconnect = InertListeners()

    def send(self, message: Message) -> None:
        try:
            self._channel.send(tag_message(message, self.run_id, self.target_id))
        except Exception as e:  # noqa: BLE001
            # UI 已关闭时丢弃消息，后端调用继续执行
            logger.warning(
                "Dropped message for disconnected channel",
                extra={"extra": {"run_id": self.run_id, "target_id": self.target_id, "error": str(e)}},
            )

    def __repr__(self) -> str:
        return f"ChildChannel(run_id={self.run_id!r}, target_id={self.target_id!r})"


def make_child_channel(channel: Channel, run_id: str, target_id: str) -> ChildChannel:
    return ChildChannel(channel, run_id, target_id)
