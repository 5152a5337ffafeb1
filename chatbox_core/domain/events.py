"""通道事件信封。

通道上传输的仍然是 JSON 风格的字典（与 UI 约定的格式保持不变），
但在进入解复用逻辑之前，统一解析为带 kind 的 ChannelEvent，
下游按 kind 分支处理，不再依赖可选字段是否存在。

出站（后台 -> UI）：
    {"type": "FANOUT_START", "fanout": {"runId", "targetIds"}}
    {"answer"?, "error"?, "done"?, "session"?, "fanout"?: {"runId", "targetId"}}
    {"type": "FANOUT_DONE", "fanout": {"runId"}}

入站（UI -> 后台）：
    {"session"}                 单目标提问
    {"stop": True}              停止单目标调用
    {"fanout": {...}, "session"} 发起 fanout
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Mapping, Optional, Sequence

from chatbox_core.domain.models import FanoutRequest, Session


FANOUT_START = "FANOUT_START"
FANOUT_DONE = "FANOUT_DONE"

EventKind = Literal["fanout_start", "fanout_done", "answer", "error", "done", "state"]
InboundKind = Literal["ask", "stop", "fanout", "unknown"]


@dataclass(frozen=True)
class ChannelEvent:
    """出站事件的类型化视图。

    - kind: 事件类别；同时带 error 和 done 的消息归为 "error"，
      同时带 answer 和 done 的消息归为 "done"（payload 中仍保留 answer）。
    - payload: answer / error / done / session 等原始字段。
    - run_id / target_id: fanout 标签；legacy 单目标消息二者均为 None。
    """

    kind: EventKind
    payload: Dict[str, Any] = field(default_factory=dict)
    run_id: Optional[str] = None
    target_id: Optional[str] = None
    target_ids: List[str] = field(default_factory=list)

    @property
    def tagged(self) -> bool:
        return self.target_id is not None

    @property
    def answer(self) -> Optional[str]:
        return self.payload.get("answer")

    @property
    def error(self) -> Optional[str]:
        return self.payload.get("error")

    @property
    def done(self) -> bool:
        return bool(self.payload.get("done"))

    @property
    def session(self) -> Optional[Dict[str, Any]]:
        return self.payload.get("session")


def fanout_start_message(run_id: str, target_ids: Sequence[str]) -> Dict[str, Any]:
    return {"type": FANOUT_START, "fanout": {"runId": run_id, "targetIds": list(target_ids)}}


def fanout_done_message(run_id: str) -> Dict[str, Any]:
    return {"type": FANOUT_DONE, "fanout": {"runId": run_id}}


def tag_message(message: Mapping[str, Any], run_id: str, target_id: str) -> Dict[str, Any]:
    """给消息打上 fanout 标签，原消息不变。"""

    return {**message, "fanout": {"runId": run_id, "targetId": target_id}}


def error_message(error: str, session: Optional[Session] = None) -> Dict[str, Any]:
    """终止型错误事件。"""

    return {"error": error, "done": True, "session": session.to_dict() if session else None}


def parse_event(message: Mapping[str, Any]) -> ChannelEvent:
    """把出站字典解析为 ChannelEvent。"""

    fanout = message.get("fanout") or {}
    run_id = fanout.get("runId")
    msg_type = message.get("type")
    if msg_type == FANOUT_START:
        return ChannelEvent(
            kind="fanout_start",
            run_id=run_id,
            target_ids=list(fanout.get("targetIds") or []),
        )
    if msg_type == FANOUT_DONE:
        return ChannelEvent(kind="fanout_done", run_id=run_id)

    payload = {k: message[k] for k in ("answer", "error", "done", "session") if k in message}
    if payload.get("error"):
        kind: EventKind = "error"
    elif payload.get("done"):
        kind = "done"
    elif payload.get("answer") is not None:
        kind = "answer"
    else:
        kind = "state"
    return ChannelEvent(kind=kind, payload=payload, run_id=run_id, target_id=fanout.get("targetId"))


@dataclass(frozen=True)
class InboundRequest:
    kind: InboundKind
    session: Optional[Session] = None
    fanout: Optional[FanoutRequest] = None


def parse_inbound(message: Mapping[str, Any]) -> InboundRequest:
    """解析 UI 发来的消息。stop 与 session 同时出现时先处理 stop。"""

    if message.get("stop"):
        return InboundRequest(kind="stop")
    raw_session = message.get("session")
    session = Session.from_dict(raw_session) if raw_session else None
    if message.get("fanout") and session is not None:
        return InboundRequest(kind="fanout", session=session, fanout=FanoutRequest.from_dict(message["fanout"]))
    if session is not None:
        return InboundRequest(kind="ask", session=session)
    return InboundRequest(kind="unknown")
