"""UI 侧流式事件 reducer。

把通道上交错到达的事件拆回各个目标的回答缓冲区，并驱动每个
(run_id, target_id) 的状态机：

    queued -> running -> done | error | canceled

终止状态不可逆：进入 done / error / canceled 后，该 (run, target) 的
后续事件全部忽略。canceled 只是本地状态，后台仍在执行的调用不会被中断。

不带 fanout 标签的事件走 legacy 单目标路径：直接更新最后一个回答。
会话对象只在这里被替换（snapshot），从不原地修改，持久化失败只记日志。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple
from uuid import uuid4

from chatbox_core.client.aggregation import Reply, build_merged_message
from chatbox_core.client.errors import Translator, translate_error
from chatbox_core.config.settings import settings
from chatbox_core.domain.conversation import SessionStore
from chatbox_core.domain.events import ChannelEvent, parse_event
from chatbox_core.domain.exceptions import ValidationError, describe_error
from chatbox_core.domain.models import (
    SETTLED_STATUSES,
    TERMINAL_STATUSES,
    ConversationRecord,
    FanoutMode,
    FanoutRequest,
    Session,
    Target,
    TargetStatus,
    api_mode_to_model_name,
    init_session,
    merge_target_state,
    provider_state_from_wire,
)
from chatbox_core.infrastructure.logging.logger import logger
from chatbox_core.providers.registry import model_name_to_api_mode
from chatbox_core.transport.channel import Channel

LOADING = "Waiting for response..."
PENDING_RUN = "pending"


@dataclass(frozen=True)
class ConversationItem:
    """UI 上的一条展示项：question / answer / error。"""

    type: str
    content: str
    done: bool = False
    meta: Dict[str, Any] = field(default_factory=dict)

    @property
    def run_id(self) -> Optional[str]:
        return self.meta.get("runId")

    @property
    def source_target_id(self) -> Optional[str]:
        return self.meta.get("sourceTargetId")

    @property
    def is_placeholder(self) -> bool:
        return not self.done and self.content == LOADING


@dataclass(frozen=True)
class ItemGroup:
    """grouped_items 的结果；run_id 非空表示一组并排展示的 fanout 回答。"""

    items: List[ConversationItem]
    run_id: Optional[str] = None


class StreamReducer:
    def __init__(
        self,
        session: Session,
        channel: Optional[Channel] = None,
        store: Optional[SessionStore] = None,
        config: Any = settings,
        translate: Optional[Translator] = None,
        on_update: Optional[Callable[["StreamReducer"], None]] = None,
    ):
        self.session = session
        self.items: List[ConversationItem] = _items_from_records(session.conversation_records)
        self.is_ready = True
        self.active_run_id: Optional[str] = None
        self._statuses: Dict[Tuple[str, str], TargetStatus] = {}
        self._run_targets: Dict[str, List[str]] = {}
        self._latest_question = ""
        self._store = store
        self._config = config
        self._translate = translate
        self._on_update = on_update
        self._channel: Optional[Channel] = None
        if channel is not None:
            self.connect(channel)

    # ---- 通道 ----

    def connect(self, channel: Channel) -> None:
        self.disconnect()
        self._channel = channel
        channel.on_message.add_listener(self.apply)
        channel.on_disconnect.add_listener(self._on_channel_closed)

    def disconnect(self) -> None:
        if self._channel is None:
            return
        self._channel.on_message.remove_listener(self.apply)
        self._channel.on_disconnect.remove_listener(self._on_channel_closed)
        self._channel = None

    def _on_channel_closed(self, *_: Any) -> None:
        self.is_ready = True
        self._notify()

    # ---- 状态查询 ----

    @property
    def selected_targets(self) -> List[Target]:
        return list(self.session.targets)

    def status(self, target_id: str, run_id: Optional[str] = None) -> Optional[TargetStatus]:
        run = run_id or self.active_run_id or self.session.last_run_id
        if run is None:
            return None
        return self._statuses.get((run, target_id))

    def statuses(self, run_id: Optional[str] = None) -> Dict[str, TargetStatus]:
        run = run_id or self.active_run_id or self.session.last_run_id
        return {tid: s for (r, tid), s in self._statuses.items() if r == run}

    def run_settled(self, run_id: Optional[str] = None) -> bool:
        run = run_id or self.active_run_id
        if run is None or run not in self._run_targets:
            return False
        return all(self._statuses.get((run, tid)) in SETTLED_STATUSES for tid in self._run_targets[run])

    def latest_question(self) -> str:
        if self.session.question:
            return self.session.question
        records = self.session.conversation_records
        if records and records[-1].question:
            return records[-1].question
        for item in reversed(self.items):
            if item.type == "question":
                return item.content
        return self._latest_question

    # ---- 事件处理 ----

    def apply(self, message: Dict[str, Any]) -> None:
        """处理通道上的一条消息。"""

        event = parse_event(message)
        if event.kind == "fanout_start":
            self._on_fanout_start(event)
        elif event.kind == "fanout_done":
            self._on_fanout_done(event)
        elif event.tagged:
            self._on_tagged(event)
        else:
            self._on_legacy(event)
        self._notify()

    def _on_fanout_start(self, event: ChannelEvent) -> None:
        run_id = event.run_id
        if not run_id:
            return
        target_ids = list(event.target_ids)
        self.active_run_id = run_id
        self._run_targets[run_id] = target_ids
        self.session = self.session.snapshot(last_run_id=run_id)
        self.is_ready = False
        # 重试时插入的 pending 占位项在此认领真正的 run_id
        self.items = [
            _retag(item, run_id)
            if item.type == "answer"
            and item.run_id == PENDING_RUN
            and (not target_ids or item.source_target_id in target_ids)
            else item
            for item in self.items
        ]
        for tid in target_ids:
            current = self._statuses.get((run_id, tid))
            if current in TERMINAL_STATUSES:
                continue
            self._statuses[(run_id, tid)] = "queued"
            self._find_or_create_buffer(run_id, tid)
            # 收到 START 时后台已经开始派发
            self._statuses[(run_id, tid)] = "running"

    def _on_fanout_done(self, event: ChannelEvent) -> None:
        if self.active_run_id is None or event.run_id == self.active_run_id:
            self.is_ready = True
            self._persist(self.session)

    def _on_tagged(self, event: ChannelEvent) -> None:
        run_id, target_id = event.run_id, event.target_id
        if not run_id or run_id != self.active_run_id or target_id is None:
            return
        key = (run_id, target_id)
        if self._statuses.get(key) in TERMINAL_STATUSES:
            return

        if event.session:
            fragment = provider_state_from_wire(event.session)
            if fragment:
                self.session = self.session.snapshot(
                    target_states=merge_target_state(self.session.target_states, target_id, fragment)
                )

        if event.kind == "error":
            text = translate_error(str(event.error), self._t)
            self._replace_buffer(run_id, target_id, ConversationItem("error", text, True, _tag(run_id, target_id)))
            self._statuses[key] = "error"
            self._check_settled(run_id)
            return

        if event.answer is not None:
            self._replace_buffer(run_id, target_id, ConversationItem("answer", event.answer, False, _tag(run_id, target_id)))
            self._statuses[key] = "running"
        elif key not in self._statuses:
            self._find_or_create_buffer(run_id, target_id)
            self._statuses[key] = "running"

        if event.kind == "done":
            index = self._find_or_create_buffer(run_id, target_id)
            item = self.items[index]
            final = event.answer if event.answer is not None else ("" if item.is_placeholder else item.content)
            self.items[index] = ConversationItem(item.type, final, True, dict(item.meta))
            self._statuses[key] = "done"
            record = ConversationRecord(question=None, answer=final, meta=_tag(run_id, target_id))
            self.session = self.session.with_record(record)
            self._persist(self.session)
            self._check_settled(run_id)

    def _on_legacy(self, event: ChannelEvent) -> None:
        if event.answer is not None and event.kind != "error":
            self._update_last_answer(event.answer, "answer")

        if event.session:
            incoming = Session.from_dict(event.session)
            self.session = incoming.snapshot(is_retry=False) if event.done else incoming

        if event.kind == "error":
            text = translate_error(str(event.error), self._t)
            last = self.items[-1] if self.items else None
            if last is not None and (last.is_placeholder or last.type == "error"):
                self._update_last_answer(text, "error", done=True)
            else:
                self.items.append(ConversationItem("error", text, True))
            self.is_ready = True
        elif event.kind == "done":
            index = self._last_answer_index()
            if index is not None:
                item = self.items[index]
                self.items[index] = ConversationItem(item.type, item.content, True, dict(item.meta))
            self.is_ready = True

    def _check_settled(self, run_id: str) -> None:
        if self.run_settled(run_id):
            self.is_ready = True

    # ---- 用户操作 ----

    def ask(self, question: str) -> None:
        """legacy 单目标提问。"""

        self._latest_question = question
        self.session = self.session.snapshot(question=question)
        self.items.append(ConversationItem("question", question, True))
        self.items.append(ConversationItem("answer", LOADING))
        self.is_ready = False
        self._post({"session": self.session.to_dict()})
        self._notify()

    def ask_fanout(
        self,
        question: str,
        targets: Optional[Sequence[Target]] = None,
        fanout_mode: Optional[FanoutMode] = None,
    ) -> Optional[str]:
        """把问题派发给所有已选目标，返回本次的 run_id。"""

        chosen = list(targets) if targets is not None else self.ensure_default_target()
        if not chosen:
            return None
        run_id = str(uuid4())
        mode = fanout_mode or self.session.fanout or self._config.default_fanout_mode
        self._latest_question = question
        self.active_run_id = run_id
        outgoing = self.session.snapshot(question=question, is_retry=False, last_run_id=run_id)
        # 本轮问题作为主记录，answer 为空；各目标的回答随后以 question=None 追加
        self.session = outgoing.with_record(ConversationRecord(question=question, answer="", meta={"runId": run_id}))
        self.items.append(ConversationItem("question", question, True))
        for target in chosen:
            self._statuses[(run_id, target.id)] = "queued"
        self.is_ready = False
        request = FanoutRequest(targets=tuple(chosen), run_id=run_id, fanout_mode=mode)
        self._post({"fanout": request.to_dict(), "session": outgoing.to_dict()})
        self._notify()
        return run_id

    def retry_target(self, target_id: str) -> Optional[str]:
        """只重试一个目标：新 run_id，沿用该目标的续聊状态。"""

        question = self.latest_question()
        if not question:
            return None
        run_id = str(uuid4())
        self.active_run_id = run_id
        self.items.append(ConversationItem("answer", LOADING, False, {"runId": PENDING_RUN, "sourceTargetId": target_id}))
        self._statuses[(run_id, target_id)] = "running"
        self.is_ready = False

        target = next((t for t in self.session.targets if t.id == target_id), None)
        if target is None:
            target = Target(id=target_id, model_name=target_id, api_mode=model_name_to_api_mode(target_id))
        # 本轮问题会由后端重新追加，不再放进历史
        history = [r for r in self.session.conversation_records if not (r.question == question and r.answer == "")]
        retry_session = self.session.snapshot(
            question=question, conversation_records=history, is_retry=True, last_run_id=run_id
        )
        self.session = self.session.snapshot(last_run_id=run_id)
        request = FanoutRequest(targets=(target,), run_id=run_id, fanout_mode="parallel")
        self._post({"fanout": request.to_dict(), "session": retry_session.to_dict()})
        self._notify()
        return run_id

    def retry(self) -> None:
        """legacy 重试：去掉与最后一问对应的记录后重新提问。"""

        records = list(self.session.conversation_records)
        if (
            records
            and len(self.items) > 1
            and self.items[-2].type == "question"
            and records[-1].question == self.items[-2].content
        ):
            records.pop()
        self._update_last_answer(LOADING, "answer")
        self.is_ready = False
        self.session = self.session.snapshot(conversation_records=records, is_retry=True)
        self._post({"stop": True})
        self._post({"session": self.session.to_dict()})
        self._notify()

    def stop(self) -> None:
        self._post({"stop": True})

    def cancel(self, target_id: str) -> bool:
        """本地取消一个目标，之后该目标在本次运行中的事件都被忽略。"""

        run_id = self.active_run_id
        if run_id is None:
            return False
        key = (run_id, target_id)
        if self._statuses.get(key) in TERMINAL_STATUSES:
            return False
        self._statuses[key] = "canceled"
        self._notify()
        return True

    def cancel_all(self) -> None:
        run_id = self.active_run_id
        if run_id is not None:
            target_ids = self._run_targets.get(run_id) or [t.id for t in self.session.targets]
            for tid in target_ids:
                if self._statuses.get((run_id, tid)) not in TERMINAL_STATUSES:
                    self._statuses[(run_id, tid)] = "canceled"
        self.active_run_id = None
        self.is_ready = True
        self._notify()

    def merge(self) -> Optional[ConversationRecord]:
        """所有目标结束后，按目标列表顺序合并回答并追加一条合成记录。"""

        run_id = self.active_run_id
        if run_id is None or not self.run_settled(run_id):
            return None
        order = self._target_order()
        buffers = [
            item
            for item in self.items
            if item.type == "answer" and item.done and item.run_id == run_id and item.source_target_id
        ]
        buffers.sort(key=lambda item: order.get(item.source_target_id or "", len(order)))
        if not buffers:
            return None
        target_ids = [item.source_target_id for item in buffers]
        merged = build_merged_message(
            [Reply(text=item.content, label=item.source_target_id) for item in buffers],
            strategy="concatenate",
            meta={"runId": run_id, "mergedFromTargetIds": target_ids},
            separator=self._config.merge_separator,
            labeled=False,
        )
        if not merged.text:
            return None
        self.items.append(ConversationItem("answer", merged.text, True, dict(merged.meta)))
        record = ConversationRecord(question=self.session.question, answer=merged.text, meta=dict(merged.meta))
        self.session = self.session.with_record(record)
        self._persist(self.session)
        self._notify()
        return record

    def clear(self) -> Session:
        """清空对话：记录、目标状态与运行信息一起重置。"""

        if self._channel is not None:
            self._post({"stop": True})
        self.items = []
        self._statuses = {}
        self._run_targets = {}
        self.active_run_id = None
        self._latest_question = ""
        self.is_ready = True
        old = self.session
        self.session = init_session(
            session_id=old.session_id,
            ai_name=old.ai_name,
            targets=list(old.targets),
            fanout=old.fanout,
            model_name=old.model_name,
            api_mode=old.api_mode,
        )
        self._persist(self.session)
        self._notify()
        return self.session

    # ---- 目标选择 ----

    def ensure_default_target(self) -> List[Target]:
        """没有选中目标时，用会话当前模型作为唯一目标。"""

        if self.session.targets:
            return list(self.session.targets)
        target: Optional[Target] = None
        if self.session.api_mode is not None:
            target = Target.from_api_mode(self.session.api_mode)
        elif self.session.model_name:
            name = self.session.model_name
            api_mode = model_name_to_api_mode(name)
            target = Target(
                id=api_mode_to_model_name(api_mode) if api_mode else name,
                model_name=name,
                api_mode=api_mode,
                provider=api_mode.group_name if api_mode else None,
            )
        if target is None:
            return []
        self.session = self.session.snapshot(targets=[target])
        return [target]

    def select_target(self, target: Target) -> None:
        if any(t.id == target.id for t in self.session.targets):
            return
        self.session = self.session.snapshot(targets=[*self.session.targets, target])
        self._notify()

    def deselect_target(self, target_id: str) -> None:
        self.session = self.session.snapshot(targets=[t for t in self.session.targets if t.id != target_id])
        self._notify()

    def set_fanout_mode(self, mode: FanoutMode) -> None:
        self.session = self.session.snapshot(fanout=mode)
        self._notify()

    def grouped_items(self) -> List[ItemGroup]:
        """把同一 run 的连续回答归为一组，组内按目标列表顺序排列。"""

        order = self._target_order()
        groups: List[ItemGroup] = []
        i = 0
        while i < len(self.items):
            item = self.items[i]
            if item.type != "question" and item.run_id and item.source_target_id:
                run_id = item.run_id
                j = i
                group: List[ConversationItem] = []
                while (
                    j < len(self.items)
                    and self.items[j].run_id == run_id
                    and self.items[j].source_target_id
                    and self.items[j].type != "question"
                ):
                    group.append(self.items[j])
                    j += 1
                group.sort(key=lambda it: order.get(it.source_target_id or "", 9999))
                groups.append(ItemGroup(items=group, run_id=run_id))
                i = j
            else:
                groups.append(ItemGroup(items=[item]))
                i += 1
        return groups

    # ---- 内部工具 ----

    def _t(self, text: str) -> str:
        return self._translate(text) if self._translate else text

    def _target_order(self) -> Dict[str, int]:
        return {t.id: i for i, t in enumerate(self.session.targets)}

    def _find_buffer(self, run_id: str, target_id: str) -> Optional[int]:
        for index in range(len(self.items) - 1, -1, -1):
            item = self.items[index]
            if item.type in ("answer", "error") and item.run_id == run_id and item.source_target_id == target_id:
                return index
        return None

    def _find_or_create_buffer(self, run_id: str, target_id: str) -> int:
        index = self._find_buffer(run_id, target_id)
        if index is None:
            self.items.append(ConversationItem("answer", LOADING, False, _tag(run_id, target_id)))
            index = len(self.items) - 1
        return index

    def _replace_buffer(self, run_id: str, target_id: str, item: ConversationItem) -> None:
        self.items[self._find_or_create_buffer(run_id, target_id)] = item

    def _last_answer_index(self) -> Optional[int]:
        for index in range(len(self.items) - 1, -1, -1):
            if self.items[index].type in ("answer", "error"):
                return index
        return None

    def _update_last_answer(self, value: str, new_type: str, done: bool = False) -> None:
        index = self._last_answer_index()
        if index is None:
            return
        meta = dict(self.items[index].meta)
        self.items[index] = ConversationItem(new_type, value, done, meta)

    def _post(self, message: Dict[str, Any]) -> None:
        if self._channel is None:
            raise ValidationError(code="CHANNEL_NOT_CONNECTED", message="reducer has no channel")
        try:
            self._channel.send(message)
        except Exception as e:  # noqa: BLE001
            self._update_last_answer(describe_error(e), "error", done=True)
            self.is_ready = True

    def _persist(self, session: Session) -> None:
        if self._store is None:
            return
        try:
            self._store.save_session(session)
        except Exception as e:  # noqa: BLE001
            logger.warning(
                "Failed to persist session",
                extra={"extra": {"session_id": session.session_id, "error": str(e)}},
            )

    def _notify(self) -> None:
        if self._on_update is not None:
            self._on_update(self)


def _tag(run_id: str, target_id: str) -> Dict[str, Any]:
    return {"runId": run_id, "sourceTargetId": target_id}


def _retag(item: ConversationItem, run_id: str) -> ConversationItem:
    return ConversationItem(item.type, item.content, item.done, {**item.meta, "runId": run_id})


def _items_from_records(records: Sequence[ConversationRecord]) -> List[ConversationItem]:
    items: List[ConversationItem] = []
    for record in records:
        if record.question:
            items.append(ConversationItem("question", record.question, True))
        if record.answer:
            items.append(ConversationItem("answer", record.answer, True, dict(record.meta)))
    return items
