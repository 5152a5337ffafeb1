import asyncio
import tempfile
from pathlib import Path

import pytest

from chatbox_core.background.service import BackgroundService
from chatbox_core.client.reducer import LOADING, StreamReducer
from chatbox_core.domain.events import fanout_done_message, fanout_start_message, tag_message
from chatbox_core.domain.exceptions import BusinessError, NetworkError
from chatbox_core.domain.models import ApiMode, ConversationRecord, Target, init_session
from chatbox_core.infrastructure.storage.json_store import JsonSessionStore
from chatbox_core.prompts import build_conversation_pairs
from chatbox_core.providers.registry import ProviderRegistry
from chatbox_core.transport.channel import ListenerSet, LocalChannel


class SettingsStub:
    default_fanout_mode = "parallel"
    merge_separator = "\n\n---\n\n"


class RecordingChannel:
    def __init__(self):
        self.on_message = ListenerSet()
        self.on_disconnect = ListenerSet()
        self.sent = []

    def send(self, message):
        self.sent.append(message)


class FailingStore:
    def save_session(self, session):
        raise BusinessError(code="STORE_WRITE_ERROR", message="disk full")


def answer(run_id, target_id, text, done=False, provider_state=None):
    session = {"providerState": provider_state} if provider_state is not None else None
    return tag_message({"answer": text, "done": done, "session": session}, run_id, target_id)


def error(run_id, target_id, text):
    return tag_message({"error": text, "done": True, "session": None}, run_id, target_id)


def started_reducer(targets=("a", "b"), store=None):
    session = init_session(targets=[Target(id=t) for t in targets])
    channel = RecordingChannel()
    reducer = StreamReducer(session, channel=channel, store=store, config=SettingsStub())
    run_id = reducer.ask_fanout("hi")
    reducer.apply(fanout_start_message(run_id, list(targets)))
    return reducer, channel, run_id


def test_ask_fanout_posts_request_with_client_run_id():
    reducer, channel, run_id = started_reducer()
    msg = channel.sent[0]
    assert msg["fanout"]["runId"] == run_id
    assert [t["id"] for t in msg["fanout"]["targets"]] == ["a", "b"]
    assert msg["fanout"]["fanoutMode"] == "parallel"
    assert msg["session"]["question"] == "hi"
    assert msg["session"]["conversationRecords"] == []
    assert reducer.session.conversation_records == [ConversationRecord("hi", "", {"runId": run_id})]
    assert reducer.session.last_run_id == run_id


def test_fanout_start_creates_placeholders_and_runs_targets():
    reducer, _, run_id = started_reducer()
    assert reducer.active_run_id == run_id
    assert not reducer.is_ready
    assert reducer.status("a") == "running"
    assert reducer.status("b") == "running"
    buffers = [i for i in reducer.items if i.type == "answer"]
    assert [(i.source_target_id, i.content) for i in buffers] == [("a", LOADING), ("b", LOADING)]


def test_interleaved_events_are_routed_per_target():
    reducer, _, run_id = started_reducer()
    reducer.apply(answer(run_id, "b", "B"))
    reducer.apply(answer(run_id, "a", "A"))
    reducer.apply(answer(run_id, "b", "B2"))
    contents = {i.source_target_id: i.content for i in reducer.items if i.type == "answer"}
    assert contents == {"a": "A", "b": "B2"}


def test_done_appends_record_and_becomes_ready():
    reducer, _, run_id = started_reducer()
    reducer.apply(answer(run_id, "a", "A!", done=True, provider_state={"conversationId": "ca"}))
    assert reducer.status("a") == "done"
    assert not reducer.is_ready

    reducer.apply(answer(run_id, "b", "B!", done=True, provider_state={"conversationId": "cb"}))
    assert reducer.is_ready
    records = reducer.session.conversation_records
    assert [(r.question, r.answer) for r in records] == [("hi", ""), (None, "A!"), (None, "B!")]
    assert records[0].meta == {"runId": run_id}
    assert records[1].meta == {"runId": run_id, "sourceTargetId": "a"}
    assert reducer.session.target_states == {"a": {"conversationId": "ca"}, "b": {"conversationId": "cb"}}


def test_top_level_provider_state_is_kept_per_target():
    reducer, _, run_id = started_reducer(targets=("a",))
    session = {"conversationId": "web-conv", "parentMessageId": "p1", "providerState": {"messageId": "m1"}}
    reducer.apply(tag_message({"answer": "A!", "done": True, "session": session}, run_id, "a"))
    assert reducer.session.target_states == {"a": {"conversationId": "web-conv", "parentMessageId": "p1", "messageId": "m1"}}


def test_done_without_answer_keeps_streamed_text():
    reducer, _, run_id = started_reducer(targets=("a",))
    reducer.apply(answer(run_id, "a", "partial"))
    reducer.apply(tag_message({"done": True}, run_id, "a"))
    assert reducer.session.conversation_records[-1].answer == "partial"

    reducer, _, run_id = started_reducer(targets=("a",))
    reducer.apply(tag_message({"done": True}, run_id, "a"))
    assert reducer.session.conversation_records[-1].answer == ""


def test_repeated_done_is_ignored():
    reducer, _, run_id = started_reducer()
    reducer.apply(answer(run_id, "a", "A!", done=True))
    reducer.apply(answer(run_id, "a", "A!", done=True))
    reducer.apply(answer(run_id, "a", "late"))
    assert len(reducer.session.conversation_records) == 2
    assert [i.content for i in reducer.items if i.source_target_id == "a"] == ["A!"]


def test_events_for_inactive_run_are_ignored():
    reducer, _, run_id = started_reducer()
    reducer.apply(answer("old-run", "a", "stale", done=True))
    assert [r.answer for r in reducer.session.conversation_records] == [""]
    assert reducer.status("a") == "running"


def test_cancel_suppresses_later_events():
    reducer, _, run_id = started_reducer()
    assert reducer.cancel("b")
    reducer.apply(answer(run_id, "b", "B!", done=True))
    assert reducer.status("b") == "canceled"
    assert [r.answer for r in reducer.session.conversation_records] == [""]

    reducer.apply(answer(run_id, "a", "A!", done=True))
    assert not reducer.cancel("a")
    assert reducer.status("a") == "done"
    reducer.apply(fanout_done_message(run_id))
    assert reducer.is_ready


def test_cancel_all_forgets_active_run():
    reducer, _, run_id = started_reducer()
    reducer.cancel_all()
    assert reducer.is_ready
    assert reducer.active_run_id is None
    assert reducer.statuses(run_id) == {"a": "canceled", "b": "canceled"}
    reducer.apply(answer(run_id, "a", "A!", done=True))
    assert [r.answer for r in reducer.session.conversation_records] == [""]


def test_error_event_is_translated_and_settles_target():
    reducer, _, run_id = started_reducer()
    reducer.apply(error(run_id, "a", "UNAUTHORIZED"))
    reducer.apply(answer(run_id, "b", "B!", done=True))
    err = next(i for i in reducer.items if i.type == "error")
    assert err.source_target_id == "a"
    assert err.content.startswith("UNAUTHORIZED<br>Please login at https://chatgpt.com first")
    assert reducer.status("a") == "error"
    assert reducer.is_ready
    assert len(reducer.session.conversation_records) == 2


def test_merge_follows_target_order_and_skips_errors():
    reducer, _, run_id = started_reducer(targets=("a", "b", "c"))
    reducer.apply(answer(run_id, "c", "C!", done=True))
    reducer.apply(error(run_id, "b", "boom"))
    assert reducer.merge() is None
    reducer.apply(answer(run_id, "a", "A!", done=True))

    record = reducer.merge()
    assert record.answer == "A!\n\n---\n\nC!"
    assert record.question == "hi"
    assert record.meta == {"runId": run_id, "mergedFromTargetIds": ["a", "c"], "strategy": "concatenate"}
    assert reducer.session.conversation_records[-1] == record


def test_retry_target_reuses_pending_placeholder():
    reducer, channel, run_id = started_reducer()
    reducer.apply(answer(run_id, "a", "A!", done=True))
    reducer.apply(error(run_id, "b", "boom"))

    new_run = reducer.retry_target("b")
    assert new_run != run_id
    request = channel.sent[-1]
    assert request["fanout"]["runId"] == new_run
    assert [t["id"] for t in request["fanout"]["targets"]] == ["b"]
    assert request["session"]["isRetry"] is True
    assert request["session"]["question"] == "hi"
    assert [r["answer"] for r in request["session"]["conversationRecords"]] == ["A!"]

    reducer.apply(fanout_start_message(new_run, ["b"]))
    reducer.apply(answer(new_run, "b", "B!", done=True))
    assert not [i for i in reducer.items if i.content == LOADING]
    assert reducer.session.conversation_records[-1].meta == {"runId": new_run, "sourceTargetId": "b"}
    assert reducer.status("b", run_id) == "error"
    assert reducer.status("b") == "done"


def test_legacy_single_target_flow():
    channel = RecordingChannel()
    session = init_session(model_name="chatgptApi4o")
    reducer = StreamReducer(session, channel=channel, config=SettingsStub())
    reducer.ask("hi")
    assert channel.sent == [{"session": reducer.session.to_dict()}]
    assert reducer.items[-1].content == LOADING

    reducer.apply({"answer": "He", "done": False, "session": None})
    assert reducer.items[-1].content == "He"

    finished = reducer.session.snapshot(is_retry=True).with_record(ConversationRecord(question="hi", answer="Hello"))
    reducer.apply({"answer": "Hello", "done": True, "session": finished.to_dict()})
    assert reducer.is_ready
    assert reducer.items[-1].content == "Hello"
    assert reducer.items[-1].done
    assert reducer.session.is_retry is False
    assert [(r.question, r.answer) for r in reducer.session.conversation_records] == [("hi", "Hello")]


def test_legacy_error_replaces_placeholder():
    reducer = StreamReducer(init_session(model_name="chatgptApi4o"), channel=RecordingChannel(), config=SettingsStub())
    reducer.ask("hi")
    reducer.apply({"error": '{"code": 401}', "done": True, "session": None})
    assert reducer.items[-1].type == "error"
    assert reducer.items[-1].content == '{\n  "code": 401\n}'
    assert len(reducer.items) == 2
    assert reducer.is_ready


def test_legacy_retry_drops_matching_record():
    channel = RecordingChannel()
    session = init_session(model_name="chatgptApi4o", conversation_records=[ConversationRecord("hi", "Hello")])
    reducer = StreamReducer(session, channel=channel, config=SettingsStub())
    reducer.retry()
    assert channel.sent[0] == {"stop": True}
    assert channel.sent[1]["session"]["conversationRecords"] == []
    assert channel.sent[1]["session"]["isRetry"] is True
    assert reducer.items[-1].content == LOADING


def test_clear_resets_conversation_but_keeps_targets():
    with tempfile.TemporaryDirectory() as d:
        store = JsonSessionStore(root=Path(d))
        reducer, channel, run_id = started_reducer(store=store)
        reducer.apply(answer(run_id, "a", "A!", done=True, provider_state={"conversationId": "ca"}))
        session_id = reducer.session.session_id

        cleared = reducer.clear()
        assert channel.sent[-1] == {"stop": True}
        assert cleared.session_id == session_id
        assert [t.id for t in cleared.targets] == ["a", "b"]
        assert cleared.conversation_records == []
        assert cleared.target_states == {}
        assert cleared.last_run_id is None
        assert reducer.items == []
        assert reducer.statuses(run_id) == {}
        assert store.get_session(session_id).conversation_records == []


def test_done_is_persisted():
    with tempfile.TemporaryDirectory() as d:
        store = JsonSessionStore(root=Path(d))
        reducer, _, run_id = started_reducer(store=store)
        reducer.apply(answer(run_id, "a", "A!", done=True))
        stored = store.get_session(reducer.session.session_id)
        assert [(r.question, r.answer) for r in stored.conversation_records] == [("hi", ""), (None, "A!")]


def test_reloaded_fanout_session_shows_question():
    with tempfile.TemporaryDirectory() as d:
        store = JsonSessionStore(root=Path(d))
        reducer, _, run_id = started_reducer(store=store)
        reducer.apply(answer(run_id, "b", "B!", done=True))
        reducer.apply(answer(run_id, "a", "A!", done=True))

        reloaded = StreamReducer(store.get_session(reducer.session.session_id), config=SettingsStub())
        assert [(i.type, i.content) for i in reloaded.items] == [("question", "hi"), ("answer", "B!"), ("answer", "A!")]
        assert reloaded.latest_question() == "hi"


def test_persist_failure_does_not_interrupt_stream():
    reducer, _, run_id = started_reducer(store=FailingStore())
    reducer.apply(answer(run_id, "a", "A!", done=True))
    reducer.apply(answer(run_id, "b", "B!", done=True))
    assert reducer.is_ready
    assert len(reducer.session.conversation_records) == 3


def test_post_failure_becomes_error_item():
    background, ui = LocalChannel.pair()
    reducer = StreamReducer(init_session(model_name="chatgptApi4o"), channel=ui, config=SettingsStub())
    background.disconnect()
    assert reducer.is_ready
    reducer.ask("hi")
    assert reducer.items[-1].type == "error"
    assert "disconnected" in reducer.items[-1].content
    assert reducer.is_ready


def test_default_target_and_target_picker():
    reducer = StreamReducer(init_session(model_name="chatgptApi4o"), channel=RecordingChannel(), config=SettingsStub())
    targets = reducer.ensure_default_target()
    assert [t.id for t in targets] == ["chatgptApi4o"]
    assert targets[0].api_mode.group_name == "chatgptApiModelKeys"

    claude = Target.from_api_mode(ApiMode(group_name="claudeApiModelKeys", item_name="claude35SonnetApi"))
    reducer.select_target(claude)
    reducer.select_target(claude)
    assert [t.id for t in reducer.selected_targets] == ["chatgptApi4o", "claude35SonnetApi"]
    reducer.deselect_target("chatgptApi4o")
    assert [t.id for t in reducer.selected_targets] == ["claude35SonnetApi"]
    reducer.set_fanout_mode("sequential")
    assert reducer.session.fanout == "sequential"


def test_ask_fanout_without_any_model_does_nothing():
    channel = RecordingChannel()
    reducer = StreamReducer(init_session(), channel=channel, config=SettingsStub())
    assert reducer.ask_fanout("hi") is None
    assert channel.sent == []


def test_grouped_items_orders_run_by_target_list():
    reducer, _, run_id = started_reducer(targets=("a", "b"))
    reducer.apply(answer(run_id, "b", "B!", done=True))
    reducer.apply(answer(run_id, "a", "A!", done=True))
    groups = reducer.grouped_items()
    assert [g.run_id for g in groups] == [None, run_id]
    assert groups[0].items[0].content == "hi"
    assert [i.content for i in groups[1].items] == ["A!", "B!"]


def test_history_is_hydrated_from_records():
    session = init_session(
        conversation_records=[
            ConversationRecord("q", "a"),
            ConversationRecord(None, "fan", {"runId": "r0", "sourceTargetId": "x"}),
        ]
    )
    reducer = StreamReducer(session, config=SettingsStub())
    assert [(i.type, i.content) for i in reducer.items] == [("question", "q"), ("answer", "a"), ("answer", "fan")]
    assert reducer.items[-1].run_id == "r0"
    assert reducer.latest_question() == "q"


class ScriptedInvoker:
    def __init__(self, text):
        self.name = text
        self.text = text

    async def invoke(self, channel, question, session, config, credentials=None):
        for i in range(1, len(self.text) + 1):
            await asyncio.sleep(0)
            channel.send({"answer": self.text[:i], "done": False, "session": None})
        state = session.snapshot(provider_state={"conversationId": f"{self.name}-conv"})
        channel.send({"answer": self.text, "done": True, "session": state.to_dict()})


class DownInvoker:
    name = "down"

    async def invoke(self, channel, question, session, config, credentials=None):
        raise NetworkError(code="NETWORK_ERROR", message="network is unreachable")


def wire(gpt_invoker, claude_invoker):
    registry = ProviderRegistry()
    registry.bind("chatgptApiModelKeys", gpt_invoker)
    registry.bind("claudeApiModelKeys", claude_invoker)
    service = BackgroundService(registry, SettingsStub())
    background, ui = LocalChannel.pair()
    service.attach(background)
    gpt = Target.from_api_mode(ApiMode(group_name="chatgptApiModelKeys", item_name="chatgptApi4o"))
    claude = Target.from_api_mode(ApiMode(group_name="claudeApiModelKeys", item_name="claude35SonnetApi"))
    reducer = StreamReducer(init_session(targets=[gpt, claude]), channel=ui, config=SettingsStub())
    return service, reducer, gpt, claude


@pytest.mark.asyncio
async def test_end_to_end_two_targets():
    service, reducer, gpt, claude = wire(ScriptedInvoker("gpt says"), ScriptedInvoker("claude says"))
    run_id = reducer.ask_fanout("hi")
    await service.wait_idle()

    assert reducer.is_ready
    assert reducer.statuses(run_id) == {gpt.id: "done", claude.id: "done"}
    answers = {r.meta["sourceTargetId"]: r.answer for r in reducer.session.conversation_records if r.question is None}
    assert answers == {gpt.id: "gpt says", claude.id: "claude says"}
    assert reducer.session.target_states[gpt.id] == {"conversationId": "gpt says-conv"}

    merged = reducer.merge()
    assert merged.answer == "gpt says\n\n---\n\nclaude says"

    # 第二轮只带回各自的续聊状态
    second = reducer.ask_fanout("again")
    await service.wait_idle()
    assert reducer.statuses(second) == {gpt.id: "done", claude.id: "done"}


@pytest.mark.asyncio
async def test_end_to_end_one_backend_down():
    service, reducer, gpt, claude = wire(ScriptedInvoker("gpt says"), DownInvoker())
    run_id = reducer.ask_fanout("hi")
    await service.wait_idle()

    assert reducer.is_ready
    assert reducer.status(gpt.id, run_id) == "done"
    assert reducer.status(claude.id, run_id) == "error"
    err = next(i for i in reducer.items if i.type == "error")
    assert err.content == "network is unreachable"
    assert [(r.question, r.answer) for r in reducer.session.conversation_records] == [("hi", ""), (None, "gpt says")]


class HistoryInvoker(ScriptedInvoker):
    def __init__(self, text):
        super().__init__(text)
        self.histories = []

    async def invoke(self, channel, question, session, config, credentials=None):
        self.histories.append((question, build_conversation_pairs(session.conversation_records)))
        await super().invoke(channel, question, session, config, credentials)


@pytest.mark.asyncio
async def test_second_turn_history_carries_first_question():
    gpt_invoker = HistoryInvoker("gpt says")
    service, reducer, gpt, claude = wire(gpt_invoker, ScriptedInvoker("claude says"))
    run_id = reducer.ask_fanout("q1")
    await service.wait_idle()

    records = [(r.question, r.answer, r.meta.get("sourceTargetId")) for r in reducer.session.conversation_records]
    assert records[0] == ("q1", "", None)
    assert sorted(records[1:]) == [(None, "claude says", claude.id), (None, "gpt says", gpt.id)]
    assert reducer.session.conversation_records[0].meta == {"runId": run_id}

    reducer.ask_fanout("q2")
    await service.wait_idle()

    assert gpt_invoker.histories[0] == ("q1", [])
    question, history = gpt_invoker.histories[1]
    assert question == "q2"
    assert history[0] == {"role": "user", "content": "q1"}
    assert sorted(m["content"] for m in history[1:]) == ["claude says", "gpt says"]
    assert all(m["role"] == "assistant" for m in history[1:])
