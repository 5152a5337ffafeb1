"""会话、目标模型与 fanout 运行的统一数据模型。

本模块定义了后台与 UI 两侧共享的标准数据结构：

- Session: 一次对话的完整状态（历史记录、已选目标、各目标的续聊状态）。
- Target: 一个被选中的后端模型。
- ConversationRecord: 一条问答记录；question 为 None 表示 fanout 产生的结果记录。
- FanoutRequest / Run: 一次 fanout 派发的请求与运行快照。

约定：Python 侧字段使用 snake_case，通道上传输的字典使用 camelCase
（to_dict / from_dict 负责两者之间的转换）。
"""

from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Literal, Mapping, Optional, Tuple
from uuid import uuid4


FanoutMode = Literal["parallel", "sequential"]
FANOUT_MODES: Tuple[str, ...] = ("parallel", "sequential")

# 每个 (runId, targetId) 的状态，仅保存在 UI 侧
TargetStatus = Literal["queued", "running", "done", "error", "canceled"]
TERMINAL_STATUSES = frozenset({"done", "error", "canceled"})
SETTLED_STATUSES = frozenset({"done", "error"})

# 各后端的续聊状态字段。这里只做按 key 复制，新增字段不需要改动编排逻辑。
PROVIDER_STATE_KEYS: Tuple[str, ...] = (
    "conversationId",
    "messageId",
    "parentMessageId",
    "wsRequestId",
    "bingWeb_encryptedConversationSignature",
    "bingWeb_conversationId",
    "bingWeb_clientId",
    "bingWeb_invocationId",
    "bingWeb_jailbreakConversationId",
    "bingWeb_parentMessageId",
    "bingWeb_jailbreakConversationCache",
    "poe_chatId",
    "bard_conversationObj",
    "claude_conversation",
    "moonshot_conversation",
)


@dataclass(frozen=True)
class ApiMode:
    """结构化的 Provider 配置。

    - group_name: 模型分组，如 "chatgptApiModelKeys"、"customApiModelKeys"。
    - item_name: 分组内的模型键；为 "custom" 时使用 custom_name 作为真实模型名。
    - custom_url / api_key: 覆盖全局配置的接口地址与密钥（可为空）。
    """

    group_name: str
    item_name: str
    is_custom: bool = False
    custom_name: str = ""
    custom_url: str = ""
    api_key: str = ""
    active: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "groupName": self.group_name,
            "itemName": self.item_name,
            "isCustom": self.is_custom,
            "customName": self.custom_name,
            "customUrl": self.custom_url,
            "apiKey": self.api_key,
            "active": self.active,
        }

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> Optional["ApiMode"]:
        if not data:
            return None
        return cls(
            group_name=data.get("groupName") or "",
            item_name=data.get("itemName") or "",
            is_custom=bool(data.get("isCustom", False)),
            custom_name=data.get("customName") or "",
            custom_url=data.get("customUrl") or "",
            api_key=data.get("apiKey") or "",
            active=bool(data.get("active", True)),
        )


def api_mode_to_model_name(api_mode: ApiMode) -> str:
    """把 ApiMode 转成稳定的模型名，Target.id 也由它派生。"""

    if api_mode.item_name == "custom" or api_mode.is_custom:
        return f"{api_mode.group_name}-{api_mode.custom_name}"
    return api_mode.item_name


@dataclass(frozen=True)
class Target:
    """一个被选中的后端。创建后不可变，替换目标即删除后重新添加。"""

    id: str
    model_name: Optional[str] = None
    api_mode: Optional[ApiMode] = None
    provider: Optional[str] = None

    @classmethod
    def from_api_mode(cls, api_mode: ApiMode) -> "Target":
        model_name = api_mode_to_model_name(api_mode)
        return cls(id=model_name, model_name=model_name, api_mode=api_mode, provider=api_mode.group_name)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"id": self.id}
        if self.api_mode is not None:
            data["apiMode"] = self.api_mode.to_dict()
        if self.model_name:
            data["modelName"] = self.model_name
        if self.provider:
            data["provider"] = self.provider
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Target":
        return cls(
            id=str(data["id"]),
            model_name=data.get("modelName"),
            api_mode=ApiMode.from_dict(data.get("apiMode")),
            provider=data.get("provider"),
        )


@dataclass(frozen=True)
class ConversationRecord:
    """一条历史记录。

    question 为 None 的记录来自 fanout 的单个目标，meta 中带有
    runId 与 sourceTargetId；合并记录的 meta 带有 mergedFromTargetIds。
    """

    question: Optional[str]
    answer: Optional[str]
    meta: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"question": self.question, "answer": self.answer, "meta": dict(self.meta)}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ConversationRecord":
        return cls(
            question=data.get("question"),
            answer=data.get("answer"),
            meta=dict(data.get("meta") or {}),
        )


@dataclass
class Session:
    """对话单元。

    conversation_records 只追加，唯一的例外是“清空对话”，此时记录、
    target_states 与运行信息一起被重置。UI 侧组件独占该对象，
    传给后台或持久化的都是快照（见 snapshot）。
    """

    session_id: str
    question: Optional[str] = None
    conversation_records: List[ConversationRecord] = field(default_factory=list)
    targets: List[Target] = field(default_factory=list)
    target_states: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    is_retry: bool = False
    last_run_id: Optional[str] = None
    fanout: FanoutMode = "parallel"
    model_name: Optional[str] = None
    api_mode: Optional[ApiMode] = None
    provider_state: Dict[str, Any] = field(default_factory=dict)
    ai_name: Optional[str] = None

    def snapshot(self, **changes: Any) -> "Session":
        """返回容器已复制的新会话，可选地覆盖部分字段。"""

        copied = replace(
            self,
            conversation_records=list(self.conversation_records),
            targets=list(self.targets),
            target_states={k: dict(v) for k, v in self.target_states.items()},
            provider_state=dict(self.provider_state),
        )
        return replace(copied, **changes) if changes else copied

    def with_record(self, record: ConversationRecord) -> "Session":
        return self.snapshot(conversation_records=[*self.conversation_records, record])

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "question": self.question,
            "conversationRecords": [r.to_dict() for r in self.conversation_records],
            "targets": [t.to_dict() for t in self.targets],
            "targetStates": {k: dict(v) for k, v in self.target_states.items()},
            "isRetry": self.is_retry,
            "lastRunId": self.last_run_id,
            "fanout": self.fanout,
            "modelName": self.model_name,
            "apiMode": self.api_mode.to_dict() if self.api_mode else None,
            "providerState": dict(self.provider_state),
            "aiName": self.ai_name,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Session":
        fanout = data.get("fanout") or "parallel"
        if fanout not in FANOUT_MODES:
            fanout = "parallel"
        return cls(
            session_id=str(data.get("sessionId") or uuid4()),
            question=data.get("question"),
            conversation_records=[ConversationRecord.from_dict(r) for r in data.get("conversationRecords") or []],
            targets=[Target.from_dict(t) for t in data.get("targets") or []],
            target_states={k: dict(v or {}) for k, v in (data.get("targetStates") or {}).items()},
            is_retry=bool(data.get("isRetry", False)),
            last_run_id=data.get("lastRunId"),
            fanout=fanout,
            model_name=data.get("modelName"),
            api_mode=ApiMode.from_dict(data.get("apiMode")),
            provider_state=dict(data.get("providerState") or {}),
            ai_name=data.get("aiName"),
        )


@dataclass(frozen=True)
class FanoutRequest:
    """UI 发往后台的 fanout 请求（run_id / fanout_mode 可缺省）。"""

    targets: Tuple[Target, ...] = ()
    run_id: Optional[str] = None
    fanout_mode: Optional[FanoutMode] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"targets": [t.to_dict() for t in self.targets]}
        if self.run_id:
            data["runId"] = self.run_id
        if self.fanout_mode:
            data["fanoutMode"] = self.fanout_mode
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "FanoutRequest":
        return cls(
            targets=tuple(Target.from_dict(t) for t in data.get("targets") or []),
            run_id=data.get("runId"),
            fanout_mode=data.get("fanoutMode"),
        )


@dataclass(frozen=True)
class Run:
    """一次 fanout 执行。不落盘，唯一的持久痕迹是记录 meta 中的 runId。"""

    run_id: str
    mode: FanoutMode
    target_ids: Tuple[str, ...]


def init_session(**fields: Any) -> Session:
    """创建新会话，未指定的字段取默认值。"""

    fields.setdefault("session_id", str(uuid4()))
    return Session(**fields)


def extract_provider_state(source: Mapping[str, Any]) -> Dict[str, Any]:
    """从任意映射中挑出续聊状态字段，不解释其中的值。"""

    return {key: source[key] for key in PROVIDER_STATE_KEYS if key in source}


def provider_state_from_wire(session: Mapping[str, Any]) -> Dict[str, Any]:
    """从通道上的会话字典取续聊状态。

    网页类后端把字段直接放在会话顶层，内置后端放在 providerState 中；
    两处都读，同名时 providerState 优先。
    """

    nested = session.get("providerState")
    return {
        **extract_provider_state(session),
        **extract_provider_state(nested if isinstance(nested, Mapping) else {}),
    }


def merge_target_state(
    target_states: Mapping[str, Mapping[str, Any]],
    target_id: str,
    fragment: Optional[Mapping[str, Any]],
) -> Dict[str, Dict[str, Any]]:
    """把 fragment 合并进 target_states[target_id]，返回新的映射。

    同一目标内按 key 后写覆盖，不同目标之间互不影响。
    """

    merged = {k: dict(v) for k, v in target_states.items()}
    if not fragment:
        return merged
    merged[target_id] = {**merged.get(target_id, {}), **fragment}
    return merged
