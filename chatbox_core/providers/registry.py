"""Provider 与模型配置。

本模块把“会话选中的模型”映射到“由哪个后端处理”：

- 模型分组（ModelGroup）：UI 中的模型键（如 "chatgptApi4oMini"）按后端分组，
  每个键再映射到厂商实际的模型 ID（如 "gpt-4o-mini"）。
- Provider 表（ProviderRegistry）：按固定优先级排列的 (分组, 判定函数, 调用方)。
  顺序为：自定义 API 覆盖 -> 网页会话类后端 -> API Key 类后端。

resolve 只做一次有序查找；凭据获取推迟到真正调用命中的 Provider 时才发生。
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Literal, Mapping, Optional

from chatbox_core.domain.exceptions import UnsupportedModelError
from chatbox_core.domain.models import ApiMode, Session
from chatbox_core.providers.base import BackendInvoker, CredentialFetcher
from chatbox_core.transport.channel import Channel


ProviderKind = Literal["custom", "web", "api"]


@dataclass
class ModelConfig:
    """单个模型键的配置。"""

    logical_name: str
    provider_model: str


@dataclass
class ModelGroup:
    """某个后端的整体模型配置。"""

    name: str
    kind: ProviderKind
    models: Dict[str, ModelConfig] = field(default_factory=dict)


def _group(name: str, kind: ProviderKind, models: Mapping[str, str]) -> ModelGroup:
    return ModelGroup(
        name=name,
        kind=kind,
        models={k: ModelConfig(logical_name=k, provider_model=v) for k, v in models.items()},
    )


# 列表顺序即 Provider 判定优先级
MODEL_GROUPS: Dict[str, ModelGroup] = {
    g.name: g
    for g in (
        _group("customApiModelKeys", "custom", {"customModel": ""}),
        _group("chatgptWebModelKeys", "web", {"chatgptFree35": "auto", "chatgptFree4o": "gpt-4o", "chatgptPlus4": "gpt-4"}),
        _group("claudeWebModelKeys", "web", {"claude2WebFree": "claude-2"}),
        _group("moonshotWebModelKeys", "web", {"moonshotWebFree": "kimi", "moonshotWebFreeK15": "k1.5"}),
        _group("bingWebModelKeys", "web", {"bingFree4": "", "bingFreeSydney": ""}),
        _group("geminiWebModelKeys", "web", {"bardWebFree": ""}),
        _group("chatgptApiModelKeys", "api", {"chatgptApi4oMini": "gpt-4o-mini", "chatgptApi4o": "gpt-4o"}),
        _group("claudeApiModelKeys", "api", {"claude35SonnetApi": "claude-3-5-sonnet-20240620"}),
        _group("moonshotApiModelKeys", "api", {"moonshot_v1_8k": "moonshot-v1-8k", "moonshot_k2": "kimi-k2-turbo-preview"}),
        _group("chatglmApiModelKeys", "api", {"chatglmTurbo": "glm-4", "chatglm46": "glm-4.6"}),
        _group("deepSeekApiModelKeys", "api", {"deepseek_chat": "deepseek-chat", "deepseek_reasoner": "deepseek-reasoner"}),
        _group("ollamaApiModelKeys", "api", {"ollamaModel": ""}),
        _group("openRouterApiModelKeys", "api", {"openRouter_anthropic_claude_sonnet4": "anthropic/claude-sonnet-4"}),
        _group("aimlModelKeys", "api", {"aiml_claude_3_7_sonnet": "claude-3-7-sonnet-20250219"}),
        _group("azureOpenAiApiModelKeys", "api", {"azureOpenAi": ""}),
        _group("gptApiModelKeys", "api", {"gptApiInstruct": "gpt-3.5-turbo-instruct"}),
        _group("githubThirdPartyApiModelKeys", "api", {"waylaidwandererApi": ""}),
    )
}


def is_using_group(session: Session, group_name: str) -> bool:
    """判断会话是否选中了某个分组的模型。

    有 api_mode 时只看其 group_name；否则按 model_name 查表，
    "分组名-自定义名" 形式的模型名也归入该分组。
    """

    if session.api_mode is not None:
        return session.api_mode.group_name == group_name
    name = session.model_name or ""
    if not name:
        return False
    group = MODEL_GROUPS.get(group_name)
    if group is not None and name in group.models:
        return True
    return name.startswith(group_name + "-")


def is_using_model_name(model_key: str, session: Session) -> bool:
    if session.api_mode is not None:
        return session.api_mode.item_name == model_key
    return session.model_name == model_key


def model_name_to_api_mode(model_name: str) -> Optional[ApiMode]:
    """由模型名反推 ApiMode，未知模型返回 None。"""

    if "-" in model_name:
        group_name, custom_name = model_name.split("-", 1)
        if group_name in MODEL_GROUPS:
            return ApiMode(group_name=group_name, item_name="custom", is_custom=True, custom_name=custom_name)
    for group in MODEL_GROUPS.values():
        if model_name in group.models:
            return ApiMode(group_name=group.name, item_name=model_name)
    return None


def model_value(session: Session, config: Any) -> str:
    """返回发给厂商的真实模型 ID。"""

    api_mode = session.api_mode
    if api_mode is not None and (api_mode.is_custom or api_mode.item_name == "custom"):
        return api_mode.custom_name
    key = api_mode.item_name if api_mode is not None else (session.model_name or "")
    if "-" in key and key.split("-", 1)[0] in MODEL_GROUPS:
        return key.split("-", 1)[1]
    if key == "ollamaModel":
        return getattr(config, "ollama_model_name", "")
    if key == "customModel":
        return getattr(config, "custom_model_name", "")
    for group in MODEL_GROUPS.values():
        if key in group.models:
            return group.models[key].provider_model or key
    return key


@dataclass
class ProviderEntry:
    """Provider 表中的一项；invoker 为空表示该后端尚未绑定实现。"""

    tag: str
    kind: ProviderKind
    predicate: Callable[[Session], bool]
    invoker: Optional[BackendInvoker] = None
    credentials: Optional[CredentialFetcher] = None


@dataclass(frozen=True)
class ResolvedProvider:
    """resolve 的结果：调用时才去获取凭据。"""

    entry: ProviderEntry

    @property
    def tag(self) -> str:
        return self.entry.tag

    async def invoke(self, channel: Channel, question: str, session: Session, config: Any) -> None:
        invoker = self.entry.invoker
        if invoker is None:
            raise UnsupportedModelError(code="PROVIDER_NOT_BOUND", message=f"No backend bound for {self.entry.tag}")
        credentials = None
        if self.entry.credentials is not None:
            credentials = await self.entry.credentials(session, config)
        await invoker.invoke(channel, question, session, config, credentials=credentials)


class ProviderRegistry:
    """按优先级排列的 Provider 表。"""

    def __init__(self, entries: Optional[List[ProviderEntry]] = None):
        if entries is None:
            entries = [
                ProviderEntry(tag=g.name, kind=g.kind, predicate=_group_predicate(g.name))
                for g in MODEL_GROUPS.values()
            ]
        self._entries: List[ProviderEntry] = list(entries)

    @property
    def entries(self) -> List[ProviderEntry]:
        return list(self._entries)

    def bind(
        self,
        tag: str,
        invoker: BackendInvoker,
        credentials: Optional[CredentialFetcher] = None,
    ) -> None:
        """为已有分组绑定调用方；分组不存在时追加到表尾。"""

        for entry in self._entries:
            if entry.tag == tag:
                entry.invoker = invoker
                entry.credentials = credentials
                return
        self._entries.append(
            ProviderEntry(tag=tag, kind="api", predicate=_group_predicate(tag), invoker=invoker, credentials=credentials)
        )

    def match(self, session: Session) -> Optional[ProviderEntry]:
        for entry in self._entries:
            if entry.predicate(session):
                return entry
        return None

    def resolve(self, session: Session) -> Optional[ResolvedProvider]:
        """返回命中且已绑定的 Provider，否则返回 None。"""

        entry = self.match(session)
        if entry is None or entry.invoker is None:
            return None
        return ResolvedProvider(entry)

    def require(self, session: Session) -> ResolvedProvider:
        """同 resolve，但未命中时抛出 UnsupportedModelError。"""

        entry = self.match(session)
        model = session.model_name or (session.api_mode.item_name if session.api_mode else None)
        if entry is None:
            raise UnsupportedModelError(code="UNSUPPORTED_MODEL", message=f"Unsupported model: {model}")
        if entry.invoker is None:
            raise UnsupportedModelError(
                code="PROVIDER_NOT_BOUND",
                message=f"No backend bound for {entry.tag} (model: {model})",
            )
        return ResolvedProvider(entry)


def _group_predicate(group_name: str) -> Callable[[Session], bool]:
    def predicate(session: Session) -> bool:
        return is_using_group(session, group_name)

    predicate.__name__ = f"is_using_{group_name}"
    return predicate
