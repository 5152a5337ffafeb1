"""后端 Provider 集成层。

该包下的模块负责：
- 定义 BackendInvoker 抽象接口 (base)。
- 维护模型分组与按优先级排列的 Provider 表 (registry)。
- 提供 OpenAI 兼容接口的流式实现 (openai_compat)。

网页会话类后端（ChatGPT/Claude/Bing/Gemini/Moonshot 网页版）依赖浏览器
中的 cookie 或 token，由宿主通过 ProviderRegistry.bind 注入。
"""

from typing import Any, Optional

from chatbox_core.domain.models import Session
from chatbox_core.providers.base import BackendInvoker, CredentialFetcher
from chatbox_core.providers.openai_compat import CustomApiInvoker, OpenAICompatibleInvoker
from chatbox_core.providers.registry import ProviderRegistry, ResolvedProvider


def config_key(attr: str) -> CredentialFetcher:
    """从配置读取 API Key；会话 api_mode 中的 key 优先。"""

    async def fetch(session: Session, config: Any) -> Optional[str]:
        if session.api_mode is not None and session.api_mode.api_key.strip():
            return session.api_mode.api_key.strip()
        return getattr(config, attr, None)

    return fetch


def create_registry() -> ProviderRegistry:
    """创建带有内置 API Key 类后端的 Provider 表。"""

    registry = ProviderRegistry()
    registry.bind("customApiModelKeys", CustomApiInvoker(), config_key("custom_api_key"))
    registry.bind(
        "chatgptApiModelKeys",
        OpenAICompatibleInvoker("openai", "openai_base_url"),
        config_key("openai_api_key"),
    )
    registry.bind(
        "moonshotApiModelKeys",
        OpenAICompatibleInvoker("moonshot", "moonshot_base_url"),
        config_key("moonshot_api_key"),
    )
    registry.bind(
        "chatglmApiModelKeys",
        OpenAICompatibleInvoker("chatglm", "chatglm_base_url"),
        config_key("chatglm_api_key"),
    )
    registry.bind(
        "deepSeekApiModelKeys",
        OpenAICompatibleInvoker("deepseek", "deepseek_base_url"),
        config_key("deepseek_api_key"),
    )
    registry.bind(
        "ollamaApiModelKeys",
        OpenAICompatibleInvoker("ollama", "ollama_endpoint", requires_key=False),
        config_key("ollama_api_key"),
    )
    registry.bind(
        "openRouterApiModelKeys",
        OpenAICompatibleInvoker("openrouter", "openrouter_base_url"),
        config_key("openrouter_api_key"),
    )
    registry.bind(
        "aimlModelKeys",
        OpenAICompatibleInvoker("aiml", "aiml_base_url"),
        config_key("aiml_api_key"),
    )
    return registry


__all__ = [
    "BackendInvoker",
    "CredentialFetcher",
    "ProviderRegistry",
    "ResolvedProvider",
    "config_key",
    "create_registry",
]
