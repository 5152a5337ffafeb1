"""UI 侧：流式事件解复用、错误展示与多回答合并。"""

from .aggregation import MergedMessage, Reply, build_merged_message
from .errors import CLOUDFLARE, UNAUTHORIZED, pretty_error, translate_error
from .reducer import LOADING, ConversationItem, ItemGroup, StreamReducer

__all__ = [
    "CLOUDFLARE",
    "UNAUTHORIZED",
    "LOADING",
    "ConversationItem",
    "ItemGroup",
    "MergedMessage",
    "Reply",
    "StreamReducer",
    "build_merged_message",
    "pretty_error",
    "translate_error",
]
