"""Chatbox Core 顶层包。

该包提供多后端对话的核心实现：一个问题同时派发给多个 AI 后端
（fanout），后台把各目标的流式回答打上标签复用到同一条通道，
UI 侧再按标签拆回各自的回答缓冲区。包括配置加载、领域模型、
Provider 适配、通道复用、编排与持久化存储等能力。
"""

from chatbox_core.background import BackgroundService
from chatbox_core.client import StreamReducer
from chatbox_core.fanout import FanoutOrchestrator

__all__ = ["BackgroundService", "FanoutOrchestrator", "StreamReducer"]
