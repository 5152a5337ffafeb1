"""Fanout 编排器。

把同一个问题派发给多个目标模型：

1. 生成（或沿用）run_id，确定执行模式（parallel / sequential）。
2. 在真实通道上先发 FANOUT_START，UI 据此一次性为所有目标建立占位。
3. 为每个目标派生独立的会话快照，并从 target_states[target.id] 恢复续聊状态。
4. 通过带标签的子通道调用目标后端；单个目标的异常被转换成该目标的
   终止 error 事件，不影响其他目标。
5. 全部目标结束后发 FANOUT_DONE。
"""

import asyncio
import logging
import time
from typing import Any, Dict, Mapping, Optional
from uuid import uuid4

from chatbox_core.config.settings import settings
from chatbox_core.domain.events import error_message, fanout_done_message, fanout_start_message
from chatbox_core.domain.exceptions import describe_error
from chatbox_core.domain.models import (
    FANOUT_MODES,
    FanoutRequest,
    Run,
    Session,
    Target,
    extract_provider_state,
)
from chatbox_core.infrastructure.logging.logger import logger
from chatbox_core.providers.registry import ProviderRegistry
from chatbox_core.transport.channel import Channel, Message
from chatbox_core.transport.multiplexer import make_child_channel


def build_target_session(base: Session, target: Target) -> Session:
    """为单个目标派生会话快照。

    - 覆盖 api_mode / model_name（目标指定了才覆盖）。
    - is_retry 固定为 False：fanout 总是新一轮提问。
    - 只从 target_states[target.id] 恢复续聊字段，兄弟目标的状态不会混入。
    """

    changes: Dict[str, Any] = {"is_retry": False}
    if target.api_mode is not None:
        changes["api_mode"] = target.api_mode
    if target.model_name:
        changes["model_name"] = target.model_name
    derived = base.snapshot(**changes)
    state = base.target_states.get(target.id)
    if isinstance(state, Mapping):
        derived.provider_state.update(extract_provider_state(state))
    return derived


class FanoutOrchestrator:
    """执行 fanout 运行。一个实例可以被多个通道、多个运行复用。"""

    def __init__(self, registry: ProviderRegistry, config: Any = settings):
        self._registry = registry
        self._config = config

    async def run(
        self,
        base_session: Session,
        channel: Channel,
        request: FanoutRequest,
        config: Optional[Any] = None,
    ) -> Run:
        cfg = config or self._config
        run_id = request.run_id or str(uuid4())
        mode = request.fanout_mode or getattr(cfg, "default_fanout_mode", "parallel")
        if mode not in FANOUT_MODES:
            self._log(logging.WARNING, "Unknown fanout mode, using parallel", run_id=run_id, mode=mode)
            mode = "parallel"
        targets = list(request.targets)
        run = Run(run_id=run_id, mode=mode, target_ids=tuple(t.id for t in targets))

        start_time = time.time()
        self._log(logging.INFO, "Fanout started", run_id=run_id, mode=mode, target_ids=list(run.target_ids))
        self._post(channel, fanout_start_message(run_id, run.target_ids), run_id)

        if mode == "sequential":
            for target in targets:
                await self._run_target(base_session, channel, cfg, run_id, target)
        else:
            await asyncio.gather(
                *(self._run_target(base_session, channel, cfg, run_id, t) for t in targets),
                return_exceptions=True,
            )

        self._post(channel, fanout_done_message(run_id), run_id)
        self._log(
            logging.INFO,
            "Fanout finished",
            run_id=run_id,
            elapsed_seconds=round(time.time() - start_time, 2),
        )
        return run

    async def _run_target(
        self,
        base_session: Session,
        channel: Channel,
        config: Any,
        run_id: str,
        target: Target,
    ) -> None:
        child = make_child_channel(channel, run_id, target.id)
        session = build_target_session(base_session, target)
        try:
            provider = self._registry.require(session)
            self._log(logging.INFO, "Dispatching target", run_id=run_id, target_id=target.id, provider=provider.tag)
            await provider.invoke(child, session.question or "", session, config)
        except asyncio.CancelledError:
            raise
        except Exception as e:  # noqa: BLE001
            self._log(logging.WARNING, "Target failed", run_id=run_id, target_id=target.id, error=describe_error(e))
            child.send(error_message(describe_error(e), session))

    def _post(self, channel: Channel, message: Message, run_id: str) -> None:
        try:
            channel.send(message)
        except Exception as e:  # noqa: BLE001
            self._log(logging.WARNING, "Channel gone, lifecycle marker dropped", run_id=run_id, error=str(e))

    def _log(self, level: int, msg: str, **fields: Any) -> None:
        logger.log(level, msg, extra={"extra": fields})
