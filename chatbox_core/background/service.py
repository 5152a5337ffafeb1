"""后台服务模块。

监听 UI 通道上的消息并分派：
- {"session"}: 单目标提问，直接在真实通道上调用命中的后端。
- {"stop": True}: 由正在执行的后端自行监听，这里只记录日志。
- {"fanout", "session"}: 交给 FanoutOrchestrator。

后端抛出的任何异常都会被转换为 {"error", "done": True, "session"}，
不会让后台进程崩溃。
"""

import asyncio
from typing import Any, Dict, Optional, Set

from chatbox_core.config.settings import settings
from chatbox_core.domain.events import error_message, parse_inbound
from chatbox_core.domain.models import FanoutRequest, Run, Session
from chatbox_core.domain.exceptions import describe_error
from chatbox_core.fanout.orchestrator import FanoutOrchestrator
from chatbox_core.infrastructure.logging.logger import logger
from chatbox_core.providers import create_registry
from chatbox_core.providers.registry import ProviderRegistry
from chatbox_core.transport.channel import Channel


def handle_port_error(session: Optional[Session], channel: Channel, error: BaseException) -> None:
    """把异常作为终止 error 事件发回 UI；通道已断开时只记日志。"""

    text = describe_error(error)
    logger.error(
        f"Backend call failed: {text}",
        extra={"extra": {"session_id": session.session_id if session else None, "error": text}},
    )
    try:
        channel.send(error_message(text, session))
    except Exception as e:  # noqa: BLE001
        logger.warning("Channel gone, error event dropped", extra={"extra": {"error": str(e)}})


class BackgroundService:
    """一个后台进程对应一个实例，可同时服务多个通道。"""

    def __init__(self, registry: Optional[ProviderRegistry] = None, config: Any = settings):
        self._registry = registry or create_registry()
        self._config = config
        self._orchestrator = FanoutOrchestrator(self._registry, config)
        self._tasks: Set[asyncio.Task] = set()

    @property
    def registry(self) -> ProviderRegistry:
        return self._registry

    def attach(self, channel: Channel) -> None:
        """在通道上注册消息监听，断开时自动注销。"""

        def on_message(msg: Dict[str, Any]) -> None:
            self._dispatch(channel, msg)

        def on_disconnect(*_: Any) -> None:
            channel.on_message.remove_listener(on_message)
            channel.on_disconnect.remove_listener(on_disconnect)
            logger.info("Channel disconnected")

        channel.on_message.add_listener(on_message)
        channel.on_disconnect.add_listener(on_disconnect)

    async def execute_api(self, session: Session, channel: Channel, config: Optional[Any] = None) -> None:
        """单目标调用。"""

        cfg = config or self._config
        logger.info(
            "Executing single target",
            extra={"extra": {"session_id": session.session_id, "model": session.model_name}},
        )
        try:
            provider = self._registry.require(session)
            await provider.invoke(channel, session.question or "", session, cfg)
        except asyncio.CancelledError:
            raise
        except Exception as e:  # noqa: BLE001
            handle_port_error(session, channel, e)

    async def execute_fanout(
        self,
        base_session: Session,
        channel: Channel,
        request: FanoutRequest,
        config: Optional[Any] = None,
    ) -> Run:
        return await self._orchestrator.run(base_session, channel, request, config or self._config)

    async def wait_idle(self) -> None:
        """等待所有已派发的调用结束。"""

        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _dispatch(self, channel: Channel, msg: Dict[str, Any]) -> None:
        request = parse_inbound(msg)
        if request.kind == "ask" and request.session is not None:
            self._spawn(self.execute_api(request.session, channel))
        elif request.kind == "fanout" and request.session is not None and request.fanout is not None:
            self._spawn(self.execute_fanout(request.session, channel, request.fanout))
        elif request.kind == "stop":
            logger.info("Stop requested")
        else:
            logger.warning("Ignored unknown message", extra={"extra": {"keys": sorted(msg)}})

    def _spawn(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)


_service: Optional[BackgroundService] = None


def get_default_service() -> BackgroundService:
    """获取默认的后台服务实例（单例）。"""
    global _service
    if _service is None:
        _service = BackgroundService(create_registry(), settings)
    return _service
