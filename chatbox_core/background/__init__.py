"""Background process: routes channel messages to backends."""

from .service import BackgroundService, get_default_service, handle_port_error

__all__ = ["BackgroundService", "get_default_service", "handle_port_error"]
