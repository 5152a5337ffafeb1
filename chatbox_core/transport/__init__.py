"""Channel transport and fanout multiplexing."""

from .channel import Channel, ListenerSet, LocalChannel
from .multiplexer import ChildChannel, make_child_channel

__all__ = ["Channel", "ListenerSet", "LocalChannel", "ChildChannel", "make_child_channel"]
