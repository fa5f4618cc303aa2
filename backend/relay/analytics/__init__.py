"""Analytics module: sent-message events on a Redis Stream."""

from .stream import MessageEventStream, message_event

__all__ = ["MessageEventStream", "message_event"]
