"""Agent session sources and the completion watcher built on them."""

from .base import SessionEventSource, SessionSubscription
from .memory import InMemorySessionSource
from .opencode import OpenCodeSessionSource
from .watcher import CompletionWatcher, SessionWatch

__all__ = [
    "SessionEventSource",
    "SessionSubscription",
    "InMemorySessionSource",
    "OpenCodeSessionSource",
    "CompletionWatcher",
    "SessionWatch",
]
