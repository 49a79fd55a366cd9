"""
Session-scoped event bus.

Flows publish notices and state changes here instead of reaching into each
other; the CLI (or any other surface) subscribes to what it displays.
"""

from collections import defaultdict
from dataclasses import dataclass
from enum import Enum
from typing import Callable, DefaultDict, List, Optional, Type

from kakeru_coach.storage.models import Prompt, TokenUsage


class NoticeLevel(Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


@dataclass(frozen=True)
class Notice:
    """A user-facing message, e.g. a toast."""
    level: NoticeLevel
    message: str
    rate_limited: bool = False


@dataclass(frozen=True)
class BudgetRefreshed:
    usage: TokenUsage


@dataclass(frozen=True)
class PromptReady:
    prompt: Prompt
    synthesized: bool = False


@dataclass(frozen=True)
class WritingSaved:
    writing_id: str
    local: bool


Handler = Callable[[object], None]


class SessionEventBus:
    """Synchronous publish/subscribe keyed by event type."""

    def __init__(self):
        self._handlers: DefaultDict[Type, List[Handler]] = defaultdict(list)

    def subscribe(self, event_type: Type, handler: Handler) -> Callable[[], None]:
        """Register a handler; returns a function that unregisters it."""
        self._handlers[event_type].append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers[event_type]:
                self._handlers[event_type].remove(handler)

        return unsubscribe

    def publish(self, event: object) -> None:
        for handler in list(self._handlers[type(event)]):
            handler(event)

    def notify(
        self,
        level: NoticeLevel,
        message: str,
        rate_limited: bool = False
    ) -> Notice:
        notice = Notice(level=level, message=message, rate_limited=rate_limited)
        self.publish(notice)
        return notice

    def clear(self, event_type: Optional[Type] = None) -> None:
        if event_type is None:
            self._handlers.clear()
        else:
            self._handlers.pop(event_type, None)
