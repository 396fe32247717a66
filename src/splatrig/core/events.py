"""Progress notifications emitted while an avatar is being built.

The preprocessor publishes; the CLI (or any embedding application)
subscribes.  Handlers run synchronously on the publishing thread, in
subscription order, and any exception they raise reaches the publisher.
"""

from collections import defaultdict
from enum import Enum, auto
from typing import Any, Callable

Handler = Callable[..., None]


class EventType(Enum):
    PIPELINE_STARTED = auto()     # data: file_name (str), stage (int)
    PIPELINE_PHASE = auto()       # data: phase (str)
    PIPELINE_PROGRESS = auto()    # data: phase (str), progress (0-1)
    PIPELINE_RETRY = auto()       # data: hints (Hints), error (str)
    PIPELINE_FAILED = auto()      # data: message (str), error_id (int | None)
    PIPELINE_COMPLETE = auto()    # data: output (Path)


class EventBus:
    def __init__(self):
        self._handlers: dict[EventType, list[Handler]] = defaultdict(list)

    def subscribe(self, event_type: EventType, handler: Handler) -> None:
        self._handlers[event_type].append(handler)

    def unsubscribe(self, event_type: EventType, handler: Handler) -> None:
        """Remove ``handler``; unknown handlers are ignored."""
        try:
            self._handlers[event_type].remove(handler)
        except ValueError:
            pass

    def publish(self, event_type: EventType, **data: Any) -> None:
        # Copy so a handler may unsubscribe itself mid-dispatch
        for handler in tuple(self._handlers[event_type]):
            handler(**data)
