from collections import defaultdict
from collections.abc import Callable
from enum import Enum
from typing import Any

import structlog

logger = structlog.get_logger()

Handler = Callable[[dict[str, Any]], None]


class ChatEvent(str, Enum):
    LOGIN_SUCCESS = "login_success"
    MODEL_CHANGED = "model_changed"
    SESSION_CREATED = "session_created"
    NOTICE = "notice"  # user-visible message: {"level": ..., "message": ...}


class EventBus:
    """Publish/subscribe hub handed to the presentation layer.

    One instance per client; nothing here is module-global.
    """

    def __init__(self) -> None:
        self._handlers: dict[ChatEvent, list[Handler]] = defaultdict(list)

    def subscribe(self, event: ChatEvent, handler: Handler) -> Callable[[], None]:
        """Register ``handler`` and return a callable that removes it."""
        self._handlers[event].append(handler)

        def unsubscribe() -> None:
            handlers = self._handlers.get(event, [])
            if handler in handlers:
                handlers.remove(handler)

        return unsubscribe

    def emit(self, event: ChatEvent, data: dict[str, Any] | None = None) -> None:
        payload = data or {}
        for handler in list(self._handlers.get(event, [])):
            try:
                handler(payload)
            except Exception:
                logger.exception("event_handler_failed", event=event.value)

    def notice(self, message: str, level: str = "error") -> None:
        self.emit(ChatEvent.NOTICE, {"level": level, "message": message})
