import itertools
from collections.abc import Callable, Iterable

import structlog

from chatline.schemas.messages import Message

logger = structlog.get_logger()

Listener = Callable[[tuple[Message, ...]], None]


class MessageStore:
    """Ordered, keyed collection of conversation messages.

    Every message held by the store carries its key in ``Message.id``. All
    mutations replace entries with new objects; entries that were not touched
    keep their identity so consumers can memoize on ``is``.
    """

    def __init__(self) -> None:
        self._messages: list[Message] = []
        self._index: dict[str, int] = {}
        self._counter = itertools.count(1)
        self._listeners: list[Listener] = []

    def __len__(self) -> int:
        return len(self._messages)

    def __contains__(self, key: str) -> bool:
        return key in self._index

    def snapshot(self) -> tuple[Message, ...]:
        return tuple(self._messages)

    def get(self, key: str) -> Message | None:
        position = self._index.get(key)
        return self._messages[position] if position is not None else None

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def append(self, message: Message) -> str:
        keyed = self._keyed(message, len(self._messages), self._index)
        self._index[keyed.id] = len(self._messages)
        self._messages.append(keyed)
        self._notify()
        return keyed.id

    def replace_all(self, messages: Iterable[Message]) -> list[str]:
        keyed_messages: list[Message] = []
        index: dict[str, int] = {}
        for position, message in enumerate(messages):
            keyed = self._keyed(message, position, index)
            index[keyed.id] = position
            keyed_messages.append(keyed)

        self._messages = keyed_messages
        self._index = index
        self._notify()
        return [m.id for m in keyed_messages]

    def update_by_id(self, key: str, updater: Callable[[Message], Message]) -> bool:
        """Replace the message stored under ``key`` with ``updater(message)``.

        Returns False when no such message exists (for example after the
        store was cleared by a session switch).
        """
        position = self._index.get(key)
        if position is None:
            logger.debug("message_update_skipped", key=key)
            return False

        current = self._messages[position]
        updated = updater(current)
        if updated.id != key:
            updated = updated.model_copy(update={"id": key})

        messages = list(self._messages)
        messages[position] = updated
        self._messages = messages
        self._notify()
        return True

    def clear(self) -> None:
        self._messages = []
        self._index = {}
        self._notify()

    def _keyed(self, message: Message, position: int, taken: dict[str, int]) -> Message:
        key = message.id or self._derive_key(message, position)
        if key in taken:
            suffix = 1
            while f"{key}-{suffix}" in taken:
                suffix += 1
            key = f"{key}-{suffix}"
        if key == message.id:
            return message
        return message.model_copy(update={"id": key})

    def _derive_key(self, message: Message, position: int) -> str:
        if message.timestamp:
            return f"{message.role}-{message.timestamp}-{position}"
        return f"live-{next(self._counter)}"

    def _notify(self) -> None:
        snapshot = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("store_listener_failed", messages=len(snapshot))
