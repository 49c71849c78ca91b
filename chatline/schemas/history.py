from collections.abc import Iterable, Mapping
from enum import Enum
from typing import Any

import structlog
from pydantic import Field, ValidationError

from chatline.schemas.messages import ContentType, ToolRequest, ToolResult, WireModel

logger = structlog.get_logger()


class MessageType(str, Enum):
    USER = "USER"
    AI = "AI"
    TOOL_EXECUTION_RESULT = "TOOL_EXECUTION_RESULT"  # legacy encoding only


class ContentItem(WireModel):
    content_type: ContentType = ContentType.TEXT
    text: str | None = None  # TEXT items
    url: str | None = None  # IMAGE/VIDEO/AUDIO/PDF items
    detail_level: str | None = None  # IMAGE items


class RawHistoryRecord(WireModel):
    """One persisted history entry as returned by ``GET /session/messages/{id}``."""

    message_type: MessageType
    contents: list[ContentItem] | None = None
    text: str | None = None
    thinking: str | None = None
    tool_requests: list[ToolRequest] | None = None
    tool_responses: list[ToolResult] | None = None
    parent_id: int | None = None
    date_time: str | None = None

    # Legacy TOOL_EXECUTION_RESULT shape
    id: str | None = None
    tool_name: str | None = None
    is_error: bool | None = None

    degraded: bool = Field(default=False, exclude=True)

    @property
    def is_assistant(self) -> bool:
        return self.message_type == MessageType.AI

    @property
    def has_text(self) -> bool:
        return bool(self.text and self.text.strip())

    @property
    def is_fragment(self) -> bool:
        """A text-less assistant record that still carries thinking or tool calls."""
        return (
            self.is_assistant
            and not self.degraded
            and not self.has_text
            and bool(self.thinking or self.tool_requests)
        )


def _coerce_parent_id(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    try:
        return int(float(value))
    except (TypeError, ValueError, OverflowError):
        return None


def degraded_record(raw: Any) -> RawHistoryRecord:
    """Build an empty record that keeps whatever ordering info ``raw`` still offers."""
    if not isinstance(raw, Mapping):
        return RawHistoryRecord(message_type=MessageType.AI, degraded=True)

    kind = raw.get("messageType", raw.get("message_type"))
    date_time = raw.get("dateTime", raw.get("date_time"))
    return RawHistoryRecord(
        message_type=MessageType.USER if kind == MessageType.USER.value else MessageType.AI,
        parent_id=_coerce_parent_id(raw.get("parentId", raw.get("parent_id"))),
        date_time=date_time if isinstance(date_time, str) else None,
        degraded=True,
    )


def decode_history(raw_records: Iterable[Any]) -> list[RawHistoryRecord]:
    """Normalize a fetched history payload into records.

    Entries that fail validation are degraded in place instead of aborting the
    batch, so a single corrupt record cannot blank a whole session.
    """
    records: list[RawHistoryRecord] = []
    for index, raw in enumerate(raw_records):
        if isinstance(raw, RawHistoryRecord):
            records.append(raw)
            continue
        try:
            records.append(RawHistoryRecord.model_validate(raw))
        except ValidationError as e:
            logger.warning("history_record_degraded", index=index, errors=e.error_count())
            records.append(degraded_record(raw))
    return records
