"""Rebuild a conversation from persisted history records.

The server stores one record per generation step, so a single assistant reply
can arrive as several records: text-less fragments carrying thinking or tool
calls, followed by the record with the visible text. Records are ordered by
``parentId`` only; it is an ordering key, not a tree pointer.
"""

from collections.abc import Iterable, Mapping
from typing import Any

import structlog

from chatline.schemas.history import MessageType, RawHistoryRecord, decode_history, degraded_record
from chatline.schemas.messages import Message, ToolResult
from chatline.services.message_builder import build_message

logger = structlog.get_logger()


def _legacy_lookup(records: list[RawHistoryRecord]) -> dict[str, ToolResult]:
    lookup: dict[str, ToolResult] = {}
    for record in records:
        if record.id and record.id not in lookup:
            lookup[record.id] = ToolResult(
                id=record.id,
                text=record.text or "",
                is_error=record.is_error,
                tool_name=record.tool_name,
            )
    return lookup


def _fold(held: RawHistoryRecord, record: RawHistoryRecord) -> RawHistoryRecord:
    """Absorb another text-less assistant record into the held fragment."""
    return held.model_copy(
        update={
            "thinking": held.thinking or record.thinking,
            "tool_requests": (held.tool_requests or []) + (record.tool_requests or []),
            "tool_responses": (held.tool_responses or []) + (record.tool_responses or []),
            "date_time": held.date_time or record.date_time,
        }
    )


def _finalize(held: RawHistoryRecord, incoming: RawHistoryRecord) -> RawHistoryRecord:
    """Promote the held fragment onto the record that carries the visible text."""
    return incoming.model_copy(
        update={
            "thinking": held.thinking or incoming.thinking,
            "tool_requests": (held.tool_requests or []) + (incoming.tool_requests or []),
            "tool_responses": (held.tool_responses or []) + (incoming.tool_responses or []),
            "date_time": incoming.date_time or held.date_time,
        }
    )


def merge_fragments(ordered: Iterable[RawHistoryRecord]) -> list[RawHistoryRecord]:
    """Collapse assistant fragments into logical replies.

    User records pass straight through and leave a held fragment waiting for
    the next text-bearing assistant record. A fragment still held at the end
    is emitted as-is so aborted generations stay visible.
    """
    merged: list[RawHistoryRecord] = []
    held: RawHistoryRecord | None = None

    for record in ordered:
        if not record.is_assistant or record.degraded:
            merged.append(record)
            continue

        if held is None:
            if record.is_fragment:
                held = record
            else:
                merged.append(record)
            continue

        if not record.has_text:
            held = _fold(held, record)
            continue

        merged.append(_finalize(held, record))
        held = None

    if held is not None:
        merged.append(held)
    return merged


def reconstruct(records: Iterable[RawHistoryRecord | Mapping[str, Any]]) -> list[Message]:
    decoded = decode_history(records)

    legacy = _legacy_lookup([r for r in decoded if r.message_type == MessageType.TOOL_EXECUTION_RESULT])
    primary = [r for r in decoded if r.message_type != MessageType.TOOL_EXECUTION_RESULT]

    # sorted() is stable: equal parentIds keep their fetched order
    ordered = sorted(primary, key=lambda r: r.parent_id or 0)

    messages: list[Message] = []
    for index, record in enumerate(merge_fragments(ordered)):
        referenced = [legacy[req.id] for req in record.tool_requests or [] if req.id in legacy]
        try:
            messages.append(build_message(record, referenced))
        except Exception as e:
            logger.warning("history_message_degraded", index=index, error=str(e))
            fallback = record.model_dump(by_alias=True)
            messages.append(build_message(degraded_record(fallback)))

    logger.debug("history_reconstructed", records=len(decoded), messages=len(messages))
    return messages
