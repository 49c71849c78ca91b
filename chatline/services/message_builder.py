from collections.abc import Sequence

from chatline.schemas.history import ContentItem, RawHistoryRecord
from chatline.schemas.messages import (
    Attachment,
    ContentType,
    LifecycleStatus,
    Message,
    ToolRequest,
    ToolResult,
)
from chatline.services.tags import extract_thinking, extract_tool_segments, has_tags, remove_all_tags
from chatline.services.tool_matcher import match_results


def assistant_fields(
    text: str | None,
    thinking: str | None = None,
    tool_requests: Sequence[ToolRequest] | None = None,
    tool_results: Sequence[ToolResult] | None = None,
) -> dict:
    """Split assistant text into the display fields of a ``Message``.

    Structured values win; inline tags are only parsed for a field the caller
    did not supply.
    """
    content = text or ""
    requests = list(tool_requests or [])
    results = list(tool_results or [])

    if has_tags(content):
        if not thinking:
            extracted = extract_thinking(content)
            thinking = extracted.thinking_text
            content = extracted.remaining_content
        if not requests:
            tools = extract_tool_segments(content)
            requests = tools.tool_requests
            results.extend(tools.tool_results)
        content = remove_all_tags(content)

    return {
        "content": content,
        "thinking": thinking or None,
        "tool_requests": requests,
        "tool_results": match_results(requests, results),
    }


def _user_text(record: RawHistoryRecord) -> str:
    for item in record.contents or []:
        if item.content_type == ContentType.TEXT:
            return item.text or ""
    return record.text or ""


def _attachment(contents: list[ContentItem] | None) -> Attachment | None:
    for item in contents or []:
        if item.content_type != ContentType.TEXT:
            return Attachment(content_type=item.content_type, url=item.url or "")
    return None


def build_message(record: RawHistoryRecord, legacy_results: Sequence[ToolResult] = ()) -> Message:
    """Turn one (already merged) history record into a display message."""
    if record.degraded:
        if record.is_assistant:
            return Message(role="assistant", timestamp=record.date_time, status=LifecycleStatus.SUCCESS)
        return Message(role="user", timestamp=record.date_time)

    if not record.is_assistant:
        return Message(
            role="user",
            content=_user_text(record),
            attachment=_attachment(record.contents),
            timestamp=record.date_time,
        )

    candidates = list(record.tool_responses or []) + list(legacy_results)
    return Message(
        role="assistant",
        timestamp=record.date_time,
        status=LifecycleStatus.SUCCESS,
        **assistant_fields(record.text, record.thinking, record.tool_requests, candidates),
    )
