"""Inline pseudo-tag handling for assistant text.

Live streams (and a few old history encodings) carry reasoning and tool
activity inline instead of as separate fields:

    <think>reasoning</think>
    <tool_call id="c1" name="search">{"q": "x"}</tool_call>
    <tool_result id="c1" error="false">3 hits</tool_result>

Only well-formed blocks are touched. An unterminated tag stays in the text.
"""

import re
from typing import NamedTuple

from chatline.schemas.messages import ToolRequest, ToolResult

_THINK_RE = re.compile(r"<(think|thinking)>(.*?)</\1>", re.DOTALL)
_TOOL_SEGMENT_RE = re.compile(
    r"<tool_call\b(?P<call_attrs>[^>]*)>(?P<argument>.*?)</tool_call>"
    r"|<tool_result\b(?P<result_attrs>[^>]*)>(?P<result>.*?)</tool_result>",
    re.DOTALL,
)
_ANY_BLOCK_RE = re.compile(
    r"<(think|thinking)>.*?</\1>"
    r"|<tool_call\b[^>]*>.*?</tool_call>"
    r"|<tool_result\b[^>]*>.*?</tool_result>",
    re.DOTALL,
)
_ATTR_RE = re.compile(r'([\w-]+)\s*=\s*"([^"]*)"')


class ThinkingExtraction(NamedTuple):
    thinking_text: str | None
    remaining_content: str


class ToolExtraction(NamedTuple):
    tool_requests: list[ToolRequest]
    tool_results: list[ToolResult]
    remaining_content: str


def _attrs(raw: str) -> dict[str, str]:
    return {key.lower(): value for key, value in _ATTR_RE.findall(raw or "")}


def _parse_error_flag(value: str | None) -> bool | None:
    if value is None:
        return None
    return value.strip().lower() in ("true", "1", "yes")


def has_tags(text: str) -> bool:
    return bool(text) and _ANY_BLOCK_RE.search(text) is not None


def extract_thinking(text: str) -> ThinkingExtraction:
    """Pull the first well-formed thinking block out of ``text``."""
    match = _THINK_RE.search(text or "")
    if match is None:
        return ThinkingExtraction(None, text or "")
    remaining = (text[: match.start()] + text[match.end():]).strip()
    return ThinkingExtraction(match.group(2).strip(), remaining)


def extract_tool_segments(text: str) -> ToolExtraction:
    """Collect tool-call and tool-result blocks in document order.

    A call without an ``id`` gets ``tool-<n>`` from its position. A result
    without an ``id`` belongs to the closest preceding call that has no
    result yet, and is dropped when there is none.
    """
    requests: list[ToolRequest] = []
    results: list[ToolResult] = []
    awaiting: list[str] = []
    found = False

    for match in _TOOL_SEGMENT_RE.finditer(text or ""):
        found = True
        if match.group("argument") is not None:
            attrs = _attrs(match.group("call_attrs"))
            call_id = attrs.get("id") or f"tool-{len(requests)}"
            requests.append(
                ToolRequest(
                    id=call_id,
                    name=attrs.get("name", ""),
                    argument=match.group("argument").strip(),
                )
            )
            awaiting.append(call_id)
            continue

        attrs = _attrs(match.group("result_attrs"))
        result_id = attrs.get("id")
        if result_id is None:
            if not awaiting:
                continue
            result_id = awaiting.pop()
        elif result_id in awaiting:
            awaiting.remove(result_id)
        results.append(
            ToolResult(
                id=result_id,
                text=match.group("result").strip(),
                is_error=_parse_error_flag(attrs.get("error")),
                tool_name=attrs.get("name"),
            )
        )

    if not found:
        return ToolExtraction([], [], text or "")
    remaining = _TOOL_SEGMENT_RE.sub("", text).strip()
    return ToolExtraction(requests, results, remaining)


def remove_all_tags(text: str) -> str:
    """Strip every well-formed block; applying it twice changes nothing."""
    current = text or ""
    while True:
        stripped = _ANY_BLOCK_RE.sub("", current)
        if stripped == current:
            return stripped.strip()
        current = stripped
