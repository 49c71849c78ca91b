from collections.abc import Iterable
from enum import Enum

from pydantic import BaseModel

from chatline.schemas.messages import ToolRequest, ToolResult


class ToolCallStatus(str, Enum):
    LOADING = "loading"
    SUCCESS = "success"
    ERROR = "error"


class ToolCallView(BaseModel):
    id: str
    name: str
    status: ToolCallStatus
    text: str | None = None


def match_results(requests: Iterable[ToolRequest], candidates: Iterable[ToolResult]) -> list[ToolResult]:
    """Return the result for each request, in request order.

    Requests without a result are skipped (they render as still loading) and
    results whose id matches no request are dropped. Error results keep their
    flag but lose their payload text.
    """
    by_id: dict[str, ToolResult] = {}
    for result in candidates:
        by_id.setdefault(result.id, result)

    matched: list[ToolResult] = []
    seen: set[str] = set()
    for request in requests:
        result = by_id.get(request.id)
        if result is None or request.id in seen:
            continue
        seen.add(request.id)
        if result.failed and result.text:
            result = result.model_copy(update={"text": ""})
        matched.append(result)
    return matched


def tool_call_views(requests: Iterable[ToolRequest], results: Iterable[ToolResult]) -> list[ToolCallView]:
    """Pair every request with its display status."""
    requests = list(requests)
    by_id = {result.id: result for result in match_results(requests, results)}
    views = []
    for request in requests:
        result = by_id.get(request.id)
        if result is None:
            status, text = ToolCallStatus.LOADING, None
        elif result.failed:
            status, text = ToolCallStatus.ERROR, None
        else:
            status, text = ToolCallStatus.SUCCESS, result.text
        views.append(ToolCallView(id=request.id, name=request.name, status=status, text=text))
    return views
