import json
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field

DONE_SENTINEL = "[DONE]"

# SSE fields that carry no payload for the assembler
CONTROL_PREFIXES = ("event:", "id:", "retry:")


class DeltaChunk(BaseModel):
    kind: Literal["delta"] = "delta"
    text: str


class DoneChunk(BaseModel):
    kind: Literal["done"] = "done"


class EmptyChunk(BaseModel):
    kind: Literal["empty"] = "empty"


StreamChunk = Annotated[DeltaChunk | DoneChunk | EmptyChunk, Field(discriminator="kind")]


def _text_field(data: dict[str, Any]) -> str:
    for key in ("content", "text"):
        value = data.get(key)
        if isinstance(value, str) and value:
            return value

    # OpenAI-compatible chunk: choices[0].delta.content
    choices = data.get("choices")
    if isinstance(choices, list) and choices and isinstance(choices[0], dict):
        delta = choices[0].get("delta")
        if isinstance(delta, dict) and isinstance(delta.get("content"), str):
            return delta["content"]
    return ""


def decode_chunk(payload: str) -> DeltaChunk | DoneChunk | EmptyChunk:
    """Normalize one ``data:`` payload into a tagged chunk.

    Payloads that are not JSON objects are kept as literal text.
    """
    data = payload.strip()
    if not data:
        return EmptyChunk()
    if data == DONE_SENTINEL:
        return DoneChunk()

    try:
        parsed = json.loads(data)
    except ValueError:
        return DeltaChunk(text=data)

    if not isinstance(parsed, dict):
        return DeltaChunk(text=data)

    text = _text_field(parsed)
    return DeltaChunk(text=text) if text else EmptyChunk()


class SSELineDecoder:
    """Splits arbitrary text pieces into SSE payloads.

    A trailing piece without a newline stays buffered until more text arrives
    or ``flush()`` is called at end of stream.
    """

    def __init__(self) -> None:
        self._buffer = ""

    @property
    def pending(self) -> str:
        return self._buffer

    def feed(self, piece: str) -> list[str]:
        self._buffer += piece
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()
        payloads = []
        for line in lines:
            payload = self._payload(line)
            if payload is not None:
                payloads.append(payload)
        return payloads

    def flush(self) -> list[str]:
        rest, self._buffer = self._buffer, ""
        payload = self._payload(rest)
        return [payload] if payload is not None else []

    @staticmethod
    def _payload(line: str) -> str | None:
        line = line.rstrip("\r")
        if line.startswith("data:"):
            return line[len("data:"):].strip()
        stripped = line.strip()
        if not stripped or stripped.startswith(":") or stripped.startswith(CONTROL_PREFIXES):
            return None
        return stripped
