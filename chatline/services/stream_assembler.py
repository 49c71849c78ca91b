"""Incremental assembly of one streamed assistant reply.

One ``StreamAssembler`` owns one assistant message slot in a ``MessageStore``.
Its lifecycle is ``idle -> streaming -> success | error | aborted`` and every
state change goes through ``_transition``. Terminal states are final and
transport callbacks arriving after one are ignored.
"""

import asyncio
from collections.abc import AsyncIterator, Callable
from enum import Enum

import structlog

from chatline.core.exceptions import StreamStateError
from chatline.schemas.messages import LifecycleStatus, Message
from chatline.schemas.sessions import ChatRequest
from chatline.schemas.stream import DeltaChunk, SSELineDecoder, decode_chunk
from chatline.services.message_builder import assistant_fields
from chatline.services.message_store import MessageStore
from chatline.services.transport.base import StreamingTransport

logger = structlog.get_logger()


class StreamState(str, Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    SUCCESS = "success"
    ERROR = "error"
    ABORTED = "aborted"


TERMINAL_STATES = frozenset({StreamState.SUCCESS, StreamState.ERROR, StreamState.ABORTED})

_ALLOWED_TRANSITIONS = {
    StreamState.IDLE: {StreamState.STREAMING, StreamState.ABORTED},
    StreamState.STREAMING: {StreamState.SUCCESS, StreamState.ERROR, StreamState.ABORTED},
}

_MESSAGE_STATUS = {
    StreamState.IDLE: LifecycleStatus.PENDING,
    StreamState.STREAMING: LifecycleStatus.STREAMING,
    StreamState.SUCCESS: LifecycleStatus.SUCCESS,
    StreamState.ERROR: LifecycleStatus.ERROR,
    StreamState.ABORTED: LifecycleStatus.ABORTED,
}


class StreamAssembler:
    def __init__(
        self,
        store: MessageStore,
        message_id: str,
        on_finish: Callable[["StreamAssembler"], None] | None = None,
    ):
        self._store = store
        self.message_id = message_id
        self._on_finish = on_finish
        self._state = StreamState.IDLE
        self._accumulator = ""
        self._decoder = SSELineDecoder()
        self._active = False
        self._task: asyncio.Task | None = None
        self.error: Exception | None = None

    @property
    def state(self) -> StreamState:
        return self._state

    @property
    def content(self) -> str:
        """The full text received so far (never just the last delta)."""
        return self._accumulator

    @property
    def is_active(self) -> bool:
        return self._active

    @property
    def is_terminal(self) -> bool:
        return self._state in TERMINAL_STATES

    # ── Lifecycle ───────────────────────────────────────────────────────────

    def start(self) -> None:
        """Enter ``streaming`` without a transport (callbacks driven by the caller)."""
        self._transition(StreamState.STREAMING)
        self._active = True
        self._publish()

    def open(self, transport: StreamingTransport, request: ChatRequest) -> "StreamAssembler":
        """Start streaming ``request`` through ``transport`` in a background task."""
        self.start()
        self._task = asyncio.create_task(self._pump(transport.stream_chat(request)))
        logger.info("stream_opened", message_id=self.message_id, session_id=request.session_id)
        return self

    async def wait(self) -> StreamState:
        """Wait for the background task (if any) and return the final state."""
        if self._task is not None:
            await asyncio.wait({self._task})
        return self._state

    # ── Transport callbacks ─────────────────────────────────────────────────

    def feed(self, piece: str) -> None:
        """Accept a raw piece of the response body (any alignment)."""
        if not self._accepting():
            return
        for payload in self._decoder.feed(piece):
            self._apply(payload)

    def on_delta(self, text: str) -> None:
        if not self._accepting() or not text:
            return
        self._accumulator += text
        self._publish()

    def on_done(self, final_text: str | None = None) -> None:
        if not self._accepting():
            return
        for payload in self._decoder.flush():
            self._apply(payload)
        if not self._accumulator and final_text:
            self._accumulator = final_text
        self._finish(StreamState.SUCCESS)

    def on_error(self, exc: Exception) -> None:
        if not self._accepting():
            return
        self.error = exc
        logger.warning(
            "stream_failed",
            message_id=self.message_id,
            error=str(exc),
            partial_chars=len(self._accumulator),
        )
        self._finish(StreamState.ERROR)

    def cancel(self) -> None:
        """Abort the stream and freeze the content received so far.

        The active flag is cleared before anything else, so no delta can reach
        the store once this returns.
        """
        if self.is_terminal:
            return
        self._active = False
        self._finish(StreamState.ABORTED)

        task = self._task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    # ── Internals ───────────────────────────────────────────────────────────

    async def _pump(self, pieces: AsyncIterator[str]) -> None:
        try:
            async for piece in pieces:
                if not self._active:
                    break
                self.feed(piece)
            self.on_done()
        except asyncio.CancelledError:
            self.cancel()
            raise
        except Exception as e:
            self.on_error(e)
        finally:
            aclose = getattr(pieces, "aclose", None)
            if aclose is not None:
                await aclose()

    def _accepting(self) -> bool:
        return self._active and self._state == StreamState.STREAMING

    def _apply(self, payload: str) -> None:
        chunk = decode_chunk(payload)
        if isinstance(chunk, DeltaChunk):
            self.on_delta(chunk.text)

    def _transition(self, target: StreamState) -> None:
        if target not in _ALLOWED_TRANSITIONS.get(self._state, set()):
            raise StreamStateError(
                f"Cannot move stream from {self._state.value} to {target.value}.",
                details={"message_id": self.message_id},
            )
        self._state = target

    def _finish(self, target: StreamState) -> None:
        self._transition(target)
        self._active = False
        try:
            self._publish()
            logger.info(
                "stream_finished",
                message_id=self.message_id,
                state=target.value,
                chars=len(self._accumulator),
            )
        finally:
            if self._on_finish is not None:
                self._on_finish(self)

    def _publish(self) -> None:
        fields = assistant_fields(self._accumulator)
        fields["status"] = _MESSAGE_STATUS[self._state]

        def _update(message: Message) -> Message:
            return message.model_copy(update=fields)

        self._store.update_by_id(self.message_id, _update)
