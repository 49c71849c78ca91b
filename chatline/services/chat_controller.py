import asyncio
from collections.abc import Coroutine
from typing import Any

import structlog

from chatline.core.exceptions import ChatlineError, notice_text
from chatline.schemas.messages import Attachment, LifecycleStatus, Message
from chatline.schemas.sessions import ChatRequest, ModelProvider, ModelSelector, SessionSummary, UploadRef
from chatline.services.events import ChatEvent, EventBus
from chatline.services.message_store import MessageStore
from chatline.services.reconstructor import reconstruct
from chatline.services.stream_assembler import StreamAssembler, StreamState
from chatline.services.transport.base import ModelDirectory, SessionTransport, StreamingTransport

logger = structlog.get_logger()


class ChatController:
    """Drives one chat view: the active session, its messages and the live stream.

    At most one stream is in flight. Submitting, switching session or clearing
    cancels it first so a late delta can never land in another session's list.
    """

    def __init__(
        self,
        sessions: SessionTransport,
        streaming: StreamingTransport,
        models: ModelDirectory | None = None,
        store: MessageStore | None = None,
        events: EventBus | None = None,
    ):
        self._sessions = sessions
        self._streaming = streaming
        self._models = models
        self.store = store or MessageStore()
        self.events = events or EventBus()

        self.session_id: str | None = None
        self.sessions: list[SessionSummary] = []
        self.selected_model: ModelSelector | None = None
        self.default_model: ModelSelector | None = None
        self.model_providers: list[ModelProvider] = []
        self.history_loading = False
        self._history_loaded = asyncio.Event()
        self._history_loaded.set()

        self._active: StreamAssembler | None = None
        self._load_generation = 0
        self._background: set[asyncio.Task] = set()
        self._unsubscribers = [
            self.events.subscribe(ChatEvent.LOGIN_SUCCESS, self._on_login_success),
            self.events.subscribe(ChatEvent.MODEL_CHANGED, self._on_model_changed),
        ]

    @property
    def active_stream(self) -> StreamAssembler | None:
        return self._active

    @property
    def is_sending(self) -> bool:
        return self._active is not None and self._active.is_active

    def messages(self) -> tuple[Message, ...]:
        return self.store.snapshot()

    # ── Streaming ───────────────────────────────────────────────────────────

    async def submit(self, prompt: str, upload: UploadRef | None = None) -> StreamAssembler | None:
        """Send ``prompt`` and start streaming the reply.

        Creates a session first when none is selected. Returns the running
        assembler, or None when the session could not be created or another
        selection took over the view while this call was waiting.
        """
        self.cancel()
        generation = self._load_generation

        # The pending history replaces the whole store when it lands
        if self.history_loading:
            await self._history_loaded.wait()
            if generation != self._load_generation:
                logger.info("submit_superseded", reason="session_changed")
                return None

        session_id = self.session_id
        if session_id is None:
            try:
                session_id = await self._sessions.create_session()
            except ChatlineError as e:
                logger.warning("session_create_failed", error=e.message)
                self.events.notice(notice_text(e))
                return None
            await self._guarded(self.refresh_sessions())
            # Another selection or submit claimed the view while the session was created
            if generation != self._load_generation or self.session_id is not None:
                logger.info("submit_superseded", reason="session_changed", orphan_session_id=session_id)
                return None
            self.session_id = session_id
            self.events.emit(ChatEvent.SESSION_CREATED, {"session_id": session_id})

        attachment = None
        if upload is not None:
            attachment = Attachment(content_type=upload.content_type, url=upload.url or upload.upload_id)

        self.store.append(
            Message(role="user", content=prompt, attachment=attachment, status=LifecycleStatus.SUCCESS)
        )
        assistant_key = self.store.append(Message(role="assistant", status=LifecycleStatus.PENDING))

        model = self.selected_model or self.default_model
        request = ChatRequest(
            session_id=session_id,
            prompt=prompt,
            provider_id=model.provider_id if model else None,
            model_name=model.model_name if model else None,
            upload_id=upload.upload_id if upload else None,
            content_type=upload.content_type if upload else None,
        )

        # A second submit may have started while this one waited on history
        self.cancel()
        assembler = StreamAssembler(self.store, assistant_key, on_finish=self._stream_finished)
        self._active = assembler
        return assembler.open(self._streaming, request)

    def cancel(self) -> None:
        """Abort the in-flight stream, if any. Cancelling is not an error."""
        assembler, self._active = self._active, None
        if assembler is not None:
            assembler.cancel()

    def _stream_finished(self, assembler: StreamAssembler) -> None:
        if assembler.state == StreamState.ERROR and assembler.error is not None:
            self.events.notice(notice_text(assembler.error, "The reply stream failed."))
        if self._active is assembler:
            self._active = None

    # ── Sessions ────────────────────────────────────────────────────────────

    async def select_session(self, session_id: str) -> tuple[Message, ...]:
        """Make ``session_id`` active and load its history into the store."""
        if session_id == self.session_id:
            return self.store.snapshot()

        self.cancel()
        self.session_id = session_id
        self._load_generation += 1
        generation = self._load_generation
        self.store.clear()
        self.history_loading = True
        self._history_loaded.clear()

        try:
            await self._load_history(session_id, generation)
        finally:
            # Waiting submits resume only once the store holds the history
            if generation == self._load_generation:
                self.history_loading = False
                self._history_loaded.set()
        return self.store.snapshot()

    async def _load_history(self, session_id: str, generation: int) -> None:
        try:
            raw = await self._sessions.fetch_history(session_id)
        except ChatlineError as e:
            logger.warning("history_fetch_failed", session_id=session_id, error=e.message)
            self.events.notice(notice_text(e))
            raw = []

        if generation != self._load_generation:
            logger.info("history_load_discarded", session_id=session_id)
            return

        self.store.replace_all(reconstruct(raw))
        logger.info("history_loaded", session_id=session_id, messages=len(self.store))

    def clear(self) -> None:
        """Reset to a blank, session-less chat."""
        self.cancel()
        self._load_generation += 1
        self.history_loading = False
        self._history_loaded.set()
        self.session_id = None
        self.store.clear()

    async def refresh_sessions(self) -> list[SessionSummary]:
        self.sessions = await self._sessions.list_sessions()
        if self.session_id and not any(s.session_id == self.session_id for s in self.sessions):
            logger.info("active_session_vanished", session_id=self.session_id)
            self.clear()
        return self.sessions

    async def rename_session(self, session_id: str, title: str) -> None:
        trimmed = title.strip()
        if not trimmed:
            return
        await self._sessions.rename_session(session_id, trimmed)
        await self.refresh_sessions()

    async def delete_sessions(self, session_ids: str | list[str]) -> bool:
        """Delete one or more sessions; returns True if the active one was among them."""
        keys = [session_ids] if isinstance(session_ids, str) else list(session_ids)
        deleted_active = self.session_id is not None and self.session_id in keys

        await self._sessions.delete_sessions(keys)
        if deleted_active:
            self.clear()
        await self.refresh_sessions()
        return deleted_active

    # ── Models ──────────────────────────────────────────────────────────────

    def select_model(self, model: ModelSelector | None) -> None:
        self.selected_model = model

    async def load_models(self) -> None:
        if self._models is None:
            return
        try:
            self.default_model = await self._models.get_default_model()
            self.model_providers = await self._models.list_models()
        except ChatlineError as e:
            logger.warning("model_directory_failed", error=e.message)
            self.events.notice(notice_text(e))

    # ── Event bus reactions ─────────────────────────────────────────────────

    def _on_login_success(self, _data: dict[str, Any]) -> None:
        self._schedule(self.refresh_sessions())
        self._schedule(self.load_models())

    def _on_model_changed(self, _data: dict[str, Any]) -> None:
        self._schedule(self.load_models())

    def _schedule(self, coro: Coroutine[Any, Any, Any]) -> None:
        task = asyncio.get_running_loop().create_task(self._guarded(coro))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _guarded(self, coro: Coroutine[Any, Any, Any]) -> None:
        try:
            await coro
        except ChatlineError as e:
            logger.warning("background_refresh_failed", error=e.message)
            self.events.notice(notice_text(e))

    async def close(self) -> None:
        self.cancel()
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.wait(self._background)
