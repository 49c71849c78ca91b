from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from typing import Any

from chatline.schemas.sessions import ChatRequest, ModelProvider, ModelSelector, SessionSummary


class SessionTransport(ABC):
    @abstractmethod
    async def list_sessions(self) -> list[SessionSummary]:
        """List the user's sessions, most recent first."""
        ...

    @abstractmethod
    async def create_session(self) -> str:
        """Create an empty session and return its id."""
        ...

    @abstractmethod
    async def fetch_history(self, session_id: str) -> list[dict[str, Any]]:
        """Fetch the raw persisted history records of a session."""
        ...

    @abstractmethod
    async def rename_session(self, session_id: str, title: str) -> None:
        ...

    @abstractmethod
    async def delete_sessions(self, session_ids: list[str]) -> None:
        ...


class StreamingTransport(ABC):
    @abstractmethod
    def stream_chat(self, request: ChatRequest) -> AsyncIterator[str]:
        """Stream the raw response body as text pieces (not line-aligned).

        Closing or cancelling the iterator aborts the underlying request.
        """
        ...


class ModelDirectory(ABC):
    @abstractmethod
    async def get_default_model(self) -> ModelSelector | None:
        ...

    @abstractmethod
    async def list_models(self) -> list[ModelProvider]:
        ...
