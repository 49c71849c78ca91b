from collections.abc import AsyncIterator
from typing import Any
from urllib.parse import quote

import httpx
import structlog

from chatline.core.exceptions import AuthenticationError, ChatlineError, NotFoundError, TransportError
from chatline.schemas.sessions import ChatRequest, ModelProvider, ModelSelector, SessionSummary
from chatline.services.transport.base import ModelDirectory, SessionTransport, StreamingTransport

logger = structlog.get_logger()

SUCCESS_CODE = "SUCCESS"


def _status_error(response: httpx.Response) -> ChatlineError:
    """Map an HTTP error response onto the client error taxonomy."""
    status = response.status_code
    if status == 401:
        return AuthenticationError()
    if status == 403:
        return TransportError("You do not have access to this resource.", status=403)
    if status == 404:
        return NotFoundError("The requested resource does not exist.")
    if status == 500:
        return TransportError("Server error, please try again later.", status=500)

    message = f"Request failed ({status})"
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        message = body.get("msg") or body.get("message") or message
    return TransportError(message, status=status)


def _unwrap(response: httpx.Response) -> Any:
    """Return the ``data`` field of a ``{code, msg, success, data}`` envelope.

    Bodies without envelope fields are returned as-is.
    """
    if not response.content:
        return None
    try:
        payload = response.json()
    except ValueError:
        return response.text

    if isinstance(payload, dict) and ({"code", "success", "data"} & payload.keys()):
        code = payload.get("code")
        if payload.get("success") is False or (code and code != SUCCESS_CODE):
            raise TransportError(payload.get("msg") or "Request failed.", status=response.status_code)
        return payload.get("data")
    return payload


class ChatServerClient(SessionTransport, StreamingTransport, ModelDirectory):
    """httpx client for the chat server's session, chat and model endpoints."""

    def __init__(
        self,
        base_url: str,
        http_client: httpx.AsyncClient | None = None,
        auth_token: str | None = None,
        connect_timeout: float = 5.0,
        read_timeout: float = 120.0,
        request_timeout: float = 30.0,
    ):
        self.base_url = base_url.rstrip("/")
        self._headers = {"Auth-Token": auth_token} if auth_token else {}
        # Non-streaming calls only; stream_chat keeps the client read timeout
        self._request_timeout = httpx.Timeout(request_timeout, connect=connect_timeout)
        self._client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(connect=connect_timeout, read=read_timeout, write=5.0, pool=5.0)
        )

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        url = f"{self.base_url}{path}"
        try:
            response = await self._client.request(
                method, url, headers=self._headers, timeout=self._request_timeout, **kwargs
            )
            response.raise_for_status()
        except httpx.ConnectError as e:
            raise TransportError(f"Cannot connect to chat server at {self.base_url}: {e}")
        except httpx.TimeoutException:
            raise TransportError("Request timed out, please try again later.", status=504)
        except httpx.HTTPStatusError as e:
            raise _status_error(e.response)
        except httpx.HTTPError as e:
            raise TransportError(f"Request to chat server failed: {e}")
        return _unwrap(response)

    # ── Sessions ────────────────────────────────────────────────────────────

    async def list_sessions(self) -> list[SessionSummary]:
        data = await self._request("GET", "/session/list")
        return [SessionSummary.model_validate(item) for item in data or []]

    async def create_session(self) -> str:
        data = await self._request("POST", "/session/create")
        if not data:
            raise TransportError("Server did not return a session id.", status=502)
        return str(data)

    async def fetch_history(self, session_id: str) -> list[dict[str, Any]]:
        data = await self._request("GET", f"/session/messages/{quote(session_id, safe='')}")
        if data is None:
            return []
        if not isinstance(data, list):
            raise TransportError("Malformed history payload.", status=502)
        return data

    async def rename_session(self, session_id: str, title: str) -> None:
        await self._request(
            "PUT",
            f"/session/modify/title/{quote(session_id, safe='')}/{quote(title, safe='')}",
        )

    async def delete_sessions(self, session_ids: list[str]) -> None:
        await self._request("DELETE", "/session/delete", json=list(session_ids))

    # ── Chat stream ─────────────────────────────────────────────────────────

    async def stream_chat(self, request: ChatRequest) -> AsyncIterator[str]:
        """POST the prompt and yield the response body as it arrives."""
        url = f"{self.base_url}/chat/v1/chat"
        try:
            async with self._client.stream(
                "POST", url, json=request.to_payload(), headers=self._headers
            ) as response:
                if response.is_error:
                    await response.aread()
                    raise _status_error(response)
                logger.debug("chat_stream_connected", session_id=request.session_id)
                async for piece in response.aiter_text():
                    if piece:
                        yield piece
        except httpx.ConnectError as e:
            raise TransportError(f"Cannot connect to chat server at {self.base_url}: {e}")
        except httpx.TimeoutException:
            raise TransportError("Chat stream timed out.", status=504)
        except httpx.HTTPError as e:
            raise TransportError(f"Chat stream failed: {e}")

    # ── Models ──────────────────────────────────────────────────────────────

    async def get_default_model(self) -> ModelSelector | None:
        data = await self._request("GET", "/model/default")
        return ModelSelector.model_validate(data) if data else None

    async def list_models(self) -> list[ModelProvider]:
        data = await self._request("GET", "/model/list")
        return [ModelProvider.model_validate(item) for item in data or []]

    async def close(self):
        """Close the underlying HTTP client."""
        await self._client.aclose()
