"""HTTP client for the remote session store.

The store is the source of truth for projects, sessions, blobs and chat.
This wrapper only maps endpoints to typed models and HTTP failures to the
exception hierarchy below; merge and overwrite semantics live in
:mod:`techxfer.workflow`.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from techxfer.models import Blob, ChatMessage, Project, Session, UploadFile

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Custom exceptions
# ---------------------------------------------------------------------------


class SessionStoreError(Exception):
    """Base class for failures talking to the remote session store."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TransientError(SessionStoreError):
    """Network failures, timeouts, 429 and 5xx responses that may succeed on retry."""


class PermanentError(SessionStoreError):
    """Client errors (4xx except 429) that should not be retried."""


class NotFoundError(PermanentError):
    """The addressed resource does not exist (404)."""


class AuthenticationError(PermanentError):
    """The token is missing, expired or lacks access (401/403)."""


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class SessionStoreClient:
    """Async wrapper around the session store REST API.

    Usage::

        async with SessionStoreClient("https://api.example.com", token="...") as client:
            session = await client.get_session("s-123")
            blobs = await client.list_blobs(session.id)
    """

    def __init__(
        self,
        base_url: str,
        token: str | None = None,
        *,
        timeout: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._client = http_client or httpx.AsyncClient(
            base_url=base_url.rstrip("/"), timeout=timeout
        )
        self._headers = headers
        self._owns_client = http_client is None

    async def __aenter__(self) -> SessionStoreClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def close(self) -> None:
        """Close the underlying HTTP client if this wrapper created it."""
        if self._owns_client:
            await self._client.aclose()

    # ------------------------------------------------------------------
    # Projects and sessions
    # ------------------------------------------------------------------

    async def get_project(self, project_id: str) -> Project:
        data = await self._request("GET", f"/api/projects/{project_id}")
        return Project.model_validate(data)

    async def list_sessions(self, project_id: str) -> list[Session]:
        data = await self._request(
            "GET", "/api/sessions", params={"project_id": project_id}
        )
        return [Session.model_validate(item) for item in data or []]

    async def create_session(self, project_id: str, title: str) -> Session:
        data = await self._request(
            "POST", "/api/sessions", json={"title": title, "project_id": project_id}
        )
        return Session.model_validate(data)

    async def get_session(self, session_id: str) -> Session:
        data = await self._request("GET", f"/api/sessions/{session_id}")
        return Session.model_validate(data)

    async def update_session_content(self, session_id: str, content: str) -> Session | None:
        """Replace the session ``content`` string.

        The caller is responsible for merging with the latest known content
        first (see :func:`techxfer.workflow.content.patch_content`).
        """
        data = await self._request(
            "PUT", f"/api/sessions/{session_id}", json={"content": content}
        )
        if isinstance(data, dict) and "id" in data:
            return Session.model_validate(data)
        return None

    async def delete_session(self, session_id: str) -> None:
        await self._request("DELETE", f"/api/sessions/{session_id}")

    async def cancel_session(self, session_id: str) -> None:
        await self._request("POST", f"/api/sessions/{session_id}/cancel")

    async def retry_session(self, session_id: str) -> None:
        await self._request("POST", f"/api/sessions/{session_id}/retry")

    # ------------------------------------------------------------------
    # Blobs
    # ------------------------------------------------------------------

    async def list_blobs(self, session_id: str) -> list[Blob]:
        data = await self._request("GET", f"/api/sessions/{session_id}/blobs")
        return [Blob.model_validate(item) for item in data or []]

    async def upload_blob(self, session_id: str, upload: UploadFile) -> Blob:
        """Upload a file.  Always creates a new blob, never overwrites."""
        data = await self._request(
            "POST",
            f"/api/sessions/{session_id}/blobs",
            files={"file": (upload.file_name, upload.data, upload.content_type)},
        )
        return Blob.model_validate(data)

    async def delete_blob(self, blob_id: str) -> bool:
        """Delete a blob.  404 counts as success (already gone).

        Returns:
            ``True`` if deleted now, ``False`` if it was already gone.
        """
        try:
            await self._request("DELETE", f"/api/blobs/{blob_id}")
        except NotFoundError:
            logger.info("Blob already deleted (404): %s", blob_id)
            return False
        logger.debug("Deleted blob %s", blob_id)
        return True

    async def download_blob(self, blob_id: str) -> bytes:
        response = await self._send("GET", f"/api/blobs/{blob_id}/download")
        return response.content

    # ------------------------------------------------------------------
    # Agent
    # ------------------------------------------------------------------

    async def queue_tasks(self, session_id: str, tasks: list[str]) -> Any:
        return await self._request(
            "POST", f"/api/sessions/{session_id}/queue", json={"tasks": tasks}
        )

    async def chat(self, session_id: str, message: str) -> ChatMessage:
        data = await self._request(
            "POST", f"/api/sessions/{session_id}/chat", json={"message": message}
        )
        return ChatMessage.model_validate(data)

    async def list_messages(self, session_id: str) -> list[ChatMessage]:
        data = await self._request("GET", f"/api/sessions/{session_id}/messages")
        return [ChatMessage.model_validate(item) for item in data or []]

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    async def _request(self, method: str, url: str, **kwargs: Any) -> Any:
        response = await self._send(method, url, **kwargs)
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return None

    async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Send a request and translate failures into :class:`SessionStoreError`."""
        try:
            response = await self._client.request(
                method, url, headers=self._headers, **kwargs
            )
        except httpx.TransportError as exc:
            raise TransientError(f"{method} {url} failed: {exc}") from exc

        code = response.status_code
        if code < 400:
            return response

        detail = response.text[:200]
        message = f"{method} {url} returned {code}: {detail}"
        if code == 404:
            raise NotFoundError(message, code)
        if code in (401, 403):
            raise AuthenticationError(message, code)
        if code == 429 or code >= 500:
            raise TransientError(message, code)
        raise PermanentError(message, code)
