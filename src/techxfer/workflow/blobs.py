"""In-memory mirror of the active session's blobs."""

from __future__ import annotations

import logging

from techxfer.api.client import SessionStoreClient, SessionStoreError
from techxfer.models import Blob
from techxfer.workflow.projection import MetadataProjection
from techxfer.workflow.store import FreshnessToken, SessionStore

logger = logging.getLogger(__name__)


class BlobCache:
    """Read-through blob cache invalidated only by explicit refreshes.

    A refresh started for one session is discarded if another session is
    active by the time the response arrives.  Every applied refresh re-runs
    the metadata projection.
    """

    def __init__(
        self,
        client: SessionStoreClient,
        store: SessionStore,
        projection: MetadataProjection,
    ) -> None:
        self._client = client
        self._store = store
        self._projection = projection

    @property
    def blobs(self) -> list[Blob]:
        return self._store.state.blobs

    def by_name(self, file_name: str) -> list[Blob]:
        return [b for b in self._store.state.blobs if b.file_name == file_name]

    async def refresh(self, session_id: str | None = None) -> list[Blob]:
        """Fetch the blob list and apply it if the session is still active.

        Raises:
            SessionStoreError: The list call failed.
        """
        token = self._store.guard(session_id)
        blobs = await self._client.list_blobs(token.session_id)
        await self.apply(token, blobs)
        return self._store.state.blobs if self._store.is_fresh(token) else []

    async def try_refresh(self, session_id: str | None = None) -> None:
        """Refresh, logging instead of raising on failure."""
        try:
            await self.refresh(session_id)
        except SessionStoreError as exc:
            logger.error("Failed to load blobs: %s", exc)

    async def apply(self, token: FreshnessToken, blobs: list[Blob]) -> None:
        """Apply an already fetched blob list (used by the poller)."""
        if self._store.apply_blobs(token, blobs):
            logger.debug("Set %d blobs for %s", len(self._store.state.blobs), token.session_id)
            await self._projection.sync(token)
