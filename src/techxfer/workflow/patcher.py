"""Read-merge-write of the session ``content`` document."""

from __future__ import annotations

import logging
from typing import Any

from techxfer.api.client import SessionStoreClient
from techxfer.workflow.content import OWNED_KEYS, patch_content
from techxfer.workflow.store import SessionStore

logger = logging.getLogger(__name__)


class ContentPatcher:
    """The only writer of session ``content``.

    Starts from the latest content known locally, merges the owned keys,
    persists the whole document and then applies the same payload locally.

    Two patches issued concurrently each start from their own snapshot, so
    the later write can drop the earlier one's key.  The server offers no
    version token to detect this; callers serialize writes where it matters.
    """

    def __init__(self, client: SessionStoreClient, store: SessionStore) -> None:
        self._client = client
        self._store = store

    async def patch(self, **updates: Any) -> str:
        """Persist *updates* into the active session's content.

        Returns:
            The serialized document that was written.

        Raises:
            ValueError: A key outside :data:`OWNED_KEYS` was given.
            NoActiveSession: Nothing is selected.
            SessionStoreError: The update call failed.
        """
        unowned = sorted(set(updates) - OWNED_KEYS)
        if unowned:
            raise ValueError(f"Refusing to write content keys owned by the agent: {unowned}")
        session = self._store.require_session()
        token = self._store.guard(session.id)
        payload = patch_content(session.content, **updates)
        await self._client.update_session_content(session.id, payload)
        if not self._store.apply_content(token, payload):
            logger.debug("Session switched while saving content of %s", session.id)
        return payload
