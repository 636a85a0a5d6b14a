"""Metadata projection: ``metadata.json`` and CSV tables derived from the blob set.

Reading and writing CSV are deliberately asymmetric.  Reads split naively on
newlines and commas with no quote handling; writes quote any cell holding a
comma, quote or newline (RFC 4180 style).  A cell ``a,b`` therefore survives a
save as ``"a,b"`` in the raw text but shows up as two cells on the next read.
"""

from __future__ import annotations

import asyncio
import json
import logging

from techxfer.api.client import SessionStoreClient, SessionStoreError
from techxfer.models import Blob
from techxfer.workflow.store import FreshnessToken, SessionStore

logger = logging.getLogger(__name__)

METADATA_FILE_NAME = "metadata.json"


def parse_csv(text: str) -> list[list[str]]:
    """Split *text* into a grid on ``\\n`` and ``,`` without quote handling."""
    return [row.split(",") for row in text.split("\n")]


def _escape_cell(cell: str) -> str:
    if "," in cell or '"' in cell or "\n" in cell:
        return '"' + cell.replace('"', '""') + '"'
    return cell


def serialize_csv(rows: list[list[str]]) -> str:
    """Serialize a grid with RFC 4180 quoting, rows joined by ``\\n``."""
    return "\n".join(",".join(_escape_cell(cell) for cell in row) for row in rows)


def find_metadata_blob(blobs: list[Blob]) -> Blob | None:
    """Return the current ``metadata.json`` blob.

    With several candidates (transient during a replace) the newest by
    ``created_at`` wins; blobs without a timestamp rank by list order.
    """
    candidates = [b for b in blobs if b.file_name == METADATA_FILE_NAME]
    if not candidates:
        return None
    best = candidates[0]
    for blob in candidates[1:]:
        if blob.created_at and (best.created_at is None or blob.created_at > best.created_at):
            best = blob
    return best


class MetadataProjection:
    """Keeps ``state.metadata`` and ``state.csv_data`` in line with the blob list."""

    def __init__(self, client: SessionStoreClient, store: SessionStore) -> None:
        self._client = client
        self._store = store

    async def sync(self, token: FreshnessToken) -> None:
        """Re-scan the active blob list for metadata and CSV blobs.

        Fetch or decode failures keep the previous values and are logged.
        """
        if not self._store.is_fresh(token):
            return
        blobs = list(self._store.state.blobs)
        await self._sync_metadata(token, blobs)
        await self._sync_csv(token, blobs)

    async def _sync_metadata(self, token: FreshnessToken, blobs: list[Blob]) -> None:
        state = self._store.state
        blob = find_metadata_blob(blobs)
        if blob is None:
            state.metadata = None
            state.metadata_blob_id = None
            return
        if blob.id == state.metadata_blob_id:
            return

        try:
            raw = await self._client.download_blob(blob.id)
            data = json.loads(raw)
        except (SessionStoreError, ValueError) as exc:
            logger.warning("Failed to load %s (%s): %s", METADATA_FILE_NAME, blob.id, exc)
            return

        if not self._store.is_fresh(token):
            logger.debug("Dropped stale metadata for %s", token.session_id)
            return
        state = self._store.state
        state.metadata = data
        state.metadata_blob_id = blob.id
        logger.debug("Loaded metadata from blob %s", blob.id)

    async def _sync_csv(self, token: FreshnessToken, blobs: list[Blob]) -> None:
        if not self._store.is_fresh(token):
            return
        state = self._store.state
        live_ids = {b.id for b in blobs}
        for stale_id in [bid for bid in state.csv_data if bid not in live_ids]:
            del state.csv_data[stale_id]

        missing = [b for b in blobs if b.is_csv and b.id not in state.csv_data]
        if not missing:
            return

        results = await asyncio.gather(
            *(self._client.download_blob(b.id) for b in missing),
            return_exceptions=True,
        )
        if not self._store.is_fresh(token):
            logger.debug("Dropped stale CSV content for %s", token.session_id)
            return

        for blob, result in zip(missing, results):
            if isinstance(result, SessionStoreError):
                logger.warning("Failed to load CSV %s (%s): %s", blob.file_name, blob.id, result)
                continue
            if isinstance(result, BaseException):
                raise result
            text = result.decode("utf-8", errors="replace")
            self._store.state.csv_data[blob.id] = parse_csv(text)

    def update_cell(self, blob_id: str, row: int, col: int, value: str) -> None:
        """Edit one cell of a cached grid in place (no persistence)."""
        rows = self._store.state.csv_data.get(blob_id)
        if rows is None:
            return
        rows[row][col] = value
