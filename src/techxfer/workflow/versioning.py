"""Overwrite-by-name uploads and comment migration.

File names are the identity of "the current version of X" inside a
session.  The server never overwrites, so replacing a file means uploading
a new blob and deleting the old one(s), carrying their comments over to the
new blob id.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from techxfer.api.client import SessionStoreClient, SessionStoreError
from techxfer.models import Blob, UploadFile
from techxfer.workflow.blobs import BlobCache
from techxfer.workflow.content import COMMENTS_KEY
from techxfer.workflow.exceptions import SubmissionError
from techxfer.workflow.patcher import ContentPatcher
from techxfer.workflow.projection import METADATA_FILE_NAME, serialize_csv
from techxfer.workflow.store import FreshnessToken, SessionStore

logger = logging.getLogger(__name__)

TEXT_SUFFIXES = (".txt", ".md")


def text_entry_name(title: str) -> str:
    """File name for a pasted text entry: ``.txt`` is appended unless present."""
    title = title.strip()
    if title.lower().endswith(TEXT_SUFFIXES):
        return title
    return f"{title}.txt"


class UploadVersioningManager:
    """Uploads files so that at most one blob per name survives."""

    def __init__(
        self,
        client: SessionStoreClient,
        store: SessionStore,
        blobs: BlobCache,
        patcher: ContentPatcher,
    ) -> None:
        self._client = client
        self._store = store
        self._blobs = blobs
        self._patcher = patcher

    async def upload(self, files: list[UploadFile]) -> list[Blob]:
        """Upload *files* into the active session, replacing same-name blobs.

        Per file: detach the comments of every existing blob with that name,
        delete those blobs, upload the new file and re-key the detached
        comments onto the new blob id.  Old blobs are deleted before the
        upload, so a failed upload leaves the name missing until the user
        uploads again; that failure is logged.  A name repeated within the
        batch replaces the version uploaded earlier in the same batch.  The
        merged comment map is written once for the batch and the blob list
        is refreshed once, even when the first upload fails.

        Raises:
            SubmissionError: The upload of the first file failed.
        """
        session = self._store.require_session()
        token = self._store.guard(session.id)
        comments = {k: list(v) for k, v in self._store.state.comments.items()}
        comments_changed = False
        deleted: set[str] = set()
        uploaded: dict[str, Blob] = {}

        try:
            for index, upload in enumerate(files):
                old_blobs = [
                    b for b in self._blobs.by_name(upload.file_name) if b.id not in deleted
                ]
                earlier = uploaded.pop(upload.file_name, None)
                if earlier is not None:
                    old_blobs.append(earlier)
                detached: list[str] = []
                for old in old_blobs:
                    detached.extend(comments.pop(old.id, []))
                    await self._delete_quietly(old)
                    deleted.add(old.id)

                try:
                    new_blob = await self._client.upload_blob(session.id, upload)
                except SessionStoreError as exc:
                    if index == 0:
                        logger.error("Upload of %s failed: %s", upload.file_name, exc)
                        raise SubmissionError(
                            f"Upload of {upload.file_name} failed: {exc}"
                        ) from exc
                    logger.error(
                        "Upload of %s failed after replacing %d old version(s): %s",
                        upload.file_name,
                        len(old_blobs),
                        exc,
                    )
                    comments_changed = comments_changed or bool(detached)
                    continue

                logger.info("Uploaded %s as blob %s", upload.file_name, new_blob.id)
                uploaded[upload.file_name] = new_blob
                if old_blobs:
                    comments_changed = True
                if detached:
                    comments[new_blob.id] = detached

            if comments_changed:
                await self._persist_comments(token, comments)
        finally:
            await self._blobs.try_refresh(session.id)
        return self._blobs.blobs

    async def save_text_entry(self, title: str, text: str) -> list[Blob]:
        """Store pasted text as a ``.txt`` file, replacing a same-name entry."""
        upload = UploadFile(text_entry_name(title), text.encode("utf-8"), "text/plain")
        return await self.upload([upload])

    async def save_csv(self, blob: Blob, rows: list[list[str]]) -> Blob:
        """Write an edited grid back as a new version of *blob*.

        Upload first, then migrate comments, then delete the old version(s).

        Raises:
            SubmissionError: The upload failed; nothing was deleted.
        """
        session = self._store.require_session()
        token = self._store.guard(session.id)
        upload = UploadFile(blob.file_name, serialize_csv(rows).encode("utf-8"), "text/csv")
        new_blob = await self._upload_new(session.id, upload)

        old_blobs = [b for b in self._blobs.by_name(blob.file_name) if b.id != new_blob.id]
        if blob.id not in {b.id for b in old_blobs}:
            old_blobs.insert(0, blob)
        await self._migrate_comments(token, old_blobs, new_blob)
        for old in old_blobs:
            await self._delete_quietly(old)

        if self._store.is_fresh(token):
            csv_data = self._store.state.csv_data
            for old in old_blobs:
                csv_data.pop(old.id, None)
            csv_data[new_blob.id] = [list(row) for row in rows]
        await self._blobs.try_refresh(session.id)
        return new_blob

    async def save_metadata(self, metadata: Any) -> Blob:
        """Write *metadata* as a new ``metadata.json`` and drop the old ones.

        Raises:
            SubmissionError: The upload failed; nothing was deleted.
        """
        session = self._store.require_session()
        token = self._store.guard(session.id)
        upload = UploadFile(
            METADATA_FILE_NAME,
            json.dumps(metadata, indent=2).encode("utf-8"),
            "application/json",
        )
        new_blob = await self._upload_new(session.id, upload)

        old_blobs = [b for b in self._blobs.by_name(METADATA_FILE_NAME) if b.id != new_blob.id]
        await self._migrate_comments(token, old_blobs, new_blob)
        for old in old_blobs:
            await self._delete_quietly(old)

        if self._store.is_fresh(token):
            self._store.state.metadata = metadata
            self._store.state.metadata_blob_id = new_blob.id
        await self._blobs.try_refresh(session.id)
        return new_blob

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    async def _upload_new(self, session_id: str, upload: UploadFile) -> Blob:
        try:
            new_blob = await self._client.upload_blob(session_id, upload)
        except SessionStoreError as exc:
            logger.error("Saving %s failed: %s", upload.file_name, exc)
            raise SubmissionError(f"Saving {upload.file_name} failed: {exc}") from exc
        logger.info("Saved %s as blob %s", upload.file_name, new_blob.id)
        return new_blob

    async def _migrate_comments(
        self, token: FreshnessToken, old_blobs: list[Blob], new_blob: Blob
    ) -> None:
        comments = {k: list(v) for k, v in self._store.state.comments.items()}
        moved: list[str] = []
        for old in old_blobs:
            moved.extend(comments.pop(old.id, []))
        if not moved:
            return
        comments[new_blob.id] = comments.get(new_blob.id, []) + moved
        await self._persist_comments(token, comments)

    async def _persist_comments(
        self, token: FreshnessToken, comments: dict[str, list[str]]
    ) -> None:
        if not self._store.is_fresh(token):
            logger.debug("Session switched, dropping comment migration for %s", token.session_id)
            return
        self._store.state.comments = comments
        await self._patcher.patch(**{COMMENTS_KEY: comments})

    async def _delete_quietly(self, blob: Blob) -> None:
        try:
            await self._client.delete_blob(blob.id)
        except SessionStoreError as exc:
            logger.warning("Failed to delete old version %s (%s): %s", blob.file_name, blob.id, exc)
