"""Workbench facade wiring the workflow components for one client.

Usage::

    async with SessionWorkbench.from_config(load_workbench_config()) as wb:
        await wb.select_session("s-123")
        await wb.upload([UploadFile.from_path(Path("bom.xlsx"))])
        outcome = await wb.convert(StartType.BOM, ["Production"])
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from techxfer.api.client import SessionStoreClient
from techxfer.models import (
    Blob,
    Project,
    Session,
    SessionStatus,
    StartType,
    UploadFile,
    WizardStep,
    WorkbenchConfig,
    WorkflowStage,
)
from techxfer.workflow import prompts
from techxfer.workflow.blobs import BlobCache
from techxfer.workflow.content import Lifecycle
from techxfer.workflow.exceptions import StageGateError
from techxfer.workflow.overlay import CommentLifecycleOverlay
from techxfer.workflow.patcher import ContentPatcher
from techxfer.workflow.poller import PollOutcome, ProgressListener, TaskQueuePoller
from techxfer.workflow.projection import MetadataProjection
from techxfer.workflow.stages import StageMachine, infer_initial_view
from techxfer.workflow.store import SessionStore, WorkbenchState
from techxfer.workflow.versioning import UploadVersioningManager

logger = logging.getLogger(__name__)


class SessionWorkbench:
    """One user's view of one project's sessions.

    Owns the local store, so every component sees the same active session
    and the same freshness generation.
    """

    def __init__(
        self,
        client: SessionStoreClient,
        config: WorkbenchConfig | None = None,
        *,
        sleep: Any = asyncio.sleep,
        listener: ProgressListener | None = None,
    ) -> None:
        self.client = client
        self.config = config or WorkbenchConfig()
        self.store = SessionStore()
        self.projection = MetadataProjection(client, self.store)
        self.blobs = BlobCache(client, self.store, self.projection)
        self.patcher = ContentPatcher(client, self.store)
        self.stages = StageMachine(self.patcher, self.store)
        self.overlay = CommentLifecycleOverlay(client, self.store, self.patcher)
        self.versioning = UploadVersioningManager(client, self.store, self.blobs, self.patcher)
        self.poller = TaskQueuePoller(
            client, self.store, self.blobs, self.config, sleep=sleep, listener=listener
        )
        self.polling_task: asyncio.Task[PollOutcome] | None = None

    @classmethod
    def from_config(cls, config: WorkbenchConfig, **kwargs: Any) -> SessionWorkbench:
        client = SessionStoreClient(
            config.api_url, config.token, timeout=config.request_timeout_seconds
        )
        return cls(client, config, **kwargs)

    async def __aenter__(self) -> SessionWorkbench:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def close(self) -> None:
        if self.polling_task is not None and not self.polling_task.done():
            self.polling_task.cancel()
        await self.client.close()

    @property
    def state(self) -> WorkbenchState:
        return self.store.state

    def _active(self) -> Session:
        return self.store.require_session()

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    async def select_session(self, session_id: str, *, resume_polling: bool = True) -> Session:
        """Make *session_id* active and load its blobs.

        A session that is still processing resumes polling in the
        background (unless *resume_polling* is false); the task is kept on
        :attr:`polling_task`.

        Raises:
            SessionStoreError: The session could not be fetched.
        """
        session = await self.client.get_session(session_id)
        self.store.select(session)
        view = infer_initial_view(session)
        self.state.stage = view.stage
        self.state.wizard_step = view.wizard_step

        await self.blobs.try_refresh(session.id)
        if view.resume_polling and resume_polling:
            logger.info("Session %s is processing, resuming polling", session.id)
            self.polling_task = asyncio.create_task(self.poller.resume(session.id))
        return self.state.session or session

    def clear_selection(self) -> None:
        self.store.select(None)

    # ------------------------------------------------------------------
    # Projects and sessions
    # ------------------------------------------------------------------

    async def load_project(self, project_id: str) -> tuple[Project, list[Session]]:
        """Fetch a project and its sessions together."""
        project, sessions = await asyncio.gather(
            self.client.get_project(project_id),
            self.client.list_sessions(project_id),
        )
        return project, sessions

    async def create_session(self, project_id: str, title: str) -> Session:
        """Create a session in *project_id* and make it the active one.

        Raises:
            ValueError: *title* is blank.
            SessionStoreError: The session could not be created.
        """
        title = title.strip()
        if not title:
            raise ValueError("Session title cannot be empty")
        created = await self.client.create_session(project_id, title)
        logger.info("Created session %s (%s) in project %s", created.id, title, project_id)
        return await self.select_session(created.id)

    async def delete_session(self, session_id: str) -> None:
        """Delete *session_id*; if it is the active one, nothing stays selected.

        Raises:
            SessionStoreError: The delete call failed; the selection is kept.
        """
        await self.client.delete_session(session_id)
        logger.info("Deleted session %s", session_id)
        active = self.state.session
        if active is not None and active.id == session_id:
            self.clear_selection()

    async def refresh_blobs(self) -> list[Blob]:
        return await self.blobs.refresh()

    async def refresh_session(self) -> Session:
        """Re-fetch the active session record (status, pending tasks, content)."""
        session = self._active()
        token = self.store.guard(session.id)
        fresh = await self.client.get_session(session.id)
        self.store.apply_session(token, fresh)
        return self.state.session or fresh

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    async def change_stage(self, stage: WorkflowStage, *, force: bool = False) -> Session:
        """Move the active session to *stage*.

        Entering verification needs loaded metadata and no batch in flight;
        *force* skips that check (the edge itself is always validated).

        Raises:
            InvalidStageTransition: *stage* is not reachable from the current stage.
            StageGateError: Verification preconditions are not met.
        """
        self._active()
        if stage == WorkflowStage.VERIFICATION and not force:
            if self.state.metadata is None:
                raise StageGateError("metadata.json has not been generated yet")
            if self.state.processing:
                raise StageGateError("A task batch is still running")
        return await self.stages.transition(stage)

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    async def upload(self, files: list[UploadFile]) -> list[Blob]:
        return await self.versioning.upload(files)

    async def save_text_entry(self, title: str, text: str) -> list[Blob]:
        return await self.versioning.save_text_entry(title, text)

    async def save_csv(self, blob: Blob, rows: list[list[str]] | None = None) -> Blob:
        """Persist the cached grid of *blob* (or *rows*) as its new version."""
        if rows is None:
            rows = self.state.csv_data.get(blob.id)
        if rows is None:
            raise ValueError(f"No CSV data loaded for {blob.file_name}")
        return await self.versioning.save_csv(blob, rows)

    async def save_metadata(self, metadata: Any | None = None) -> Blob:
        if metadata is None:
            metadata = self.state.metadata
        if metadata is None:
            raise ValueError("No metadata to save")
        return await self.versioning.save_metadata(metadata)

    async def download(self, blob: Blob) -> bytes:
        return await self.client.download_blob(blob.id)

    # ------------------------------------------------------------------
    # Task batches
    # ------------------------------------------------------------------

    async def convert(
        self,
        start_type: StartType | None,
        selected_docs: list[str],
        *,
        product_description: str = "",
    ) -> PollOutcome:
        """Queue the conversion batch for the active session and poll it.

        Raises:
            SubmissionError: The queue request failed.
        """
        session = self._active()
        self.state.start_type = start_type
        self.state.selected_docs = list(selected_docs)
        self.state.product_description = product_description
        tasks = prompts.build_conversion_tasks(
            start_type,
            self.config.target_columns,
            selected_docs,
            project_id=session.project_id,
            product_description=product_description,
        )
        return await self.poller.run_batch(session.id, tasks)

    async def generate_metadata(self) -> PollOutcome:
        """Queue the five-step metadata batch.  No-op while processing."""
        session = self._active()
        if session.known_status == SessionStatus.PROCESSING or self.state.processing:
            logger.warning("Session %s is busy, not generating metadata", session.id)
            return PollOutcome.SKIPPED
        return await self.poller.run_batch(session.id, prompts.build_metadata_tasks())

    async def cancel(self) -> None:
        await self.poller.cancel(self._active().id)

    async def retry(self) -> PollOutcome:
        """Re-run the whole batch after an error.  No-op while processing."""
        session = self._active()
        if self.state.processing:
            return PollOutcome.SKIPPED
        return await self.poller.retry(session.id)

    def ignore_error(self) -> None:
        """Continue into review despite an execution error."""
        self.state.wizard_step = WizardStep.REVIEW

    def reset_wizard(self) -> None:
        """Back to the first wizard step; uploaded files stay."""
        self.state.wizard_step = WizardStep.START
        self.state.selected_docs = []

    # ------------------------------------------------------------------
    # One-shot agent calls
    # ------------------------------------------------------------------

    async def sync_metadata(self) -> list[Blob]:
        """Ask the agent to bring ``metadata.json`` up to date, then reload blobs."""
        return await self._chat_then_refresh(prompts.metadata_sync_prompt())

    async def generate_critique(self) -> list[Blob]:
        return await self._chat_then_refresh(prompts.critique_prompt())

    async def _chat_then_refresh(self, prompt: str) -> list[Blob]:
        session = self._active()
        await self.client.chat(session.id, prompt)
        await self.refresh_session()
        return await self.blobs.refresh(session.id)

    # ------------------------------------------------------------------
    # Overlay
    # ------------------------------------------------------------------

    async def add_comment(self, blob_id: str, text: str) -> dict[str, list[str]]:
        return await self.overlay.add_comment(blob_id, text)

    async def update_lifecycle(self, steps: list[str], current_step: int = 0) -> Lifecycle:
        return await self.overlay.update_lifecycle(steps, current_step)

    async def generate_lifecycle(self) -> Lifecycle:
        return await self.overlay.generate_lifecycle()

