"""Queue-and-poll driver for agent task batches.

A batch is submitted in one request, then the session and its blobs are
polled together until the server reports a terminal status.  Polling runs on
``tenacity.AsyncRetrying``: a non-terminal poll is a "retry" on result, a
transient failure is a retry on exception with a longer wait, and the
attempt ceiling (failed polls included) plus the freshness guard are the
stop conditions.  A permanent error such as 404 or 401 ends the loop with
:attr:`PollOutcome.ERROR`.

Progress::

    completed = total_tasks - len(session.pending_tasks)
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from enum import Enum

from tenacity import AsyncRetrying, RetryCallState

from techxfer.api.client import PermanentError, SessionStoreClient, SessionStoreError
from techxfer.models import TERMINAL_STATUSES, SessionStatus, WizardStep, WorkbenchConfig
from techxfer.workflow.blobs import BlobCache
from techxfer.workflow.exceptions import SubmissionError
from techxfer.workflow.store import FreshnessToken, SessionStore

logger = logging.getLogger(__name__)

ProgressListener = Callable[[int | None, int | None, str], None]


class PollOutcome(str, Enum):
    """How a batch run ended."""

    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ERROR = "error"
    TIMED_OUT = "timed_out"
    ABANDONED = "abandoned"  # the user switched sessions
    SKIPPED = "skipped"  # another batch was already in flight


# Terminal status -> (status text, wizard step to land on)
_TERMINAL_VIEW: dict[SessionStatus, tuple[str, WizardStep, PollOutcome]] = {
    SessionStatus.COMPLETED: ("Completed.", WizardStep.REVIEW, PollOutcome.COMPLETED),
    SessionStatus.CANCELLED: ("Process Cancelled.", WizardStep.DELIVERABLES, PollOutcome.CANCELLED),
    SessionStatus.ERROR: ("Execution Error.", WizardStep.DELIVERABLES, PollOutcome.ERROR),
}


def progress_text(pending: int, total: int | None) -> str:
    if total:
        return f"Processing: {total - pending}/{total} tasks completed..."
    return f"Processing... {pending} tasks remaining"


class TaskQueuePoller:
    """Submits task batches and polls them to a terminal state.

    At most one batch is in flight per workbench: a second :meth:`run_batch`
    while ``state.processing`` is set returns :attr:`PollOutcome.SKIPPED`.
    The loop checks freshness before every state mutation and stops as soon
    as the session it was started for is no longer active.

    Args:
        client: Remote session store.
        store: Local state and freshness guard.
        blobs: Blob cache refreshed on every poll.
        config: Poll interval, error interval and attempt ceiling.
        sleep: Awaitable sleep, replaceable in tests.
        listener: Optional ``(completed, total, text)`` progress callback.
    """

    def __init__(
        self,
        client: SessionStoreClient,
        store: SessionStore,
        blobs: BlobCache,
        config: WorkbenchConfig | None = None,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        listener: ProgressListener | None = None,
    ) -> None:
        self._client = client
        self._store = store
        self._blobs = blobs
        self._config = config or WorkbenchConfig()
        self._sleep = sleep
        self.listener = listener

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def run_batch(self, session_id: str, tasks: list[str]) -> PollOutcome:
        """Queue *tasks* on *session_id* and poll until terminal.

        Raises:
            SubmissionError: The queue request failed; nothing was polled.
        """
        state = self._store.state
        if state.processing:
            logger.warning("A batch is already running for %s, ignoring request", session_id)
            return PollOutcome.SKIPPED

        token = self._store.guard(session_id)
        if not self._store.is_fresh(token):
            logger.info("Not queueing tasks for %s: session is not active", session_id)
            return PollOutcome.ABANDONED
        state.processing = True
        self._set_status(token, "Initiating Batch Process...")
        try:
            await self._client.queue_tasks(session_id, tasks)
        except SessionStoreError as exc:
            logger.error("Failed to queue %d tasks for %s: %s", len(tasks), session_id, exc)
            if self._store.is_fresh(token):
                state.processing = False
                state.processing_status = ""
            raise SubmissionError(f"Failed to queue tasks: {exc}") from exc

        logger.info("Queued %d tasks for session %s", len(tasks), session_id)
        return await self._poll(token, len(tasks))

    async def resume(self, session_id: str, total: int | None = None) -> PollOutcome:
        """Poll a session that is already processing (e.g. after re-selecting it)."""
        token = self._store.guard(session_id)
        if not self._store.is_fresh(token):
            logger.debug("Not resuming %s: session is no longer active", session_id)
            return PollOutcome.ABANDONED
        self._store.state.processing = True
        return await self._poll(token, total)

    async def cancel(self, session_id: str) -> None:
        """Request cancellation.  The loop sees ``cancelled`` on its next poll."""
        try:
            await self._client.cancel_session(session_id)
        except SessionStoreError as exc:
            logger.error("Cancel request for %s failed: %s", session_id, exc)
            return
        logger.info("Cancellation requested for %s", session_id)

    async def retry(self, session_id: str, total: int | None = None) -> PollOutcome:
        """Ask the server to re-run the batch, then poll from scratch.

        Raises:
            SubmissionError: The retry request failed.
        """
        token = self._store.guard(session_id)
        try:
            await self._client.retry_session(session_id)
        except SessionStoreError as exc:
            logger.error("Retry request for %s failed: %s", session_id, exc)
            raise SubmissionError(f"Failed to retry session: {exc}") from exc

        if self._store.is_fresh(token):
            self._store.state.processing = True
        logger.info("Retrying batch for session %s", session_id)
        return await self._poll(token, total)

    # ------------------------------------------------------------------
    # Polling loop
    # ------------------------------------------------------------------

    async def _poll(self, token: FreshnessToken, total: int | None) -> PollOutcome:
        try:
            outcome = await self._poll_until_terminal(token, total)
        finally:
            if self._store.is_fresh(token):
                self._store.state.processing = False

        if outcome is PollOutcome.ABANDONED:
            logger.info("Stopped polling %s: session no longer active", token.session_id)
        return outcome

    async def _poll_until_terminal(
        self, token: FreshnessToken, total: int | None
    ) -> PollOutcome:
        if not self._store.is_fresh(token):
            return PollOutcome.ABANDONED

        self._store.state.wizard_step = WizardStep.PROCESSING
        polls = 0
        max_polls = self._config.max_poll_attempts

        async def poll_once() -> PollOutcome | None:
            nonlocal polls
            if not self._store.is_fresh(token):
                return PollOutcome.ABANDONED

            polls += 1
            try:
                session, blobs = await asyncio.gather(
                    self._client.get_session(token.session_id),
                    self._client.list_blobs(token.session_id),
                )
            except PermanentError as exc:
                if not self._store.is_fresh(token):
                    return PollOutcome.ABANDONED
                return self._fail(token, exc)
            if not self._store.is_fresh(token):
                logger.debug("Dropped poll result for %s after session switch", token.session_id)
                return PollOutcome.ABANDONED

            self._store.apply_session(token, session)
            await self._blobs.apply(token, blobs)

            status = session.known_status
            if status in TERMINAL_STATUSES:
                return self._finish(token, status)

            pending = session.pending_count
            completed = total - pending if total else None
            self._set_status(token, progress_text(pending, total), completed, total)
            return None

        def should_retry(retry_state: RetryCallState) -> bool:
            outcome = retry_state.outcome
            if outcome.failed:
                exc = outcome.exception()
                if isinstance(exc, SessionStoreError):
                    logger.warning("Polling error for %s: %s", token.session_id, exc)
                    return True
                return False
            return outcome.result() is None

        def should_stop(retry_state: RetryCallState) -> bool:
            return polls >= max_polls or not self._store.is_fresh(token)

        def wait_for(retry_state: RetryCallState) -> float:
            if retry_state.outcome.failed:
                return self._config.poll_error_interval_seconds
            return self._config.poll_interval_seconds

        def on_stop(retry_state: RetryCallState) -> PollOutcome:
            if not self._store.is_fresh(token):
                return PollOutcome.ABANDONED
            return self._time_out(token, polls)

        retrying = AsyncRetrying(
            sleep=self._sleep,
            retry=should_retry,
            stop=should_stop,
            wait=wait_for,
            retry_error_callback=on_stop,
        )
        return await retrying(poll_once)

    def _finish(self, token: FreshnessToken, status: SessionStatus) -> PollOutcome:
        text, step, outcome = _TERMINAL_VIEW[status]
        state = self._store.state
        state.processing = False
        state.wizard_step = step
        self._set_status(token, text)
        if outcome is PollOutcome.ERROR:
            logger.error("Batch for %s ended with an execution error", token.session_id)
        else:
            logger.info("Batch for %s finished: %s", token.session_id, status.value)
        return outcome

    def _fail(self, token: FreshnessToken, exc: PermanentError) -> PollOutcome:
        self._store.state.processing = False
        self._set_status(token, f"Polling failed: {exc}")
        logger.error("Stopped polling %s after a permanent error: %s", token.session_id, exc)
        return PollOutcome.ERROR

    def _time_out(self, token: FreshnessToken, polls: int) -> PollOutcome:
        self._store.state.processing = False
        self._set_status(token, "Timed out waiting for tasks.")
        logger.error(
            "Gave up polling %s after %d polls; the batch may still be running",
            token.session_id,
            polls,
        )
        return PollOutcome.TIMED_OUT

    def _set_status(
        self,
        token: FreshnessToken,
        text: str,
        completed: int | None = None,
        total: int | None = None,
    ) -> None:
        if not self._store.is_fresh(token):
            return
        self._store.state.processing_status = text
        if self.listener is not None:
            self.listener(completed, total, text)
