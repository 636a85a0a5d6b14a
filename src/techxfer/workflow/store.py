"""Local store for the active session and the freshness guard.

All session-scoped client state lives in one :class:`WorkbenchState`.
Switching sessions bumps a generation counter; any async operation captures
a :class:`FreshnessToken` when it starts and must check
:meth:`SessionStore.is_fresh` before mutating state with its result.  A
response that fails the check is stale and is dropped, not reported.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from techxfer.models import Blob, Session, StartType, WizardStep, WorkflowStage
from techxfer.workflow.content import Lifecycle, read_comments, read_lifecycle, read_stage
from techxfer.workflow.exceptions import NoActiveSession

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FreshnessToken:
    """Identifies the selection an async operation was started under."""

    session_id: str
    generation: int


@dataclass
class WorkbenchState:
    """Everything the workbench shows for the active session."""

    session: Session | None = None
    blobs: list[Blob] = field(default_factory=list)
    comments: dict[str, list[str]] = field(default_factory=dict)
    lifecycle: Lifecycle = field(default_factory=Lifecycle)
    stage: WorkflowStage = WorkflowStage.INGESTION
    wizard_step: WizardStep = WizardStep.START
    processing: bool = False
    processing_status: str = ""
    metadata: Any = None
    metadata_blob_id: str | None = None
    csv_data: dict[str, list[list[str]]] = field(default_factory=dict)
    selected_docs: list[str] = field(default_factory=list)
    start_type: StartType | None = None
    product_description: str = ""


class SessionStore:
    """Single-writer store for the active session.

    Optimistic and server-confirmed content updates go through the same
    reducer, :meth:`apply_content`, so both produce identical state.
    """

    def __init__(self) -> None:
        self.state = WorkbenchState()
        self._generation = 0

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    @property
    def active_session_id(self) -> str | None:
        return self.state.session.id if self.state.session else None

    @property
    def generation(self) -> int:
        return self._generation

    def select(self, session: Session | None) -> FreshnessToken | None:
        """Make *session* active and wipe all session-scoped state."""
        self._generation += 1
        self.state = WorkbenchState(session=session)
        if session is None:
            logger.info("Cleared session selection")
            return None
        logger.info("Switching to session %s", session.id)
        self._derive_from_content(session.content)
        return FreshnessToken(session.id, self._generation)

    def require_session(self) -> Session:
        if self.state.session is None:
            raise NoActiveSession("No session selected")
        return self.state.session

    # ------------------------------------------------------------------
    # Freshness guard
    # ------------------------------------------------------------------

    def guard(self, session_id: str | None = None) -> FreshnessToken:
        """Capture a token for an operation on *session_id* (default: active)."""
        sid = session_id or self.require_session().id
        return FreshnessToken(sid, self._generation)

    def is_fresh(self, token: FreshnessToken) -> bool:
        return (
            token.generation == self._generation
            and token.session_id == self.active_session_id
        )

    # ------------------------------------------------------------------
    # Reducers
    # ------------------------------------------------------------------

    def apply_content(self, token: FreshnessToken, content: str) -> bool:
        """Replace the active session's content and re-derive the overlays."""
        if not self.is_fresh(token):
            logger.debug("Dropped stale content update for %s", token.session_id)
            return False
        session = self.require_session()
        self.state.session = session.model_copy(update={"content": content})
        self._derive_from_content(content)
        return True

    def apply_session(self, token: FreshnessToken, session: Session) -> bool:
        """Replace the active session with a freshly fetched record."""
        if not self.is_fresh(token) or session.id != token.session_id:
            logger.debug("Dropped stale session record for %s", token.session_id)
            return False
        previous = self.state.session.content if self.state.session else None
        self.state.session = session
        if session.content != previous:
            self._derive_from_content(session.content)
        return True

    def apply_blobs(self, token: FreshnessToken, blobs: list[Blob]) -> bool:
        """Replace the blob list, keeping only blobs of the token's session."""
        if not self.is_fresh(token):
            logger.debug(
                "Ignored stale blobs for %s (current: %s)",
                token.session_id,
                self.active_session_id,
            )
            return False
        self.state.blobs = [b for b in blobs if b.session_id == token.session_id]
        return True

    def _derive_from_content(self, content: str | None) -> None:
        self.state.comments = read_comments(content)
        self.state.lifecycle = read_lifecycle(content)
        stage = read_stage(content)
        try:
            self.state.stage = WorkflowStage(stage) if stage else WorkflowStage.INGESTION
        except ValueError:
            logger.warning("Unknown workflow stage %r in session content", stage)
            self.state.stage = WorkflowStage.INGESTION
