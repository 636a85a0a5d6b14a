"""Workflow stage machine.

Stages are persisted in the session ``content`` document under
``workflow_stage``, never derived from blob or metadata presence (except
for the one-time inference on session load, :func:`infer_initial_view`).

The FSM only validates edges; persistence is done by
:meth:`StageMachine.transition` through the content patch discipline.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from statemachine import State, StateMachine
from statemachine.exceptions import TransitionNotAllowed

from techxfer.models import Session, SessionStatus, WizardStep, WorkflowStage
from techxfer.workflow.content import STAGE_KEY, read_lifecycle, read_stage
from techxfer.workflow.exceptions import InvalidStageTransition
from techxfer.workflow.patcher import ContentPatcher
from techxfer.workflow.store import SessionStore

logger = logging.getLogger(__name__)


class WorkflowStageSM(StateMachine):
    """Four-stage tech transfer workflow.

    Forward: ingestion -> preparation -> verification -> complete.
    Backward: preparation -> ingestion and verification -> ingestion.
    Going back from verification skips preparation.

    ``complete`` is final: once approved the Golden Master is locked.
    """

    ingestion = State("ingestion", initial=True, value="ingestion")
    preparation = State("preparation", value="preparation")
    verification = State("verification", value="verification")
    complete = State("complete", final=True, value="complete")

    begin_preparation = ingestion.to(preparation)
    begin_verification = preparation.to(verification)
    approve_master = verification.to(complete)
    return_to_ingestion = preparation.to(ingestion) | verification.to(ingestion)


_EDGE_EVENTS: dict[tuple[str, str], str] = {
    ("ingestion", "preparation"): "begin_preparation",
    ("preparation", "verification"): "begin_verification",
    ("verification", "complete"): "approve_master",
    ("preparation", "ingestion"): "return_to_ingestion",
    ("verification", "ingestion"): "return_to_ingestion",
}


def create_stage_fsm(current_stage: str) -> WorkflowStageSM:
    """Create an FSM positioned at *current_stage*."""
    return WorkflowStageSM(start_value=current_stage)


def validate_transition(current: WorkflowStage, target: WorkflowStage) -> None:
    """Raise :class:`InvalidStageTransition` unless *current* -> *target* is an edge."""
    event = _EDGE_EVENTS.get((current.value, target.value))
    if event is None:
        raise InvalidStageTransition(current.value, target.value)
    fsm = create_stage_fsm(current.value)
    try:
        fsm.send(event)
    except TransitionNotAllowed as exc:
        raise InvalidStageTransition(current.value, target.value) from exc


@dataclass(frozen=True)
class InitialView:
    """Where the workbench lands when a session is selected."""

    stage: WorkflowStage
    wizard_step: WizardStep
    resume_polling: bool = False


def infer_initial_view(session: Session) -> InitialView:
    """Derive the starting stage and wizard step for a freshly selected session.

    A persisted ``workflow_stage`` always wins for the stage.  The wizard
    step comes from the session status: a processing session resumes the
    ingestion workbench with polling; a completed session, or one whose
    content already carries lifecycle steps, skips the upload wizard
    (sessions created before ``workflow_stage`` existed); anything else
    starts at the first wizard step.
    """
    persisted = read_stage(session.content)
    try:
        stage = WorkflowStage(persisted) if persisted else WorkflowStage.INGESTION
    except ValueError:
        stage = WorkflowStage.INGESTION

    status = session.known_status
    if status == SessionStatus.PROCESSING:
        return InitialView(stage, WizardStep.PROCESSING, resume_polling=True)
    if status == SessionStatus.COMPLETED or read_lifecycle(session.content).steps:
        return InitialView(stage, WizardStep.REVIEW)
    return InitialView(stage, WizardStep.START)


class StageMachine:
    """Persists stage changes for the active session."""

    def __init__(self, patcher: ContentPatcher, store: SessionStore) -> None:
        self._patcher = patcher
        self._store = store

    async def transition(self, new_stage: WorkflowStage) -> Session:
        """Move the active session to *new_stage* and persist it.

        The edge is validated before any I/O.  Re-persisting the current
        stage is allowed.  On success the local session content is replaced
        with the written payload without waiting for a refetch.

        Raises:
            InvalidStageTransition: *new_stage* is not reachable.
            SessionStoreError: The update call failed; local state is unchanged.
        """
        session = self._store.require_session()
        current = self._store.state.stage
        if new_stage != current:
            validate_transition(current, new_stage)

        payload = await self._patcher.patch(**{STAGE_KEY: new_stage.value})
        logger.info(
            "Session %s moved %s -> %s", session.id, current.value, new_stage.value
        )
        return session.model_copy(update={"content": payload})
