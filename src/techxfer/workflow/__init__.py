"""Session workflow orchestration: stages, task batches, versioning, overlays."""

from techxfer.workflow.exceptions import (
    InvalidStageTransition,
    NoActiveSession,
    StageGateError,
    SubmissionError,
    WorkflowError,
)
from techxfer.workflow.poller import PollOutcome
from techxfer.workflow.workbench import SessionWorkbench

__all__ = [
    "InvalidStageTransition",
    "NoActiveSession",
    "PollOutcome",
    "SessionWorkbench",
    "StageGateError",
    "SubmissionError",
    "WorkflowError",
]
