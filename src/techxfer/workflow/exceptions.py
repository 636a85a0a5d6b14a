"""Workflow-level exceptions."""

from __future__ import annotations


class WorkflowError(Exception):
    """Base class for workflow errors surfaced to the UI layer."""


class NoActiveSession(WorkflowError):
    """An operation needs a selected session and none is active."""


class InvalidStageTransition(WorkflowError):
    """The requested stage change is not an edge of the stage graph."""

    def __init__(self, current: str, target: str) -> None:
        super().__init__(f"Cannot move workflow from '{current}' to '{target}'")
        self.current = current
        self.target = target


class SubmissionError(WorkflowError):
    """The first network call of a user operation failed.

    Raised for queue submission, upload and retry requests so the caller can
    alert the user; the in-progress flag has already been cleared.
    """


class StageGateError(WorkflowError):
    """The stage edge exists but its precondition is not met."""
