"""Tech transfer session workbench."""

__version__ = "0.1.0"

from techxfer.models import Blob, Session, SessionStatus, WorkbenchConfig, WorkflowStage

__all__ = [
    "Blob",
    "Session",
    "SessionStatus",
    "WorkbenchConfig",
    "WorkflowStage",
    "__version__",
]
