"""Data models and enums for the tech transfer workbench."""

from __future__ import annotations

import mimetypes
from dataclasses import dataclass
from enum import Enum, IntEnum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field


class SessionStatus(str, Enum):
    """Server-owned processing status of a session."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ERROR = "error"


TERMINAL_STATUSES = frozenset(
    {SessionStatus.COMPLETED, SessionStatus.CANCELLED, SessionStatus.ERROR}
)


class WorkflowStage(str, Enum):
    """The four persisted phases of a tech transfer session."""

    INGESTION = "ingestion"
    PREPARATION = "preparation"
    VERIFICATION = "verification"
    COMPLETE = "complete"


class WizardStep(IntEnum):
    """Steps of the ingestion workbench."""

    START = 1
    DELIVERABLES = 2
    PROCESSING = 3
    REVIEW = 4


class StartType(str, Enum):
    """Where the user starts the ingestion from."""

    BOM = "bom"
    DESCRIPTION = "description"
    SKETCH = "sketch"


class Project(BaseModel):
    """A project groups sessions."""

    model_config = ConfigDict(extra="allow")

    id: str
    name: str = ""


class Session(BaseModel):
    """A single tech transfer workflow instance.

    ``status`` is kept as the raw server string so that values this client
    does not know about survive a round trip; use :attr:`known_status` for
    comparisons.
    """

    model_config = ConfigDict(extra="allow")

    id: str
    title: str = ""
    project_id: str | None = None
    status: str = SessionStatus.PENDING.value
    content: str | None = None
    pending_tasks: list = Field(default_factory=list)

    @property
    def known_status(self) -> SessionStatus | None:
        try:
            return SessionStatus(self.status)
        except ValueError:
            return None

    @property
    def pending_count(self) -> int:
        return len(self.pending_tasks or [])


class Blob(BaseModel):
    """An uploaded or agent-generated file attached to a session."""

    model_config = ConfigDict(extra="allow")

    id: str
    session_id: str
    file_name: str
    content_type: str | None = None
    size: int | None = None
    created_at: str | None = None

    @property
    def is_csv(self) -> bool:
        return self.content_type == "text/csv" or self.file_name.lower().endswith(".csv")


class ChatMessage(BaseModel):
    """A chat reply from the session agent."""

    model_config = ConfigDict(extra="allow")

    role: str
    content: str = ""


@dataclass
class UploadFile:
    """A local file about to be uploaded into a session."""

    file_name: str
    data: bytes
    content_type: str = "application/octet-stream"

    @classmethod
    def from_path(cls, path: Path) -> UploadFile:
        content_type, _ = mimetypes.guess_type(path.name)
        return cls(
            file_name=path.name,
            data=path.read_bytes(),
            content_type=content_type or "application/octet-stream",
        )


@dataclass
class WorkbenchConfig:
    """Configuration for the session workbench.

    Controls the remote endpoint, polling cadence and the runaway guard
    for task batches.
    """

    api_url: str = "http://localhost:8080"
    token: str | None = None
    poll_interval_seconds: float = 2.0
    poll_error_interval_seconds: float = 5.0
    max_poll_attempts: int = 900  # ~30 minutes at the normal interval
    request_timeout_seconds: float = 30.0
    target_columns: str = "Part Number, Description, Quantity, Manufacturer, Price"
