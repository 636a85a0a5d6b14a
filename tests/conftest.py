"""Shared pytest fixtures for the workbench tests.

Provides an in-memory stand-in for the remote session store, a recording
sleep for the poller, and a workbench wired to both.
"""

from __future__ import annotations

import itertools
from collections import defaultdict
from collections.abc import Awaitable, Callable

import pytest

from techxfer.api.client import NotFoundError
from techxfer.models import Blob, ChatMessage, Project, Session, UploadFile, WorkbenchConfig
from techxfer.workflow.workbench import SessionWorkbench


class FakeSessionStore:
    """In-memory remote session store with the ``SessionStoreClient`` surface.

    * ``script_statuses(sid, [(status, pending), ...])`` makes successive
      ``get_session`` calls walk the sequence; the last entry repeats.
    * ``fail(name, exc, ...)`` makes the next call(s) of *name* raise.
    * ``hooks[name]`` is awaited inside every call of *name* (used to switch
      sessions while a request is "in flight").
    """

    def __init__(self) -> None:
        self.projects: dict[str, Project] = {"p1": Project(id="p1", name="Pump Housing")}
        self.sessions: dict[str, Session] = {}
        self.blobs: dict[str, Blob] = {}
        self.data: dict[str, bytes] = {}
        self.messages: dict[str, list[ChatMessage]] = defaultdict(list)
        self.scripts: dict[str, list[tuple[str, int]]] = {}
        self.failures: dict[str, list[Exception]] = defaultdict(list)
        self.hooks: dict[str, Callable[[], Awaitable[None]]] = {}
        self.chat_replies: list[str] = []
        self.calls: list[tuple] = []
        self.queued: list[tuple[str, list[str]]] = []
        self.content_writes: list[tuple[str, str]] = []
        self._blob_ids = itertools.count(1)
        self._session_ids = itertools.count(1)
        self.closed = False

    # ------------------------------------------------------------------
    # Test setup helpers
    # ------------------------------------------------------------------

    def add_session(
        self,
        session_id: str = "s1",
        *,
        content: str | None = None,
        status: str = "pending",
        title: str = "Widget",
        project_id: str = "p1",
    ) -> Session:
        session = Session(
            id=session_id,
            title=title,
            project_id=project_id,
            status=status,
            content=content,
        )
        self.sessions[session_id] = session
        return session

    def add_blob(
        self,
        session_id: str,
        file_name: str,
        data: bytes = b"",
        content_type: str | None = None,
    ) -> Blob:
        n = next(self._blob_ids)
        blob = Blob(
            id=f"b{n}",
            session_id=session_id,
            file_name=file_name,
            content_type=content_type,
            size=len(data),
            created_at=f"2026-01-01T00:{n // 60:02d}:{n % 60:02d}Z",
        )
        self.blobs[blob.id] = blob
        self.data[blob.id] = data
        return blob

    def script_statuses(self, session_id: str, sequence: list[tuple[str, int]]) -> None:
        self.scripts[session_id] = list(sequence)

    def fail(self, name: str, *errors: Exception) -> None:
        self.failures[name].extend(errors)

    def names(self, session_id: str) -> list[str]:
        return [b.file_name for b in self.blobs.values() if b.session_id == session_id]

    def call_names(self) -> list[str]:
        return [c[0] for c in self.calls]

    async def _enter(self, name: str, *args: object) -> None:
        self.calls.append((name, *args))
        hook = self.hooks.get(name)
        if hook is not None:
            await hook()
        if self.failures[name]:
            raise self.failures[name].pop(0)

    # ------------------------------------------------------------------
    # SessionStoreClient surface
    # ------------------------------------------------------------------

    async def close(self) -> None:
        self.closed = True

    async def get_project(self, project_id: str) -> Project:
        await self._enter("get_project", project_id)
        if project_id not in self.projects:
            raise NotFoundError(f"project {project_id} not found", 404)
        return self.projects[project_id].model_copy()

    async def create_session(self, project_id: str, title: str) -> Session:
        await self._enter("create_session", project_id, title)
        session_id = f"new{next(self._session_ids)}"
        return self.add_session(session_id, title=title, project_id=project_id).model_copy()

    async def delete_session(self, session_id: str) -> None:
        await self._enter("delete_session", session_id)
        if self.sessions.pop(session_id, None) is None:
            raise NotFoundError(f"session {session_id} not found", 404)

    async def list_sessions(self, project_id: str) -> list[Session]:
        await self._enter("list_sessions", project_id)
        return [s for s in self.sessions.values() if s.project_id == project_id]

    async def get_session(self, session_id: str) -> Session:
        await self._enter("get_session", session_id)
        if session_id not in self.sessions:
            raise NotFoundError(f"session {session_id} not found", 404)
        script = self.scripts.get(session_id)
        if script:
            status, pending = script.pop(0) if len(script) > 1 else script[0]
            self.sessions[session_id] = self.sessions[session_id].model_copy(
                update={"status": status, "pending_tasks": [f"t{i}" for i in range(pending)]}
            )
        return self.sessions[session_id].model_copy()

    async def update_session_content(self, session_id: str, content: str) -> Session:
        await self._enter("update_session_content", session_id, content)
        self.content_writes.append((session_id, content))
        self.sessions[session_id] = self.sessions[session_id].model_copy(
            update={"content": content}
        )
        return self.sessions[session_id].model_copy()

    async def cancel_session(self, session_id: str) -> None:
        await self._enter("cancel_session", session_id)

    async def retry_session(self, session_id: str) -> None:
        await self._enter("retry_session", session_id)

    async def list_blobs(self, session_id: str) -> list[Blob]:
        await self._enter("list_blobs", session_id)
        return [b for b in self.blobs.values() if b.session_id == session_id]

    async def upload_blob(self, session_id: str, upload: UploadFile) -> Blob:
        await self._enter("upload_blob", session_id, upload.file_name)
        return self.add_blob(session_id, upload.file_name, upload.data, upload.content_type)

    async def delete_blob(self, blob_id: str) -> bool:
        await self._enter("delete_blob", blob_id)
        if self.blobs.pop(blob_id, None) is None:
            return False
        self.data.pop(blob_id, None)
        return True

    async def download_blob(self, blob_id: str) -> bytes:
        await self._enter("download_blob", blob_id)
        if blob_id not in self.data:
            raise NotFoundError(f"blob {blob_id} not found", 404)
        return self.data[blob_id]

    async def queue_tasks(self, session_id: str, tasks: list[str]) -> dict:
        await self._enter("queue_tasks", session_id, len(tasks))
        self.queued.append((session_id, list(tasks)))
        return {"queued": len(tasks)}

    async def chat(self, session_id: str, message: str) -> ChatMessage:
        await self._enter("chat", session_id)
        reply = self.chat_replies.pop(0) if self.chat_replies else "OK"
        self.messages[session_id].append(ChatMessage(role="user", content=message))
        answer = ChatMessage(role="assistant", content=reply)
        self.messages[session_id].append(answer)
        return answer

    async def list_messages(self, session_id: str) -> list[ChatMessage]:
        await self._enter("list_messages", session_id)
        return list(self.messages[session_id])


class SleepRecorder:
    """Replacement for ``asyncio.sleep`` that returns at once and records delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture
def fake_store() -> FakeSessionStore:
    return FakeSessionStore()


@pytest.fixture
def sleeper() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def config() -> WorkbenchConfig:
    return WorkbenchConfig(api_url="http://test", token="t0k3n")


@pytest.fixture
def workbench(
    fake_store: FakeSessionStore, sleeper: SleepRecorder, config: WorkbenchConfig
) -> SessionWorkbench:
    """Workbench over the in-memory store, with instant sleeps."""
    return SessionWorkbench(fake_store, config, sleep=sleeper)
