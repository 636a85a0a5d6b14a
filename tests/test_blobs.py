"""Tests for the blob cache and the freshness guard.

A response that arrives after the user switched sessions must never land
in the newly active session's state.
"""

from __future__ import annotations

import json

import pytest

from techxfer.api.client import TransientError
from techxfer.models import Blob, Session, UploadFile
from techxfer.workflow.exceptions import NoActiveSession
from techxfer.workflow.store import SessionStore


def _switch_during(fake_store, name, workbench, target):
    """Install a one-shot hook that selects *target* while *name* is in flight."""

    async def hook():
        del fake_store.hooks[name]
        await workbench.select_session(target)

    fake_store.hooks[name] = hook


# ======================================================================
# Store and guard
# ======================================================================


class TestSessionStore:
    def test_select_bumps_generation_and_wipes_state(self):
        store = SessionStore()
        first = store.select(Session(id="s1"))
        store.state.csv_data["b1"] = [["a"]]
        store.state.processing = True

        second = store.select(Session(id="s2"))

        assert second.generation == first.generation + 1
        assert store.state.csv_data == {}
        assert store.state.processing is False
        assert not store.is_fresh(first)
        assert store.is_fresh(second)

    def test_reselecting_same_session_invalidates_old_tokens(self):
        store = SessionStore()
        token = store.select(Session(id="s1"))
        store.select(Session(id="s1"))
        assert not store.is_fresh(token)

    def test_clear_selection(self):
        store = SessionStore()
        token = store.select(Session(id="s1"))
        assert store.select(None) is None
        assert not store.is_fresh(token)
        with pytest.raises(NoActiveSession):
            store.require_session()

    def test_apply_blobs_filters_other_sessions(self):
        store = SessionStore()
        token = store.select(Session(id="s1"))
        blobs = [
            Blob(id="b1", session_id="s1", file_name="a.txt"),
            Blob(id="b2", session_id="s2", file_name="b.txt"),
        ]
        assert store.apply_blobs(token, blobs) is True
        assert [b.id for b in store.state.blobs] == ["b1"]

    def test_apply_content_rederives_overlays(self):
        store = SessionStore()
        token = store.select(Session(id="s1"))
        content = json.dumps(
            {
                "workflow_stage": "preparation",
                "comments": {"b1": ["x"]},
                "lifecycle": {"steps": ["A", "B"], "currentStep": 1},
            }
        )
        assert store.apply_content(token, content)
        assert store.state.stage.value == "preparation"
        assert store.state.comments == {"b1": ["x"]}
        assert store.state.lifecycle.current_label == "B"


# ======================================================================
# Blob cache
# ======================================================================


class TestBlobCache:
    async def test_refresh_lists_active_session_blobs(self, fake_store, workbench):
        fake_store.add_session("s1")
        fake_store.add_blob("s1", "a.txt")
        await workbench.select_session("s1")

        fake_store.add_blob("s1", "b.txt")
        blobs = await workbench.refresh_blobs()

        assert [b.file_name for b in blobs] == ["a.txt", "b.txt"]

    async def test_refresh_is_never_time_based(self, fake_store, workbench):
        fake_store.add_session("s1")
        await workbench.select_session("s1")
        fake_store.add_blob("s1", "late.txt")

        assert workbench.blobs.blobs == []

    async def test_refresh_failure_raises(self, fake_store, workbench):
        fake_store.add_session("s1")
        await workbench.select_session("s1")
        fake_store.fail("list_blobs", TransientError("down"))

        with pytest.raises(TransientError):
            await workbench.refresh_blobs()

    async def test_select_tolerates_blob_failure(self, fake_store, workbench):
        fake_store.add_session("s1")
        fake_store.fail("list_blobs", TransientError("down"))

        session = await workbench.select_session("s1")

        assert session.id == "s1"
        assert workbench.state.blobs == []


class TestFreshness:
    async def test_stale_blob_refresh_is_dropped(self, fake_store, workbench):
        fake_store.add_session("s1")
        fake_store.add_session("s2")
        fake_store.add_blob("s1", "a-only.txt")
        s2_blob = fake_store.add_blob("s2", "b-only.txt")
        await workbench.select_session("s1")

        _switch_during(fake_store, "list_blobs", workbench, "s2")
        result = await workbench.blobs.refresh("s1")

        assert result == []
        assert workbench.state.session.id == "s2"
        assert [b.id for b in workbench.state.blobs] == [s2_blob.id]

    async def test_stale_metadata_download_is_dropped(self, fake_store, workbench):
        fake_store.add_session("s1")
        fake_store.add_session("s2")
        fake_store.add_blob("s1", "metadata.json", b'{"owner": "s1"}')
        _switch_during(fake_store, "download_blob", workbench, "s2")

        await workbench.select_session("s1")

        assert workbench.state.session.id == "s2"
        assert workbench.state.metadata is None

    async def test_stale_comment_migration_is_dropped(self, fake_store, workbench):
        fake_store.add_session("s1", content=json.dumps({"comments": {"b1": ["n"]}}))
        fake_store.add_session("s2", content=json.dumps({"comments": {"z": ["keep"]}}))
        fake_store.add_blob("s1", "bom.csv", b"a")
        await workbench.select_session("s1")

        _switch_during(fake_store, "upload_blob", workbench, "s2")
        await workbench.upload([UploadFile("bom.csv", b"b", "text/csv")])

        assert workbench.state.comments == {"z": ["keep"]}
        assert json.loads(fake_store.sessions["s2"].content) == {"comments": {"z": ["keep"]}}


# ======================================================================
# Creating and deleting sessions
# ======================================================================


class TestSessionLifecycle:
    async def test_load_project_lists_its_sessions(self, fake_store, workbench):
        fake_store.add_session("s1")
        fake_store.add_session("s2", project_id="p2")

        project, sessions = await workbench.load_project("p1")

        assert project.name == "Pump Housing"
        assert [s.id for s in sessions] == ["s1"]

    async def test_created_session_becomes_active(self, fake_store, workbench):
        fake_store.add_session("s1")
        await workbench.select_session("s1")
        old = workbench.store.guard()

        created = await workbench.create_session("p1", "Gearbox")

        assert workbench.state.session.id == created.id
        assert workbench.state.blobs == []
        assert not workbench.store.is_fresh(old)

    async def test_deleting_active_session_clears_selection(self, fake_store, workbench):
        fake_store.add_session("s1")
        fake_store.add_blob("s1", "a.txt")
        await workbench.select_session("s1")

        await workbench.delete_session("s1")

        assert workbench.state.session is None
        assert workbench.state.blobs == []
        with pytest.raises(NoActiveSession):
            await workbench.add_comment("b1", "x")

    async def test_deleting_other_session_keeps_selection(self, fake_store, workbench):
        fake_store.add_session("s1")
        fake_store.add_session("s2")
        await workbench.select_session("s1")

        await workbench.delete_session("s2")

        assert workbench.state.session.id == "s1"

    async def test_failed_delete_keeps_selection(self, fake_store, workbench):
        fake_store.add_session("s1")
        await workbench.select_session("s1")
        fake_store.fail("delete_session", TransientError("down", 503))

        with pytest.raises(TransientError):
            await workbench.delete_session("s1")
        assert workbench.state.session.id == "s1"
