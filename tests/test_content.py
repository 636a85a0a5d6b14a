"""Tests for the session content document and its merge discipline.

Covers:
  - parse_content fallbacks for empty, invalid and non-object content
  - patch_content only replacing owned keys
  - typed readers tolerating malformed shapes
  - Lifecycle cursor clamping
  - sequential writers through the workbench never dropping each other's keys
"""

from __future__ import annotations

import json

import pytest

from techxfer.models import WorkflowStage
from techxfer.workflow.content import (
    Lifecycle,
    parse_content,
    patch_content,
    read_comments,
    read_lifecycle,
    read_stage,
)


# ======================================================================
# Parsing and patching
# ======================================================================


class TestParseContent:
    @pytest.mark.parametrize("raw", [None, "", "not json", "[1, 2]", '"text"', "42"])
    def test_unusable_content_is_empty(self, raw):
        assert parse_content(raw) == {}

    def test_object_content_is_returned(self):
        assert parse_content('{"a": 1}') == {"a": 1}


class TestPatchContent:
    def test_empty_content_gets_only_the_patched_key(self):
        assert json.loads(patch_content(None, workflow_stage="preparation")) == {
            "workflow_stage": "preparation"
        }

    def test_unowned_keys_survive(self):
        raw = json.dumps({"agent_notes": {"x": 1}, "comments": {"b1": ["n"]}})
        result = json.loads(patch_content(raw, workflow_stage="verification"))
        assert result == {
            "agent_notes": {"x": 1},
            "comments": {"b1": ["n"]},
            "workflow_stage": "verification",
        }

    def test_invalid_content_is_replaced_by_patch(self):
        assert json.loads(patch_content("{broken", comments={})) == {"comments": {}}


class TestReaders:
    def test_read_stage_ignores_non_strings(self):
        assert read_stage('{"workflow_stage": 3}') is None
        assert read_stage('{"workflow_stage": "complete"}') == "complete"

    def test_read_comments_skips_malformed_entries(self):
        raw = json.dumps({"comments": {"b1": ["a", "b"], "b2": "oops"}})
        assert read_comments(raw) == {"b1": ["a", "b"]}

    def test_read_comments_non_dict(self):
        assert read_comments('{"comments": []}') == {}

    def test_read_lifecycle_clamps_cursor(self):
        raw = json.dumps({"lifecycle": {"steps": ["A", "B"], "currentStep": 7}})
        assert read_lifecycle(raw) == Lifecycle(["A", "B"], 1)

    def test_read_lifecycle_bad_shapes(self):
        assert read_lifecycle('{"lifecycle": "x"}') == Lifecycle()
        raw = json.dumps({"lifecycle": {"steps": "A,B", "currentStep": "1"}})
        assert read_lifecycle(raw) == Lifecycle()


# ======================================================================
# Lifecycle clamp
# ======================================================================


class TestLifecycleClamp:
    def test_navigation_stays_in_bounds(self):
        lc = Lifecycle(["A", "B", "C"], 0)
        for _ in range(5):
            lc = lc.retreat()
            assert 0 <= lc.current_step <= 2
        assert lc.current_step == 0
        for _ in range(5):
            lc = lc.advance()
            assert 0 <= lc.current_step <= 2
        assert lc.current_step == 2

    @pytest.mark.parametrize("index, expected", [(-3, 0), (0, 0), (1, 1), (99, 2)])
    def test_goto_clamps(self, index, expected):
        assert Lifecycle(["A", "B", "C"]).goto(index).current_step == expected

    def test_empty_lifecycle_navigation_is_noop(self):
        lc = Lifecycle()
        assert lc.advance() == lc
        assert lc.retreat() == lc
        assert lc.goto(4) == lc
        assert lc.current_label is None

    def test_to_dict_uses_camel_case_cursor(self):
        assert Lifecycle(["A"], 0).to_dict() == {"steps": ["A"], "currentStep": 0}


# ======================================================================
# Writers through the workbench
# ======================================================================


class TestMergeSafety:
    async def test_transition_on_empty_content(self, fake_store, workbench):
        """An empty session moved to preparation holds only the stage key."""
        fake_store.add_session("s1", content="")
        await workbench.select_session("s1")

        session = await workbench.change_stage(WorkflowStage.PREPARATION)

        assert json.loads(session.content) == {"workflow_stage": "preparation"}
        assert json.loads(fake_store.sessions["s1"].content) == {"workflow_stage": "preparation"}

    async def test_sequential_writers_keep_every_key(self, fake_store, workbench):
        fake_store.add_session("s1", content=json.dumps({"agent_summary": "draft"}))
        blob = fake_store.add_blob("s1", "bom.csv", b"a,b")
        await workbench.select_session("s1")

        await workbench.change_stage(WorkflowStage.PREPARATION)
        await workbench.update_lifecycle(["Design", "Build"], 1)
        await workbench.add_comment(blob.id, "check qty")
        await workbench.change_stage(WorkflowStage.INGESTION)

        stored = json.loads(fake_store.sessions["s1"].content)
        assert stored == {
            "agent_summary": "draft",
            "workflow_stage": "ingestion",
            "lifecycle": {"steps": ["Design", "Build"], "currentStep": 1},
            "comments": {blob.id: ["check qty"]},
        }
        assert json.loads(workbench.state.session.content) == stored

    async def test_local_content_matches_each_write(self, fake_store, workbench):
        fake_store.add_session("s1")
        await workbench.select_session("s1")

        await workbench.update_lifecycle(["A", "B", "C"], 2)

        assert len(fake_store.content_writes) == 1
        _, written = fake_store.content_writes[0]
        assert workbench.state.session.content == written
        assert workbench.state.lifecycle == Lifecycle(["A", "B", "C"], 2)

    async def test_agent_keys_are_never_written(self, fake_store, workbench):
        fake_store.add_session("s1", content=json.dumps({"agent_summary": "draft"}))
        await workbench.select_session("s1")

        with pytest.raises(ValueError, match="agent_summary"):
            await workbench.patcher.patch(agent_summary="overwritten")

        assert fake_store.content_writes == []
