"""Tests for comments and the lifecycle overlay."""

from __future__ import annotations

import json

import pytest

from techxfer.api.client import TransientError
from techxfer.workflow.exceptions import NoActiveSession
from techxfer.workflow.overlay import parse_lifecycle_reply
from techxfer.workflow.prompts import DEFAULT_LIFECYCLE_STEPS


def _content(fake_store, session_id: str = "s1") -> dict:
    return json.loads(fake_store.sessions[session_id].content)


class TestParseLifecycleReply:
    @pytest.mark.parametrize(
        "reply, expected",
        [
            ('["A", "B"]', ["A", "B"]),
            ('Here is the plan: ["Design", "Build"] as requested.', ["Design", "Build"]),
            ('Final Answer: ["X"]', ["X"]),
            ("[\n  \"One\",\n  \"Two\"\n]", ["One", "Two"]),
        ],
    )
    def test_parses(self, reply, expected):
        assert parse_lifecycle_reply(reply) == expected

    @pytest.mark.parametrize(
        "reply",
        ["no list here", "[]", "[1, 2]", '{"steps": "A"}', "[not json]"],
    )
    def test_rejects(self, reply):
        assert parse_lifecycle_reply(reply) is None


class TestComments:
    async def test_add_comment_persists(self, fake_store, workbench):
        fake_store.add_session("s1", content=json.dumps({"workflow_stage": "preparation"}))
        await workbench.select_session("s1")

        await workbench.add_comment("b1", "  check tolerance  ")
        await workbench.add_comment("b1", "second")

        assert _content(fake_store) == {
            "workflow_stage": "preparation",
            "comments": {"b1": ["check tolerance", "second"]},
        }
        assert workbench.state.comments == {"b1": ["check tolerance", "second"]}

    async def test_blank_comment_ignored(self, fake_store, workbench):
        fake_store.add_session("s1")
        await workbench.select_session("s1")

        await workbench.add_comment("b1", "   ")

        assert fake_store.content_writes == []

    async def test_requires_active_session(self, workbench):
        with pytest.raises(NoActiveSession):
            await workbench.add_comment("b1", "x")


class TestLifecycle:
    async def test_update_clamps_cursor(self, fake_store, workbench):
        fake_store.add_session("s1")
        await workbench.select_session("s1")

        lifecycle = await workbench.update_lifecycle(["A", "B", "C"], 7)

        assert lifecycle.current_step == 2
        assert _content(fake_store)["lifecycle"] == {"steps": ["A", "B", "C"], "currentStep": 2}

    async def test_navigation(self, fake_store, workbench):
        fake_store.add_session("s1")
        await workbench.select_session("s1")
        await workbench.update_lifecycle(["A", "B", "C"])
        overlay = workbench.overlay

        assert (await overlay.next_step()).current_label == "B"
        assert (await overlay.next_step()).current_label == "C"
        assert (await overlay.previous_step()).current_label == "B"
        assert (await overlay.goto_step(0)).current_label == "A"
        assert _content(fake_store)["lifecycle"]["currentStep"] == 0

    async def test_navigation_at_bounds_writes_nothing(self, fake_store, workbench):
        fake_store.add_session("s1")
        await workbench.select_session("s1")
        await workbench.update_lifecycle(["A", "B"], 1)
        writes = len(fake_store.content_writes)

        await workbench.overlay.next_step()

        assert len(fake_store.content_writes) == writes

    async def test_navigation_on_empty_lifecycle(self, fake_store, workbench):
        fake_store.add_session("s1")
        await workbench.select_session("s1")

        lifecycle = await workbench.overlay.next_step()

        assert lifecycle.steps == []
        assert fake_store.content_writes == []

    async def test_lifecycle_keeps_comments(self, fake_store, workbench):
        fake_store.add_session("s1", content=json.dumps({"comments": {"b1": ["x"]}}))
        await workbench.select_session("s1")

        await workbench.update_lifecycle(["A"])

        assert _content(fake_store)["comments"] == {"b1": ["x"]}


class TestGenerateLifecycle:
    async def test_uses_agent_reply(self, fake_store, workbench):
        fake_store.add_session("s1")
        await workbench.select_session("s1")
        fake_store.chat_replies.append('Final Answer: ["Concept", "Pilot", "Ramp"]')

        lifecycle = await workbench.generate_lifecycle()

        assert lifecycle.steps == ["Concept", "Pilot", "Ramp"]
        assert lifecycle.current_step == 0

    async def test_falls_back_to_defaults(self, fake_store, workbench, caplog):
        fake_store.add_session("s1")
        await workbench.select_session("s1")
        fake_store.chat_replies.append("I cannot answer that.")

        lifecycle = await workbench.generate_lifecycle()

        assert lifecycle.steps == list(DEFAULT_LIFECYCLE_STEPS)
        assert "using defaults" in caplog.text

    async def test_chat_failure_raises(self, fake_store, workbench):
        fake_store.add_session("s1")
        await workbench.select_session("s1")
        fake_store.fail("chat", TransientError("down"))

        with pytest.raises(TransientError):
            await workbench.generate_lifecycle()
        assert fake_store.content_writes == []

    async def test_stale_reply_is_dropped(self, fake_store, workbench):
        fake_store.add_session("s1")
        fake_store.add_session("s2")
        await workbench.select_session("s1")

        async def switch():
            del fake_store.hooks["chat"]
            await workbench.select_session("s2")

        fake_store.hooks["chat"] = switch
        await workbench.generate_lifecycle()

        assert fake_store.content_writes == []
        assert workbench.state.lifecycle.steps == []


class TestOneShotAgentCalls:
    async def test_sync_metadata_reloads_blobs(self, fake_store, workbench):
        fake_store.add_session("s1")
        await workbench.select_session("s1")

        async def agent_writes_metadata():
            fake_store.add_blob("s1", "metadata.json", b'{"synced": true}')

        fake_store.hooks["chat"] = agent_writes_metadata
        blobs = await workbench.sync_metadata()

        assert [b.file_name for b in blobs] == ["metadata.json"]
        assert workbench.state.metadata == {"synced": True}

    async def test_critique_refreshes_session(self, fake_store, workbench):
        fake_store.add_session("s1")
        await workbench.select_session("s1")
        fake_store.calls.clear()

        await workbench.generate_critique()

        assert fake_store.call_names() == ["chat", "get_session", "list_blobs"]
