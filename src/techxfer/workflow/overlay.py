"""Per-file comments and the product lifecycle, stored in session ``content``."""

from __future__ import annotations

import json
import logging
import re

from techxfer.api.client import SessionStoreClient
from techxfer.workflow.content import COMMENTS_KEY, LIFECYCLE_KEY, Lifecycle
from techxfer.workflow.patcher import ContentPatcher
from techxfer.workflow.prompts import DEFAULT_LIFECYCLE_STEPS, lifecycle_prompt
from techxfer.workflow.store import SessionStore

logger = logging.getLogger(__name__)

_JSON_ARRAY_RE = re.compile(r"\[[\s\S]*?\]")


def parse_lifecycle_reply(reply: str) -> list[str] | None:
    """Pull a list of step names out of an agent reply.

    Tries the first ``[...]`` span, then the whole reply with a leading
    ``Final Answer:`` stripped.  Anything but a non-empty list of strings
    yields ``None``.
    """
    match = _JSON_ARRAY_RE.search(reply)
    candidate = match.group(0) if match else reply.replace("Final Answer:", "", 1).strip()
    try:
        steps = json.loads(candidate)
    except ValueError:
        return None
    if not isinstance(steps, list) or not steps:
        return None
    if not all(isinstance(s, str) for s in steps):
        return None
    return steps


class CommentLifecycleOverlay:
    """Secondary annotations written through the content patch discipline.

    Both writers update the local state first and then persist; on success
    the written payload is applied again so the session content matches what
    the server now holds.
    """

    def __init__(
        self,
        client: SessionStoreClient,
        store: SessionStore,
        patcher: ContentPatcher,
    ) -> None:
        self._client = client
        self._store = store
        self._patcher = patcher

    @property
    def comments(self) -> dict[str, list[str]]:
        return self._store.state.comments

    @property
    def lifecycle(self) -> Lifecycle:
        return self._store.state.lifecycle

    # ------------------------------------------------------------------
    # Comments
    # ------------------------------------------------------------------

    async def add_comment(self, blob_id: str, text: str) -> dict[str, list[str]]:
        """Append *text* to the comments of *blob_id*.  Blank text is ignored."""
        text = text.strip()
        if not text:
            return self._store.state.comments
        self._store.require_session()

        updated = {k: list(v) for k, v in self._store.state.comments.items()}
        updated.setdefault(blob_id, []).append(text)
        self._store.state.comments = updated

        await self._patcher.patch(**{COMMENTS_KEY: updated})
        logger.info("Added comment to blob %s", blob_id)
        return self._store.state.comments

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def update_lifecycle(self, steps: list[str], current_step: int = 0) -> Lifecycle:
        """Replace the lifecycle wholesale; the cursor is clamped to the steps."""
        self._store.require_session()
        lifecycle = Lifecycle(list(steps), current_step).clamp()
        self._store.state.lifecycle = lifecycle

        await self._patcher.patch(**{LIFECYCLE_KEY: lifecycle.to_dict()})
        logger.info(
            "Lifecycle set to %d steps (current: %s)",
            len(lifecycle.steps),
            lifecycle.current_label,
        )
        return self._store.state.lifecycle

    async def next_step(self) -> Lifecycle:
        current = self._store.state.lifecycle
        return await self._move(current, current.advance())

    async def previous_step(self) -> Lifecycle:
        current = self._store.state.lifecycle
        return await self._move(current, current.retreat())

    async def goto_step(self, index: int) -> Lifecycle:
        current = self._store.state.lifecycle
        return await self._move(current, current.goto(index))

    async def _move(self, current: Lifecycle, target: Lifecycle) -> Lifecycle:
        if target == current:
            return current
        return await self.update_lifecycle(target.steps, target.current_step)

    async def generate_lifecycle(self) -> Lifecycle:
        """Ask the agent for a lifecycle plan and store it.

        Falls back to the default five steps when the reply holds no usable
        list.

        Raises:
            SessionStoreError: The chat call failed.
        """
        session = self._store.require_session()
        token = self._store.guard(session.id)
        reply = await self._client.chat(session.id, lifecycle_prompt())
        steps = parse_lifecycle_reply(reply.content)
        if steps is None:
            logger.warning("Could not parse lifecycle from agent reply, using defaults")
            steps = list(DEFAULT_LIFECYCLE_STEPS)
        if not self._store.is_fresh(token):
            return self._store.state.lifecycle
        return await self.update_lifecycle(steps, 0)
