"""The session ``content`` document.

``content`` is a JSON object stored as an opaque string on the session.
Several independent owners write to it:

* ``workflow_stage`` -- the stage machine
* ``lifecycle`` -- ``{"steps": [...], "currentStep": n}``, the overlay
* ``comments`` -- ``{blob_id: [text, ...]}``, the overlay and the
  versioning manager
* anything else -- agent-authored fields, passed through untouched

Every write goes through :func:`patch_content`, which re-parses the latest
known string, shallow-merges only the owned keys and re-serializes.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

STAGE_KEY = "workflow_stage"
LIFECYCLE_KEY = "lifecycle"
COMMENTS_KEY = "comments"

# Keys this client writes; everything else in the document belongs to the agent.
OWNED_KEYS = frozenset({STAGE_KEY, LIFECYCLE_KEY, COMMENTS_KEY})


def parse_content(raw: str | None) -> dict[str, Any]:
    """Parse a ``content`` string, treating anything unusable as ``{}``."""
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except ValueError:
        logger.warning("Session content is not valid JSON, starting from an empty document")
        return {}
    if not isinstance(parsed, dict):
        logger.warning("Session content is not a JSON object, starting from an empty document")
        return {}
    return parsed


def patch_content(raw: str | None, **updates: Any) -> str:
    """Merge *updates* over the parsed *raw* document and serialize.

    Only the keys in *updates* are replaced; every other key, including
    agent-authored ones, is carried over as-is.
    """
    document = parse_content(raw)
    document.update(updates)
    return json.dumps(document)


def read_stage(raw: str | None) -> str | None:
    value = parse_content(raw).get(STAGE_KEY)
    return value if isinstance(value, str) else None


def read_comments(raw: str | None) -> dict[str, list[str]]:
    value = parse_content(raw).get(COMMENTS_KEY)
    if not isinstance(value, dict):
        return {}
    comments: dict[str, list[str]] = {}
    for blob_id, texts in value.items():
        if isinstance(texts, list):
            comments[str(blob_id)] = [str(t) for t in texts]
    return comments


def read_lifecycle(raw: str | None) -> Lifecycle:
    value = parse_content(raw).get(LIFECYCLE_KEY)
    if not isinstance(value, dict):
        return Lifecycle()
    steps = value.get("steps") or []
    if not isinstance(steps, list):
        steps = []
    current = value.get("currentStep") or 0
    if not isinstance(current, int) or isinstance(current, bool):
        current = 0
    return Lifecycle([str(s) for s in steps], current).clamp()


@dataclass
class Lifecycle:
    """Ordered lifecycle steps with a cursor.

    The cursor stays within ``[0, len(steps) - 1]`` whenever there are
    steps; navigation on an empty lifecycle is a no-op.
    """

    steps: list[str] = field(default_factory=list)
    current_step: int = 0

    def clamp(self) -> Lifecycle:
        if not self.steps:
            return Lifecycle([], 0)
        bounded = min(max(self.current_step, 0), len(self.steps) - 1)
        return Lifecycle(list(self.steps), bounded)

    def goto(self, index: int) -> Lifecycle:
        if not self.steps:
            return self
        return Lifecycle(list(self.steps), index).clamp()

    def advance(self) -> Lifecycle:
        return self.goto(self.current_step + 1)

    def retreat(self) -> Lifecycle:
        return self.goto(self.current_step - 1)

    @property
    def current_label(self) -> str | None:
        if not self.steps:
            return None
        return self.steps[self.current_step]

    def to_dict(self) -> dict[str, Any]:
        return {"steps": list(self.steps), "currentStep": self.current_step}
