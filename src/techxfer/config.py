"""Configuration loading for the workbench."""

from __future__ import annotations

import json
import os
from pathlib import Path

import keyring

from techxfer.models import WorkbenchConfig

SERVICE_NAME = "techxfer-workbench"
KEY_NAME = "api_token"
TOKEN_ENV_VAR = "TECHXFER_API_TOKEN"

DEFAULT_CONFIG_PATH = Path("config/workbench_config.json")


def find_api_token() -> tuple[str, str] | None:
    """Look up the bearer token and say where it came from.

    Returns:
        ``(token, "keyring")`` or ``(token, "environment")``, or ``None``.
    """
    token = keyring.get_password(SERVICE_NAME, KEY_NAME)
    if token:
        return token, "keyring"
    token = os.environ.get(TOKEN_ENV_VAR)
    if token:
        return token, "environment"
    return None


def load_workbench_config(config_path: Path | None = None) -> WorkbenchConfig:
    """Load workbench configuration from JSON, falling back to defaults.

    Reads from ``config/workbench_config.json`` when *config_path* is
    ``None``.  Unknown keys in the file are ignored.  The API URL falls back
    to ``TECHXFER_API_URL``.  The token is resolved from the keyring or the
    environment; when neither has one, ``token`` stays ``None`` and requests
    go out without an ``Authorization`` header.

    Args:
        config_path: Optional explicit path to workbench_config.json.

    Returns:
        WorkbenchConfig populated from file, environment and keyring.

    Raises:
        ValueError: The file exists but is not a JSON object.
    """
    if config_path is None:
        config_path = DEFAULT_CONFIG_PATH

    data: dict = {}
    if config_path.exists():
        try:
            with open(config_path) as f:
                data = json.load(f)
        except ValueError as exc:
            raise ValueError(f"{config_path} is not valid JSON: {exc}") from exc
        if not isinstance(data, dict):
            raise ValueError(f"{config_path} must contain a JSON object")

    field_names = set(WorkbenchConfig.__dataclass_fields__)
    kwargs = {k: v for k, v in data.items() if k in field_names}

    if "api_url" not in kwargs and os.environ.get("TECHXFER_API_URL"):
        kwargs["api_url"] = os.environ["TECHXFER_API_URL"]

    config = WorkbenchConfig(**kwargs)

    if config.token is None:
        found = find_api_token()
        config.token = found[0] if found else None

    return config
