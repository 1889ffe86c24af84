"""
Settings loader for orgguard.

Loads the deployment's YAML settings file, applies environment
overrides, validates the result against the Pydantic schema, and hands
back a frozen Settings object to be injected at process start.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import ValidationError

from orgguard.config.schema import DeploymentMode, Settings

CONFIG_ENV = "ORGGUARD_CONFIG"
DEFAULT_CONFIG_NAME = Path("config") / "orgguard.yaml"

_TRUTHY = {"1", "true", "yes", "on"}


def find_config_file() -> Optional[Path]:
    """Locate config/orgguard.yaml relative to the project root."""
    current = Path(__file__).resolve()
    for parent in current.parents:
        candidate = parent / DEFAULT_CONFIG_NAME
        if candidate.is_file():
            return candidate
    return None


def _apply_env_overrides(raw: dict[str, Any]) -> dict[str, Any]:
    """Overlay ORGGUARD_* environment variables onto the raw mapping."""
    self_hosted = os.environ.get("ORGGUARD_SELF_HOSTED")
    if self_hosted is not None:
        raw["mode"] = (
            DeploymentMode.SELF_HOSTED.value
            if self_hosted.lower().strip() in _TRUTHY
            else DeploymentMode.HOSTED.value
        )

    installation_id = os.environ.get("ORGGUARD_INSTALLATION_ID")
    if installation_id:
        raw.setdefault("licensing", {})["installation_id"] = installation_id

    delay = os.environ.get("ORGGUARD_GUARD_DELAY")
    if delay:
        raw.setdefault("guard", {})["failure_delay_seconds"] = delay

    return raw


def load_settings(config_path: Optional[str | Path] = None) -> Settings:
    """
    Load and validate the deployment settings.

    Args:
        config_path: Optional explicit path to a YAML settings file.
                     Falls back to $ORGGUARD_CONFIG, then config/orgguard.yaml.
                     If no file is found, defaults plus environment apply.

    Returns:
        Validated, frozen Settings instance.

    Raises:
        FileNotFoundError: If an explicitly requested file doesn't exist.
        ValueError: If the settings are invalid.
    """
    explicit = config_path or os.environ.get(CONFIG_ENV)
    path: Optional[Path]
    if explicit:
        path = Path(explicit)
        if not path.exists():
            raise FileNotFoundError(f"Settings file not found: {path}")
    else:
        path = find_config_file()

    raw: dict[str, Any] = {}
    if path is not None:
        with open(path, "r") as f:
            loaded = yaml.safe_load(f)
        if loaded is not None:
            if not isinstance(loaded, dict):
                raise ValueError(f"Settings file must contain a mapping: {path}")
            raw = loaded

    raw = _apply_env_overrides(raw)

    try:
        return Settings(**raw)
    except ValidationError as e:
        source = str(path) if path else "environment"
        raise ValueError(f"Invalid orgguard settings ({source}):\n{e}") from e
