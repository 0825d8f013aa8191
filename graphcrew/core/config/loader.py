"""Load a crew configuration from YAML, with env overrides on top."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from loguru import logger

from graphcrew.core.config.schema import Config

CONFIG_ENV = "GRAPHCREW_CONFIG"
DEFAULT_CONFIG_FILE = "config.yaml"


def load_config(config_path: str | Path | None = None) -> Config:
    """
    Load configuration.

    The file is ``config_path``, else ``$GRAPHCREW_CONFIG``, else
    ``./config.yaml`` when present. Agents may be written as a list or as a
    mapping keyed by agent id:

        agents:
          triage: {handoffs: [billing]}
          billing: {max_context_tokens: 100000}

    Env vars still win over anything in the file.
    """
    path = _resolve_path(config_path)
    data = _load_yaml(path)
    if path is not None:
        logger.debug(f"Loaded config from {path} ({len(data.get('agents', []))} agents)")
    return Config(**data)


def _resolve_path(config_path: str | Path | None) -> Path | None:
    if config_path:
        return Path(config_path)
    if os.environ.get(CONFIG_ENV):
        return Path(os.environ[CONFIG_ENV])
    default = Path(DEFAULT_CONFIG_FILE)
    return default if default.exists() else None


def _load_yaml(path: Path | None) -> dict[str, Any]:
    if path is None or not path.exists():
        return {}
    data = yaml.safe_load(path.read_text()) or {}
    agents = data.get("agents")
    if isinstance(agents, dict):
        data["agents"] = [{"agent_id": agent_id, **(spec or {})} for agent_id, spec in agents.items()]
    return data
