"""
Configuration for the DevOps Gantt backend.

Settings come from ``config.json`` at the repository root (optional) and
are overridden by environment variables:

- ``ADO_ORG``: Azure DevOps organization
- ``ADO_PROJECT``: default team project
- ``ADO_PAT``: personal access token (required for store access)
- ``ROOT_ID``: default project root work item
- ``PORT``: port for ``python -m backend.api``
"""

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from devops_gantt.core.aggregator import DEFAULT_PHASE_PATTERN, DEFAULT_TARGET_TYPES

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path(__file__).parent.parent / "config.json"


@dataclass
class Config:
    """Resolved backend settings."""

    organization: str = "olsom-net"
    project: str = "POL"
    pat: Optional[str] = None
    root_id: int = 14681
    port: int = 3000
    phase_pattern: str = DEFAULT_PHASE_PATTERN
    target_types: List[str] = field(default_factory=lambda: list(DEFAULT_TARGET_TYPES))
    history_concurrency: int = 8
    history_timeout_seconds: float = 30.0


def load_config(
    path: Optional[Path] = None, environ: Optional[Mapping[str, str]] = None
) -> Config:
    """
    Load settings from a JSON file and the environment.

    Parameters
    ----------
    path : Optional[Path]
        JSON config file (default: ``config.json`` at the repo root). A
        missing or unreadable file falls back to defaults.
    environ : Optional[Mapping[str, str]]
        Environment to read overrides from (default: ``os.environ``)

    Returns
    -------
    Config
        Resolved settings
    """
    path = path or DEFAULT_CONFIG_PATH
    environ = os.environ if environ is None else environ

    raw: Dict[str, Any] = {}
    if path.exists():
        try:
            with open(path, "r") as f:
                raw = json.load(f)
            logger.info(f"Loaded config from {path}")
        except (OSError, ValueError) as e:
            logger.warning(f"Could not load {path}: {e}, using defaults")
            raw = {}

    devops = raw.get("devops", {})
    backend = raw.get("backend", {})
    pipeline = raw.get("pipeline", {})

    config = Config()
    config.organization = environ.get("ADO_ORG") or devops.get("organization", config.organization)
    config.project = environ.get("ADO_PROJECT") or devops.get("project", config.project)
    config.pat = environ.get("ADO_PAT") or devops.get("pat") or None
    config.root_id = int(environ.get("ROOT_ID") or devops.get("root_id", config.root_id))
    config.port = int(environ.get("PORT") or backend.get("port", config.port))
    config.phase_pattern = pipeline.get("phase_pattern", config.phase_pattern)
    config.target_types = list(pipeline.get("target_types", config.target_types))
    config.history_concurrency = int(
        pipeline.get("history_concurrency", config.history_concurrency)
    )
    config.history_timeout_seconds = float(
        pipeline.get("history_timeout_seconds", config.history_timeout_seconds)
    )
    return config
