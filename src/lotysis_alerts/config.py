"""Config file loading and auto-discovery.

Searches for ``lotysis-alerts.yaml`` in the current directory and parent
directories, parses it, resolves relative paths against the config file's
location, and applies ``LOTYSIS_ALERTS_<FIELD>`` environment overrides.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any

import yaml

CONFIG_FILENAME = "lotysis-alerts.yaml"
ENV_PREFIX = "LOTYSIS_ALERTS_"

_PATH_FIELDS = ("store_path", "audit_jsonl")


@dataclass(frozen=True)
class EngineConfig:
    """Parsed alerting engine configuration.

    All scalar fields can be overridden via environment variables prefixed
    with ``LOTYSIS_ALERTS_`` (e.g., ``LOTYSIS_ALERTS_METRICS_INTERVAL=10``).
    """

    config_path: Path | None = None
    metrics_interval: float = 30.0
    health_interval: float = 60.0
    escalation_interval: float = 120.0
    metrics_capacity: int = 1000
    alert_capacity: int = 500
    audit_capacity: int = 1000
    dispatch_workers: int = 8
    channel_timeout: float = 10.0
    probe_timeout: float = 5.0
    shutdown_grace: float = 5.0
    timestamp_format: str = "%d/%m/%Y %H:%M:%S"
    store_path: str | None = None
    api_url: str | None = None
    external_api_url: str | None = None
    browser_webhook_url: str | None = None
    audit_jsonl: str | None = None
    smtp: dict[str, Any] | None = None
    retry: dict[str, Any] | None = None


def find_config(start: Path | None = None) -> Path | None:
    """Walk from *start* (default ``cwd()``) up to the filesystem root.

    Returns the first ``lotysis-alerts.yaml`` found, or ``None``.
    """
    current = (start or Path.cwd()).resolve()
    while True:
        candidate = current / CONFIG_FILENAME
        if candidate.is_file():
            return candidate
        parent = current.parent
        if parent == current:
            return None
        current = parent


def load_config(
    path: str | Path | None = None,
    *,
    auto_discover: bool = True,
    environ: Mapping[str, str] | None = None,
) -> EngineConfig:
    """Load the engine config.

    Resolution order:

    1. Explicit *path* (error if it doesn't exist).
    2. Auto-discover by walking parent directories.
    3. Defaults.

    Environment overrides are applied last in every case.
    """
    config_path: Path | None = None

    if path is not None:
        config_path = Path(path).resolve()
        if not config_path.is_file():
            msg = f"Config file not found: {config_path}"
            raise FileNotFoundError(msg)
    elif auto_discover:
        config_path = find_config()

    data: dict[str, Any] = {}
    if config_path is not None:
        data = _parse_config(config_path)

    data.update(_env_overrides(os.environ if environ is None else environ))
    return EngineConfig(config_path=config_path, **data)


def _parse_config(config_path: Path) -> dict[str, Any]:
    """Read a YAML config file, resolving relative paths."""
    text = config_path.read_text(encoding="utf-8")
    data = yaml.safe_load(text) or {}

    if not isinstance(data, dict):
        msg = f"Expected a YAML mapping in {config_path}, got {type(data).__name__}"
        raise ValueError(msg)

    known = {f.name for f in fields(EngineConfig)} - {"config_path"}
    unknown = sorted(set(data) - known)
    if unknown:
        msg = f"Unknown config keys in {config_path}: {', '.join(unknown)}"
        raise ValueError(msg)

    base = config_path.parent
    for key in _PATH_FIELDS:
        if data.get(key) is not None:
            data[key] = str((base / data[key]).resolve())
    return data


def _env_overrides(environ: Mapping[str, str]) -> dict[str, Any]:
    kwargs: dict[str, Any] = {}
    for fld in fields(EngineConfig):
        if fld.name == "config_path":
            continue
        val = environ.get(f"{ENV_PREFIX}{fld.name.upper()}")
        if val is None:
            continue
        fld_type = fld.type
        if fld_type == "int":
            kwargs[fld.name] = int(val)
        elif fld_type == "float":
            kwargs[fld.name] = float(val)
        elif fld_type == "bool":
            kwargs[fld.name] = val.lower() in ("1", "true", "yes")
        elif fld_type in ("str", "str | None"):
            kwargs[fld.name] = val
    return kwargs
