"""YAML configuration loader.

Layers a single YAML file over the env-derived ClientConfig. When no
YAML is provided, OCTOOLS_* env vars work exactly as before.

Example YAML:
    client:
      base_url: http://localhost:4096
      password: hunter2
      auto_connect: true

    liveness:
      check_interval_seconds: 1.0
      session_timeout_seconds: 240

    retry:
      timeout_delay_seconds: 1.0
      status_delay_seconds: 0.5

    history:
      max_messages: 200
      max_diffs: 200
      max_age_hours: 12
"""
from __future__ import annotations

import logging
from dataclasses import replace
from pathlib import Path
from typing import Any

import yaml

from .config import ClientConfig
from .errors import ConfigError

logger = logging.getLogger(__name__)

# (section, yaml key) -> (ClientConfig field, converter)
_KEY_MAP: dict[tuple[str, str], tuple[str, Any]] = {
    ("client", "base_url"): ("base_url", str),
    ("client", "password"): ("password", str),
    ("client", "auto_connect"): ("auto_connect", bool),
    ("client", "request_timeout_seconds"): ("request_timeout_seconds", float),
    ("client", "heartbeat_threshold_seconds"): ("heartbeat_threshold_seconds", float),
    ("client", "raw_event_capacity"): ("raw_event_capacity", int),
    ("client", "log_level"): ("log_level", str),
    ("liveness", "check_interval_seconds"): ("liveness_check_interval_seconds", float),
    ("liveness", "session_timeout_seconds"): ("session_timeout_seconds", float),
    ("retry", "timeout_delay_seconds"): ("timeout_retry_delay_seconds", float),
    ("retry", "status_delay_seconds"): ("status_retry_delay_seconds", float),
    ("history", "max_messages"): ("history_max_messages", int),
    ("history", "max_diffs"): ("history_max_diffs", int),
    ("history", "max_age_hours"): ("history_max_age_seconds", lambda v: float(v) * 3600.0),
}

_SECTIONS = frozenset(section for section, _ in _KEY_MAP)


def load_yaml_config(
    path: str | Path,
    base: ClientConfig | None = None,
) -> ClientConfig:
    """Load a YAML config file and overlay it on *base*.

    *base* defaults to ClientConfig.from_env(), so precedence is
    YAML > OCTOOLS_* env vars > built-in defaults.
    """
    path = Path(path)
    logger.info("load_yaml_config: loading %s (exists=%s)", path, path.exists())
    try:
        with open(path, encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError as exc:
        logger.error(
            "load_yaml_config: config file not found at %s", path.absolute()
        )
        raise ConfigError(f"Config file not found: {path}") from exc
    except yaml.YAMLError as exc:
        logger.error("load_yaml_config: YAML parse error in %s: %s", path, exc)
        raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc

    if not isinstance(raw, dict):
        raise ConfigError(f"Top level of {path} must be a mapping")

    if base is None:
        base = ClientConfig.from_env()

    overrides: dict[str, Any] = {}
    for section, values in raw.items():
        if section not in _SECTIONS:
            logger.warning("load_yaml_config: ignoring unknown section %r", section)
            continue
        if not isinstance(values, dict):
            raise ConfigError(f"Section {section!r} in {path} must be a mapping")
        for key, value in values.items():
            target = _KEY_MAP.get((section, key))
            if target is None:
                logger.warning(
                    "load_yaml_config: ignoring unknown key %s.%s", section, key
                )
                continue
            if value is None:
                continue
            field_name, convert = target
            try:
                overrides[field_name] = convert(value)
            except (TypeError, ValueError) as exc:
                raise ConfigError(
                    f"Invalid value for {section}.{key} in {path}: {value!r}"
                ) from exc

    logger.info(
        "Parsed YAML config %s, overrides: %s",
        path.name, ", ".join(sorted(overrides)) if overrides else "(none)",
    )
    # replace() re-runs __post_init__ validation
    return replace(base, **overrides)
