"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via OCTOOLS_* env vars,
or layer a YAML file on top with yaml_config.load_yaml_config().
"""
from __future__ import annotations

import base64
import logging
import os
from dataclasses import dataclass

from .errors import ConfigError

logger = logging.getLogger(__name__)

# Username half of the basic-auth pair the remote service expects.
BASIC_AUTH_USER = "opencode"


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.lower() in {"1", "true", "yes", "on"}


@dataclass
class ClientConfig:
    """Session client configuration."""

    base_url: str = "http://localhost:4096"
    password: str | None = None
    auto_connect: bool = False

    # Liveness monitoring
    liveness_check_interval_seconds: float = 1.0
    # Busy sessions silent this long are aborted and retried.
    session_timeout_seconds: float = 240.0

    # Settle delay between abort and resend. The two recovery paths
    # are tuned separately.
    timeout_retry_delay_seconds: float = 1.0
    status_retry_delay_seconds: float = 0.5

    # Diagnostics
    raw_event_capacity: int = 2000
    heartbeat_threshold_seconds: float = 35.0

    # REST
    request_timeout_seconds: float = 30.0

    # History rehydration bounds
    history_max_messages: int = 200
    history_max_diffs: int = 200
    history_max_age_seconds: float = 12 * 3600.0

    log_level: str = "INFO"

    def __post_init__(self) -> None:
        self.base_url = self.base_url.rstrip("/")
        if self.liveness_check_interval_seconds <= 0:
            raise ConfigError("liveness_check_interval_seconds must be positive")
        if self.session_timeout_seconds <= 0:
            raise ConfigError("session_timeout_seconds must be positive")
        if self.timeout_retry_delay_seconds < 0 or self.status_retry_delay_seconds < 0:
            raise ConfigError("retry delays must not be negative")
        if self.raw_event_capacity < 1:
            raise ConfigError("raw_event_capacity must be at least 1")
        if self.history_max_messages < 0 or self.history_max_diffs < 0:
            raise ConfigError("history bounds must not be negative")

    @property
    def auth_header(self) -> dict[str, str]:
        """Basic-auth header for the stream and REST calls, if a password is set."""
        if not self.password:
            return {}
        token = base64.b64encode(
            f"{BASIC_AUTH_USER}:{self.password}".encode("utf-8")
        ).decode("ascii")
        return {"Authorization": f"Basic {token}"}

    @classmethod
    def from_env(cls) -> ClientConfig:
        """Load configuration from OCTOOLS_* environment variables."""
        octools_vars = sorted(
            k for k in os.environ if k.startswith("OCTOOLS_")
        )
        if octools_vars:
            # Values are not logged; OCTOOLS_PASSWORD may be among them.
            logger.info(
                "ClientConfig.from_env: OCTOOLS_* env overrides: %s",
                ", ".join(octools_vars),
            )
        else:
            logger.debug("ClientConfig.from_env: no OCTOOLS_* env vars set, using defaults")

        try:
            config = cls(
                base_url=os.getenv("OCTOOLS_BASE_URL", cls.base_url),
                password=os.getenv("OCTOOLS_PASSWORD") or None,
                auto_connect=_env_flag("OCTOOLS_AUTO_CONNECT", cls.auto_connect),
                liveness_check_interval_seconds=float(os.getenv(
                    "OCTOOLS_LIVENESS_INTERVAL",
                    str(cls.liveness_check_interval_seconds),
                )),
                session_timeout_seconds=float(os.getenv(
                    "OCTOOLS_SESSION_TIMEOUT", str(cls.session_timeout_seconds)
                )),
                timeout_retry_delay_seconds=float(os.getenv(
                    "OCTOOLS_TIMEOUT_RETRY_DELAY",
                    str(cls.timeout_retry_delay_seconds),
                )),
                status_retry_delay_seconds=float(os.getenv(
                    "OCTOOLS_STATUS_RETRY_DELAY",
                    str(cls.status_retry_delay_seconds),
                )),
                raw_event_capacity=int(os.getenv(
                    "OCTOOLS_RAW_EVENT_CAPACITY", str(cls.raw_event_capacity)
                )),
                log_level=os.getenv("OCTOOLS_LOG_LEVEL", cls.log_level),
            )
        except ValueError as exc:
            # float()/int() on a malformed env value
            raise ConfigError(f"Invalid OCTOOLS_* value: {exc}") from exc

        logger.info(
            "ClientConfig.from_env: base_url=%s timeout=%.1fs interval=%.1fs",
            config.base_url,
            config.session_timeout_seconds,
            config.liveness_check_interval_seconds,
        )
        return config
