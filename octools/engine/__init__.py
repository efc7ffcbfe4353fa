"""Session runtime - stream normalization, liveness, recovery and history sync."""
from .models import (
    ModelBinding,
    ModelDescriptor,
    PendingPrompt,
    SessionInfo,
    SessionStatusType,
)
from .config import ClientConfig
from .errors import (
    AuthError,
    ConfigError,
    NoAssistantMessageError,
    OctoolsError,
    RequestError,
    SessionFailedError,
)
from .yaml_config import load_yaml_config
from .client import OctoolsClient

__all__ = [
    # Client
    "OctoolsClient",
    # Models
    "ModelBinding",
    "ModelDescriptor",
    "PendingPrompt",
    "SessionInfo",
    "SessionStatusType",
    # Config
    "ClientConfig",
    "load_yaml_config",
    # Errors
    "AuthError",
    "ConfigError",
    "NoAssistantMessageError",
    "OctoolsError",
    "RequestError",
    "SessionFailedError",
]
