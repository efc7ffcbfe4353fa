"""octools - client runtime for remote AI-agent sessions."""
from octools.engine import (
    AuthError,
    ClientConfig,
    ConfigError,
    ModelBinding,
    ModelDescriptor,
    NoAssistantMessageError,
    OctoolsClient,
    OctoolsError,
    RequestError,
    SessionFailedError,
    SessionStatusType,
    load_yaml_config,
)
from octools.adapters import EventBus, Signal, signal_to_dict

__version__ = "0.1.0"

__all__ = [
    "AuthError",
    "ClientConfig",
    "ConfigError",
    "EventBus",
    "ModelBinding",
    "ModelDescriptor",
    "NoAssistantMessageError",
    "OctoolsClient",
    "OctoolsError",
    "RequestError",
    "SessionFailedError",
    "SessionStatusType",
    "Signal",
    "load_yaml_config",
    "signal_to_dict",
]
