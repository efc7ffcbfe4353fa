"""Adapters package - Bridge between the session client and its consumers.

Typed signals and the bus that fans them out to callbacks and to async
consumers such as a relay server.
"""
from __future__ import annotations

__all__ = [
    "ALL_SIGNALS",
    "EventBus",
    "SIGNAL_TYPES",
    "Signal",
    "signal_to_dict",
]

from octools.adapters.event_bus import ALL_SIGNALS, EventBus
from octools.adapters.events import SIGNAL_TYPES, Signal, signal_to_dict
