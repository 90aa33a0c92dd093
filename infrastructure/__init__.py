"""
ASTRYON INFRASTRUCTURE - System-Level Modules

This package contains infrastructure components:
- config: typed settings from config/astryon.toml
- event_bus: pub/sub for graph mutations and pipeline progress
- universe_library: SQLite persistence for universes and snapshots
"""

from infrastructure.event_bus import EventBus, EventType, GraphEvent, get_event_bus
from infrastructure.config import AstryonConfig, get_config, load_config
from infrastructure.universe_library import (
    LibraryError,
    SnapshotNotFoundError,
    UniverseLibrary,
    UniverseNotFoundError,
)

__all__ = [
    "EventBus",
    "EventType",
    "GraphEvent",
    "get_event_bus",
    "AstryonConfig",
    "get_config",
    "load_config",
    "LibraryError",
    "SnapshotNotFoundError",
    "UniverseLibrary",
    "UniverseNotFoundError",
]
