"""
ASTRYON SCHEMAS - The Grammar of the Universe

If ontology.py is the Dictionary (the words we can use), schemas.py is the
Grammar (how entities are structured):
- Nexus: root entity of one knowledge tree
- Node: reply entity with exactly one tree parent
- Universe: the unit of save / load / revert
- Snapshot: immutable copy of a Universe used for revert
- Id clock: entity ids that embed a strictly increasing creation stamp

Design Principles:
1. STRICT TYPING: msgspec.Struct with no silent type coercion
2. KW_ONLY: Enforce keyword arguments to prevent positional mix-ups
3. IMMUTABLE IDS: Entity ids are set once and never change
4. CHRONOLOGICAL IDS: Sibling order is derived from the id stamp, never from
   list position
"""
import time
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Dict, List, Optional, Tuple

import msgspec

from core.ontology import EntityKind, NexusKind


Vec3 = Tuple[float, float, float]

ORIGIN: Vec3 = (0.0, 0.0, 0.0)


# =============================================================================
# UTILITY FUNCTIONS
# =============================================================================

def now_utc() -> str:
    """Fast UTC timestamp as ISO8601 string."""
    return datetime.now(timezone.utc).isoformat()


_clock_lock = Lock()
_last_stamp = 0


def next_stamp() -> int:
    """
    Millisecond creation stamp, strictly greater than any stamp returned
    before in this process.

    Two entities created inside the same millisecond get consecutive stamps,
    so ordering by stamp always matches creation order.
    """
    global _last_stamp
    with _clock_lock:
        stamp = int(time.time() * 1000)
        if stamp <= _last_stamp:
            stamp = _last_stamp + 1
        _last_stamp = stamp
        return stamp


def observe_stamp(stamp: int) -> None:
    """Advance the clock past a stamp seen in loaded data."""
    global _last_stamp
    with _clock_lock:
        if stamp > _last_stamp:
            _last_stamp = stamp


def generate_id(prefix: str) -> str:
    """Generate an entity id of the form '<prefix>-<ms stamp>'."""
    return f"{prefix}-{next_stamp()}"


def stamp_of(entity_id: str) -> int:
    """
    Extract the creation stamp embedded in an entity id.

    Raises:
        ValueError: If the id does not end in a numeric stamp
    """
    _, _, tail = entity_id.rpartition("-")
    if not tail.isdigit():
        raise ValueError(f"Entity id has no creation stamp: {entity_id}")
    return int(tail)


# =============================================================================
# ENTITIES
# =============================================================================

class Nexus(msgspec.Struct, kw_only=True):
    """
    Root of exactly one knowledge tree. Never has a parent.

    `position` is the only hand-set coordinate in a universe; every node
    position is derived from it by the layout engine.
    """
    id: str
    title: str
    content: str = ""
    position: Vec3 = ORIGIN
    media_refs: List[str] = msgspec.field(default_factory=list)
    kind: NexusKind = NexusKind.CHAT
    child_ids: List[str] = msgspec.field(default_factory=list)
    metadata: Dict[str, Any] = msgspec.field(default_factory=dict)
    created_at: str = msgspec.field(default_factory=now_utc)


class Node(msgspec.Struct, kw_only=True):
    """
    A reply entity with exactly one tree parent (a Nexus or another Node).

    Connection nodes additionally carry `bridged_ids=(A, B)`: A is the tree
    parent, B is a weak reference used only for a second rendered edge and
    for dialogue context. Their `content` holds only the open question.
    """
    id: str
    parent_id: str
    content: str = ""
    title: str = ""
    position: Vec3 = ORIGIN
    sibling_index: int = 0          # placement slot; never reused under one parent
    child_ids: List[str] = msgspec.field(default_factory=list)
    kind: EntityKind = EntityKind.AI_RESPONSE
    is_connection_node: bool = False
    bridged_ids: Optional[Tuple[str, str]] = None
    quote: Optional[str] = None
    metadata: Dict[str, Any] = msgspec.field(default_factory=dict)
    created_at: str = msgspec.field(default_factory=now_utc)


class Universe(msgspec.Struct, kw_only=True):
    """The unit of save / load / revert."""
    id: str
    title: str = ""
    nexuses: List[Nexus] = msgspec.field(default_factory=list)
    nodes: Dict[str, Node] = msgspec.field(default_factory=dict)
    course_mode: Optional[bool] = None

    def entity_count(self) -> int:
        return len(self.nexuses) + len(self.nodes)


class Snapshot(msgspec.Struct, kw_only=True, frozen=True):
    """
    Immutable copy of a Universe captured before exploration begins.

    The universe is held as encoded JSON so no caller can mutate the copy;
    `restore()` decodes a fresh, independent Universe each time.
    """
    universe_id: str
    captured_at: str
    payload: bytes

    @classmethod
    def capture(cls, universe: Universe) -> "Snapshot":
        return cls(
            universe_id=universe.id,
            captured_at=now_utc(),
            payload=msgspec.json.encode(universe),
        )

    def restore(self) -> Universe:
        return msgspec.json.decode(self.payload, type=Universe)


def copy_universe(universe: Universe) -> Universe:
    """Deep copy a universe through its JSON form."""
    return msgspec.json.decode(msgspec.json.encode(universe), type=Universe)
