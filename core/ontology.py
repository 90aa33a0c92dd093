"""
ASTRYON ONTOLOGY - The Dictionary of the Universe

Defines the closed vocabularies used across the engine:
- NexusKind: what sort of universe a Nexus roots
- EntityKind: the closed set of node kinds (replaces free-form string tags)
- LayoutLevel: ring levels used by the placement engine
- ConnectionState: lifecycle of a Socratic bridge
- DoctrinalStage: stages of the doctrinal-map pipeline

Design Principles:
1. CLOSED SETS: Every kind is an Enum member; unknown values are errors.
2. EXHAUSTIVE CONSUMERS: Each consumer handles every member explicitly and
   raises on anything else, so adding a member surfaces every site to update.
"""
from enum import Enum


# =============================================================================
# ENTITY KINDS
# =============================================================================

class NexusKind(str, Enum):
    """Kind of universe a Nexus roots."""
    CHAT = "chat"
    ACADEMIC = "academic"
    COURSE = "course"


class EntityKind(str, Enum):
    """
    Closed set of node kinds.

    AI_RESPONSE:        Answer generated by the completion service
    USER_REPLY:         Text written by the user (including Socratic answers)
    DOCTRINE:           Concept node of a structured learning universe
    SYNTHESIS:          Cross-source synthesis point or Socratic wrap-up
    CONNECTION:         Bridge between two existing entities
    SOCRATIC_QUESTION:  Follow-up question inside a connection dialogue
    CASE:               Case record of a doctrinal map
    """
    AI_RESPONSE = "ai-response"
    USER_REPLY = "user-reply"
    DOCTRINE = "doctrine"
    SYNTHESIS = "synthesis"
    CONNECTION = "connection"
    SOCRATIC_QUESTION = "socratic-question"
    CASE = "case"


def kind_label(kind: EntityKind) -> str:
    """
    Human-readable label for a node kind, used when a graph is serialised
    into completion-service context.

    Raises:
        ValueError: If kind is not a known EntityKind
    """
    if kind == EntityKind.AI_RESPONSE:
        return "AI response"
    elif kind == EntityKind.USER_REPLY:
        return "User reply"
    elif kind == EntityKind.DOCTRINE:
        return "Doctrine"
    elif kind == EntityKind.SYNTHESIS:
        return "Synthesis"
    elif kind == EntityKind.CONNECTION:
        return "Connection"
    elif kind == EntityKind.SOCRATIC_QUESTION:
        return "Socratic question"
    elif kind == EntityKind.CASE:
        return "Case"
    else:
        raise ValueError(f"Unknown entity kind: {kind}")


def is_dialogue_kind(kind: EntityKind) -> bool:
    """True for kinds that make up a Socratic transcript under a bridge."""
    if kind in (EntityKind.USER_REPLY, EntityKind.SOCRATIC_QUESTION):
        return True
    elif kind in (
        EntityKind.AI_RESPONSE,
        EntityKind.DOCTRINE,
        EntityKind.SYNTHESIS,
        EntityKind.CONNECTION,
        EntityKind.CASE,
    ):
        return False
    else:
        raise ValueError(f"Unknown entity kind: {kind}")


# =============================================================================
# LAYOUT LEVELS
# =============================================================================

class LayoutLevel(int, Enum):
    """
    Placement levels.

    NEXUS: the root itself (level 0)
    L1:    direct children of a Nexus (ring around the root)
    L2:    grandchildren (fan outward through the parent)
    L3:    anything deeper uses the L3 radii
    """
    NEXUS = 0
    L1 = 1
    L2 = 2
    L3 = 3

    @classmethod
    def for_child_of(cls, parent_level: int) -> "LayoutLevel":
        """Level a child takes when attached under a parent at parent_level."""
        if parent_level < 0:
            raise ValueError(f"Invalid parent level: {parent_level}")
        return cls(min(parent_level + 1, cls.L3.value))


# =============================================================================
# STATE MACHINES
# =============================================================================

class ConnectionState(str, Enum):
    """Lifecycle of a connection node's Socratic dialogue."""
    EMPTY = "empty"
    ACTIVE = "active"
    ANSWERED = "answered"
    QUESTIONED = "questioned"
    ENDED = "ended"


class DoctrinalStage(str, Enum):
    """Stages of doctrinal-map generation, in pipeline order."""
    IDLE = "idle"
    RESEARCHING = "researching"
    FINDING_CASES = "finding-cases"
    ANALYZING = "analyzing"
    BUILDING_MAP = "building-map"
    COMPLETE = "complete"
    ERROR = "error"


class GapPath(str, Enum):
    """Which path the GAP orchestrator took for a query."""
    SINGLE = "single"
    PARALLEL_PENDING = "parallel-pending"
    SYNTHESIS = "synthesis"
