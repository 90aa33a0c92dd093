"""
ASTRYON SPATIAL LAYOUT - Deterministic Placement

Every node position is a pure function of where it attaches:

    place(parent_level, parent_position, sibling_index) -> Vec3

Levels:
    L1 (children of a Nexus)
        Golden-angle ring around the Nexus. Radius grows slightly with the
        sibling index so accumulating siblings never land on the same spot,
        and a small sine wobble lifts them off a flat plane.

    L2 / L3+ (deeper)
        Positioned OUTWARD from the Nexus through the parent: take the unit
        vector Nexus -> parent, step the child along it, then spiral it around
        that axis (golden angle again) in the perpendicular plane. Children
        fan out away from the centre instead of clustering on the parent.

Reparenting:
    reparent_subtree() re-places the moved node under its new parent and
    cascades positions down its subtree. Only coordinates change below the
    moved node; its internal parent/child edges are untouched.

Slots:
    Each node records the slot it was placed in. A new child takes one past
    the highest slot among its current siblings, so a slot freed by a
    reparent is never handed to a newcomer while an older sibling holds it.
"""
import math
from typing import TYPE_CHECKING, Dict, Iterable, Tuple

import msgspec

from core.ontology import LayoutLevel
from core.schemas import ORIGIN, Node, Vec3

if TYPE_CHECKING:
    from core.entity_store import EntityStore


GOLDEN_ANGLE = math.pi * (3 - math.sqrt(5))

_EPSILON = 1e-9
_WORLD_UP: Vec3 = (0.0, 1.0, 0.0)
_WORLD_RIGHT: Vec3 = (1.0, 0.0, 0.0)


class LayoutConfig(msgspec.Struct, kw_only=True, frozen=True):
    """Radii and spacing for the placement engine."""
    l1_radius: float = 6.0          # R1: base ring radius around a Nexus
    l1_radius_step: float = 0.4     # growth per L1 sibling
    l1_wobble: float = 0.5          # vertical sine amplitude on the L1 ring
    l2_radius: float = 3.0          # R2: outward step for grandchildren
    l3_radius: float = 2.0          # R3: outward step for anything deeper
    deep_radius_step: float = 0.8   # growth per sibling at L2+
    l2_spiral_radius: float = 1.5
    l3_spiral_radius: float = 1.0
    nexus_spacing: float = 40.0     # X offset between successive Nexuses

    def __post_init__(self):
        if not (self.l3_radius < self.l2_radius < self.l1_radius):
            raise ValueError(
                "Layout radii must shrink with depth "
                f"(got R1={self.l1_radius}, R2={self.l2_radius}, R3={self.l3_radius})"
            )


DEFAULT_LAYOUT = LayoutConfig()


# =============================================================================
# VECTOR HELPERS
# =============================================================================

def _add(a: Vec3, b: Vec3) -> Vec3:
    return (a[0] + b[0], a[1] + b[1], a[2] + b[2])


def _sub(a: Vec3, b: Vec3) -> Vec3:
    return (a[0] - b[0], a[1] - b[1], a[2] - b[2])


def _scale(a: Vec3, s: float) -> Vec3:
    return (a[0] * s, a[1] * s, a[2] * s)


def _dot(a: Vec3, b: Vec3) -> float:
    return a[0] * b[0] + a[1] * b[1] + a[2] * b[2]


def _cross(a: Vec3, b: Vec3) -> Vec3:
    return (
        a[1] * b[2] - a[2] * b[1],
        a[2] * b[0] - a[0] * b[2],
        a[0] * b[1] - a[1] * b[0],
    )


def _length(a: Vec3) -> float:
    return math.sqrt(_dot(a, a))


def _normalize(a: Vec3) -> Vec3:
    length = _length(a)
    if length < _EPSILON:
        raise ValueError("Cannot normalize a zero-length vector")
    return _scale(a, 1.0 / length)


def distance(a: Vec3, b: Vec3) -> float:
    """Euclidean distance between two points."""
    return _length(_sub(a, b))


def outward_direction(parent_position: Vec3, nexus_position: Vec3) -> Vec3:
    """
    Unit vector from the Nexus through the parent.

    A parent sitting exactly on its Nexus has no direction; +X is used so
    placement stays deterministic.
    """
    delta = _sub(parent_position, nexus_position)
    if _length(delta) < _EPSILON:
        return _WORLD_RIGHT
    return _normalize(delta)


def orthonormal_basis(direction: Vec3) -> Tuple[Vec3, Vec3]:
    """
    Two unit vectors orthogonal to `direction` and to each other.

    Built against world-up; when the direction is (anti)parallel to up the
    world-right axis is used instead.
    """
    reference = _WORLD_UP
    if abs(_dot(direction, reference)) > 0.999:
        reference = _WORLD_RIGHT
    u = _normalize(_cross(direction, reference))
    v = _cross(direction, u)
    return u, v


# =============================================================================
# PLACEMENT
# =============================================================================

def place(
    parent_level: int,
    parent_position: Vec3,
    sibling_index: int,
    nexus_position: Vec3 = ORIGIN,
    config: LayoutConfig = DEFAULT_LAYOUT,
) -> Vec3:
    """
    Compute the position of a child.

    Args:
        parent_level: Level of the parent (0 = Nexus, 1 = L1 node, ...)
        parent_position: Current position of the parent
        sibling_index: Zero-based placement slot of the child under its parent
        nexus_position: Position of the Nexus rooting the tree (deeper levels
                        fan outward from it)
        config: Radii and spacing

    Returns:
        The child's (x, y, z). Identical arguments always give identical
        coordinates.

    Raises:
        ValueError: On a negative sibling index or parent level
    """
    if sibling_index < 0:
        raise ValueError(f"Sibling index must be >= 0, got {sibling_index}")

    level = LayoutLevel.for_child_of(parent_level)
    angle = sibling_index * GOLDEN_ANGLE

    if level == LayoutLevel.L1:
        radius = config.l1_radius + sibling_index * config.l1_radius_step
        offset = (
            radius * math.cos(angle),
            math.sin(sibling_index * 0.5) * config.l1_wobble,
            radius * math.sin(angle),
        )
        return _add(parent_position, offset)

    if level == LayoutLevel.L2:
        base_radius = config.l2_radius
        spiral_radius = config.l2_spiral_radius
    else:
        base_radius = config.l3_radius
        spiral_radius = config.l3_spiral_radius

    radius = base_radius + sibling_index * config.deep_radius_step
    direction = outward_direction(parent_position, nexus_position)
    u, v = orthonormal_basis(direction)

    spiral = _add(
        _scale(u, spiral_radius * math.cos(angle)),
        _scale(v, spiral_radius * math.sin(angle)),
    )
    return _add(_add(parent_position, _scale(direction, radius)), spiral)


def nexus_position(index: int, config: LayoutConfig = DEFAULT_LAYOUT) -> Vec3:
    """Default position of the index-th Nexus in a universe."""
    return (index * config.nexus_spacing, 0.0, 0.0)


def next_sibling_slot(siblings: Iterable[Node]) -> int:
    """One past the highest slot held by `siblings` (0 for none)."""
    return max((sibling.sibling_index for sibling in siblings), default=-1) + 1


# =============================================================================
# REPARENTING
# =============================================================================

def reparent_subtree(
    store: "EntityStore",
    node_id: str,
    new_parent_id: str,
    config: LayoutConfig = DEFAULT_LAYOUT,
) -> Dict[str, Vec3]:
    """
    Recompute positions for a node that now hangs under `new_parent_id`,
    and for its whole subtree.

    The node is placed in the slot it records (the store assigns it a fresh
    one before calling). Each descendant keeps its parent and its own slot
    but is re-derived from that parent's NEW position, so the subtree keeps
    its shape while every absolute coordinate follows the new attachment
    point.

    The store must already record `new_parent_id` as the node's parent.

    Returns:
        Mapping of entity id -> new position for the node and every
        descendant. Nothing outside the subtree appears in it.
    """
    nexus = store.root_nexus_of(new_parent_id)
    parent_level = store.level_of(new_parent_id)

    node_position = place(
        parent_level,
        store.position_of(new_parent_id),
        store.get_node(node_id).sibling_index,
        nexus.position,
        config,
    )

    positions: Dict[str, Vec3] = {node_id: node_position}
    _cascade(store, node_id, parent_level + 1, node_position,
             nexus.position, config, positions)
    return positions


def _cascade(
    store: "EntityStore",
    parent_id: str,
    parent_level: int,
    parent_position: Vec3,
    root_position: Vec3,
    config: LayoutConfig,
    positions: Dict[str, Vec3],
) -> None:
    for child in store.children(parent_id):
        child_position = place(parent_level, parent_position, child.sibling_index,
                               root_position, config)
        positions[child.id] = child_position
        _cascade(store, child.id, parent_level + 1, child_position,
                 root_position, config, positions)
