"""
ASTRYON GRAPH INVARIANTS - The Structural Superego

Checks the universe-level invariants of an EntityStore after the fact. The
store keeps them on every mutation; this validator is what tests (and
`load_universe` callers that want a diagnosis rather than an exception) use
to prove it.

Invariants Implemented:
1. Single Root: every Node's parent chain ends at exactly one Nexus,
   with no cycles and no dangling parents
2. Child Consistency: child_ids equals the set of Nodes naming the
   entity as parent, in chronological order, and matches the graph edges
3. Connection Shape: connection nodes bridge two distinct entities,
   hang under A, and only carry dialogue kinds as children

Design Philosophy:
- Violations are collected, never raised
- Checks are O(V+E) using rustworkx primitives where possible
"""
import rustworkx as rx
from typing import List, Tuple, Dict, Any, TYPE_CHECKING
from dataclasses import dataclass, field
from enum import Enum

from core.ontology import EntityKind, is_dialogue_kind
from core.schemas import Node, stamp_of

if TYPE_CHECKING:
    from core.entity_store import EntityStore


# =============================================================================
# INVARIANT RESULTS
# =============================================================================

class InvariantSeverity(Enum):
    """Severity levels for invariant violations."""
    ERROR = "error"      # Store is inconsistent
    WARNING = "warning"  # Tolerated but worth investigating


@dataclass
class InvariantViolation:
    """A specific invariant violation."""
    invariant: str
    severity: InvariantSeverity
    message: str
    entities_involved: List[str] = field(default_factory=list)


@dataclass
class InvariantReport:
    """Complete invariant validation report."""
    valid: bool
    violations: List[InvariantViolation]
    metrics: Dict[str, Any]

    @property
    def errors(self) -> List[InvariantViolation]:
        return [v for v in self.violations if v.severity == InvariantSeverity.ERROR]

    @property
    def warnings(self) -> List[InvariantViolation]:
        return [v for v in self.violations if v.severity == InvariantSeverity.WARNING]


# =============================================================================
# UNIVERSE INVARIANTS
# =============================================================================

class UniverseInvariants:
    """
    Invariant validators over an EntityStore.

    All methods are static and return a list of violations (empty = valid).
    """

    @staticmethod
    def validate_single_root(store: "EntityStore") -> List[InvariantViolation]:
        """Parent chains terminate at exactly one Nexus."""
        violations: List[InvariantViolation] = []
        graph = store.graph

        if not rx.is_directed_acyclic_graph(graph):
            violations.append(InvariantViolation(
                invariant="single_root",
                severity=InvariantSeverity.ERROR,
                message="Parent relation contains a cycle",
            ))
            return violations

        for nexus in store.nexuses:
            if graph.in_degree(store._node_map[nexus.id]) != 0:
                violations.append(InvariantViolation(
                    invariant="single_root",
                    severity=InvariantSeverity.ERROR,
                    message=f"Nexus {nexus.id} has a parent edge",
                    entities_involved=[nexus.id],
                ))

        for node in store.nodes:
            if not store.has(node.parent_id):
                violations.append(InvariantViolation(
                    invariant="single_root",
                    severity=InvariantSeverity.ERROR,
                    message=f"Node {node.id} has dangling parent {node.parent_id}",
                    entities_involved=[node.id],
                ))
                continue
            in_degree = graph.in_degree(store._node_map[node.id])
            if in_degree != 1:
                violations.append(InvariantViolation(
                    invariant="single_root",
                    severity=InvariantSeverity.ERROR,
                    message=f"Node {node.id} has {in_degree} parent edges",
                    entities_involved=[node.id],
                ))

        return violations

    @staticmethod
    def validate_child_consistency(store: "EntityStore") -> List[InvariantViolation]:
        """child_ids mirrors parent_id and the graph edges, chronologically."""
        violations: List[InvariantViolation] = []

        expected: Dict[str, List[str]] = {entity.id: [] for entity in store.iter_entities()}
        for node in store.nodes:
            if node.parent_id in expected:
                expected[node.parent_id].append(node.id)

        for entity in store.iter_entities():
            derived = sorted(expected[entity.id], key=stamp_of)
            if entity.child_ids != derived:
                violations.append(InvariantViolation(
                    invariant="child_consistency",
                    severity=InvariantSeverity.ERROR,
                    message=f"child_ids of {entity.id} disagree with parent_id",
                    entities_involved=[entity.id],
                ))
                continue

            idx = store._node_map[entity.id]
            edge_children = sorted(store._inv_map[i] for i in store.graph.successor_indices(idx))
            if edge_children != sorted(derived):
                violations.append(InvariantViolation(
                    invariant="child_consistency",
                    severity=InvariantSeverity.ERROR,
                    message=f"Graph edges of {entity.id} disagree with child_ids",
                    entities_involved=[entity.id],
                ))

        return violations

    @staticmethod
    def validate_connections(store: "EntityStore") -> List[InvariantViolation]:
        """Bridges are well formed and host only dialogue children."""
        violations: List[InvariantViolation] = []

        for node in store.nodes:
            if not node.is_connection_node:
                continue
            if node.bridged_ids is None or node.kind != EntityKind.CONNECTION:
                violations.append(InvariantViolation(
                    invariant="connection_shape",
                    severity=InvariantSeverity.ERROR,
                    message=f"Connection {node.id} lacks bridged ids or connection kind",
                    entities_involved=[node.id],
                ))
                continue

            id_a, id_b = node.bridged_ids
            if id_a == id_b or node.parent_id != id_a:
                violations.append(InvariantViolation(
                    invariant="connection_shape",
                    severity=InvariantSeverity.ERROR,
                    message=f"Connection {node.id} must hang under A and bridge two entities",
                    entities_involved=[node.id, id_a, id_b],
                ))
            if not store.has(id_b):
                violations.append(InvariantViolation(
                    invariant="connection_shape",
                    severity=InvariantSeverity.WARNING,
                    message=f"Connection {node.id} partner {id_b} is gone",
                    entities_involved=[node.id],
                ))

            for child in store.children(node.id):
                if not (is_dialogue_kind(child.kind) or child.kind == EntityKind.SYNTHESIS):
                    violations.append(InvariantViolation(
                        invariant="connection_shape",
                        severity=InvariantSeverity.WARNING,
                        message=f"Connection {node.id} has non-dialogue child {child.id}",
                        entities_involved=[node.id, child.id],
                    ))

        return violations

    @staticmethod
    def validate_all(store: "EntityStore") -> InvariantReport:
        violations: List[InvariantViolation] = []
        violations.extend(UniverseInvariants.validate_single_root(store))
        violations.extend(UniverseInvariants.validate_child_consistency(store))
        violations.extend(UniverseInvariants.validate_connections(store))

        nodes = store.nodes
        metrics = {
            "nexus_count": len(store.nexuses),
            "node_count": len(nodes),
            "connection_count": sum(1 for n in nodes if n.is_connection_node),
            "max_depth": max((store.level_of(n.id) for n in nodes), default=0),
        }

        return InvariantReport(
            valid=not any(v.severity == InvariantSeverity.ERROR for v in violations),
            violations=violations,
            metrics=metrics,
        )


# =============================================================================
# CONVENIENCE FUNCTIONS
# =============================================================================

def validate_store(store: "EntityStore") -> InvariantReport:
    """Run every invariant check against a store."""
    return UniverseInvariants.validate_all(store)


def dialogue_rounds(store: "EntityStore", connection_id: str) -> List[Tuple[Node, Node]]:
    """
    Pair a connection's children into (answer, question) rounds.

    A trailing unpaired child (answer recorded, question pending) is not
    counted as a completed round.
    """
    children = [c for c in store.children(connection_id) if is_dialogue_kind(c.kind)]
    return [
        (children[i], children[i + 1])
        for i in range(0, len(children) - 1, 2)
        if children[i].kind == EntityKind.USER_REPLY
        and children[i + 1].kind == EntityKind.SOCRATIC_QUESTION
    ]
