"""
ASTRYON ENTITY STORE - The Canonical Universe Graph

The single owned aggregate holding every Nexus and Node of the active
universe. Orchestrators and state machines receive a handle to it; nothing
reaches it through ambient global state.

Architecture (The Bridge Pattern):
  Python Layer (Business Logic)
  - Uses string ids: "nexus-1717171717000", "node-1717171717001"
  - Calls: store.add_node(text, parent_id), store.reparent(a, b)

  Bridge Layer (This File)
  - _node_map: Dict[str, int]  (entity id -> index)
  - _inv_map: Dict[int, str]   (index -> entity id)

  Rust Layer (rustworkx.PyDiGraph)
  - One edge per tree relation: parent -> child
  - Bridge references (connection -> B) are NOT edges; they are weak links
    stored on the connection node and resolved on demand.

Invariants kept on return from every mutation:
- every Node's parent chain ends at exactly one Nexus
- no Node is reparented onto itself or a descendant
- child_ids of every entity equals the set of Nodes naming it as parent,
  in chronological (id stamp) order

All mutations are synchronous. Positions are only ever written by the layout
engine, except the Nexus position chosen at creation.
"""
import logging
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple, Union

import polars as pl
import rustworkx as rx

from core import layout
from core.layout import DEFAULT_LAYOUT, LayoutConfig
from core.ontology import EntityKind, NexusKind
from core.schemas import (
    Nexus,
    Node,
    Universe,
    Vec3,
    copy_universe,
    generate_id,
    observe_stamp,
    stamp_of,
)
from infrastructure.event_bus import EventBus, EventType

logger = logging.getLogger(__name__)

Entity = Union[Nexus, Node]


# =============================================================================
# CUSTOM EXCEPTIONS
# =============================================================================

class GraphError(Exception):
    """Base exception for entity store operations."""
    pass


class EntityNotFoundError(GraphError):
    """Raised when an entity id is not in the store (or has the wrong kind)."""
    def __init__(self, entity_id: str, expected: str = "entity"):
        self.entity_id = entity_id
        self.expected = expected
        super().__init__(f"{expected.capitalize()} not found: {entity_id}")


class CycleError(GraphError):
    """Raised when a reparent would make a node its own ancestor."""
    def __init__(self, node_id: str, new_parent_id: str):
        self.node_id = node_id
        self.new_parent_id = new_parent_id
        super().__init__(
            f"Cannot reparent {node_id} under {new_parent_id}: "
            "target is the node itself or one of its descendants"
        )


class DuplicateEntityError(GraphError):
    """Raised when an entity id is already present."""
    def __init__(self, entity_id: str):
        self.entity_id = entity_id
        super().__init__(f"Entity already exists: {entity_id}")


class InvalidConnectionError(GraphError):
    """Raised when a bridge cannot be created between two entities."""
    def __init__(self, id_a: str, id_b: str, reason: str):
        self.id_a = id_a
        self.id_b = id_b
        self.reason = reason
        super().__init__(f"Cannot connect {id_a} and {id_b}: {reason}")


# =============================================================================
# ENTITY STORE
# =============================================================================

class EntityStore:
    """
    In-memory universe graph backed by rustworkx.

    Usage:
        store = EntityStore()
        nexus_id = store.create_nexus("Contracts", "What makes a promise binding?")
        answer_id = store.add_node("Consideration...", nexus_id)
        bridge_id = store.connect(answer_id, nexus_id)

    Thread Safety:
        NOT thread-safe. All writes happen on the caller's turn of a single
        event loop.
    """

    def __init__(
        self,
        universe_id: Optional[str] = None,
        title: str = "",
        layout_config: LayoutConfig = DEFAULT_LAYOUT,
        event_bus: Optional[EventBus] = None,
    ):
        self.universe_id = universe_id or generate_id("universe")
        self.title = title
        self.course_mode: Optional[bool] = None

        self._layout = layout_config
        self._event_bus = event_bus

        # Core storage: tree edges only (parent -> child)
        self._graph: rx.PyDiGraph = rx.PyDiGraph(multigraph=False)

        # The Bridge: bidirectional id <-> index mapping
        self._node_map: Dict[str, int] = {}
        self._inv_map: Dict[int, str] = {}

        # Nexus creation order (ids), used for default Nexus spacing
        self._nexus_order: List[str] = []

    # =========================================================================
    # PROPERTIES
    # =========================================================================

    @property
    def graph(self) -> rx.PyDiGraph:
        """The underlying tree graph (read-only use)."""
        return self._graph

    @property
    def layout_config(self) -> LayoutConfig:
        return self._layout

    @property
    def nexuses(self) -> List[Nexus]:
        """Every Nexus, in creation order."""
        return [self._graph[self._node_map[nid]] for nid in self._nexus_order]

    @property
    def nodes(self) -> List[Node]:
        """Every Node, in chronological order."""
        found = [e for e in self._graph.nodes() if isinstance(e, Node)]
        return sorted(found, key=lambda n: stamp_of(n.id))

    @property
    def is_empty(self) -> bool:
        """True if the store has no Nexus (and therefore no Nodes)."""
        return not self._nexus_order

    @property
    def entity_count(self) -> int:
        return self._graph.num_nodes()

    # =========================================================================
    # MUTATIONS
    # =========================================================================

    def create_nexus(
        self,
        title: str,
        content: str = "",
        media: Optional[List[str]] = None,
        kind: NexusKind = NexusKind.CHAT,
        position: Optional[Vec3] = None,
        metadata: Optional[Dict] = None,
    ) -> str:
        """
        Create a new Nexus (root of a new tree).

        The Nexus position is the only hand-set coordinate: the first Nexus
        sits at the origin, later ones are spaced along X unless a position
        is given.

        Returns:
            The new Nexus id
        """
        if position is None:
            position = layout.nexus_position(len(self._nexus_order), self._layout)

        nexus = Nexus(
            id=generate_id("nexus"),
            title=title,
            content=content,
            position=tuple(position),
            media_refs=list(media or []),
            kind=kind,
            metadata=dict(metadata or {}),
        )
        self._insert(nexus)
        self._nexus_order.append(nexus.id)

        logger.debug(f"Created nexus {nexus.id} ({kind.value}) at {nexus.position}")
        self._emit(
            EventType.NEXUS_CREATED,
            entity_id=nexus.id,
            kind=kind.value,
            title=title,
            position=list(nexus.position),
        )
        return nexus.id

    def add_node(
        self,
        content: str,
        parent_id: str,
        quote: Optional[str] = None,
        kind: EntityKind = EntityKind.AI_RESPONSE,
        explicit_sibling_index: Optional[int] = None,
        title: str = "",
        metadata: Optional[Dict] = None,
    ) -> str:
        """
        Append a Node under an existing Nexus or Node.

        Args:
            content: Node text
            parent_id: Tree parent (Nexus or Node)
            quote: Optional excerpt of the parent this node replies to
            kind: Closed node kind
            explicit_sibling_index: Placement slot override; by default the
                                    node takes one past the highest slot
                                    held by its siblings
            title: Optional short title
            metadata: Free-form metadata

        Returns:
            The new Node id

        Raises:
            EntityNotFoundError: If parent_id is unknown
        """
        return self._attach(Node(
            id=generate_id("node"),
            parent_id=parent_id,
            content=content,
            title=title,
            kind=kind,
            quote=quote,
            metadata=dict(metadata or {}),
        ), explicit_sibling_index)

    def update_content(self, entity_id: str, text: str) -> None:
        """Replace the content of a Nexus or Node."""
        entity = self.get(entity_id)
        entity.content = text
        logger.debug(f"Updated content of {entity_id} ({len(text)} chars)")
        self._emit(EventType.NODE_UPDATED, entity_id=entity_id)

    def update_metadata(self, entity_id: str, **values) -> None:
        """Merge keys into the metadata of a Nexus or Node."""
        entity = self.get(entity_id)
        entity.metadata.update(values)
        self._emit(EventType.NODE_UPDATED, entity_id=entity_id, metadata_keys=sorted(values))

    def reparent(self, node_id: str, new_parent_id: str) -> Vec3:
        """
        Move a Node (and its subtree) under a new parent.

        The parent chain is walked upward from new_parent_id; meeting node_id
        means the move would create a cycle and nothing is changed. On
        success the node takes a fresh slot under its new parent (one past
        the highest held there) and its whole subtree is re-placed from there.

        Returns:
            The node's new position

        Raises:
            EntityNotFoundError: If node_id is not a Node or new_parent_id is unknown
            CycleError: If new_parent_id is node_id or one of its descendants
        """
        node = self.get_node(node_id)
        if new_parent_id not in self._node_map:
            raise EntityNotFoundError(new_parent_id)

        cursor: Optional[str] = new_parent_id
        while cursor is not None:
            if cursor == node_id:
                raise CycleError(node_id, new_parent_id)
            entity = self.get(cursor)
            cursor = entity.parent_id if isinstance(entity, Node) else None

        old_parent_id = node.parent_id
        old_parent = self.get(old_parent_id)
        self._graph.remove_edge(self._node_map[old_parent_id], self._node_map[node_id])
        old_parent.child_ids.remove(node_id)

        node.sibling_index = layout.next_sibling_slot(self.children(new_parent_id))
        node.parent_id = new_parent_id
        self._graph.add_edge(self._node_map[new_parent_id], self._node_map[node_id], None)
        self._link_child(self.get(new_parent_id), node_id)

        positions = layout.reparent_subtree(self, node_id, new_parent_id, self._layout)
        for entity_id, position in positions.items():
            self.get(entity_id).position = position

        logger.debug(
            f"Reparented {node_id}: {old_parent_id} -> {new_parent_id} "
            f"({len(positions)} positions recomputed)"
        )
        self._emit(
            EventType.NODE_REPARENTED,
            entity_id=node_id,
            old_parent_id=old_parent_id,
            new_parent_id=new_parent_id,
            moved=sorted(positions),
        )
        return positions[node_id]

    def connect(self, id_a: str, id_b: str) -> str:
        """
        Create an empty connection node bridging A and B.

        A becomes the tree parent; B is only referenced by id.

        Raises:
            EntityNotFoundError: If either id is unknown
            InvalidConnectionError: If A and B are the same entity
        """
        if id_a == id_b:
            raise InvalidConnectionError(id_a, id_b, "an entity cannot be bridged to itself")
        for entity_id in (id_a, id_b):
            if entity_id not in self._node_map:
                raise EntityNotFoundError(entity_id)

        node = Node(
            id=generate_id("node"),
            parent_id=id_a,
            content="",
            title="Connection",
            kind=EntityKind.CONNECTION,
            is_connection_node=True,
            bridged_ids=(id_a, id_b),
        )
        return self._attach(node, None)

    # =========================================================================
    # QUERIES
    # =========================================================================

    def get(self, entity_id: str) -> Entity:
        """Retrieve a Nexus or Node by id."""
        if entity_id not in self._node_map:
            raise EntityNotFoundError(entity_id)
        return self._graph[self._node_map[entity_id]]

    def get_nexus(self, entity_id: str) -> Nexus:
        entity = self._graph[self._node_map[entity_id]] if entity_id in self._node_map else None
        if not isinstance(entity, Nexus):
            raise EntityNotFoundError(entity_id, expected="nexus")
        return entity

    def get_node(self, entity_id: str) -> Node:
        entity = self._graph[self._node_map[entity_id]] if entity_id in self._node_map else None
        if not isinstance(entity, Node):
            raise EntityNotFoundError(entity_id, expected="node")
        return entity

    def has(self, entity_id: str) -> bool:
        return entity_id in self._node_map

    def position_of(self, entity_id: str) -> Vec3:
        return self.get(entity_id).position

    def children(self, entity_id: str) -> List[Node]:
        """Direct children, chronological by id stamp."""
        return [self.get_node(child_id) for child_id in self.get(entity_id).child_ids]

    def descendants(self, entity_id: str) -> List[Node]:
        """All transitive children (excluding the entity), chronological."""
        idx = self._get_index(entity_id)
        found = [self._graph[i] for i in rx.descendants(self._graph, idx)]
        return sorted(found, key=lambda n: stamp_of(n.id))

    def ancestors(self, entity_id: str) -> List[Entity]:
        """Parent chain from the direct parent up to (and including) the Nexus."""
        chain: List[Entity] = []
        entity = self.get(entity_id)
        while isinstance(entity, Node):
            entity = self.get(entity.parent_id)
            chain.append(entity)
        return chain

    def level_of(self, entity_id: str) -> int:
        """0 for a Nexus, 1 for its direct children, and so on."""
        return len(self.ancestors(entity_id))

    def root_nexus_of(self, entity_id: str) -> Nexus:
        entity = self.get(entity_id)
        if isinstance(entity, Nexus):
            return entity
        return self.ancestors(entity_id)[-1]

    def bridge_partner(self, connection_id: str) -> Optional[Entity]:
        """
        The weakly referenced entity B of a connection node.

        Returns None if B is no longer in the store.
        """
        node = self.get_node(connection_id)
        if not node.is_connection_node or node.bridged_ids is None:
            raise InvalidConnectionError(connection_id, "", "not a connection node")
        partner_id = node.bridged_ids[1]
        if partner_id not in self._node_map:
            return None
        return self.get(partner_id)

    def bridge_edges(self) -> List[Tuple[str, str]]:
        """(connection id, partner id) for every bridge whose partner still exists."""
        edges = []
        for node in self.nodes:
            if node.is_connection_node and node.bridged_ids is not None:
                partner_id = node.bridged_ids[1]
                if partner_id in self._node_map:
                    edges.append((node.id, partner_id))
        return edges

    def iter_entities(self) -> Iterator[Entity]:
        yield from self.nexuses
        yield from self.nodes

    # =========================================================================
    # WHOLE-UNIVERSE OPERATIONS
    # =========================================================================

    def to_universe(self) -> Universe:
        """Detached deep copy of the store contents."""
        return copy_universe(Universe(
            id=self.universe_id,
            title=self.title,
            nexuses=self.nexuses,
            nodes={node.id: node for node in self.nodes},
            course_mode=self.course_mode,
        ))

    def load_universe(self, universe: Universe) -> None:
        """
        Replace the store contents with a copy of `universe`.

        child_ids are re-derived from parent_id, so a universe with stale
        child lists loads consistently.

        Raises:
            GraphError: If a parent is missing or the parent relation has a cycle
        """
        universe = copy_universe(universe)

        graph: rx.PyDiGraph = rx.PyDiGraph(multigraph=False)
        node_map: Dict[str, int] = {}
        inv_map: Dict[int, str] = {}

        entities: List[Entity] = list(universe.nexuses) + list(universe.nodes.values())
        for entity in entities:
            if entity.id in node_map:
                raise DuplicateEntityError(entity.id)
            entity.child_ids = []
            idx = graph.add_node(entity)
            node_map[entity.id] = idx
            inv_map[idx] = entity.id

        for node in sorted(universe.nodes.values(), key=lambda n: stamp_of(n.id)):
            if node.parent_id not in node_map:
                raise GraphError(f"Node {node.id} references missing parent {node.parent_id}")
            parent = graph[node_map[node.parent_id]]
            parent.child_ids.append(node.id)
            graph.add_edge(node_map[node.parent_id], node_map[node.id], None)

        if not rx.is_directed_acyclic_graph(graph):
            raise GraphError(f"Universe {universe.id} has a cycle in its parent relation")

        for entity in entities:
            observe_stamp(stamp_of(entity.id))

        self._graph = graph
        self._node_map = node_map
        self._inv_map = inv_map
        self._nexus_order = [nexus.id for nexus in universe.nexuses]
        self.universe_id = universe.id
        self.title = universe.title
        self.course_mode = universe.course_mode

        logger.info(
            f"Loaded universe {universe.id}: {len(universe.nexuses)} nexuses, "
            f"{len(universe.nodes)} nodes"
        )
        self._emit(EventType.UNIVERSE_LOADED, nexus_count=len(universe.nexuses))

    @classmethod
    def from_universe(
        cls,
        universe: Universe,
        layout_config: LayoutConfig = DEFAULT_LAYOUT,
        event_bus: Optional[EventBus] = None,
    ) -> "EntityStore":
        store = cls(
            universe_id=universe.id,
            title=universe.title,
            layout_config=layout_config,
            event_bus=event_bus,
        )
        store.load_universe(universe)
        return store

    # =========================================================================
    # PERSISTENCE (Polars-Compatible)
    # =========================================================================

    def to_polars_nodes(self) -> pl.DataFrame:
        """
        Export every entity (Nexuses first) to a Polars DataFrame.

        Useful for analytics and for feeding an external renderer.
        """
        rows = []
        for entity in self.iter_entities():
            is_node = isinstance(entity, Node)
            rows.append({
                "id": entity.id,
                "entity": "node" if is_node else "nexus",
                "kind": entity.kind.value,
                "parent_id": entity.parent_id if is_node else None,
                "title": entity.title,
                "content": entity.content,
                "x": float(entity.position[0]),
                "y": float(entity.position[1]),
                "z": float(entity.position[2]),
                "level": self.level_of(entity.id),
                "created_at": entity.created_at,
            })

        schema = {
            "id": pl.Utf8,
            "entity": pl.Utf8,
            "kind": pl.Utf8,
            "parent_id": pl.Utf8,
            "title": pl.Utf8,
            "content": pl.Utf8,
            "x": pl.Float64,
            "y": pl.Float64,
            "z": pl.Float64,
            "level": pl.Int64,
            "created_at": pl.Utf8,
        }
        return pl.DataFrame(rows, schema=schema)

    def to_polars_edges(self) -> pl.DataFrame:
        """Export tree edges and bridge edges to a Polars DataFrame."""
        rows = [
            {"source_id": node.parent_id, "target_id": node.id, "type": "tree"}
            for node in self.nodes
        ]
        rows.extend(
            {"source_id": conn_id, "target_id": partner_id, "type": "bridge"}
            for conn_id, partner_id in self.bridge_edges()
        )
        return pl.DataFrame(
            rows,
            schema={"source_id": pl.Utf8, "target_id": pl.Utf8, "type": pl.Utf8},
        )

    def save_parquet(self, path: Path) -> Tuple[Path, Path]:
        """
        Save the universe as two parquet files.

        Creates:
        - {path}.nodes.parquet
        - {path}.edges.parquet

        Args:
            path: Base path (without extension)
        """
        path = Path(path)
        nodes_path = path.with_suffix(".nodes.parquet")
        edges_path = path.with_suffix(".edges.parquet")

        self.to_polars_nodes().write_parquet(nodes_path)
        self.to_polars_edges().write_parquet(edges_path)
        return nodes_path, edges_path

    # =========================================================================
    # INTERNAL UTILITIES
    # =========================================================================

    def _insert(self, entity: Entity) -> int:
        if entity.id in self._node_map:
            raise DuplicateEntityError(entity.id)
        idx = self._graph.add_node(entity)
        self._node_map[entity.id] = idx
        self._inv_map[idx] = entity.id
        return idx

    def _attach(self, node: Node, explicit_sibling_index: Optional[int]) -> str:
        """Place a new Node under its parent and insert it."""
        parent = self.get(node.parent_id)

        sibling_index = explicit_sibling_index
        if sibling_index is None:
            sibling_index = layout.next_sibling_slot(self.children(parent.id))
        node.sibling_index = sibling_index

        node.position = layout.place(
            self.level_of(parent.id),
            parent.position,
            sibling_index,
            self.root_nexus_of(parent.id).position,
            self._layout,
        )

        idx = self._insert(node)
        self._graph.add_edge(self._node_map[parent.id], idx, None)
        self._link_child(parent, node.id)

        logger.debug(
            f"Added {node.kind.value} node {node.id} under {parent.id} "
            f"(slot {sibling_index})"
        )
        self._emit(
            EventType.NODE_CREATED,
            entity_id=node.id,
            parent_id=parent.id,
            kind=node.kind.value,
            content=node.content[:100],
        )
        return node.id

    @staticmethod
    def _link_child(parent: Entity, child_id: str) -> None:
        """Insert child_id keeping child_ids in stamp order."""
        stamp = stamp_of(child_id)
        position = len(parent.child_ids)
        while position > 0 and stamp_of(parent.child_ids[position - 1]) > stamp:
            position -= 1
        parent.child_ids.insert(position, child_id)

    def _emit(self, event_type: EventType, **payload) -> None:
        if self._event_bus is not None:
            self._event_bus.emit(event_type, "entity_store", universe_id=self.universe_id, **payload)

    def _get_index(self, entity_id: str) -> int:
        if entity_id not in self._node_map:
            raise EntityNotFoundError(entity_id)
        return self._node_map[entity_id]

    def __len__(self) -> int:
        return self.entity_count

    def __contains__(self, entity_id: str) -> bool:
        return entity_id in self._node_map

    def __repr__(self) -> str:
        return (
            f"EntityStore(universe={self.universe_id}, "
            f"nexuses={len(self._nexus_order)}, entities={self.entity_count})"
        )
