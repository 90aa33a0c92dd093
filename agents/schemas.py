"""
ASTRYON INTELLIGENCE - Agent Schemas

Defines the msgspec Structs exchanged between the agents, the completion
service and the caller.

Two families:
- Wire schemas: what the completion service must return as JSON
  (GapAnalysis, SynthesisPlan, DoctrineMap). Field names follow the
  camelCase keys the prompts ask for.
- Outcome schemas: what the orchestrator and state machines hand back to
  their driver (QueryOutcome, ParallelPlan, BatchReport, DoctrinalResult).

Design:
- Wire schemas are converted with msgspec.convert; a shape mismatch is a
  ParseError, never a partially filled object
- Context schemas are frozen: parallel tasks read one immutable GapContext
"""
import msgspec
from typing import Annotated, List, Literal, Optional, Tuple, Union
from enum import Enum

from core.ontology import DoctrinalStage, GapPath


# =============================================================================
# ERRORS
# =============================================================================

class NoActiveUniverseError(Exception):
    """Raised when a query arrives with no current and no activated universe."""
    def __init__(self):
        super().__init__(
            "GAP mode requires an active universe. Create or load a universe, "
            "or activate one from the library."
        )


class InvalidTransitionError(Exception):
    """Raised when a state machine is driven from a state that forbids it."""
    def __init__(self, machine: str, state: str, action: str):
        self.machine = machine
        self.state = state
        self.action = action
        super().__init__(f"{machine}: cannot {action} while {state}")


# =============================================================================
# GAP WIRE SCHEMAS
# =============================================================================

class GapAnalysis(msgspec.Struct, kw_only=True, frozen=True):
    """Step B classification of a user question."""
    type: Literal["single", "parallel"]
    reasoning: str = ""
    tasks: List[str] = []


class SynthesisPoint(msgspec.Struct, kw_only=True, frozen=True):
    content: str


class SynthesisPlan(msgspec.Struct, kw_only=True, frozen=True, rename="camel"):
    """A new Nexus synthesised across activated universes."""
    nexus_title: str
    nexus_content: str
    nodes: List[SynthesisPoint]


# =============================================================================
# DOCTRINAL WIRE SCHEMAS
# =============================================================================

class CaseType(str, Enum):
    FOUNDATIONAL = "foundational"
    REFINEMENT = "refinement"
    APPLICATION = "application"
    OVERRULED = "overruled"


class CaseRecord(msgspec.Struct, kw_only=True, frozen=True, rename="camel"):
    case_name: str
    citation: str = ""
    year: Optional[Union[int, str]] = None
    facts: str = ""
    doctrinal_analysis: str = ""
    holding: str = ""
    significance: str = ""
    case_type: CaseType = CaseType.APPLICATION

    def to_content(self) -> str:
        return (
            f"{self.case_name}\n{self.citation}\n\n"
            f"Facts: {self.facts}\n\n"
            f"Analysis: {self.doctrinal_analysis}\n\n"
            f"Holding: {self.holding}\n\n"
            f"Significance: {self.significance}"
        )


class DoctrineMap(msgspec.Struct, kw_only=True, frozen=True, rename="camel"):
    """Rule statement, its elements and 5 to 8 defining cases."""
    rule_statement: str
    elements: List[str]
    cases: Annotated[List[CaseRecord], msgspec.Meta(min_length=5, max_length=8)]

    def to_nexus_content(self) -> str:
        numbered = "\n".join(f"{i + 1}. {element}" for i, element in enumerate(self.elements))
        return f"Rule: {self.rule_statement}\n\nElements:\n{numbered}"


# =============================================================================
# GRAPH CONTEXT (Step A)
# =============================================================================

class SelectionContext(msgspec.Struct, kw_only=True, frozen=True):
    """What the user had selected when the query was sent."""
    selected_id: Optional[str] = None


class EntityView(msgspec.Struct, kw_only=True, frozen=True):
    id: str
    kind: str           # human-readable kind label
    title: str
    content: str
    parent_id: Optional[str] = None


class GraphView(msgspec.Struct, kw_only=True, frozen=True):
    """Serialised universe: full content plus parent/child edges."""
    universe_id: str
    title: str
    nexuses: Tuple[EntityView, ...]
    nodes: Tuple[EntityView, ...]
    edges: Tuple[Tuple[str, str], ...]

    @property
    def headline(self) -> str:
        if self.nexuses:
            return self.nexuses[0].title
        return self.title or self.universe_id


class GapContext(msgspec.Struct, kw_only=True, frozen=True):
    """Immutable context read by every completion call of one request."""
    current_graph: Optional[GraphView]
    activated_graphs: Tuple[GraphView, ...] = ()
    parent_id: Optional[str] = None

    @property
    def is_synthesis(self) -> bool:
        return self.current_graph is None and len(self.activated_graphs) > 0


# =============================================================================
# OUTCOMES
# =============================================================================

class ParallelPlan(msgspec.Struct, kw_only=True, frozen=True):
    """A parallel decomposition waiting at the planning gate."""
    plan_id: str
    question: str
    tasks: Tuple[str, ...]
    reasoning: str
    parent_id: str
    context: GapContext


class BatchReport(msgspec.Struct, kw_only=True):
    """Outcome of one parallel dispatch. Partial failure is data, not an exception."""
    succeeded: int = 0
    failed: int = 0
    node_ids: List[str] = msgspec.field(default_factory=list)
    errors: List[str] = msgspec.field(default_factory=list)
    success: bool = False


class QueryOutcome(msgspec.Struct, kw_only=True):
    """Which GAP path ran for a query and what it produced."""
    path: GapPath
    node_ids: List[str] = msgspec.field(default_factory=list)
    nexus_id: Optional[str] = None
    plan: Optional[ParallelPlan] = None
    reasoning: str = ""


class DoctrinalResult(msgspec.Struct, kw_only=True):
    topic: str
    success: bool
    final_stage: DoctrinalStage
    nexus_id: Optional[str] = None
    node_ids: List[str] = msgspec.field(default_factory=list)
    error: Optional[str] = None
