"""
ASTRYON DOCTRINAL GENERATOR - LangGraph StateGraph Implementation

Builds a doctrinal map (rule, elements, 5-8 defining cases) for a legal
topic as a new academic Nexus with one CASE node per case.

Graph structure:
    researching -> finding_cases -> analyzing -> building_map -> complete -> END
         |              |              |              |
         +--------------+--------------+--------------+--> error -> END

Design:
- StateGraph with a TypedDict state; every stage node returns a partial update
- Only `analyzing` calls the completion service
- Every stage change goes to the optional progress callback and is published
  as PHASE_CHANGED; the generator ends each run back in IDLE
- Atomic from the caller's view: on any failure the store is restored to the
  universe it held before the run (no partial Nexus, no orphan cases)
"""
import asyncio
import logging
import re
from typing import Callable, List, Optional, TypedDict

from langgraph.graph import END, StateGraph

from agents.gap_orchestrator import load_activated_views
from agents.prompts import build_doctrine_prompt, format_activated_case_context
from agents.schemas import DoctrinalResult, DoctrineMap, InvalidTransitionError
from core.entity_store import EntityStore
from core.llm import CompletionError, CompletionService
from core.ontology import DoctrinalStage, EntityKind, NexusKind
from core.parsing import parse_as
from core.schemas import Snapshot, Universe
from infrastructure.config import AstryonConfig, get_config
from infrastructure.event_bus import EventBus, EventType
from infrastructure.universe_library import UniverseLibrary

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[DoctrinalStage], None]

_DOCTRINE_REQUEST = re.compile(
    r"(?:create|generate|build)\s+(?:a\s+)?(?:doctrine|doctrinal)\s+(?:map|universe)\s+"
    r"(?:for|of|about)\s+(.+)",
    re.IGNORECASE,
)


def detect_doctrine_request(text: str) -> Optional[str]:
    """
    Topic of a "create a doctrinal map for X" request, or None.

    Example:
        detect_doctrine_request("Build a doctrine map of promissory estoppel")
        -> "promissory estoppel"
    """
    match = _DOCTRINE_REQUEST.search(text)
    if match is None:
        return None
    topic = match.group(1).strip().rstrip(".?!").strip()
    return topic or None


# =============================================================================
# STATE
# =============================================================================

class DoctrinalState(TypedDict, total=False):
    """State carried through one doctrinal run (all fields replace)."""
    topic: str
    stage: str
    activated_context: str
    raw_response: str
    nexus_id: Optional[str]
    node_ids: List[str]
    error: Optional[str]


def route_after_stage(next_stage: str) -> Callable[[DoctrinalState], str]:
    def _route(state: DoctrinalState) -> str:
        return "error" if state.get("error") else next_stage
    return _route


# =============================================================================
# GENERATOR
# =============================================================================

class DoctrinalGenerator:
    """
    Drives the doctrinal pipeline against one EntityStore.

    Usage:
        generator = DoctrinalGenerator(store, completion, library=library)
        result = await generator.advance("promissory estoppel")
        if result.success:
            print(result.nexus_id, len(result.node_ids))
    """

    def __init__(
        self,
        store: EntityStore,
        completion: CompletionService,
        library: Optional[UniverseLibrary] = None,
        config: Optional[AstryonConfig] = None,
        event_bus: Optional[EventBus] = None,
        on_progress: Optional[ProgressCallback] = None,
    ):
        self.store = store
        self.completion = completion
        self.library = library
        self.config = config or get_config()
        self.event_bus = event_bus
        self.on_progress = on_progress

        self.last_snapshot: Optional[Snapshot] = None

        self._stage = DoctrinalStage.IDLE
        self._history: List[DoctrinalStage] = []
        self._baseline: Optional[Universe] = None
        self._mutated = False
        self._saved = False
        self._graph = self._build_graph().compile()

    @property
    def stage(self) -> DoctrinalStage:
        return self._stage

    @property
    def history(self) -> List[DoctrinalStage]:
        """Stages entered during the most recent run, in order."""
        return list(self._history)

    # =========================================================================
    # GRAPH BUILDER
    # =========================================================================

    def _build_graph(self) -> StateGraph:
        graph = StateGraph(DoctrinalState)

        graph.add_node("researching", self._researching)
        graph.add_node("finding_cases", self._finding_cases)
        graph.add_node("analyzing", self._analyzing)
        graph.add_node("building_map", self._building_map)
        graph.add_node("complete", self._complete)
        graph.add_node("error", self._error)

        graph.add_conditional_edges(
            "researching",
            route_after_stage("finding_cases"),
            {"finding_cases": "finding_cases", "error": "error"},
        )
        graph.add_conditional_edges(
            "finding_cases",
            route_after_stage("analyzing"),
            {"analyzing": "analyzing", "error": "error"},
        )
        graph.add_conditional_edges(
            "analyzing",
            route_after_stage("building_map"),
            {"building_map": "building_map", "error": "error"},
        )
        graph.add_conditional_edges(
            "building_map",
            route_after_stage("complete"),
            {"complete": "complete", "error": "error"},
        )

        graph.add_edge("complete", END)
        graph.add_edge("error", END)

        graph.set_entry_point("researching")
        return graph

    # =========================================================================
    # DRIVER
    # =========================================================================

    async def advance(self, topic: str) -> DoctrinalResult:
        """
        Run the whole pipeline for one topic.

        Failures never raise: they end in the error stage and are reported
        in the result, with the store restored. Cancellation (or any other
        escaping exception) also restores the store and returns the
        generator to IDLE before it propagates.

        Raises:
            ValueError: On an empty topic
            InvalidTransitionError: If a run is already in progress
        """
        topic = topic.strip()
        if not topic:
            raise ValueError("Doctrinal topic must not be empty")
        if self._stage != DoctrinalStage.IDLE:
            raise InvalidTransitionError("doctrinal", self._stage.value, "start a new map")

        self._history = []
        self._baseline = self.store.to_universe()
        self._mutated = False
        self._saved = False

        logger.info(f"Doctrinal map requested for {topic!r}")
        try:
            final = await self._graph.ainvoke({"topic": topic, "node_ids": [], "error": None})
        except BaseException as e:
            logger.warning(f"Doctrinal run for {topic!r} interrupted: {e!r}")
            self._restore_baseline()
            if self._stage != DoctrinalStage.IDLE:
                self._set_stage(DoctrinalStage.IDLE)
            raise

        error = final.get("error")
        return DoctrinalResult(
            topic=topic,
            success=error is None,
            final_stage=DoctrinalStage.ERROR if error else DoctrinalStage.COMPLETE,
            nexus_id=None if error else final.get("nexus_id"),
            node_ids=[] if error else list(final.get("node_ids", [])),
            error=error,
        )

    # =========================================================================
    # STAGE NODES
    # =========================================================================

    async def _researching(self, state: DoctrinalState) -> DoctrinalState:
        self._set_stage(DoctrinalStage.RESEARCHING)
        await asyncio.sleep(self.config.pacing.stage_delay)
        return {"stage": DoctrinalStage.RESEARCHING.value}

    async def _finding_cases(self, state: DoctrinalState) -> DoctrinalState:
        self._set_stage(DoctrinalStage.FINDING_CASES)
        try:
            views = load_activated_views(self.library, exclude_id=self.store.universe_id)
        except Exception as e:
            logger.error(f"Reading activated universes failed: {e}", exc_info=True)
            return {"stage": DoctrinalStage.FINDING_CASES.value, "error": str(e)}

        if views:
            logger.debug(f"Using {len(views)} activated universes as case sources")
        await asyncio.sleep(self.config.pacing.stage_delay)
        return {
            "stage": DoctrinalStage.FINDING_CASES.value,
            "activated_context": format_activated_case_context(
                views, self.config.gap.context_char_limit
            ),
        }

    async def _analyzing(self, state: DoctrinalState) -> DoctrinalState:
        self._set_stage(DoctrinalStage.ANALYZING)
        system, user = build_doctrine_prompt(state["topic"], state.get("activated_context", ""))
        try:
            raw = await self.completion.complete(
                [{"role": "user", "content": user}],
                system=system,
                max_tokens=self.config.llm.structured_max_tokens,
            )
        except CompletionError as e:
            logger.error(f"Doctrinal analysis failed: {e}")
            return {"stage": DoctrinalStage.ANALYZING.value, "error": e.user_message}
        except Exception as e:
            logger.error(f"Doctrinal analysis failed: {e}", exc_info=True)
            return {"stage": DoctrinalStage.ANALYZING.value, "error": str(e)}
        return {"stage": DoctrinalStage.ANALYZING.value, "raw_response": raw}

    async def _building_map(self, state: DoctrinalState) -> DoctrinalState:
        self._set_stage(DoctrinalStage.BUILDING_MAP)
        try:
            doctrine = parse_as(state["raw_response"], DoctrineMap)

            self._mutated = True
            nexus_id = self.store.create_nexus(
                state["topic"],
                doctrine.to_nexus_content(),
                kind=NexusKind.ACADEMIC,
                metadata={
                    "origin": "doctrinal",
                    "rule_statement": doctrine.rule_statement,
                    "elements": list(doctrine.elements),
                },
            )

            node_ids: List[str] = []
            for case in doctrine.cases:
                if node_ids:
                    await asyncio.sleep(self.config.pacing.merge_delay)
                node_ids.append(self.store.add_node(
                    case.to_content(),
                    nexus_id,
                    kind=EntityKind.CASE,
                    title=case.case_name,
                    metadata={
                        "citation": case.citation,
                        "year": case.year,
                        "case_type": case.case_type.value,
                    },
                ))

            if self.library is not None:
                self._saved = True
                self.library.save(self.store.universe_id, self.store.to_universe())
                self.last_snapshot = self.library.create_snapshot(self.store.universe_id)
            else:
                self.last_snapshot = Snapshot.capture(self.store.to_universe())
            # built and persisted; later interruptions keep the map
            self._baseline = None
        except Exception as e:
            logger.error(f"Building doctrinal map failed: {e}", exc_info=True)
            return {"stage": DoctrinalStage.BUILDING_MAP.value, "error": str(e)}

        logger.info(f"Doctrinal nexus {nexus_id} built with {len(node_ids)} cases")
        return {
            "stage": DoctrinalStage.BUILDING_MAP.value,
            "nexus_id": nexus_id,
            "node_ids": node_ids,
        }

    async def _complete(self, state: DoctrinalState) -> DoctrinalState:
        self._set_stage(DoctrinalStage.COMPLETE)
        await asyncio.sleep(self.config.pacing.complete_hold_delay)
        self._set_stage(DoctrinalStage.IDLE)
        return {"stage": DoctrinalStage.COMPLETE.value}

    async def _error(self, state: DoctrinalState) -> DoctrinalState:
        self._set_stage(DoctrinalStage.ERROR)
        self._restore_baseline()
        await asyncio.sleep(self.config.pacing.error_reset_delay)
        self._set_stage(DoctrinalStage.IDLE)
        return {"stage": DoctrinalStage.ERROR.value}

    # =========================================================================
    # INTERNAL UTILITIES
    # =========================================================================

    def _restore_baseline(self) -> None:
        if not self._mutated or self._baseline is None:
            return
        self.store.load_universe(self._baseline)
        if self._saved and self.library is not None:
            self.library.save(self._baseline.id, self._baseline)
        self._mutated = False
        logger.warning(f"Restored universe {self._baseline.id} after failed doctrinal build")

    def _set_stage(self, stage: DoctrinalStage) -> None:
        self._stage = stage
        self._history.append(stage)

        if self.on_progress is not None:
            try:
                self.on_progress(stage)
            except Exception as e:
                logger.error(f"Error in doctrinal progress callback: {e}", exc_info=True)

        if self.event_bus is not None:
            self.event_bus.emit(EventType.PHASE_CHANGED, "doctrinal", stage=stage.value)
