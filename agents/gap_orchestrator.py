"""
ASTRYON GAP ORCHESTRATOR - Graph-Aware Processing

Turns one user question into graph mutations.

Flow:
    handle_user_query(text, selection)
        |
        v
    Step A: build_context()  -> frozen GapContext
        |                       (current universe + activated universes)
        +-- no current, >=1 activated --> SYNTHESIS: new Nexus + points
        +-- no current, none activated -> NoActiveUniverseError
        |
        v
    Step B: analysis call    -> GapAnalysis{type, reasoning, tasks}
        |
        +-- single   --> one call, one AI_RESPONSE node
        +-- parallel --> ParallelPlan returned to the caller (planning gate)
                              |
                              v
                         execute_plan(plan)
                              gather(tasks, return_exceptions=True)
                              merge successes in TASK order, paced
                              -> BatchReport

Failure policy:
- Step A/B (and the single call) fail before any mutation; the error
  propagates and ORCHESTRATOR_ERROR is published
- Parallel tasks fail in isolation; merged nodes are never rolled back
- A batch where every task failed is reported (success=False), not raised
"""
import asyncio
import logging
from typing import Dict, List, Optional

from agents.prompts import (
    build_analysis_prompt,
    build_single_prompt,
    build_synthesis_prompt,
    build_task_prompt,
)
from agents.schemas import (
    BatchReport,
    EntityView,
    GapAnalysis,
    GapContext,
    GraphView,
    InvalidTransitionError,
    NoActiveUniverseError,
    ParallelPlan,
    QueryOutcome,
    SelectionContext,
    SynthesisPlan,
)
from core.entity_store import EntityNotFoundError, EntityStore
from core.llm import CompletionError, CompletionService, TaskType
from core.ontology import EntityKind, GapPath, NexusKind, kind_label
from core.parsing import ParseError, parse_as
from core.schemas import Universe, generate_id, stamp_of
from infrastructure.config import AstryonConfig, get_config
from infrastructure.event_bus import EventBus, EventType
from infrastructure.universe_library import UniverseLibrary

logger = logging.getLogger(__name__)


# =============================================================================
# CONTEXT SERIALISATION
# =============================================================================

def universe_view(universe: Universe) -> GraphView:
    """Serialise a universe: every entity with full content, plus tree edges."""
    nexuses = tuple(
        EntityView(
            id=nexus.id,
            kind=f"Nexus ({nexus.kind.value})",
            title=nexus.title,
            content=nexus.content,
        )
        for nexus in universe.nexuses
    )
    ordered = sorted(universe.nodes.values(), key=lambda n: stamp_of(n.id))
    nodes = tuple(
        EntityView(
            id=node.id,
            kind=kind_label(node.kind),
            title=node.title,
            content=node.content,
            parent_id=node.parent_id,
        )
        for node in ordered
    )
    edges = tuple((node.parent_id, node.id) for node in ordered)
    return GraphView(
        universe_id=universe.id,
        title=universe.title,
        nexuses=nexuses,
        nodes=nodes,
        edges=edges,
    )


def load_activated_views(
    library: Optional[UniverseLibrary],
    exclude_id: Optional[str] = None,
) -> List[GraphView]:
    """Read-only views of every activated universe except `exclude_id`."""
    if library is None:
        return []
    views = []
    for universe_id in library.list_activated():
        if universe_id == exclude_id:
            continue
        universe = library.load(universe_id)
        if universe is None:
            logger.warning(f"Activated universe {universe_id} vanished before it could be read")
            continue
        views.append(universe_view(universe))
    return views


# =============================================================================
# ORCHESTRATOR
# =============================================================================

class GapOrchestrator:
    """
    Routes user questions through analysis to single, parallel or synthesis
    generation against one EntityStore.

    Usage:
        orchestrator = GapOrchestrator(store, completion, library=library)
        outcome = await orchestrator.handle_user_query("Compare X and Y")
        if outcome.plan is not None:
            report = await orchestrator.execute_plan(outcome.plan)
    """

    def __init__(
        self,
        store: EntityStore,
        completion: CompletionService,
        library: Optional[UniverseLibrary] = None,
        config: Optional[AstryonConfig] = None,
        event_bus: Optional[EventBus] = None,
    ):
        self.store = store
        self.completion = completion
        self.library = library
        self.config = config or get_config()
        self.event_bus = event_bus

        self._pending: Dict[str, ParallelPlan] = {}

    @property
    def pending_plans(self) -> List[ParallelPlan]:
        return list(self._pending.values())

    # =========================================================================
    # STEP A: CONTEXT
    # =========================================================================

    def build_context(self, selection: Optional[SelectionContext] = None) -> GapContext:
        """
        Snapshot the current universe and the activated universes.

        The current universe is None when the store holds no Nexus.

        Raises:
            EntityNotFoundError: If the selection names an unknown entity
        """
        selection = selection or SelectionContext()
        current = None if self.store.is_empty else universe_view(self.store.to_universe())
        activated = load_activated_views(self.library, exclude_id=self.store.universe_id)

        parent_id = None
        if current is not None:
            parent_id = self._resolve_parent(selection)

        return GapContext(
            current_graph=current,
            activated_graphs=tuple(activated),
            parent_id=parent_id,
        )

    def _resolve_parent(self, selection: SelectionContext) -> str:
        if selection.selected_id is not None:
            if not self.store.has(selection.selected_id):
                raise EntityNotFoundError(selection.selected_id)
            return selection.selected_id
        return self.store.nexuses[0].id

    # =========================================================================
    # ENTRY POINT
    # =========================================================================

    async def handle_user_query(
        self,
        text: str,
        selection: Optional[SelectionContext] = None,
    ) -> QueryOutcome:
        """
        Answer one user question against the universe.

        Returns:
            QueryOutcome naming the path taken. For PARALLEL_PENDING nothing
            has been mutated yet; pass outcome.plan to execute_plan() or
            dismiss_plan().

        Raises:
            ValueError: On an empty question
            NoActiveUniverseError: No current and no activated universe
            CompletionError / ParseError: Analysis or single call failed
        """
        question = text.strip()
        if not question:
            raise ValueError("Query text must not be empty")

        context = self.build_context(selection)

        if context.current_graph is None:
            if not context.activated_graphs:
                raise NoActiveUniverseError()
            return await self._synthesize(question, context)

        analysis = await self._guarded("analysis", self._analyze(question, context))

        if analysis.type == "parallel" and analysis.tasks:
            tasks = list(analysis.tasks)
            limit = self.config.gap.max_parallel_tasks
            if len(tasks) > limit:
                logger.warning(
                    f"Analysis proposed {len(tasks)} tasks; keeping the first {limit}"
                )
                tasks = tasks[:limit]

            plan = ParallelPlan(
                plan_id=generate_id("plan"),
                question=question,
                tasks=tuple(tasks),
                reasoning=analysis.reasoning,
                parent_id=context.parent_id,
                context=context,
            )
            self._pending[plan.plan_id] = plan
            logger.info(f"Parallel plan {plan.plan_id} awaiting confirmation ({len(tasks)} tasks)")
            return QueryOutcome(
                path=GapPath.PARALLEL_PENDING,
                plan=plan,
                reasoning=analysis.reasoning,
            )

        if analysis.type == "parallel":
            logger.info("Parallel analysis without tasks; answering as a single response")

        node_id = await self._answer_single(question, context)
        return QueryOutcome(
            path=GapPath.SINGLE,
            node_ids=[node_id],
            reasoning=analysis.reasoning,
        )

    # =========================================================================
    # STEP B: ANALYSIS
    # =========================================================================

    async def _analyze(self, question: str, context: GapContext) -> GapAnalysis:
        system, user = build_analysis_prompt(
            question, context, self.config.gap.context_char_limit
        )
        raw = await self.completion.complete(
            [{"role": "user", "content": user}],
            system=system,
            max_tokens=self.config.llm.max_tokens,
            task_type=TaskType.MUNDANE,
        )
        analysis = parse_as(raw, GapAnalysis)
        logger.debug(f"Analysis: {analysis.type} with {len(analysis.tasks)} tasks")
        return analysis

    # =========================================================================
    # STEP C: DISPATCH
    # =========================================================================

    async def _answer_single(self, question: str, context: GapContext) -> str:
        system, user = build_single_prompt(
            question, context, self.config.gap.context_char_limit
        )
        text = await self._guarded("single", self.completion.complete(
            [{"role": "user", "content": user}],
            system=system,
            max_tokens=self.config.llm.max_tokens,
        ))
        node_id = self.store.add_node(text, context.parent_id, kind=EntityKind.AI_RESPONSE)
        self._save()
        return node_id

    async def execute_plan(self, plan: ParallelPlan) -> BatchReport:
        """
        Dispatch every task of a confirmed plan concurrently and merge.

        Nodes are appended under plan.parent_id in task order regardless of
        completion order, with a pacing sleep between appends.

        Raises:
            InvalidTransitionError: If the plan was already executed or dismissed
            EntityNotFoundError: If the plan's parent no longer exists
        """
        if self._pending.pop(plan.plan_id, None) is None:
            raise InvalidTransitionError("gap", "not pending", f"execute plan {plan.plan_id}")
        self.store.get(plan.parent_id)

        logger.info(f"Dispatching {len(plan.tasks)} parallel tasks for plan {plan.plan_id}")
        results = await asyncio.gather(
            *(self._run_task(task, plan) for task in plan.tasks),
            return_exceptions=True,
        )

        report = BatchReport()
        for task, result in zip(plan.tasks, results):
            if isinstance(result, Exception):
                report.failed += 1
                message = result.user_message if isinstance(result, CompletionError) else str(result)
                report.errors.append(f"{task}: {message}")
                logger.warning(f"Parallel task failed: {task!r}: {result}")
                continue
            if isinstance(result, BaseException):
                raise result

            if report.node_ids:
                await asyncio.sleep(self.config.pacing.merge_delay)
            node_id = self.store.add_node(
                result,
                plan.parent_id,
                kind=EntityKind.AI_RESPONSE,
                metadata={"task": task, "plan_id": plan.plan_id},
            )
            report.node_ids.append(node_id)
            report.succeeded += 1

        report.success = report.succeeded > 0

        if report.success:
            self._save()
            self._emit(
                EventType.BATCH_MERGED,
                plan_id=plan.plan_id,
                succeeded=report.succeeded,
                failed=report.failed,
                node_ids=list(report.node_ids),
            )
            logger.info(
                f"Plan {plan.plan_id} merged: {report.succeeded} succeeded, {report.failed} failed"
            )
        else:
            logger.error(f"Plan {plan.plan_id}: all {report.failed} parallel tasks failed")
            self._emit(
                EventType.ORCHESTRATOR_ERROR,
                stage="dispatch",
                plan_id=plan.plan_id,
                errors=list(report.errors),
            )
        return report

    async def _run_task(self, task: str, plan: ParallelPlan) -> str:
        system, user = build_task_prompt(
            task, plan.question, plan.context, self.config.gap.context_char_limit
        )
        return await self.completion.complete(
            [{"role": "user", "content": user}],
            system=system,
            max_tokens=self.config.llm.max_tokens,
        )

    def dismiss_plan(self, plan: ParallelPlan) -> bool:
        """Cancel a pending plan. Returns False if it was not pending."""
        dismissed = self._pending.pop(plan.plan_id, None) is not None
        if dismissed:
            logger.info(f"Plan {plan.plan_id} dismissed")
        return dismissed

    # =========================================================================
    # SYNTHESIS MODE
    # =========================================================================

    async def _synthesize(self, question: str, context: GapContext) -> QueryOutcome:
        """One new Nexus built from the activated universes."""
        system, user = build_synthesis_prompt(
            question, context.activated_graphs, self.config.gap.context_char_limit
        )
        raw = await self._guarded("synthesis", self.completion.complete(
            [{"role": "user", "content": user}],
            system=system,
            max_tokens=self.config.llm.structured_max_tokens,
        ))
        try:
            plan = parse_as(raw, SynthesisPlan)
        except ParseError as e:
            self._emit_error("synthesis", e)
            raise

        sources = [view.universe_id for view in context.activated_graphs]
        nexus_id = self.store.create_nexus(
            plan.nexus_title,
            plan.nexus_content,
            kind=NexusKind.CHAT,
            metadata={"origin": "synthesis", "sources": sources},
        )

        node_ids: List[str] = []
        for point in plan.nodes:
            if node_ids:
                await asyncio.sleep(self.config.pacing.merge_delay)
            node_ids.append(
                self.store.add_node(point.content, nexus_id, kind=EntityKind.SYNTHESIS)
            )

        self._save()
        logger.info(
            f"Synthesis nexus {nexus_id} created from {len(sources)} universes "
            f"({len(node_ids)} points)"
        )
        return QueryOutcome(path=GapPath.SYNTHESIS, node_ids=node_ids, nexus_id=nexus_id)

    # =========================================================================
    # INTERNAL UTILITIES
    # =========================================================================

    async def _guarded(self, stage: str, awaitable):
        """Await a pre-mutation step, publishing ORCHESTRATOR_ERROR on failure."""
        try:
            return await awaitable
        except (CompletionError, ParseError) as e:
            self._emit_error(stage, e)
            raise

    def _emit_error(self, stage: str, error: Exception) -> None:
        logger.error(f"GAP {stage} failed: {error}")
        message = error.user_message if isinstance(error, CompletionError) else str(error)
        self._emit(
            EventType.ORCHESTRATOR_ERROR,
            stage=stage,
            error_type=type(error).__name__,
            message=message,
        )

    def _save(self) -> None:
        if self.library is not None:
            self.library.save(self.store.universe_id, self.store.to_universe())

    def _emit(self, event_type: EventType, **payload) -> None:
        if self.event_bus is not None:
            self.event_bus.emit(event_type, "gap_orchestrator", **payload)
