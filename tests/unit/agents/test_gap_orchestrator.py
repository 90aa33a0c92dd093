"""
Unit tests for the GAP orchestrator.

Covers path selection (single / parallel / synthesis), the planning gate,
task-order merging under out-of-order completion, partial and total batch
failure, and pre-mutation error propagation.
"""
import json
from unittest.mock import AsyncMock, patch

import msgspec
import pytest

from agents.gap_orchestrator import GapOrchestrator, universe_view
from agents.schemas import (
    InvalidTransitionError,
    NoActiveUniverseError,
    SelectionContext,
)
from core.entity_store import EntityNotFoundError, EntityStore
from core.llm import RateLimitedError, TaskType
from core.ontology import EntityKind, GapPath
from core.parsing import ParseError
from infrastructure.event_bus import EventType


def analysis(kind, tasks=(), reasoning="because"):
    return json.dumps({"type": kind, "reasoning": reasoning, "tasks": list(tasks)})


@pytest.fixture
def make_orchestrator(store_with_nexus, library, fast_config, event_bus):
    store, _ = store_with_nexus

    def _make(completion):
        return GapOrchestrator(
            store, completion, library=library, config=fast_config, event_bus=event_bus
        )
    return _make


# =============================================================================
# SINGLE PATH
# =============================================================================

class TestSinglePath:

    @pytest.mark.asyncio
    async def test_single_answer_under_first_nexus(self, store_with_nexus, library, make_orchestrator, scripted):
        store, nexus_id = store_with_nexus
        completion = scripted([analysis("single"), "Consideration is the price of a promise."])
        orchestrator = make_orchestrator(completion)

        outcome = await orchestrator.handle_user_query("What is consideration?")

        assert outcome.path == GapPath.SINGLE
        assert len(outcome.node_ids) == 1
        node = store.get_node(outcome.node_ids[0])
        assert node.parent_id == nexus_id
        assert node.kind == EntityKind.AI_RESPONSE
        assert node.content == "Consideration is the price of a promise."
        assert library.load(store.universe_id).entity_count() == 2

    @pytest.mark.asyncio
    async def test_analysis_uses_mundane_tier(self, make_orchestrator, scripted):
        completion = scripted([analysis("single"), "answer"])
        await make_orchestrator(completion).handle_user_query("q")
        assert completion.calls[0]["task_type"] == TaskType.MUNDANE
        assert "What makes a promise binding?" in completion.calls[0]["messages"][0]["content"]

    @pytest.mark.asyncio
    async def test_answer_goes_under_selection(self, store_with_nexus, make_orchestrator, scripted):
        store, nexus_id = store_with_nexus
        selected = store.add_node("Offer and acceptance", nexus_id)
        orchestrator = make_orchestrator(scripted([analysis("single"), "answer"]))

        outcome = await orchestrator.handle_user_query("Explain", SelectionContext(selected_id=selected))

        assert store.get_node(outcome.node_ids[0]).parent_id == selected

    @pytest.mark.asyncio
    async def test_unknown_selection_fails_before_any_call(self, make_orchestrator, scripted):
        completion = scripted([])
        orchestrator = make_orchestrator(completion)
        with pytest.raises(EntityNotFoundError):
            await orchestrator.handle_user_query("q", SelectionContext(selected_id="node-1"))
        assert completion.calls == []

    @pytest.mark.asyncio
    async def test_parallel_without_tasks_degrades_to_single(self, make_orchestrator, scripted):
        orchestrator = make_orchestrator(scripted([analysis("parallel", []), "answer"]))
        outcome = await orchestrator.handle_user_query("q")
        assert outcome.path == GapPath.SINGLE

    @pytest.mark.asyncio
    async def test_empty_query_rejected(self, make_orchestrator, scripted):
        with pytest.raises(ValueError):
            await make_orchestrator(scripted([])).handle_user_query("   ")


# =============================================================================
# PRE-MUTATION FAILURES
# =============================================================================

class TestFailures:

    @pytest.mark.asyncio
    async def test_unparseable_analysis(self, store_with_nexus, make_orchestrator, scripted, event_bus):
        store, _ = store_with_nexus
        errors = []
        event_bus.subscribe(EventType.ORCHESTRATOR_ERROR, errors.append)
        before = msgspec.json.encode(store.to_universe())

        with pytest.raises(ParseError):
            await make_orchestrator(scripted(["I think this is a single question."])).handle_user_query("q")

        assert msgspec.json.encode(store.to_universe()) == before
        assert errors[0].payload["stage"] == "analysis"

    @pytest.mark.asyncio
    async def test_rate_limited_analysis(self, store_with_nexus, make_orchestrator, scripted):
        store, _ = store_with_nexus
        with pytest.raises(RateLimitedError):
            await make_orchestrator(scripted([RateLimitedError("429", status_code=429)])).handle_user_query("q")
        assert len(store.nodes) == 0

    @pytest.mark.asyncio
    async def test_failed_single_call_leaves_store_untouched(self, store_with_nexus, make_orchestrator, scripted):
        store, _ = store_with_nexus
        completion = scripted([analysis("single"), RateLimitedError("429", status_code=429)])
        with pytest.raises(RateLimitedError):
            await make_orchestrator(completion).handle_user_query("q")
        assert len(store.nodes) == 0

    @pytest.mark.asyncio
    async def test_no_universe_at_all(self, library, fast_config, scripted):
        orchestrator = GapOrchestrator(EntityStore(), scripted([]), library=library, config=fast_config)
        with pytest.raises(NoActiveUniverseError):
            await orchestrator.handle_user_query("compare")


# =============================================================================
# PARALLEL PATH
# =============================================================================

class TestParallelPath:

    @pytest.mark.asyncio
    async def test_plan_waits_at_the_gate(self, store_with_nexus, make_orchestrator, scripted):
        store, nexus_id = store_with_nexus
        orchestrator = make_orchestrator(scripted([analysis("parallel", ["t0", "t1"])]))

        outcome = await orchestrator.handle_user_query("Compare offer and acceptance")

        assert outcome.path == GapPath.PARALLEL_PENDING
        assert outcome.plan.tasks == ("t0", "t1")
        assert outcome.plan.parent_id == nexus_id
        assert orchestrator.pending_plans == [outcome.plan]
        assert len(store.nodes) == 0

    @pytest.mark.asyncio
    async def test_tasks_truncated_to_limit(self, make_orchestrator, scripted, fast_config):
        tasks = [f"t{i}" for i in range(fast_config.gap.max_parallel_tasks + 2)]
        orchestrator = make_orchestrator(scripted([analysis("parallel", tasks)]))
        outcome = await orchestrator.handle_user_query("q")
        assert len(outcome.plan.tasks) == fast_config.gap.max_parallel_tasks

    @pytest.mark.asyncio
    async def test_merge_follows_task_order_not_completion_order(
        self, store_with_nexus, make_orchestrator, scripted, routed, event_bus
    ):
        store, nexus_id = store_with_nexus
        merged = []
        event_bus.subscribe(EventType.BATCH_MERGED, merged.append)

        orchestrator = make_orchestrator(
            scripted([analysis("parallel", ["TASK_ZERO", "TASK_ONE", "TASK_TWO"])])
        )
        outcome = await orchestrator.handle_user_query("Survey the doctrine")

        orchestrator.completion = routed(
            {
                "TASK_ZERO": "answer zero",
                "TASK_ONE": RateLimitedError("429", status_code=429),
                "TASK_TWO": "answer two",
            },
            delays={"TASK_ZERO": 0.05, "TASK_ONE": 0.08, "TASK_TWO": 0.01},
        )
        report = await orchestrator.execute_plan(outcome.plan)

        assert orchestrator.completion.resolved == ["TASK_TWO", "TASK_ZERO", "TASK_ONE"]
        assert [c.content for c in store.children(nexus_id)] == ["answer zero", "answer two"]
        assert report.node_ids == [c.id for c in store.children(nexus_id)]
        assert (report.succeeded, report.failed, report.success) == (2, 1, True)
        assert report.errors[0].startswith("TASK_ONE: Rate limit reached")
        assert merged[0].payload["node_ids"] == report.node_ids

    @pytest.mark.asyncio
    async def test_partial_failure_creates_n_minus_k_nodes(self, store_with_nexus, make_orchestrator, scripted):
        store, nexus_id = store_with_nexus
        orchestrator = make_orchestrator(scripted([analysis("parallel", ["a", "b", "c", "d"])]))
        outcome = await orchestrator.handle_user_query("q")

        orchestrator.completion = scripted(["A", RuntimeError("boom"), "C", RuntimeError("boom")])
        report = await orchestrator.execute_plan(outcome.plan)

        assert report.success
        assert len(store.children(nexus_id)) == 2
        assert report.failed == 2

    @pytest.mark.asyncio
    async def test_total_failure_reports_without_raising(
        self, store_with_nexus, library, make_orchestrator, scripted, event_bus
    ):
        store, nexus_id = store_with_nexus
        errors = []
        event_bus.subscribe(EventType.ORCHESTRATOR_ERROR, errors.append)

        orchestrator = make_orchestrator(scripted([analysis("parallel", ["a", "b"])]))
        outcome = await orchestrator.handle_user_query("q")
        orchestrator.completion = scripted([RuntimeError("x"), RuntimeError("y")])

        report = await orchestrator.execute_plan(outcome.plan)

        assert not report.success
        assert report.node_ids == []
        assert store.children(nexus_id) == []
        assert errors[0].payload["stage"] == "dispatch"
        assert library.load(store.universe_id) is None

    @pytest.mark.asyncio
    async def test_sequential_appends_are_paced(self, make_orchestrator, scripted):
        orchestrator = make_orchestrator(scripted([analysis("parallel", ["a", "b", "c"])]))
        outcome = await orchestrator.handle_user_query("q")
        orchestrator.completion = scripted(["A", "B", "C"])

        with patch("agents.gap_orchestrator.asyncio.sleep", new=AsyncMock()) as sleep:
            await orchestrator.execute_plan(outcome.plan)

        assert sleep.await_count == 2

    @pytest.mark.asyncio
    async def test_dismissed_plan_cannot_execute(self, make_orchestrator, scripted):
        orchestrator = make_orchestrator(scripted([analysis("parallel", ["a", "b"])]))
        outcome = await orchestrator.handle_user_query("q")

        assert orchestrator.dismiss_plan(outcome.plan)
        assert not orchestrator.dismiss_plan(outcome.plan)
        with pytest.raises(InvalidTransitionError):
            await orchestrator.execute_plan(outcome.plan)

    @pytest.mark.asyncio
    async def test_plan_executes_once(self, make_orchestrator, scripted):
        orchestrator = make_orchestrator(scripted([analysis("parallel", ["a", "b"])]))
        outcome = await orchestrator.handle_user_query("q")
        orchestrator.completion = scripted(["A", "B"])

        await orchestrator.execute_plan(outcome.plan)
        with pytest.raises(InvalidTransitionError):
            await orchestrator.execute_plan(outcome.plan)


# =============================================================================
# CONTEXT
# =============================================================================

class TestContext:

    def test_current_universe_excluded_from_activated(self, store_with_nexus, library, make_orchestrator, scripted):
        store, _ = store_with_nexus
        library.save(store.universe_id, store.to_universe())
        library.activate(store.universe_id)

        other = EntityStore(title="Other")
        other.create_nexus("Elsewhere")
        library.save(other.universe_id, other.to_universe())
        library.activate(other.universe_id)

        context = make_orchestrator(scripted([])).build_context()

        assert context.current_graph.universe_id == store.universe_id
        assert [v.universe_id for v in context.activated_graphs] == [other.universe_id]
        assert not context.is_synthesis

    def test_universe_view_lists_edges(self, store_with_nexus):
        store, nexus_id = store_with_nexus
        a = store.add_node("a", nexus_id)
        b = store.add_node("b", a, kind=EntityKind.USER_REPLY)

        view = universe_view(store.to_universe())

        assert view.edges == ((nexus_id, a), (a, b))
        assert [n.kind for n in view.nodes] == ["AI response", "User reply"]
        assert view.headline == "Contracts"
