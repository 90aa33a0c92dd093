"""
Unit tests for the doctrinal map generator (LangGraph pipeline).
"""
import asyncio
import json
from unittest.mock import patch

import msgspec
import pytest

from agents.doctrinal import DoctrinalGenerator, detect_doctrine_request
from core.entity_store import EntityStore
from core.llm import QuotaExceededError
from core.ontology import DoctrinalStage, EntityKind, NexusKind
from infrastructure.config import AstryonConfig, PacingConfig
from infrastructure.event_bus import EventType


def doctrine_json(case_count=6):
    cases = [
        {
            "caseName": f"Case {i}",
            "citation": f"{100 + i} U.S. {i}",
            "year": 1900 + i,
            "facts": "A promise was made.",
            "doctrinalAnalysis": "Reliance was foreseeable.",
            "holding": "Enforceable.",
            "significance": "Extended the rule.",
            "caseType": "foundational" if i == 0 else "application",
        }
        for i in range(case_count)
    ]
    return json.dumps({
        "ruleStatement": "A promise inducing reasonable reliance is binding.",
        "elements": ["Promise", "Reasonable reliance", "Injustice"],
        "cases": cases,
    })


def encoded(store):
    return msgspec.json.encode(store.to_universe())


@pytest.fixture
def make_generator(store_with_nexus, library, fast_config, event_bus):
    store, _ = store_with_nexus

    def _make(completion, **kwargs):
        kwargs.setdefault("library", library)
        return DoctrinalGenerator(
            store, completion, config=fast_config, event_bus=event_bus, **kwargs
        )
    return _make


class TestDetectDoctrineRequest:

    @pytest.mark.parametrize("text,topic", [
        ("Create a doctrinal map for promissory estoppel", "promissory estoppel"),
        ("please BUILD DOCTRINE UNIVERSE ABOUT adverse possession?", "adverse possession"),
        ("generate a doctrine map of the mailbox rule.", "the mailbox rule"),
    ])
    def test_detects_topic(self, text, topic):
        assert detect_doctrine_request(text) == topic

    @pytest.mark.parametrize("text", [
        "What is promissory estoppel?",
        "create a map for estoppel",
        "build a doctrinal map for ?",
    ])
    def test_ignores_other_text(self, text):
        assert detect_doctrine_request(text) is None


class TestSuccessfulRun:

    @pytest.mark.asyncio
    async def test_builds_academic_nexus_with_cases(self, store_with_nexus, library, make_generator, scripted):
        store, _ = store_with_nexus
        generator = make_generator(scripted([doctrine_json(6)]))

        result = await generator.advance("promissory estoppel")

        assert result.success
        assert result.final_stage == DoctrinalStage.COMPLETE
        nexus = store.get_nexus(result.nexus_id)
        assert nexus.kind == NexusKind.ACADEMIC
        assert nexus.title == "promissory estoppel"
        assert nexus.content.startswith("Rule: A promise inducing reasonable reliance is binding.")
        assert nexus.metadata["elements"] == ["Promise", "Reasonable reliance", "Injustice"]

        cases = store.children(result.nexus_id)
        assert [c.id for c in cases] == result.node_ids
        assert [c.title for c in cases] == [f"Case {i}" for i in range(6)]
        assert all(c.kind == EntityKind.CASE for c in cases)
        assert cases[0].metadata == {"citation": "100 U.S. 0", "year": 1900, "case_type": "foundational"}

        assert library.load(store.universe_id).entity_count() == store.entity_count
        assert library.get_snapshot(store.universe_id) is not None

    @pytest.mark.asyncio
    async def test_stage_history_and_return_to_idle(self, make_generator, scripted, event_bus):
        phases = []
        event_bus.subscribe(EventType.PHASE_CHANGED, lambda e: phases.append(e.payload["stage"]))
        progress = []
        generator = make_generator(scripted([doctrine_json()]), on_progress=progress.append)

        await generator.advance("promissory estoppel")

        expected = [
            DoctrinalStage.RESEARCHING,
            DoctrinalStage.FINDING_CASES,
            DoctrinalStage.ANALYZING,
            DoctrinalStage.BUILDING_MAP,
            DoctrinalStage.COMPLETE,
            DoctrinalStage.IDLE,
        ]
        assert generator.history == expected
        assert progress == expected
        assert phases == [s.value for s in expected]
        assert generator.stage == DoctrinalStage.IDLE

    @pytest.mark.asyncio
    async def test_snapshot_without_library(self, store_with_nexus, make_generator, scripted):
        store, _ = store_with_nexus
        generator = make_generator(scripted([doctrine_json(5)]), library=None)

        await generator.advance("consideration")

        assert generator.last_snapshot.restore().entity_count() == store.entity_count

    @pytest.mark.asyncio
    async def test_progress_callback_errors_are_contained(self, make_generator, scripted):
        def broken(stage):
            raise RuntimeError("renderer gone")

        generator = make_generator(scripted([doctrine_json()]), on_progress=broken)
        result = await generator.advance("estoppel")
        assert result.success

    @pytest.mark.asyncio
    async def test_activated_universes_feed_the_prompt(self, library, make_generator, scripted):
        other = EntityStore(title="Casebook")
        other.create_nexus("Hoffman v. Red Owl", "Franchise negotiations and reliance")
        library.save(other.universe_id, other.to_universe())
        library.activate(other.universe_id)

        completion = scripted([doctrine_json()])
        await make_generator(completion).advance("promissory estoppel")

        prompt = completion.calls[0]["messages"][0]["content"]
        assert "ACTIVATED UNIVERSES (use as PRIMARY source for case selection)" in prompt
        assert "Hoffman v. Red Owl" in prompt

    @pytest.mark.asyncio
    async def test_generator_can_run_again(self, store_with_nexus, make_generator, scripted):
        store, _ = store_with_nexus
        generator = make_generator(scripted([doctrine_json(), doctrine_json(7)]))

        await generator.advance("first")
        result = await generator.advance("second")

        assert result.success
        assert len(store.nexuses) == 3


class TestFailedRun:

    @pytest.mark.asyncio
    async def test_completion_failure(self, store_with_nexus, make_generator, scripted):
        store, _ = store_with_nexus
        before = encoded(store)
        generator = make_generator(scripted([QuotaExceededError("quota", status_code=402)]))

        result = await generator.advance("estoppel")

        assert not result.success
        assert result.final_stage == DoctrinalStage.ERROR
        assert result.error == "API quota exceeded. Check your provider billing."
        assert result.nexus_id is None
        assert encoded(store) == before
        assert generator.history[-3:] == [
            DoctrinalStage.ANALYZING, DoctrinalStage.ERROR, DoctrinalStage.IDLE,
        ]
        assert generator.stage == DoctrinalStage.IDLE

    @pytest.mark.asyncio
    @pytest.mark.parametrize("case_count", [4, 9])
    async def test_case_count_out_of_range(self, store_with_nexus, make_generator, scripted, case_count):
        store, _ = store_with_nexus
        before = encoded(store)

        generator = make_generator(scripted([doctrine_json(case_count)]))
        result = await generator.advance("estoppel")

        assert not result.success
        assert encoded(store) == before
        assert generator.history[-3:] == [
            DoctrinalStage.BUILDING_MAP, DoctrinalStage.ERROR, DoctrinalStage.IDLE,
        ]

    @pytest.mark.asyncio
    async def test_unparseable_response(self, store_with_nexus, make_generator, scripted):
        store, _ = store_with_nexus
        before = encoded(store)

        result = await make_generator(scripted(["Here is your map: rule, elements, cases."])).advance("x")

        assert not result.success
        assert result.error
        assert encoded(store) == before

    @pytest.mark.asyncio
    async def test_failure_after_save_restores_library(self, store_with_nexus, library, make_generator, scripted):
        store, _ = store_with_nexus
        library.save(store.universe_id, store.to_universe())
        count = store.entity_count
        generator = make_generator(scripted([doctrine_json()]))

        with patch.object(library, "create_snapshot", side_effect=RuntimeError("disk full")):
            result = await generator.advance("estoppel")

        assert not result.success
        assert store.entity_count == count
        assert library.load(store.universe_id).entity_count() == count

    @pytest.mark.asyncio
    async def test_empty_topic(self, make_generator, scripted):
        with pytest.raises(ValueError):
            await make_generator(scripted([])).advance("  ")

    @pytest.mark.asyncio
    async def test_unexpected_backend_error(self, store_with_nexus, make_generator, scripted):
        store, _ = store_with_nexus
        before = encoded(store)
        generator = make_generator(scripted([RuntimeError("socket closed")]))

        result = await generator.advance("estoppel")

        assert not result.success
        assert result.error == "socket closed"
        assert encoded(store) == before
        assert generator.stage == DoctrinalStage.IDLE


class TestCancelledRun:

    @pytest.mark.asyncio
    async def test_cancel_mid_build_restores_store(self, store_with_nexus, library, event_bus, scripted):
        store, _ = store_with_nexus
        before = encoded(store)
        slow = AstryonConfig(pacing=PacingConfig(
            merge_delay=0.05, stage_delay=0.0, error_reset_delay=0.0, complete_hold_delay=0.0,
        ))
        generator = DoctrinalGenerator(
            store, scripted([doctrine_json(), doctrine_json()]),
            library=library, config=slow, event_bus=event_bus,
        )

        task = asyncio.create_task(generator.advance("estoppel"))
        for _ in range(200):
            if len(store.nexuses) == 2:
                break
            await asyncio.sleep(0.005)
        assert len(store.nexuses) == 2

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert encoded(store) == before
        assert generator.stage == DoctrinalStage.IDLE
        assert generator.history[-1] == DoctrinalStage.IDLE

        result = await generator.advance("estoppel")
        assert result.success
        assert len(store.nexuses) == 2

    @pytest.mark.asyncio
    async def test_cancel_during_hold_keeps_built_map(self, store_with_nexus, library, event_bus, scripted):
        store, _ = store_with_nexus
        holding = AstryonConfig(pacing=PacingConfig(
            merge_delay=0.0, stage_delay=0.0, error_reset_delay=0.0, complete_hold_delay=5.0,
        ))
        generator = DoctrinalGenerator(
            store, scripted([doctrine_json()]), library=library, config=holding, event_bus=event_bus,
        )

        task = asyncio.create_task(generator.advance("estoppel"))
        for _ in range(200):
            if generator.stage == DoctrinalStage.COMPLETE:
                break
            await asyncio.sleep(0.005)
        assert generator.stage == DoctrinalStage.COMPLETE

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert len(store.nexuses) == 2
        assert library.load(store.universe_id).entity_count() == store.entity_count
        assert generator.stage == DoctrinalStage.IDLE
