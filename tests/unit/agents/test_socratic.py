"""
Unit tests for the Socratic connection explorer.
"""
import pytest

from agents.schemas import InvalidTransitionError
from agents.socratic import ConnectionExplorer
from core.entity_store import InvalidConnectionError
from core.llm import ServerError
from core.ontology import ConnectionState, EntityKind
from infrastructure.event_bus import EventType


@pytest.fixture
def bridged(store_with_nexus):
    """(store, a_id, b_id) with two sibling nodes under one Nexus."""
    store, nexus_id = store_with_nexus
    a = store.add_node("Consideration is required for a binding promise.", nexus_id)
    b = store.add_node("Reliance can make a gratuitous promise enforceable.", nexus_id)
    return store, a, b


@pytest.fixture
def make_explorer(bridged, library, fast_config, event_bus):
    store, a, b = bridged

    def _make(completion):
        return ConnectionExplorer.for_entities(
            store, completion, a, b,
            library=library, config=fast_config, event_bus=event_bus,
        )
    return _make


class TestOpening:

    @pytest.mark.asyncio
    async def test_opening_question_fills_content(self, bridged, make_explorer, scripted):
        store, a, _ = bridged
        completion = scripted(["  Is a promise without a price ever binding?  "])
        explorer = make_explorer(completion)
        assert explorer.state == ConnectionState.EMPTY

        question = await explorer.advance()

        assert question == "Is a promise without a price ever binding?"
        assert explorer.state == ConnectionState.ACTIVE
        assert explorer.current_question == question
        assert store.children(explorer.connection_id) == []
        assert store.get_node(explorer.connection_id).parent_id == a
        assert explorer.focus == explorer.connection_id

        prompt = completion.calls[0]["messages"][0]["content"]
        assert "Consideration is required" in prompt
        assert "Reliance can make" in prompt

    @pytest.mark.asyncio
    async def test_seed_context_reaches_prompt(self, bridged, make_explorer, scripted):
        store, _, _ = bridged
        completion = scripted(["q1"])
        explorer = make_explorer(completion)

        await explorer.advance(seed_context="Think about charitable pledges")

        assert "The user adds: Think about charitable pledges" in completion.calls[0]["messages"][0]["content"]
        assert store.get_node(explorer.connection_id).metadata["seed"] == "Think about charitable pledges"

    def test_rejects_non_connection(self, bridged, scripted):
        store, a, _ = bridged
        with pytest.raises(InvalidConnectionError):
            ConnectionExplorer(store, scripted([]), a)


class TestRounds:

    @pytest.mark.asyncio
    async def test_rounds_alternate_reply_and_question(self, bridged, make_explorer, scripted):
        store, _, _ = bridged
        explorer = make_explorer(scripted(["q1", "q2", "q3"]))

        await explorer.advance()
        await explorer.advance(answer="Only with a bargain")
        await explorer.advance(answer="Or with reliance")

        children = store.children(explorer.connection_id)
        assert [c.kind for c in children] == [
            EntityKind.USER_REPLY,
            EntityKind.SOCRATIC_QUESTION,
            EntityKind.USER_REPLY,
            EntityKind.SOCRATIC_QUESTION,
        ]
        assert children[0].content == "Q: q1\n\nA: Only with a bargain"
        assert children[1].content == "Next Question:\nq2"
        assert children[2].content == "Q: q2\n\nA: Or with reliance"
        assert children[3].content == "Next Question:\nq3"
        assert explorer.current_question == "q3"
        assert explorer.completed_rounds == 2
        assert explorer.state == ConnectionState.QUESTIONED

    @pytest.mark.asyncio
    async def test_history_is_sent_with_each_round(self, make_explorer, scripted):
        completion = scripted(["q1", "q2", "q3"])
        explorer = make_explorer(completion)

        await explorer.advance()
        await explorer.advance(answer="first")
        await explorer.advance(answer="second")

        messages = completion.calls[2]["messages"]
        assert [m["role"] for m in messages] == ["user", "assistant", "user", "assistant", "user"]
        assert messages[1]["content"] == "q1"
        assert messages[2]["content"] == "first"
        assert messages[3]["content"] == "q2"
        assert 'User\'s answer: "second"' in messages[4]["content"]

    @pytest.mark.asyncio
    async def test_failed_call_leaves_graph_and_state(self, bridged, make_explorer, scripted):
        store, _, _ = bridged
        explorer = make_explorer(scripted(["q1", ServerError("down", status_code=503), "q2"]))
        await explorer.advance()

        with pytest.raises(ServerError):
            await explorer.advance(answer="my answer")

        assert explorer.state == ConnectionState.ACTIVE
        assert explorer.current_question == "q1"
        assert store.children(explorer.connection_id) == []

        assert await explorer.advance(answer="my answer") == "q2"
        assert explorer.completed_rounds == 1

    @pytest.mark.asyncio
    async def test_answer_required_after_opening(self, make_explorer, scripted):
        explorer = make_explorer(scripted(["q1"]))
        await explorer.advance()
        with pytest.raises(ValueError):
            await explorer.advance(answer="  ")

    @pytest.mark.asyncio
    async def test_turn_events(self, make_explorer, scripted, event_bus):
        turns = []
        event_bus.subscribe(EventType.DIALOGUE_TURN_ADDED, lambda e: turns.append(e.payload["turn"]))
        explorer = make_explorer(scripted(["q1", "q2"]))

        await explorer.advance()
        await explorer.advance(answer="a")
        await explorer.end()

        assert turns == ["opening", "round", "end"]


class TestEnding:

    @pytest.mark.asyncio
    async def test_end_blocks_further_turns(self, bridged, make_explorer, scripted):
        store, _, _ = bridged
        explorer = make_explorer(scripted(["q1"]))
        await explorer.advance()

        assert await explorer.end() is None
        assert explorer.state == ConnectionState.ENDED
        assert store.get_node(explorer.connection_id).metadata["ended"] is True
        with pytest.raises(InvalidTransitionError):
            await explorer.advance(answer="late")
        with pytest.raises(InvalidTransitionError):
            await explorer.end()

    @pytest.mark.asyncio
    async def test_synthesis_child_follows_rounds(self, bridged, make_explorer, scripted):
        store, _, _ = bridged
        explorer = make_explorer(scripted(["q1", "q2", "Reliance and bargain both ground enforcement."]))
        await explorer.advance()
        await explorer.advance(answer="a1")

        synthesis_id = await explorer.end(synthesize=True)

        children = store.children(explorer.connection_id)
        assert children[-1].id == synthesis_id
        assert children[-1].kind == EntityKind.SYNTHESIS
        assert children[-1].title == "Synthesis"
        assert explorer.completed_rounds == 1

    @pytest.mark.asyncio
    async def test_no_synthesis_without_rounds(self, make_explorer, scripted):
        completion = scripted(["q1"])
        explorer = make_explorer(completion)
        await explorer.advance()

        assert await explorer.end(synthesize=True) is None
        assert len(completion.calls) == 1

    @pytest.mark.asyncio
    async def test_failed_synthesis_keeps_dialogue_open(self, make_explorer, scripted):
        explorer = make_explorer(scripted(["q1", "q2", ServerError("down", status_code=500)]))
        await explorer.advance()
        await explorer.advance(answer="a1")

        with pytest.raises(ServerError):
            await explorer.end(synthesize=True)
        assert explorer.state == ConnectionState.QUESTIONED


class TestResume:

    @pytest.mark.asyncio
    async def test_state_rebuilt_from_node(self, bridged, make_explorer, scripted, library, fast_config):
        store, _, _ = bridged
        explorer = make_explorer(scripted(["q1", "q2"]))
        await explorer.advance()
        await explorer.advance(answer="a1")

        resumed = ConnectionExplorer(store, scripted([]), explorer.connection_id, config=fast_config)
        assert resumed.state == ConnectionState.QUESTIONED
        assert len(resumed.transcript()) == 4

        saved = library.load(store.universe_id)
        assert saved.nodes[explorer.connection_id].content == "q2"

    @pytest.mark.asyncio
    async def test_ended_state_rebuilt(self, bridged, make_explorer, scripted):
        store, _, _ = bridged
        explorer = make_explorer(scripted(["q1"]))
        await explorer.advance()
        await explorer.end()

        assert ConnectionExplorer(store, scripted([]), explorer.connection_id).state == ConnectionState.ENDED

    def test_unopened_transcript_is_empty(self, make_explorer, scripted):
        assert make_explorer(scripted([])).transcript() == []
