"""
ASTRYON SOCRATIC EXPLORER - Dialogue on a Connection Node

A connection node bridges entity A (its tree parent) and entity B (a weak
reference). The explorer runs a Socratic dialogue on it:

    EMPTY --advance()--> ACTIVE --advance(answer)--> ANSWERED --> QUESTIONED
                                                        ^             |
                                                        +--advance(answer)
    any open state --end()--> ENDED

Per completed round the connection gains exactly two children, in order:
    USER_REPLY         "Q: <question>\n\nA: <answer>"
    SOCRATIC_QUESTION  "Next Question:\n<question>"
and its own `content` is overwritten with the newest question.

The next question is fetched BEFORE either child is created, so a failed
call leaves the graph untouched and the explorer in its previous state.
"""
import asyncio
import logging
from typing import Dict, List, Optional

from agents.prompts import (
    build_socratic_followup_prompt,
    build_socratic_opening_prompt,
    build_socratic_synthesis_prompt,
    get_system_prompt,
)
from agents.schemas import InvalidTransitionError
from core.entity_store import EntityStore, InvalidConnectionError
from core.graph_invariants import dialogue_rounds
from core.llm import CompletionService
from core.ontology import ConnectionState, EntityKind
from infrastructure.config import AstryonConfig, get_config
from infrastructure.event_bus import EventBus, EventType
from infrastructure.universe_library import UniverseLibrary

logger = logging.getLogger(__name__)


class ConnectionExplorer:
    """
    State machine for one connection node.

    `focus` is the entity the renderer should select; it always returns to
    the connection node after a turn.

    Usage:
        explorer = ConnectionExplorer.for_entities(store, completion, a_id, b_id)
        question = await explorer.advance()
        question = await explorer.advance(answer="Because ...")
        await explorer.end(synthesize=True)
    """

    def __init__(
        self,
        store: EntityStore,
        completion: CompletionService,
        connection_id: str,
        library: Optional[UniverseLibrary] = None,
        config: Optional[AstryonConfig] = None,
        event_bus: Optional[EventBus] = None,
    ):
        node = store.get_node(connection_id)
        if not node.is_connection_node:
            raise InvalidConnectionError(connection_id, "", "not a connection node")

        self.store = store
        self.completion = completion
        self.connection_id = connection_id
        self.library = library
        self.config = config or get_config()
        self.event_bus = event_bus

        self.focus: str = connection_id
        self._state = self._derive_state()

    @classmethod
    def for_entities(
        cls,
        store: EntityStore,
        completion: CompletionService,
        id_a: str,
        id_b: str,
        **kwargs,
    ) -> "ConnectionExplorer":
        """Bridge A and B with a new connection node and explore it."""
        connection_id = store.connect(id_a, id_b)
        return cls(store, completion, connection_id, **kwargs)

    def _derive_state(self) -> ConnectionState:
        """Resume from what the node already holds (e.g. after a load)."""
        node = self.store.get_node(self.connection_id)
        if node.metadata.get("ended"):
            return ConnectionState.ENDED
        if not node.content:
            return ConnectionState.EMPTY
        if dialogue_rounds(self.store, self.connection_id):
            return ConnectionState.QUESTIONED
        return ConnectionState.ACTIVE

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def current_question(self) -> str:
        return self.store.get_node(self.connection_id).content

    @property
    def completed_rounds(self) -> int:
        return len(dialogue_rounds(self.store, self.connection_id))

    # =========================================================================
    # DRIVER
    # =========================================================================

    async def advance(
        self,
        answer: Optional[str] = None,
        seed_context: Optional[str] = None,
    ) -> str:
        """
        Move the dialogue one step.

        EMPTY: generate the opening question (an answer given here is
        treated as extra seed context). ACTIVE / QUESTIONED: record the
        answer and generate the next question.

        Returns:
            The question now held in the connection's content

        Raises:
            InvalidTransitionError: If the dialogue has ended or a question
                                    is still being generated
            ValueError: If an answer is required and missing
        """
        if self._state == ConnectionState.ENDED:
            raise InvalidTransitionError("connection", self._state.value, "advance")
        if self._state == ConnectionState.ANSWERED:
            raise InvalidTransitionError("connection", self._state.value, "advance")

        if self._state == ConnectionState.EMPTY:
            seeds = [s.strip() for s in (seed_context, answer) if s and s.strip()]
            return await self._open("\n\n".join(seeds) or None)

        if answer is None or not answer.strip():
            raise ValueError("An answer is required to continue the dialogue")
        return await self._round(answer.strip())

    async def _open(self, seed: Optional[str]) -> str:
        text_a, text_b = self._bridged_texts()
        system, user = build_socratic_opening_prompt(text_a, text_b, seed)
        question = (await self.completion.complete(
            [{"role": "user", "content": user}],
            system=system,
            max_tokens=self.config.llm.max_tokens,
        )).strip()

        metadata = {"opening_question": question}
        if seed:
            metadata["seed"] = seed
        self.store.update_metadata(self.connection_id, **metadata)
        self.store.update_content(self.connection_id, question)
        self._state = ConnectionState.ACTIVE
        self.focus = self.connection_id

        logger.info(f"Connection {self.connection_id} opened")
        self._emit(turn="opening", question=question)
        self._save()
        return question

    async def _round(self, answer: str) -> str:
        previous_state = self._state
        asked = self.current_question
        self._state = ConnectionState.ANSWERED
        try:
            messages = self.transcript()
            messages.append({
                "role": "user",
                "content": build_socratic_followup_prompt(asked, answer),
            })
            system = get_system_prompt("socratic")
            question = (await self.completion.complete(
                messages,
                system=system,
                max_tokens=self.config.llm.max_tokens,
            )).strip()
        except BaseException:
            self._state = previous_state
            raise

        answer_id = self.store.add_node(
            f"Q: {asked}\n\nA: {answer}",
            self.connection_id,
            kind=EntityKind.USER_REPLY,
            metadata={"question": asked, "answer": answer},
        )
        self.focus = self.connection_id
        await asyncio.sleep(self.config.pacing.merge_delay)
        question_id = self.store.add_node(
            f"Next Question:\n{question}",
            self.connection_id,
            kind=EntityKind.SOCRATIC_QUESTION,
            metadata={"question": question},
        )
        self.store.update_content(self.connection_id, question)
        self._state = ConnectionState.QUESTIONED
        self.focus = self.connection_id

        logger.debug(f"Connection {self.connection_id}: round {self.completed_rounds} complete")
        self._emit(turn="round", answer_id=answer_id, question_id=question_id, question=question)
        self._save()
        return question

    async def end(self, synthesize: bool = False) -> Optional[str]:
        """
        Close the dialogue.

        With synthesize=True and at least one completed round, one extra
        call summarises the exchange into a SYNTHESIS child. If that call
        fails the error propagates and the dialogue stays open.

        Returns:
            The synthesis node id, or None
        """
        if self._state in (ConnectionState.ENDED, ConnectionState.ANSWERED):
            raise InvalidTransitionError("connection", self._state.value, "end")

        synthesis_id = None
        rounds = dialogue_rounds(self.store, self.connection_id)
        if synthesize and rounds:
            text_a, text_b = self._bridged_texts()
            exchanges = [child.content for pair in rounds for child in pair]
            system, user = build_socratic_synthesis_prompt(f"{text_a}\n\n<->\n\n{text_b}", exchanges)
            summary = await self.completion.complete(
                [{"role": "user", "content": user}],
                system=system,
                max_tokens=self.config.llm.max_tokens,
            )
            synthesis_id = self.store.add_node(
                summary.strip(),
                self.connection_id,
                kind=EntityKind.SYNTHESIS,
                title="Synthesis",
            )
        elif synthesize:
            logger.info(f"Connection {self.connection_id} ended before any round; no synthesis")

        self.store.update_metadata(self.connection_id, ended=True)
        self._state = ConnectionState.ENDED
        self.focus = self.connection_id

        logger.info(f"Connection {self.connection_id} ended after {len(rounds)} rounds")
        self._emit(turn="end", synthesis_id=synthesis_id)
        self._save()
        return synthesis_id

    # =========================================================================
    # TRANSCRIPT
    # =========================================================================

    def transcript(self) -> List[Dict[str, str]]:
        """
        Conversation history rebuilt from the graph.

        Opening context, the opening question, then one user/assistant pair
        per completed round. Empty while the dialogue has not opened.
        """
        node = self.store.get_node(self.connection_id)
        opening = node.metadata.get("opening_question")
        if not opening:
            return []

        text_a, text_b = self._bridged_texts()
        _, opening_prompt = build_socratic_opening_prompt(text_a, text_b, node.metadata.get("seed"))
        messages = [
            {"role": "user", "content": opening_prompt},
            {"role": "assistant", "content": opening},
        ]
        for answer_node, question_node in dialogue_rounds(self.store, self.connection_id):
            messages.append({
                "role": "user",
                "content": answer_node.metadata.get("answer", answer_node.content),
            })
            messages.append({
                "role": "assistant",
                "content": question_node.metadata.get("question", question_node.content),
            })
        return messages

    # =========================================================================
    # INTERNAL UTILITIES
    # =========================================================================

    def _bridged_texts(self):
        node = self.store.get_node(self.connection_id)
        entity_a = self.store.get(node.parent_id)
        entity_b = self.store.bridge_partner(self.connection_id)
        text_a = entity_a.content or entity_a.title
        text_b = (entity_b.content or entity_b.title) if entity_b is not None else ""
        return text_a, text_b

    def _save(self) -> None:
        if self.library is not None:
            self.library.save(self.store.universe_id, self.store.to_universe())

    def _emit(self, **payload) -> None:
        if self.event_bus is not None:
            self.event_bus.emit(
                EventType.DIALOGUE_TURN_ADDED,
                "socratic",
                connection_id=self.connection_id,
                state=self._state.value,
                **payload,
            )
