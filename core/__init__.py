"""
ASTRYON CORE - Central exports for the universe graph engine.

This module provides access to:
- Data model (Nexus, Node, Universe, Snapshot) and closed vocabularies
- EntityStore (rustworkx-backed universe graph)
- Layout engine (deterministic placement)
- Resilient structured-response parsing
- Completion service interface (LiteLLM backend, ModelRouter)
"""

from core.ontology import (
    ConnectionState,
    DoctrinalStage,
    EntityKind,
    GapPath,
    LayoutLevel,
    NexusKind,
)
from core.schemas import Nexus, Node, Snapshot, Universe, Vec3
from core.entity_store import (
    CycleError,
    DuplicateEntityError,
    EntityNotFoundError,
    EntityStore,
    GraphError,
    InvalidConnectionError,
)
from core.layout import DEFAULT_LAYOUT, LayoutConfig, place
from core.parsing import ParseError, parse_as, parse_structured
from core.llm import (
    CompletionError,
    CompletionService,
    LiteLLMCompletionService,
    ModelRouter,
    QuotaExceededError,
    RateLimitedError,
    ServerError,
    TaskType,
    get_completion_service,
    reset_completion_service,
    set_completion_service,
)

__all__ = [
    # Vocabulary
    "ConnectionState",
    "DoctrinalStage",
    "EntityKind",
    "GapPath",
    "LayoutLevel",
    "NexusKind",
    # Data model
    "Nexus",
    "Node",
    "Snapshot",
    "Universe",
    "Vec3",
    # Store
    "EntityStore",
    "GraphError",
    "EntityNotFoundError",
    "CycleError",
    "DuplicateEntityError",
    "InvalidConnectionError",
    # Layout
    "DEFAULT_LAYOUT",
    "LayoutConfig",
    "place",
    # Parsing
    "ParseError",
    "parse_as",
    "parse_structured",
    # LLM
    "CompletionError",
    "CompletionService",
    "LiteLLMCompletionService",
    "ModelRouter",
    "QuotaExceededError",
    "RateLimitedError",
    "ServerError",
    "TaskType",
    "get_completion_service",
    "set_completion_service",
    "reset_completion_service",
]
