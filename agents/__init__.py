# Agents layer - GAP orchestration and the Socratic / doctrinal state machines

from agents.gap_orchestrator import GapOrchestrator
from agents.socratic import ConnectionExplorer
from agents.doctrinal import DoctrinalGenerator, detect_doctrine_request
from agents.schemas import (
    BatchReport,
    DoctrinalResult,
    InvalidTransitionError,
    NoActiveUniverseError,
    ParallelPlan,
    QueryOutcome,
    SelectionContext,
)

__all__ = [
    # Orchestrators
    "GapOrchestrator",
    "ConnectionExplorer",
    "DoctrinalGenerator",
    "detect_doctrine_request",
    # Outcomes
    "BatchReport",
    "DoctrinalResult",
    "ParallelPlan",
    "QueryOutcome",
    "SelectionContext",
    # Errors
    "InvalidTransitionError",
    "NoActiveUniverseError",
]
