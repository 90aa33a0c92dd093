"""
Pytest configuration and shared fixtures for Astryon test suite.
"""
import asyncio
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))


# =============================================================================
# COMPLETION SERVICE DOUBLES
# =============================================================================

class ScriptedCompletion:
    """
    CompletionService that replays a script.

    Each entry is a str (returned), an Exception (raised) or a callable
    taking the call record and returning either.
    """

    def __init__(self, script: Optional[List[Any]] = None):
        self.script = list(script or [])
        self.calls: List[Dict[str, Any]] = []

    async def complete(self, messages, system=None, max_tokens=2048, task_type=None):
        call = {
            "messages": [dict(m) for m in messages],
            "system": system,
            "max_tokens": max_tokens,
            "task_type": task_type,
        }
        self.calls.append(call)
        if not self.script:
            raise AssertionError("ScriptedCompletion ran out of responses")
        entry = self.script.pop(0)
        if callable(entry) and not isinstance(entry, Exception):
            entry = entry(call)
        if isinstance(entry, Exception):
            raise entry
        return entry


class RoutedCompletion:
    """
    CompletionService that answers by substring of the last user message,
    after a per-route delay. Records the order in which calls resolve.
    """

    def __init__(self, routes: Dict[str, Any], delays: Optional[Dict[str, float]] = None):
        self.routes = routes
        self.delays = delays or {}
        self.resolved: List[str] = []
        self.calls: List[Dict[str, Any]] = []

    async def complete(self, messages, system=None, max_tokens=2048, task_type=None):
        prompt = messages[-1]["content"]
        self.calls.append({"prompt": prompt, "system": system, "task_type": task_type})
        for key, result in self.routes.items():
            if key in prompt:
                await asyncio.sleep(self.delays.get(key, 0))
                self.resolved.append(key)
                if isinstance(result, Exception):
                    raise result
                return result
        raise AssertionError(f"No route for prompt: {prompt[:80]!r}")


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture(autouse=True)
def reset_global_state():
    """Reset global singletons before each test to ensure isolation."""
    from core.llm import reset_completion_service
    from infrastructure.config import reset_config
    from infrastructure.event_bus import reset_event_bus

    reset_config()
    reset_completion_service()
    reset_event_bus()

    yield

    reset_config()
    reset_completion_service()
    reset_event_bus()


@pytest.fixture
def fast_config():
    """Configuration with every pacing delay set to zero."""
    from infrastructure.config import AstryonConfig, PacingConfig

    return AstryonConfig(
        pacing=PacingConfig(
            merge_delay=0.0,
            stage_delay=0.0,
            error_reset_delay=0.0,
            complete_hold_delay=0.0,
        )
    )


@pytest.fixture
def event_bus():
    from infrastructure.event_bus import EventBus
    return EventBus()


@pytest.fixture
def store(event_bus):
    """Empty EntityStore wired to a private event bus."""
    from core.entity_store import EntityStore
    return EntityStore(title="Test Universe", event_bus=event_bus)


@pytest.fixture
def store_with_nexus(store):
    """Store holding one Nexus; returns (store, nexus_id)."""
    nexus_id = store.create_nexus("Contracts", "What makes a promise binding?")
    return store, nexus_id


@pytest.fixture
def library(tmp_path):
    """UniverseLibrary on a temporary SQLite file."""
    from infrastructure.universe_library import UniverseLibrary
    return UniverseLibrary(tmp_path / "universes.db")


@pytest.fixture
def scripted():
    """Factory for ScriptedCompletion doubles."""
    return ScriptedCompletion


@pytest.fixture
def routed():
    """Factory for RoutedCompletion doubles."""
    return RoutedCompletion
