"""
ASTRYON INTELLIGENCE - Prompt Context Builders

Transforms universe state into prompts for the completion service.
Each builder returns (system_prompt, user_prompt) for one kind of call.

Design:
- System prompts live in config/prompts.yaml, keyed by role
- User prompts are built from entity content + parent/child edges
- Only the response contract (the JSON shapes in agents/schemas.py) is
  binding; the wording is not
"""
import yaml
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from agents.schemas import EntityView, GapContext, GraphView


# =============================================================================
# CONFIG LOADER
# =============================================================================

PROMPTS_PATH = Path(__file__).parent.parent / "config" / "prompts.yaml"

_prompt_config: Optional[Dict[str, Any]] = None


def get_prompt_config() -> Dict[str, Any]:
    """Load role prompts from prompts.yaml."""
    global _prompt_config
    if _prompt_config is None:
        with open(PROMPTS_PATH, "r") as f:
            _prompt_config = yaml.safe_load(f)
    return _prompt_config


def get_system_prompt(role: str) -> str:
    """Get the system prompt for a role (analyst, responder, ...)."""
    config = get_prompt_config()
    key = role.lower()
    if key not in config:
        raise ValueError(f"Unknown prompt role: {role}")
    return config[key].get("system_prompt", "")


# =============================================================================
# CONTEXT FORMATTING
# =============================================================================

def _clip(text: str, limit: int) -> str:
    if limit and len(text) > limit:
        return text[:limit] + "..."
    return text


def _format_entity(view: EntityView, limit: int) -> str:
    header = f"[{view.id}] ({view.kind})"
    if view.title:
        header += f" {view.title}"
    if view.parent_id:
        header += f" <- reply to {view.parent_id}"
    return f"{header}\n{_clip(view.content, limit)}"


def format_graph_view(view: GraphView, char_limit: int = 0) -> str:
    """Render one universe as text: every entity, then the edge list."""
    lines = [f"UNIVERSE: {view.headline} ({view.universe_id})", ""]
    for nexus in view.nexuses:
        lines.append(_format_entity(nexus, char_limit))
        lines.append("")
    for node in view.nodes:
        lines.append(_format_entity(node, char_limit))
        lines.append("")
    if view.edges:
        lines.append("EDGES (parent -> child):")
        lines.extend(f"  {parent} -> {child}" for parent, child in view.edges)
    return "\n".join(lines).rstrip()


def format_gap_context(context: GapContext, char_limit: int = 0) -> str:
    sections: List[str] = []
    if context.current_graph is not None:
        sections.append("CURRENT UNIVERSE:\n" + format_graph_view(context.current_graph, char_limit))
    for view in context.activated_graphs:
        sections.append(
            "ACTIVATED UNIVERSE (read-only memory):\n" + format_graph_view(view, char_limit)
        )
    return "\n\n===\n\n".join(sections)


# =============================================================================
# GAP BUILDERS
# =============================================================================

def build_analysis_prompt(
    question: str,
    context: GapContext,
    char_limit: int = 0,
) -> Tuple[str, str]:
    """Step B: single vs parallel classification."""
    system_prompt = get_system_prompt("analyst")
    user_prompt = f"""# Knowledge Graph

{format_gap_context(context, char_limit)}

# Question

{question}

Decide whether this question should be answered as one response or split
into 2-5 independent tasks answered in parallel.
"""
    return system_prompt, user_prompt


def build_single_prompt(
    question: str,
    context: GapContext,
    char_limit: int = 0,
) -> Tuple[str, str]:
    system_prompt = get_system_prompt("responder")
    user_prompt = f"""# Knowledge Graph

{format_gap_context(context, char_limit)}

# Question

{question}
"""
    return system_prompt, user_prompt


def build_task_prompt(
    task: str,
    question: str,
    context: GapContext,
    char_limit: int = 0,
) -> Tuple[str, str]:
    """One parallel sub-task; every task reads the same frozen context."""
    system_prompt = get_system_prompt("responder")
    user_prompt = f"""# Knowledge Graph

{format_gap_context(context, char_limit)}

# Original Question

{question}

# Your Task

{task}

Answer only this task. Other tasks are handled separately.
"""
    return system_prompt, user_prompt


def build_synthesis_prompt(
    question: str,
    activated: Sequence[GraphView],
    char_limit: int = 0,
) -> Tuple[str, str]:
    system_prompt = get_system_prompt("synthesizer")
    universes = "\n\n===\n\n".join(format_graph_view(view, char_limit) for view in activated)
    user_prompt = f"""# Activated Universes

{universes}

# Request

{question}

Synthesise across these universes into a new Nexus with its supporting points.
"""
    return system_prompt, user_prompt


# =============================================================================
# SOCRATIC BUILDERS
# =============================================================================

def build_socratic_opening_prompt(
    text_a: str,
    text_b: str,
    seed: Optional[str] = None,
) -> Tuple[str, str]:
    context = f"{text_a}\n\n<->\n\n{text_b}"
    if seed:
        context += f"\n\nThe user adds: {seed}"
    user_prompt = (
        "You are conducting a Socratic exploration of this idea:\n\n"
        f"\"{context}\"\n\n"
        "Generate ONE thoughtful Socratic question that challenges assumptions, "
        "explores implications, or probes deeper understanding. "
        "Keep it concise (1-2 sentences)."
    )
    return get_system_prompt("socratic"), user_prompt


def build_socratic_followup_prompt(question: str, answer: str) -> str:
    return (
        f"Previous question: \"{question}\"\n"
        f"User's answer: \"{answer}\"\n\n"
        "Generate the NEXT Socratic question to continue the exploration. Keep it concise."
    )


def build_socratic_synthesis_prompt(
    root_text: str,
    exchanges: Sequence[str],
) -> Tuple[str, str]:
    transcript = "\n\n---\n\n".join(exchanges)
    user_prompt = (
        f"Original idea: \"{root_text}\"\n\n"
        f"Socratic exploration:\n{transcript}\n\n"
        "Generate a brief synthesis (2-3 sentences) of key insights discovered."
    )
    return get_system_prompt("responder"), user_prompt


# =============================================================================
# DOCTRINAL BUILDER
# =============================================================================

def format_activated_case_context(activated: Sequence[GraphView], char_limit: int = 0) -> str:
    """Activated universes as the primary case source; empty if none."""
    if not activated:
        return ""
    body = "\n\n---\n\n".join(format_graph_view(view, char_limit) for view in activated)
    return f"ACTIVATED UNIVERSES (use as PRIMARY source for case selection):\n\n{body}"


def build_doctrine_prompt(topic: str, activated_context: str = "") -> Tuple[str, str]:
    system_prompt = get_system_prompt("doctrinal")
    user_prompt = f"Create a doctrinal map for: {topic}\n"
    if activated_context:
        user_prompt += f"\n{activated_context}\n"
    user_prompt += (
        "\nIdentify the governing rule, its elements, and 5-8 cases that define "
        "how the doctrine developed."
    )
    return system_prompt, user_prompt
