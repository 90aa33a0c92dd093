"""
ASTRYON MAIN - Entry Point and CLI

Commands:
    new        - Create a universe with its first Nexus
    list       - List saved universes
    ask        - Ask a question (GAP: single, parallel or synthesis);
                 "create a doctrinal map for X" runs the doctrine flow
    doctrine   - Generate a doctrinal map for a legal topic
    connect    - Bridge two entities and run a Socratic dialogue
    show       - Print a universe as an indented tree
    activate   - Use a universe as read-only memory for GAP context
    deactivate - Stop using a universe as memory
    snapshot   - Capture a revert point for a universe
    revert     - Restore a universe from its snapshot
    export     - Export a universe to parquet

Usage:
    # Start a universe
    python main.py new "Contracts" --content "What makes a promise binding?"

    # Ask inside it (select a node to reply under it)
    python main.py ask "Compare consideration and reliance" --universe universe-1717171717000

    # Synthesis across activated universes (no --universe)
    python main.py activate universe-1717171717000
    python main.py ask "What connects these?"

    # Doctrinal map in a fresh universe
    python main.py doctrine "promissory estoppel"

    # Socratic dialogue between two entities
    python main.py connect universe-1717171717000 node-1717171717001 nexus-1717171717000

Environment:
    ANTHROPIC_API_KEY / OPENAI_API_KEY   provider credentials (via LiteLLM)
    ASTRYON_CONFIG                       alternate astryon.toml
    ASTRYON_LIBRARY_PATH                 alternate SQLite library
"""
import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional

# Add astryon to path for imports
sys.path.insert(0, str(Path(__file__).parent))


# =============================================================================
# HELPERS
# =============================================================================

def _open_library():
    from infrastructure.config import get_config
    from infrastructure.universe_library import UniverseLibrary

    return UniverseLibrary(get_config().library.path)


def _load_store(library, universe_id: Optional[str]):
    """Store for a saved universe, or an empty one when no id is given."""
    from core.entity_store import EntityStore
    from infrastructure.config import get_config
    from infrastructure.event_bus import get_event_bus

    layout_config = get_config().layout
    if universe_id is None:
        return EntityStore(layout_config=layout_config, event_bus=get_event_bus())

    universe = library.load(universe_id)
    if universe is None:
        print(f"Universe not found: {universe_id}")
        sys.exit(1)
    return EntityStore.from_universe(
        universe, layout_config=layout_config, event_bus=get_event_bus()
    )


def _require_provider():
    from core.llm import has_provider_key

    if not has_provider_key():
        print("No provider API key found (set ANTHROPIC_API_KEY or OPENAI_API_KEY)")
        sys.exit(1)


def _trace_event(event):
    details = ", ".join(f"{key}={value}" for key, value in sorted(event.payload.items()))
    print(f"  [{event.source}] {event.type.value} {details}")


def _print_tree(store, entity_id: str, depth: int = 0):
    entity = store.get(entity_id)
    label = entity.title or entity.content.split("\n", 1)[0]
    kind = entity.kind.value
    print(f"{'  ' * depth}- [{entity.id}] ({kind}) {label[:80]}")
    for child in store.children(entity_id):
        _print_tree(store, child.id, depth + 1)


# =============================================================================
# COMMANDS
# =============================================================================

def cmd_new(args):
    """Handle new command - create a universe with one Nexus."""
    from core.ontology import NexusKind

    library = _open_library()
    store = _load_store(library, None)
    store.title = args.title
    nexus_id = store.create_nexus(args.title, args.content or "", kind=NexusKind(args.kind))
    library.save(store.universe_id, store.to_universe())

    print(f"Created universe {store.universe_id}")
    print(f"  Nexus: {nexus_id}")


def cmd_list(args):
    """Handle list command - show saved universes."""
    library = _open_library()
    universes = library.list_universes()
    if not universes:
        print("No universes saved")
        return

    print(f"{'Universe':<28} {'Entities':>8}  {'Active':<6} {'Snapshot':<8} Title")
    print("-" * 80)
    for row in universes:
        print(
            f"{row['universe_id']:<28} {row['entity_count']:>8}  "
            f"{'yes' if row['activated'] else '':<6} "
            f"{'yes' if row['has_snapshot'] else '':<8} {row['title']}"
        )


def cmd_ask(args):
    """Handle ask command - run one GAP query."""
    from agents.doctrinal import detect_doctrine_request
    from agents.gap_orchestrator import GapOrchestrator
    from agents.schemas import NoActiveUniverseError, SelectionContext
    from core.llm import CompletionError, get_completion_service
    from core.ontology import GapPath
    from core.parsing import ParseError
    from infrastructure.event_bus import get_event_bus

    topic = detect_doctrine_request(args.question)
    if topic:
        _run_doctrine(topic, args.universe)
        return

    _require_provider()
    library = _open_library()
    store = _load_store(library, args.universe)
    orchestrator = GapOrchestrator(
        store, get_completion_service(), library=library, event_bus=get_event_bus()
    )

    async def run():
        outcome = await orchestrator.handle_user_query(
            args.question, SelectionContext(selected_id=args.select)
        )
        if outcome.path == GapPath.PARALLEL_PENDING:
            plan = outcome.plan
            print(f"Parallel plan ({plan.reasoning}):")
            for i, task in enumerate(plan.tasks, 1):
                print(f"  {i}. {task}")
            confirmed = args.yes or input("Execute these tasks? [y/N] ").strip().lower() == "y"
            if not confirmed:
                orchestrator.dismiss_plan(plan)
                print("Plan dismissed")
                return
            report = await orchestrator.execute_plan(plan)
            print(f"Merged {report.succeeded} responses ({report.failed} failed)")
            for error in report.errors:
                print(f"  ! {error}")
            if not report.success:
                sys.exit(1)
        elif outcome.path == GapPath.SYNTHESIS:
            print(f"Synthesis nexus {outcome.nexus_id} with {len(outcome.node_ids)} points")
        else:
            print(store.get(outcome.node_ids[0]).content)

    try:
        asyncio.run(run())
    except NoActiveUniverseError as e:
        print(str(e))
        sys.exit(1)
    except CompletionError as e:
        print(e.user_message)
        sys.exit(1)
    except ParseError as e:
        print(f"Could not read the AI response: {e.reason}")
        sys.exit(1)

    print(f"Universe: {store.universe_id}")


def cmd_doctrine(args):
    """Handle doctrine command - generate a doctrinal map."""
    _run_doctrine(args.topic, args.universe)


def _run_doctrine(topic: str, universe_id: Optional[str]):
    from agents.doctrinal import DoctrinalGenerator
    from core.llm import get_completion_service
    from infrastructure.event_bus import get_event_bus

    _require_provider()
    library = _open_library()
    store = _load_store(library, universe_id)
    if universe_id is None:
        store.title = topic

    generator = DoctrinalGenerator(
        store,
        get_completion_service(),
        library=library,
        event_bus=get_event_bus(),
        on_progress=lambda stage: print(f"  ... {stage.value}"),
    )
    result = asyncio.run(generator.advance(topic))

    if not result.success:
        print(f"Doctrinal map failed: {result.error}")
        sys.exit(1)
    print(f"Doctrinal nexus {result.nexus_id} with {len(result.node_ids)} cases")
    print(f"Universe: {store.universe_id}")


def cmd_connect(args):
    """Handle connect command - interactive Socratic dialogue."""
    from agents.socratic import ConnectionExplorer
    from core.llm import CompletionError, get_completion_service
    from infrastructure.event_bus import get_event_bus

    _require_provider()
    library = _open_library()
    store = _load_store(library, args.universe)
    explorer = ConnectionExplorer.for_entities(
        store, get_completion_service(), args.entity_a, args.entity_b,
        library=library, event_bus=get_event_bus(),
    )
    print(f"Connection {explorer.connection_id} (empty line ends the dialogue)")

    async def run():
        question = await explorer.advance(seed_context=args.seed)
        while True:
            print(f"\nQ: {question}")
            answer = input("A: ").strip()
            if not answer:
                break
            question = await explorer.advance(answer=answer)
        synthesis_id = await explorer.end(synthesize=args.synthesize)
        if synthesis_id is not None:
            print(f"\nSynthesis:\n{store.get(synthesis_id).content}")

    try:
        asyncio.run(run())
    except CompletionError as e:
        print(e.user_message)
        sys.exit(1)
    print(f"\n{explorer.completed_rounds} rounds recorded")


def cmd_show(args):
    """Handle show command - print the universe tree."""
    library = _open_library()
    store = _load_store(library, args.universe)
    print(f"{store.universe_id}: {store.title}")
    for nexus in store.nexuses:
        _print_tree(store, nexus.id)
    for conn_id, partner_id in store.bridge_edges():
        print(f"  ~ {conn_id} bridges {partner_id}")


def cmd_activate(args):
    """Handle activate / deactivate commands."""
    from infrastructure.universe_library import UniverseNotFoundError

    library = _open_library()
    try:
        if args.command == "activate":
            library.activate(args.universe)
        else:
            library.deactivate(args.universe)
    except UniverseNotFoundError as e:
        print(str(e))
        sys.exit(1)
    print(f"{args.universe} {args.command}d")


def cmd_snapshot(args):
    """Handle snapshot command - capture a revert point."""
    from infrastructure.universe_library import UniverseNotFoundError

    library = _open_library()
    try:
        snapshot = library.create_snapshot(args.universe)
    except UniverseNotFoundError as e:
        print(str(e))
        sys.exit(1)
    print(f"Snapshot of {args.universe} taken at {snapshot.captured_at}")


def cmd_revert(args):
    """Handle revert command - restore from the snapshot."""
    from infrastructure.universe_library import SnapshotNotFoundError

    library = _open_library()
    try:
        universe = library.revert_to_snapshot(args.universe)
    except SnapshotNotFoundError as e:
        print(str(e))
        sys.exit(1)
    print(f"Reverted {args.universe} ({universe.entity_count()} entities)")


def cmd_export(args):
    """Handle export command - export a universe to parquet."""
    library = _open_library()
    store = _load_store(library, args.universe)

    output_dir = Path(args.output)
    output_dir.mkdir(parents=True, exist_ok=True)

    print(f"Exporting {store.universe_id} to {output_dir}...")
    nodes_path, edges_path = store.save_parquet(output_dir / store.universe_id)
    print(f"Exported {store.entity_count} entities, {len(store.nodes) + len(store.bridge_edges())} edges")
    print(f"  Nodes: {nodes_path}")
    print(f"  Edges: {edges_path}")


# =============================================================================
# MAIN
# =============================================================================

def main():
    """Main entry point with subcommands."""
    import argparse

    parser = argparse.ArgumentParser(
        description="Astryon - Spatial Knowledge Universes",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging verbosity"
    )
    parser.add_argument(
        "--trace",
        action="store_true",
        help="Print every engine event as it is published"
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # new command
    new_parser = subparsers.add_parser("new", help="Create a universe")
    new_parser.add_argument("title", help="Title of the first Nexus")
    new_parser.add_argument("--content", help="Opening content of the Nexus")
    new_parser.add_argument("--kind", choices=["chat", "academic", "course"], default="chat")
    new_parser.set_defaults(func=cmd_new)

    # list command
    list_parser = subparsers.add_parser("list", help="List saved universes")
    list_parser.set_defaults(func=cmd_list)

    # ask command
    ask_parser = subparsers.add_parser("ask", help="Ask a question")
    ask_parser.add_argument("question", help="The question")
    ask_parser.add_argument("--universe", "-u", help="Universe to ask in (omit for synthesis)")
    ask_parser.add_argument("--select", "-s", help="Entity to reply under")
    ask_parser.add_argument("--yes", "-y", action="store_true", help="Execute parallel plans without asking")
    ask_parser.set_defaults(func=cmd_ask)

    # doctrine command
    doctrine_parser = subparsers.add_parser("doctrine", help="Generate a doctrinal map")
    doctrine_parser.add_argument("topic", help="Legal doctrine to map")
    doctrine_parser.add_argument("--universe", "-u", help="Universe to add the map to")
    doctrine_parser.set_defaults(func=cmd_doctrine)

    # connect command
    connect_parser = subparsers.add_parser("connect", help="Socratic dialogue between two entities")
    connect_parser.add_argument("universe", help="Universe id")
    connect_parser.add_argument("entity_a", help="Entity that becomes the tree parent")
    connect_parser.add_argument("entity_b", help="Entity that is referenced")
    connect_parser.add_argument("--seed", help="Extra context for the opening question")
    connect_parser.add_argument("--synthesize", action="store_true", help="Summarise the dialogue on exit")
    connect_parser.set_defaults(func=cmd_connect)

    # show command
    show_parser = subparsers.add_parser("show", help="Print a universe tree")
    show_parser.add_argument("universe", help="Universe id")
    show_parser.set_defaults(func=cmd_show)

    # activate / deactivate commands
    for name, text in (("activate", "Use a universe as GAP memory"), ("deactivate", "Stop using a universe as memory")):
        sub = subparsers.add_parser(name, help=text)
        sub.add_argument("universe", help="Universe id")
        sub.set_defaults(func=cmd_activate)

    # snapshot command
    snapshot_parser = subparsers.add_parser("snapshot", help="Capture a revert point")
    snapshot_parser.add_argument("universe", help="Universe id")
    snapshot_parser.set_defaults(func=cmd_snapshot)

    # revert command
    revert_parser = subparsers.add_parser("revert", help="Restore a universe from its snapshot")
    revert_parser.add_argument("universe", help="Universe id")
    revert_parser.set_defaults(func=cmd_revert)

    # export command
    export_parser = subparsers.add_parser("export", help="Export a universe to parquet")
    export_parser.add_argument("universe", help="Universe id")
    export_parser.add_argument("--output", "-o", default="./export", help="Output directory")
    export_parser.set_defaults(func=cmd_export)

    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    if args.trace:
        from infrastructure.event_bus import get_event_bus
        get_event_bus().subscribe_all(_trace_event)

    args.func(args)


if __name__ == "__main__":
    main()
