"""
Command-line interface for flowforge.

Usage:
    flowforge run flows/pipeline.json
    flowforge run flows/pipeline.json --error-mode skip-and-continue --events
    flowforge run flows/pipeline.json --events node-error,node-retry --events-node fetch
    flowforge run flows/pipeline.json --timeout 30 --max-attempts 3 --base-delay 0.5
    flowforge validate flows/pipeline.json
    flowforge types --pack math

Exit codes for ``run``: 0 success, 1 run finished with errors,
2 the flow could not be loaded or failed its static checks.
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path

from pydantic import ValidationError as ModelValidationError

from flowforge.config import EngineConfig, get_packs_state_path
from flowforge.graph import ConfigurationError, ErrorMode, ExecutionEngine, FlowGraph
from flowforge.graph.types import RetryConfig
from flowforge.observability import configure_logging
from flowforge.packs import BUILTIN_PACKS, PackRegistry, create_default_registries
from flowforge.runtime import EventBus, ExecutionEvent, ExecutionEventType

EXIT_OK = 0
EXIT_RUN_ERROR = 1
EXIT_CONFIG_ERROR = 2


def load_flow(path: Path) -> FlowGraph:
    """
    Load a flow file: ``{"nodes": [...], "edges": [...]}``.

    Raises:
        ConfigurationError: Unreadable file or malformed flow
    """
    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"Cannot read flow {path}: {e}") from e
    try:
        return FlowGraph.model_validate(data)
    except ModelValidationError as e:
        raise ConfigurationError(f"Invalid flow {path}: {e}") from e


def build_registries(pack_ids: list[str], use_saved_packs: bool = True):
    """Core registries plus the requested (and previously enabled) packs."""
    executors, node_types = create_default_registries()
    config = EngineConfig()
    packs = PackRegistry(
        executors,
        node_types,
        state_path=get_packs_state_path() if use_saved_packs else None,
        max_subflow_depth=config.max_subflow_depth,
    )
    for factory in BUILTIN_PACKS.values():
        packs.register_builtin_pack(factory())
    packs.load()

    for pack_id in pack_ids:
        if packs.get_manifest(pack_id) is None:
            raise ConfigurationError(f"Unknown pack: {pack_id}")
        if not packs.is_enabled(pack_id):
            packs.enable_pack(pack_id, persist=False)

    return executors, node_types


def _print_event(event: ExecutionEvent) -> None:
    print(json.dumps(event.to_dict(), default=str), file=sys.stderr)


def _parse_event_types(value: str) -> list[ExecutionEventType] | None:
    """Comma-separated event type names; "all" means no filter."""
    if value == "all":
        return None
    types = []
    for name in filter(None, (part.strip() for part in value.split(","))):
        try:
            types.append(ExecutionEventType(name))
        except ValueError:
            raise ConfigurationError(f"Unknown event type: {name}") from None
    return types


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def cmd_run(args: argparse.Namespace) -> int:
    try:
        graph = load_flow(Path(args.flow))
        executors, node_types = build_registries(args.pack or [], not args.no_saved_packs)
        config = EngineConfig()
        event_types = _parse_event_types(args.events) if args.events else None
    except ConfigurationError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    overrides: dict = {}
    if args.error_mode:
        overrides["error_mode"] = ErrorMode(args.error_mode)
    if args.timeout is not None:
        overrides["default_timeout"] = args.timeout
    if args.max_attempts is not None or args.base_delay is not None:
        retry = config.retry.model_dump()
        if args.max_attempts is not None:
            retry["max_attempts"] = args.max_attempts
        if args.base_delay is not None:
            retry["base_delay"] = args.base_delay
        overrides["default_retry"] = RetryConfig(**retry)
    if args.events:
        bus = EventBus()
        bus.subscribe(event_types, _print_event, node_id=args.events_node)
        overrides["on_event"] = bus.publish

    engine = ExecutionEngine(executors, node_types)
    try:
        state = asyncio.run(engine.execute(graph.nodes, graph.edges, config.to_options(**overrides)))
    except ConfigurationError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_CONFIG_ERROR
    except KeyboardInterrupt:
        print("Interrupted", file=sys.stderr)
        return EXIT_RUN_ERROR

    print(json.dumps(state.to_dict(), indent=2, default=str))
    return EXIT_OK if state.success else EXIT_RUN_ERROR


def cmd_validate(args: argparse.Namespace) -> int:
    try:
        graph = load_flow(Path(args.flow))
        executors, node_types = build_registries(args.pack or [], not args.no_saved_packs)
        flow_levels = ExecutionEngine(executors, node_types).check(graph.nodes, graph.edges)
    except ConfigurationError as e:
        print(f"Invalid: {e}")
        return EXIT_CONFIG_ERROR

    print(f"Valid: {len(graph.nodes)} node(s), {len(graph.edges)} edge(s)")
    for index, level in enumerate(flow_levels):
        print(f"  level {index}: {', '.join(level)}")
    return EXIT_OK


def cmd_types(args: argparse.Namespace) -> int:
    try:
        _, node_types = build_registries(args.pack or [], not args.no_saved_packs)
    except ConfigurationError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    if args.json:
        print(json.dumps([spec.model_dump(mode="json") for spec in node_types.list()], indent=2))
        return EXIT_OK

    by_category: dict[str, list[str]] = {}
    for spec in node_types.list():
        marker = " (error-resilient)" if spec.error_resilient else ""
        by_category.setdefault(spec.category, []).append(f"{spec.type}{marker}")
    for category, types in by_category.items():
        print(f"{category}:")
        for node_type in types:
            print(f"  {node_type}")
    return EXIT_OK


def register_commands(subparsers: argparse._SubParsersAction) -> None:
    """Register run, validate and types."""

    def add_common(parser: argparse.ArgumentParser) -> None:
        parser.add_argument(
            "--pack",
            action="append",
            metavar="NAME",
            help="Enable a node pack for this invocation (repeatable)",
        )
        parser.add_argument(
            "--no-saved-packs",
            action="store_true",
            help="Ignore pack states saved in ~/.flowforge",
        )
        parser.add_argument("--log-level", default="WARNING", help="Log level (default: WARNING)")
        parser.add_argument(
            "--log-format",
            choices=["auto", "json", "human"],
            default="auto",
            help="Log output format",
        )

    run_parser = subparsers.add_parser("run", help="Execute a flow file")
    run_parser.add_argument("flow", help="Path to a flow JSON file")
    run_parser.add_argument(
        "--error-mode",
        choices=[mode.value for mode in ErrorMode],
        help="How node failures affect the run (default from config: stop-all)",
    )
    run_parser.add_argument("--timeout", type=float, help="Per-node timeout in seconds (0 = none)")
    run_parser.add_argument("--max-attempts", type=int, help="Attempts per node (1 = no retry)")
    run_parser.add_argument("--base-delay", type=float, help="Seconds before the first retry")
    run_parser.add_argument(
        "--events",
        nargs="?",
        const="all",
        metavar="TYPES",
        help="Stream execution events to stderr as JSON lines, optionally only "
        "the given comma-separated types (e.g. node-error,node-retry)",
    )
    run_parser.add_argument(
        "--events-node", metavar="NODE", help="With --events, only stream events of this node"
    )
    add_common(run_parser)
    run_parser.set_defaults(func=cmd_run)

    validate_parser = subparsers.add_parser("validate", help="Check a flow without running it")
    validate_parser.add_argument("flow", help="Path to a flow JSON file")
    add_common(validate_parser)
    validate_parser.set_defaults(func=cmd_validate)

    types_parser = subparsers.add_parser("types", help="List available node types")
    types_parser.add_argument("--json", action="store_true", help="Print full type metadata")
    add_common(types_parser)
    types_parser.set_defaults(func=cmd_types)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="flowforge",
        description="flowforge - run dataflow graphs",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)
    register_commands(subparsers)

    args = parser.parse_args(argv)
    configure_logging(level=args.log_level, format=args.log_format)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
