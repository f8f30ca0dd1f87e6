"""
Command-line interface for the pathway engine.

Usage:
    pathway validate examples/pathways/reading-support.json
    pathway run examples/pathways/reading-support.json --input '{"elpaLevel": 2}' --mock-llm
    pathway serve --host 127.0.0.1 --port 8080
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any

from pathway.errors import GraphIntegrityError, InvalidHumanInput


def _load_document(path: str) -> dict[str, Any]:
    with open(Path(path), encoding="utf-8") as f:
        return json.load(f)


def _build_llm(args: argparse.Namespace):
    if args.mock_llm:
        from pathway.llm.mock import MockLLMProvider

        return MockLLMProvider()
    from pathway.llm.litellm import LiteLLMProvider

    return LiteLLMProvider()


def cmd_validate(args: argparse.Namespace) -> int:
    """Validate a graph document without running it."""
    from pathway.graph.edge import GraphSpec

    try:
        graph = GraphSpec.from_document(_load_document(args.graph))
    except (OSError, json.JSONDecodeError) as e:
        print(f"✗ Cannot read {args.graph}: {e}", file=sys.stderr)
        return 2
    except GraphIntegrityError as e:
        print(f"✗ {args.graph} is invalid:", file=sys.stderr)
        for error in e.errors:
            print(f"  • {error}", file=sys.stderr)
        return 1

    entries = ", ".join(n.id for n in graph.entry_nodes())
    print(f"✓ {graph.id}: {len(graph.nodes)} nodes, {len(graph.edges)} edges (entry: {entries})")
    return 0


async def _run(args: argparse.Namespace) -> int:
    from pathway.config import EngineConfig
    from pathway.graph.hitl import format_for_display
    from pathway.runtime.engine import WorkflowEngine
    from pathway.runtime.event_bus import EventKind

    document = _load_document(args.graph)
    inputs = json.loads(args.input) if args.input else {}
    engine = WorkflowEngine(llm=_build_llm(args), config=EngineConfig())

    try:
        run_id = await engine.start_run(document, inputs)
    except GraphIntegrityError as e:
        print(f"✗ {e}", file=sys.stderr)
        return 1

    async for event in engine.subscribe(run_id):
        if args.verbose:
            print(json.dumps(event.to_dict(), default=str))
        elif event.kind == EventKind.NODE_COMPLETED:
            print(f"  ✓ {event.node_id}")
        elif event.kind == EventKind.NODE_FAILED:
            print(f"  ✗ {event.node_id}: {event.payload.get('error')}")

        if event.kind == EventKind.RUN_SUSPENDED:
            request = event.payload.get("request", {})
            print(format_for_display(request))
            if not sys.stdin.isatty():
                print("✗ Input required but stdin is not interactive", file=sys.stderr)
                await engine.cancel_run(run_id)
                continue
            while True:
                raw = await asyncio.to_thread(input, "> ")
                try:
                    value = json.loads(raw)
                except json.JSONDecodeError:
                    value = raw
                try:
                    await engine.resume_human_input(run_id, event.node_id, value)
                    break
                except InvalidHumanInput as e:
                    print(f"✗ {e}", file=sys.stderr)

    result = await engine.wait_for_completion(run_id)
    await engine.shutdown()

    print(json.dumps(
        {
            "runId": result.run_id,
            "status": str(result.status),
            "output": result.output,
            "error": result.error,
            "failedNode": result.failed_node,
            "path": result.path,
        },
        indent=2,
        default=str,
    ))
    return 0 if result.success else 1


def cmd_run(args: argparse.Namespace) -> int:
    """Run a graph document to completion."""
    from pathway.observability import configure_logging

    configure_logging(level="DEBUG" if args.verbose else "WARNING")
    try:
        return asyncio.run(_run(args))
    except (OSError, json.JSONDecodeError) as e:
        print(f"✗ {e}", file=sys.stderr)
        return 2


async def _serve(args: argparse.Namespace) -> None:
    from pathway.runtime.api_server import ApiServer, ApiServerConfig
    from pathway.runtime.engine import WorkflowEngine

    engine = WorkflowEngine(llm=_build_llm(args))
    server = ApiServer(engine, ApiServerConfig(host=args.host, port=args.port))
    await server.start()
    print(f"Serving on http://{args.host}:{server.port}")
    try:
        await asyncio.Event().wait()
    finally:
        await server.stop()
        await engine.shutdown()


def cmd_serve(args: argparse.Namespace) -> int:
    """Serve the HTTP API."""
    from pathway.observability import configure_logging

    configure_logging(level="DEBUG" if args.verbose else "INFO")
    try:
        asyncio.run(_serve(args))
    except KeyboardInterrupt:
        pass
    return 0


def main():
    parser = argparse.ArgumentParser(
        prog="pathway",
        description="Run educational pathway graphs",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    validate_parser = subparsers.add_parser("validate", help="Validate a graph document")
    validate_parser.add_argument("graph", help="Path to the graph JSON document")
    validate_parser.set_defaults(func=cmd_validate)

    run_parser = subparsers.add_parser("run", help="Run a graph document")
    run_parser.add_argument("graph", help="Path to the graph JSON document")
    run_parser.add_argument("--input", "-i", help="Initial bindings as JSON")
    run_parser.add_argument(
        "--mock-llm", action="store_true", help="Use the deterministic mock AI provider"
    )
    run_parser.add_argument("--verbose", "-v", action="store_true", help="Print every event")
    run_parser.set_defaults(func=cmd_run)

    serve_parser = subparsers.add_parser("serve", help="Serve the HTTP API")
    serve_parser.add_argument("--host", default="127.0.0.1")
    serve_parser.add_argument("--port", type=int, default=8080)
    serve_parser.add_argument(
        "--mock-llm", action="store_true", help="Use the deterministic mock AI provider"
    )
    serve_parser.add_argument("--verbose", "-v", action="store_true")
    serve_parser.set_defaults(func=cmd_serve)

    args = parser.parse_args()

    if hasattr(args, "func"):
        sys.exit(args.func(args))


if __name__ == "__main__":
    main()
