"""Interactive CLI for the n8n Dev Agent.

Runs the agent loop directly in the terminal, without the HTTP server.

Usage:
    n8n-agent chat
    n8n-agent chat "Create a webhook workflow that posts to Slack"
    n8n-agent build-index --corpus .n8n-nodes-cache
    n8n-agent serve --port 8000
"""

from __future__ import annotations

import asyncio
import logging
import os
import sys
from argparse import ArgumentParser

from n8n_dev_agent.agent.status import StatusBroadcaster, StatusType

_EXIT_WORDS = frozenset({"exit", "quit", ":q"})


# ---------------------------------------------------------------------------
# Chat session
# ---------------------------------------------------------------------------


async def _print_status(status: StatusBroadcaster) -> None:
    """Echo tool activity while the agent works."""
    queue = status.subscribe()
    try:
        while True:
            event = await queue.get()
            if event.type in (StatusType.TOOL_CALL, StatusType.ERROR):
                print(f"\n  · {event.message}", flush=True)
    finally:
        status.unsubscribe(queue)


async def _run_chat(first_message: str | None = None) -> None:
    """Run a terminal conversation until EOF or an exit word."""
    try:
        from dotenv import load_dotenv
        load_dotenv()
    except ImportError:
        pass

    from n8n_dev_agent.agent import create_agent
    from n8n_dev_agent.settings_store import SettingsStore

    store = await SettingsStore.open(os.getenv("SETTINGS_DB_PATH", "settings.db"))
    runner, client = await create_agent(store=store)
    session = runner.session("cli")
    printer = asyncio.create_task(_print_status(runner.status))

    print(f"\nn8n Dev Agent ({runner.engine.model_id}) | n8n: {client.settings.endpoint}")
    print(f"{len(runner.index.nodes)} node types indexed. Type 'exit' to quit.")
    print("-" * 60)

    message = first_message
    try:
        while True:
            if not message:
                message = _prompt("\nyou> ")
            if message.lower() in _EXIT_WORDS:
                break
            if message:
                print("\nagent> ", end="", flush=True)
                await runner.run_streaming(
                    message,
                    on_token=lambda delta: print(delta, end="", flush=True),
                    session=session,
                )
                print()
            message = None
    except KeyboardInterrupt:
        print("\n\nInterrupted.")
    finally:
        printer.cancel()
        await client.close()
        await store.close()


def _prompt(label: str) -> str:
    """Read a line from stdin, stripping whitespace. Exits on EOF."""
    try:
        return input(label).strip()
    except EOFError:
        print("\n(EOF received, exiting)")
        sys.exit(0)


# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------


def main(argv: list[str] | None = None) -> None:
    logging.basicConfig(level=logging.WARNING, format="%(levelname)s: %(message)s")

    parser = ArgumentParser(
        prog="n8n-agent",
        description="n8n Dev Agent: workflow builder co-pilot",
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    chat_p = sub.add_parser("chat", help="Chat with the agent in the terminal")
    chat_p.add_argument("message", nargs="?", help="Optional first message")

    index_p = sub.add_parser("build-index", help="Rebuild the node capability snapshot")
    index_p.add_argument("--corpus", default=None, help="n8n source checkout (default: .n8n-nodes-cache)")
    index_p.add_argument("--output", default=None, help="Snapshot path (default: <corpus>/node-index.json)")
    index_p.add_argument("--dry-run", action="store_true", help="Scan and report; write nothing")

    serve_p = sub.add_parser("serve", help="Run the HTTP API")
    serve_p.add_argument("--host", default="0.0.0.0")
    serve_p.add_argument("--port", type=int, default=8000)
    serve_p.add_argument("--reload", action="store_true")

    args = parser.parse_args(argv)

    if args.command == "chat":
        asyncio.run(_run_chat(args.message))
    elif args.command == "build-index":
        from n8n_dev_agent.knowledge.build import main as build_main

        build_argv: list[str] = []
        if args.corpus:
            build_argv += ["--corpus", args.corpus]
        if args.output:
            build_argv += ["--output", args.output]
        if args.dry_run:
            build_argv.append("--dry-run")
        sys.exit(build_main(build_argv))
    elif args.command == "serve":
        from n8n_dev_agent.api import serve

        serve(host=args.host, port=args.port, reload=args.reload)
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
