"""CLI entry point for the Billi assistant.

A terminal chat loop for development.  For production, use the FastAPI
server (billi/server.py).

Usage:
    uv run python -m billi.main            # normal mode (quiet)
    uv run python -m billi.main --debug    # debug mode (shows API calls)
    uv run python -m billi.main --user-name "Alex Doe" --user-email alex@example.com
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import uuid

from dotenv import load_dotenv

from billi.prompts import CurrentUser
from billi.router import MoERouter, parse_classification_from_stream, strip_classification_marker
from billi.services.accounting_client import AccountingClient
from billi.services.graph_client import GraphClient
from billi.services.session_store import InMemorySessionStore

logger = logging.getLogger(__name__)


def _configure_logging(debug: bool = False) -> None:
    """Set up logging: WARNING by default, DEBUG when --debug is passed."""
    root_level = logging.DEBUG if debug else logging.WARNING
    logging.basicConfig(
        level=root_level,
        format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    )

    if not debug:
        # Silence chatty HTTP loggers even if root is WARNING
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)

    logging.getLogger("billi").setLevel(logging.DEBUG if debug else logging.INFO)


async def _print_reply(moe_router: MoERouter, message: str, session_id: str, user: CurrentUser | None) -> None:
    print("\nBilli: ", end="", flush=True)
    async for chunk in moe_router.handle_request_stream(message, session_id, user=user):
        marker = parse_classification_from_stream(chunk)
        if marker:
            print(f"\033[2m[{marker['expert']} · {marker['confidence']:.2f}]\033[0m ", end="", flush=True)
            chunk = strip_classification_marker(chunk)
        print(chunk, end="", flush=True)
    print("\n")


async def _chat_loop(user: CurrentUser | None) -> None:
    graph_client = GraphClient()
    accounting_client = AccountingClient()
    moe_router = MoERouter(
        session_store=InMemorySessionStore(),
        graph_client=graph_client,
        accounting_client=accounting_client,
    )
    session_id = str(uuid.uuid4())
    logger.info("Started new session: %s", session_id)

    try:
        while True:
            try:
                user_input = (await asyncio.to_thread(input, "You: ")).strip()
            except (KeyboardInterrupt, EOFError):
                print("\n\nGoodbye!")
                break

            if not user_input:
                continue

            if user_input.lower() in ("exit", "quit", "q"):
                print("\nGoodbye!")
                break

            if user_input.lower() == "new":
                session_id = str(uuid.uuid4())
                print(f"\n>> New session started: {session_id[:8]}...\n")
                continue

            await _print_reply(moe_router, user_input, session_id, user)
    finally:
        await graph_client.aclose()
        await accounting_client.aclose()


def main():
    """Run the interactive CLI chat loop."""
    parser = argparse.ArgumentParser(description="Billi assistant CLI")
    parser.add_argument(
        "--debug", action="store_true",
        help="Show all log messages including HTTP requests",
    )
    parser.add_argument("--user-name", help="Display name of the signed-in user")
    parser.add_argument("--user-email", help="Email address of the signed-in user")
    args = parser.parse_args()

    load_dotenv()
    _configure_logging(debug=args.debug)

    print("\n" + "=" * 60)
    print("  Billi - CLI Chat")
    print("=" * 60)
    print("  Type your message and press Enter.")
    print("  Commands: 'quit' to exit, 'new' for a new session.")
    print("=" * 60 + "\n")

    user = None
    if args.user_name or args.user_email:
        user = CurrentUser(name=args.user_name, address=args.user_email)

    try:
        asyncio.run(_chat_loop(user))
    except KeyboardInterrupt:
        print("\n\nGoodbye!")


if __name__ == "__main__":
    main()
