import argparse
import asyncio
import json
import sys
from typing import Any, Dict
from uuid import UUID

from rich import print as rprint
from rich.console import Console

from .config import get_settings
from .core.exceptions import CadenceException
from .core.log import configure_logging
from .messaging import Broadcaster
from .runtime import Runtime
from .scheduling import CeleryActionQueue, ScheduledAction
from .storage import session_scope
from .storage.repositories import PersonaRepository

console = Console()


class ConsoleBroadcaster(Broadcaster):
    """Prints the agent's messages and typing indicator to the terminal."""

    def __init__(self, persona_name: str = "agent"):
        self.persona_name = persona_name

    async def publish(self, conversation_id: UUID, event: Dict[str, Any]) -> None:
        if event.get("type") == "message" and event["message"].get("sender") == "agent":
            console.print(f"[bold cyan]{self.persona_name}[/bold cyan]: {event['message']['content']}")
        elif event.get("type") == "typing" and event.get("is_typing"):
            console.print(f"[grey50]{self.persona_name} is typing...[/grey50]")


async def init_db() -> int:
    runtime = Runtime.build()
    try:
        await runtime.init_db()
    finally:
        await runtime.aclose()
    rprint("[bold green]Database initialized")
    return 0


async def start_season(name: str, state: str | None) -> int:
    runtime = Runtime.build()
    try:
        await runtime.init_db()
        persona = await runtime.seasons.start_season(name, json.loads(state) if state else None)
    finally:
        await runtime.aclose()
    rprint(f"[bold green]Season {persona.season_number} started:[/bold green] {persona.display_name} ({persona.id})")
    return 0


async def chat(participant_id: str) -> int:
    """
    Chat with the active persona in this process.

    Everything runs in the current event loop with in-process locks and queue.
    """
    broadcaster = ConsoleBroadcaster()
    runtime = Runtime.build(broadcaster=broadcaster)
    try:
        await runtime.init_db()
        async with session_scope(runtime.session_maker) as session:
            persona = await PersonaRepository(session).get_active()
        if persona is None:
            rprint("[bold red]No active persona, run start-season first")
            return 1
        broadcaster.persona_name = persona.display_name
        rprint("[grey50]Type a message and press enter. Ctrl-D to quit.")
        while True:
            try:
                line = await asyncio.to_thread(input)
            except EOFError:
                break
            if not line.strip():
                continue
            await runtime.scheduler.receive(participant_id, line)
    finally:
        await runtime.aclose()
    return 0


async def kick(conversation_id: str, delay: float) -> int:
    """Queue a decision for a conversation on the Celery workers."""
    from .worker.celery_app import celery_app

    await CeleryActionQueue(celery_app).enqueue(ScheduledAction.decide(UUID(conversation_id), delay))
    rprint(f"[bold green]Decision queued for {conversation_id} in {delay:.0f}s")
    return 0


async def maintain(persona_id: str) -> int:
    runtime = Runtime.build()
    try:
        report = await runtime.memory_store.run_maintenance(UUID(persona_id))
    finally:
        await runtime.aclose()
    rprint(
        f"decayed={report.decayed} consolidated={report.consolidated} "
        f"pruned={report.pruned} skipped={report.skipped}"
    )
    return 0


def main() -> int:
    """
    Command-line interface (CLI) entry point for the Cadence engine.
    """
    parser = argparse.ArgumentParser(description="Cadence conversational agent engine")
    subparsers = parser.add_subparsers(dest="command", help="Commands")

    subparsers.add_parser("init-db", help="Create database tables")

    season_parser = subparsers.add_parser("start-season", help="Start a new persona season")
    season_parser.add_argument("name", type=str, help="Display name of the persona")
    season_parser.add_argument("--state", type=str, default=None, help="Initial persona state as JSON")

    chat_parser = subparsers.add_parser("chat", help="Chat with the active persona in this process")
    chat_parser.add_argument("--participant", type=str, default="local", help="Participant id (default: local)")

    kick_parser = subparsers.add_parser("kick", help="Queue a decision cycle on the workers")
    kick_parser.add_argument("conversation_id", type=str, help="Conversation id")
    kick_parser.add_argument("--delay", type=float, default=0.0, help="Delay in seconds (default: 0)")

    maintain_parser = subparsers.add_parser("maintain", help="Run memory maintenance for a persona")
    maintain_parser.add_argument("persona_id", type=str, help="Persona id")

    args = parser.parse_args()

    settings = get_settings()
    configure_logging(settings.LOG_LEVEL, settings.LOG_JSON)

    try:
        if args.command == "init-db":
            return asyncio.run(init_db())
        elif args.command == "start-season":
            return asyncio.run(start_season(args.name, args.state))
        elif args.command == "chat":
            return asyncio.run(chat(args.participant))
        elif args.command == "kick":
            return asyncio.run(kick(args.conversation_id, args.delay))
        elif args.command == "maintain":
            return asyncio.run(maintain(args.persona_id))
        parser.print_help()
        return 1
    except CadenceException as e:
        rprint(f"[bold red]{e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
