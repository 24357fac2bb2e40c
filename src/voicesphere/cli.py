"""VoiceSphere CLI: run the relay, the voice interface, or chat from a terminal."""

from __future__ import annotations

import asyncio
import logging
import sys

import click
from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel

from voicesphere.config import get_settings

console = Console()


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def main(verbose: bool) -> None:
    """VoiceSphere, your AI voice companion."""
    level = logging.DEBUG if verbose else get_settings().log_level.upper()
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
        datefmt="%H:%M:%S",
    )


# ======================================================================
# SERVE: relay API
# ======================================================================
@main.command()
@click.option("--host", default=None, help="Override host")
@click.option("--port", "-p", default=None, type=int, help="Override port")
def serve(host: str | None, port: int | None) -> None:
    """Start the completion relay API."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "voicesphere.web.app:app",
        host=host or settings.host,
        port=port or settings.port,
        reload=False,
    )


# ======================================================================
# INTERFACE: voice WebSocket bridge
# ======================================================================
@main.command()
@click.option("--host", default=None, help="Override host")
@click.option("--port", "-p", default=None, type=int, help="Override port")
def interface(host: str | None, port: int | None) -> None:
    """Start the voice interface (WebSocket + relay)."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "voicesphere.interface.ws_server:create_interface_app",
        factory=True,
        host=host or settings.interface_host,
        port=port or settings.interface_port,
        reload=False,
    )


# ======================================================================
# ASK: one-shot relay call
# ======================================================================
@main.command()
@click.argument("question")
def ask(question: str) -> None:
    """Ask a single question through the relay."""
    from voicesphere.relay.completion import CompletionRelay, RelayError

    relay = CompletionRelay()
    try:
        with console.status("[bold cyan]Thinking..."):
            reply = relay.get_reply(question, history=[])
    except RelayError as exc:
        console.print(f"[red]{exc.message}[/]")
        sys.exit(1)

    _display_reply(reply)


# ======================================================================
# CHAT: interactive typed conversation
# ======================================================================
@main.command()
@click.option("--relay-url", default=None, help="Use a remote relay instead of calling in-process")
def chat(relay_url: str | None) -> None:
    """Hold a typed conversation through a voice session (no audio)."""
    from voicesphere.interface.relay_client import HttpRelayClient, LocalRelayClient

    url = relay_url or get_settings().relay_url
    source = HttpRelayClient(url) if url else LocalRelayClient()
    asyncio.run(_chat_loop(source))


async def _chat_loop(source) -> None:
    """Interactive loop: each line is submitted as a query."""
    from voicesphere.interface.session import SessionController

    session = SessionController(source)
    loop = asyncio.get_running_loop()

    console.print(
        Panel(
            "[bold cyan]VoiceSphere[/], your AI voice companion\n"
            "Type a question and press Enter. '/reset' clears the conversation, "
            "'quit' exits.",
            title="Chat",
        )
    )
    try:
        while True:
            try:
                line = await loop.run_in_executor(
                    None, console.input, "\n[bold cyan]You>[/] "
                )
            except (EOFError, KeyboardInterrupt):
                break
            line = line.strip()
            if line.lower() in ("quit", "exit", "q"):
                break
            if line == "/reset":
                session.reset()
                console.print("[dim]Conversation cleared.[/]")
                continue

            task = session.submit_query(line)
            if task is None:
                continue
            with console.status("[bold cyan]Thinking..."):
                turn = await task
            if turn is not None:
                _display_reply(turn.content)
    finally:
        session.close()
        if hasattr(source, "aclose"):
            await source.aclose()


def _display_reply(reply: str) -> None:
    console.print()
    console.print(Panel(
        Markdown(reply),
        title="[bold cyan]VoiceSphere[/]",
        border_style="cyan",
    ))


if __name__ == "__main__":
    main()
