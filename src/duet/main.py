"""
Duet - Command line entry point.

Created by duet contributors

Runs one chat session over a direct TCP connection from the terminal.
One side runs `duet offer`, the other `duet answer`; the two descriptors
are copied between terminals by hand.
"""

import argparse
import asyncio
import getpass
import os
import sys
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.text import Text

from . import __version__
from .config import Config, configure_logging
from .connection_fsm import SessionState
from .errors import DuetError
from .session import ChatSession, Message, Origin
from .tcp_transport import TcpTransport

QUIT_COMMANDS = ("/quit", "/exit")

console = Console()


def _print_message(message: Message) -> None:
    if message.origin == Origin.SELF:
        line = Text("you  > ", style="bold green")
    elif message.authenticated:
        line = Text("peer > ", style="bold cyan")
    else:
        line = Text("peer ! ", style="bold red")
    line.append(message.text)
    console.print(line)


def _print_descriptor(label: str, descriptor: str) -> None:
    console.print(Text(f"{label} (share this with your peer):", style="bold"))
    console.print(descriptor, soft_wrap=True)


async def _read_line(prompt: str) -> str:
    return await asyncio.to_thread(console.input, prompt)


async def _chat_loop(session: ChatSession) -> None:
    console.print(Text("Connected. Type messages, /quit to leave.", style="green"))
    while session.state == SessionState.OPEN:
        reader = asyncio.ensure_future(_read_line(""))
        ended = asyncio.ensure_future(session.wait_closed())
        await asyncio.wait({reader, ended}, return_when=asyncio.FIRST_COMPLETED)
        ended.cancel()
        if not reader.done():
            # The input thread stays blocked until the next Enter
            reader.cancel()
            console.print(Text(f"Session ended ({session.status}). Press Enter to exit.", style="yellow"))
            break

        line = reader.result()
        if line.strip() in QUIT_COMMANDS:
            break
        if not line.strip():
            continue
        try:
            await session.send(line)
        except DuetError as e:
            console.print(Text(str(e), style="red"))


async def run(mode: str, config: Config, passphrase: str) -> int:
    """Run one session in the given mode ("offer" or "answer")."""
    transport = TcpTransport(
        host=config.get("network", "host"),
        port=config.get("network", "port"),
        connect_timeout=config.get("network", "connect_timeout"),
    )
    session = ChatSession.from_config(transport, passphrase, config)
    session.on_message = _print_message
    session.on_status = lambda status: console.print(Text(f"[{status}]", style="dim"))
    session.on_warning = lambda error: console.print(
        Text(f"warning: {error.message} - is the passphrase the same on both sides?", style="yellow")
    )

    async with session:
        try:
            if mode == "offer":
                _print_descriptor("Offer", await session.create_offer())
                answer = await _read_line("Paste the peer's answer: ")
                await session.finalize(answer)
            else:
                offer = await _read_line("Paste the peer's offer: ")
                _print_descriptor("Answer", await session.accept_offer(offer))

            await session.wait_until_open(config.get("network", "connect_timeout") * 4)
            await _chat_loop(session)
        except DuetError as e:
            console.print(Text(f"Error: {e}", style="bold red"))
            return 1
    return 0


def main(argv: Optional[list] = None) -> None:
    """Main entry point for the duet command."""
    parser = argparse.ArgumentParser(
        description="Duet - Passphrase-encrypted peer-to-peer chat",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  duet offer --host 192.168.1.10 --port 7000   # listen and print an offer
  duet answer                                  # paste an offer, print an answer
        """,
    )
    parser.add_argument("--version", action="version", version=f"Duet {__version__}")
    parser.add_argument("mode", choices=("offer", "answer"), help="Side of the handshake to play")
    parser.add_argument("--config", type=str, default=None, help="Path to a config.toml file")
    parser.add_argument("--host", type=str, default=None, help="Address to listen on / advertise")
    parser.add_argument("--port", type=int, default=None, help="Port to listen on (0 = any)")
    parser.add_argument(
        "--passphrase-env",
        type=str,
        default=None,
        help="Read the passphrase from this environment variable instead of prompting",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")

    args = parser.parse_args(argv)

    try:
        config = Config(Path(args.config).expanduser() if args.config else None)
    except DuetError as e:
        console.print(Text(f"Configuration error: {e}", style="bold red"))
        sys.exit(2)

    if args.host is not None:
        config.set("network", "host", args.host)
    if args.port is not None:
        config.set("network", "port", args.port)
    if args.debug:
        config.set("logging", "level", "DEBUG")
    configure_logging(config)

    if args.passphrase_env:
        passphrase = os.environ.get(args.passphrase_env, "")
    else:
        passphrase = getpass.getpass("Shared passphrase: ")
    if not passphrase:
        console.print(Text("A non-empty passphrase is required.", style="bold red"))
        sys.exit(2)

    try:
        sys.exit(asyncio.run(run(args.mode, config, passphrase)))
    except KeyboardInterrupt:
        sys.exit(130)


if __name__ == "__main__":
    main()
