"""Command line entry point: `copilot serve` runs the API, `copilot listen` runs a session."""

import argparse
import asyncio
import sys
from pathlib import Path
from typing import Optional

from rich.console import Console

from copilot.config import Config
from copilot.logging_utils import init_logging
from copilot.models import USE_CASES

console = Console()

HELP = """[bold]Commands[/bold]
  [cyan]<Enter>[/cyan]  start/stop listening
  [cyan]:s[/cyan]       ask about the shared screen
  [cyan]:c[/cyan]       clear recorded context
  [cyan]:a[/cyan]       analyze this session
  [cyan]:credits[/cyan] show remaining credits
  [cyan]:reset[/cyan]   clear chat history
  [cyan]:q[/cyan]       quit
Anything else is sent as a question."""


def _serve(args: argparse.Namespace) -> int:
    import uvicorn

    uvicorn.run("copilot.main:app", host=args.host, port=args.port, log_level=args.log_level.lower())
    return 0


def _devices(args: argparse.Namespace) -> int:
    from copilot.media import list_audio_devices

    result = list_audio_devices()
    if not result["ok"]:
        console.print(f"[red]Could not list devices:[/red] {result['error']}")
        return 1
    for d in result["devices"]:
        console.print(f"{d['index']:>3}  {d['name']}  ({d['max_input_channels']} ch, {d['default_samplerate']} Hz)")
    return 0


async def _listen(args: argparse.Namespace) -> int:
    from copilot.client import CopilotApiClient
    from copilot.media import SoundDeviceMediaDevices
    from copilot.native import VoskRecognitionEngine
    from copilot.session import CopilotSession
    from copilot.storage import LocalStorage

    storage = LocalStorage(args.storage)
    devices = SoundDeviceMediaDevices(
        mic_device=args.mic, loopback_device=args.loopback, capture_video=not args.no_screen
    )
    engine = None
    if args.native and VoskRecognitionEngine.available():
        engine = VoskRecognitionEngine()

    printed = {"len": 0}

    def on_reply(turn) -> None:
        new = turn.content[printed["len"]:]
        printed["len"] = len(turn.content)
        console.print(new, end="", markup=False, highlight=False, soft_wrap=True)

    def notify(level: str, message: str) -> None:
        style = {"error": "red", "credits": "bold red", "auth": "bold red", "success": "green"}.get(level, "dim")
        console.print(f"[{style}]{message}[/{style}]")

    def on_live(text: str) -> None:
        if text:
            console.print(f"[dim]… {text}[/dim]")

    async with CopilotApiClient(base_url=args.server, token=args.token) as api:
        session = CopilotSession(
            api, devices, storage,
            native_engine=engine, notify=notify, on_reply=on_reply, on_live_transcript=on_live,
            plan=args.plan,
        )

        if args.use_case and args.profile:
            primary = Path(args.profile).read_text(encoding="utf-8")
            await session.setup_persona(args.use_case, primary)

        if not args.no_capture:
            await session.start_capture()

        credits = await session.refresh_credits()
        console.print(f"[bold]Copilot ready[/bold] (credits: {credits if credits is not None else '?'})")
        console.print(HELP)

        try:
            while True:
                line = await asyncio.to_thread(sys.stdin.readline)
                if not line:
                    break
                line = line.strip()
                printed["len"] = 0

                if not line:
                    mode = session.toggle_recording()
                    console.print(f"[green]Listening ({mode})[/green]" if mode else "[yellow]Stopped[/yellow]")
                elif line == ":q":
                    break
                elif line == ":s":
                    await session.ask_about_screen()
                    console.print()
                elif line == ":c":
                    session.clear_context()
                elif line == ":a":
                    report = await session.analyze()
                    if report:
                        console.print(report, markup=False)
                elif line == ":credits":
                    console.print(f"Credits: {await session.refresh_credits()}")
                elif line == ":reset":
                    session.chat.clear_history()
                    console.print("[dim]History cleared[/dim]")
                else:
                    await session.ask(line)
                    console.print()
        finally:
            await session.close()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="copilot", description="AI interview & meeting co-pilot")
    parser.add_argument("--log-level", default=Config.LOG_LEVEL)
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the API service")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8010)
    serve.set_defaults(func=_serve)

    devices = sub.add_parser("devices", help="List audio input devices")
    devices.set_defaults(func=_devices)

    listen = sub.add_parser("listen", help="Run an interactive co-pilot session")
    listen.add_argument("--server", default=Config.SERVER_URL)
    listen.add_argument("--token", default=Config.AUTH_TOKEN)
    listen.add_argument("--plan", default="free")
    listen.add_argument("--storage", default=Config.STORAGE_PATH)
    listen.add_argument("--mic", type=_device, default=None, help="Microphone device index or name")
    listen.add_argument("--loopback", type=_device, default=None, help="System/tab audio device index or name")
    listen.add_argument("--use-case", choices=USE_CASES)
    listen.add_argument("--profile", help="Text file with your resume / product / meeting notes")
    listen.add_argument("--native", action="store_true", help="Use on-device recognition (vosk) when no capture is running")
    listen.add_argument("--no-capture", action="store_true", help="Do not capture screen or system audio")
    listen.add_argument("--no-screen", action="store_true", help="Capture audio only")
    listen.set_defaults(func=lambda a: asyncio.run(_listen(a)))
    return parser


def _device(value: str):
    return int(value) if value.isdigit() else value


def main(argv: Optional[list] = None) -> int:
    args = build_parser().parse_args(argv)
    init_logging(args.log_level)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
