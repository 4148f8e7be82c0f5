"""tern entry point.

Builds the long-lived collaborators and runs either one prompt or the
interactive loop:
  Settings -> AnthropicTransport -> ToolRegistry -> ConversationStore -> Session

Exit codes: 0 success, 1 user-facing error, 2 internal error.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import signal
import sys
import traceback
from pathlib import Path
from typing import Any

import typer

from tern.api.dispatch import DispatchResult, DispatchStatus
from tern.api.transport import AnthropicTransport
from tern.commands import is_command, run_command
from tern.config import Settings, load_settings
from tern.errors import TernError
from tern.events import EventBus, EventType, UiEvent
from tern.session import Session
from tern.storage.conversations import ConversationStore
from tern.tools.builtin import register_builtin_tools
from tern.tools.registry import ConfirmationRequest, ToolRegistry

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_INTERNAL = 2

PROMPT = "tern> "

app = typer.Typer(
    name="tern",
    help="Interactive LLM assistant for your shell",
    add_completion=False,
)


# ---------------------------------------------------------------------------
# Terminal rendering
# ---------------------------------------------------------------------------


def report_error(error: TernError, debug: bool = False) -> None:
    """Print a user-facing error; debug mode adds the payload and raise site."""
    typer.secho(error.describe(), fg=typer.colors.RED, err=True)
    if not debug:
        return
    typer.secho(json.dumps(error.payload(), ensure_ascii=False, default=str), dim=True, err=True)
    if error.__traceback__ is not None:
        frame = traceback.extract_tb(error.__traceback__)[-1]
        typer.secho(f"  at {frame.filename}:{frame.lineno} in {frame.name}", dim=True, err=True)


class TerminalRenderer:
    """Writes UI events to the terminal as they arrive."""

    def __init__(self, debug: bool = False) -> None:
        self.debug = debug
        self._mid_line = False

    def attach(self, events: EventBus) -> None:
        events.on(EventType.TEXT_DELTA, self.on_text)
        events.on(EventType.TOOL_STARTED, self.on_tool_started)
        events.on(EventType.TOOL_FINISHED, self.on_tool_finished)
        events.on(EventType.RETRYING, self.on_retrying)
        events.on(EventType.CONTEXT_WARNING, self.on_context_warning)
        events.on(EventType.COMPRESSED, self.on_compressed)
        events.on(EventType.HEARTBEAT, self.on_heartbeat)

    def end_line(self) -> None:
        if self._mid_line:
            typer.echo()
            self._mid_line = False

    def on_text(self, event: UiEvent) -> None:
        text = event.data["text"]
        typer.echo(text, nl=False)
        if text:
            self._mid_line = not text.endswith("\n")

    def on_tool_started(self, event: UiEvent) -> None:
        self.end_line()
        args = json.dumps(event.data.get("input", {}), ensure_ascii=False)
        if len(args) > 120:
            args = args[:117] + "..."
        typer.secho(f"-> {event.data['name']} {args}", fg=typer.colors.CYAN)

    def on_tool_finished(self, event: UiEvent) -> None:
        data = event.data
        if data["success"]:
            typer.secho(f"   ok {data['name']} ({data['elapsed_ms']}ms)", fg=typer.colors.GREEN)
        else:
            typer.secho(f"   failed {data['name']}: [{data['error_kind']}] {data['error']}", fg=typer.colors.RED)

    def on_retrying(self, event: UiEvent) -> None:
        self.end_line()
        data = event.data
        typer.secho(
            f"Retrying (attempt {data['attempt']} of {data['max_attempts']}) in {data['delay']:.1f}s: {data['error']}",
            fg=typer.colors.YELLOW,
            err=True,
        )

    def on_context_warning(self, event: UiEvent) -> None:
        self.end_line()
        data = event.data
        typer.secho(
            f"Context {data['level']}: {data['usage_ratio']:.0%} of the token budget in use",
            fg=typer.colors.YELLOW,
            err=True,
        )

    def on_compressed(self, event: UiEvent) -> None:
        self.end_line()
        data = event.data
        typer.secho(
            f"Context compressed: turns {data['first_turn_idx']}-{data['last_turn_idx']} summarized, "
            f"{data['retained']} kept",
            dim=True,
            err=True,
        )

    def on_heartbeat(self, event: UiEvent) -> None:
        if self.debug:
            logger.debug("Stream idle for %.1fs", event.data["idle"])

    def finish(self, result: DispatchResult, debug: bool = False) -> None:
        self.end_line()
        if result.status == DispatchStatus.CANCELLED:
            typer.secho("Cancelled.", fg=typer.colors.YELLOW, err=True)
        elif result.status == DispatchStatus.FAILED and result.error is not None:
            report_error(result.error, debug)


async def confirm_tool(request: ConfirmationRequest) -> bool:
    """Ask on the terminal before running a tool that needs confirmation."""
    args = json.dumps(request.arguments, ensure_ascii=False, indent=2)
    typer.secho(f"\n{request.tool_name} ({request.security_level}) wants to run with:", fg=typer.colors.YELLOW)
    typer.echo(args)
    try:
        return await asyncio.to_thread(typer.confirm, "Allow?", default=False)
    except typer.Abort:
        return False


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


def configure_logging(settings: Settings) -> None:
    level = "debug" if settings.debug else settings.log_level
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.WARNING),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
        stream=sys.stderr,
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


def build_settings(
    model: str | None,
    workdir: Path | None,
    debug: bool,
    allow_execute: bool,
    yes: bool,
) -> Settings:
    overrides: dict[str, Any] = {}
    if model:
        overrides["model"] = model
    if workdir is not None:
        overrides["working_directory"] = workdir
    if debug:
        overrides["debug"] = True
    if yes:
        overrides["interactive"] = False
    settings = load_settings(**overrides)
    if allow_execute and "execute" not in settings.capabilities:
        settings = settings.with_overrides(capabilities=[*settings.capabilities, "execute"])
    return settings


async def start_session(
    settings: Settings,
    transport: AnthropicTransport,
    renderer: TerminalRenderer,
    resume: str | None = None,
) -> Session:
    await transport.start()
    registry = ToolRegistry(confirmer=confirm_tool, default_timeout=settings.tool_timeout)
    register_builtin_tools(registry)
    store = ConversationStore(settings.conversations_dir, cache_size=settings.conversation_cache_size)
    events = EventBus()
    renderer.attach(events)
    session = Session(settings, store, registry, transport.open_stream, events=events)
    if resume:
        session.resume(resume)
    logger.info("Session %s started (model %s, workdir %s)", session.id, settings.model, session.working_directory)
    return session


# ---------------------------------------------------------------------------
# Prompt loop
# ---------------------------------------------------------------------------


async def submit_prompt(session: Session, renderer: TerminalRenderer, text: str) -> DispatchResult:
    """Submit one prompt; Ctrl-C cancels the request instead of killing the process."""
    loop = asyncio.get_running_loop()
    with contextlib.suppress(NotImplementedError):
        loop.add_signal_handler(signal.SIGINT, session.cancel)
    try:
        result = await session.submit(text)
    finally:
        with contextlib.suppress(NotImplementedError):
            loop.remove_signal_handler(signal.SIGINT)
    renderer.finish(result, session.settings.debug)
    return result


def repl(runner: asyncio.Runner, session: Session, renderer: TerminalRenderer) -> int:
    typer.secho(f"tern ({session.settings.model}). /help for commands, Ctrl-D to exit.", dim=True)
    while True:
        try:
            line = input(PROMPT).strip()
        except EOFError:
            typer.echo()
            return EXIT_OK
        except KeyboardInterrupt:
            typer.echo()
            continue
        if not line:
            continue
        try:
            if is_command(line):
                result = run_command(session, line)
                if result.output:
                    typer.echo(result.output)
                if result.quit:
                    return EXIT_OK
            else:
                runner.run(submit_prompt(session, renderer, line))
        except TernError as e:
            renderer.end_line()
            report_error(e, session.settings.debug)


def run_session(settings: Settings, prompt: str | None, resume: str | None) -> int:
    renderer = TerminalRenderer(debug=settings.debug)
    transport = AnthropicTransport(settings)
    with asyncio.Runner() as runner:
        try:
            session = runner.run(start_session(settings, transport, renderer, resume))
            if prompt is None:
                return repl(runner, session, renderer)
            result = runner.run(submit_prompt(session, renderer, prompt))
            return EXIT_OK if result.ok else EXIT_ERROR
        except TernError as e:
            report_error(e, settings.debug)
            return EXIT_ERROR
        except Exception:
            logger.exception("Internal error")
            typer.secho("Internal error (run with --debug for details)", fg=typer.colors.RED, err=True)
            return EXIT_INTERNAL
        finally:
            runner.run(transport.close())


@app.command()
def chat(
    prompt: str | None = typer.Argument(None, help="Run a single prompt and exit (reads stdin when piped)"),
    resume: str | None = typer.Option(None, "--resume", "-r", help="Resume a conversation by id or prefix"),
    model: str | None = typer.Option(None, "--model", "-m", help="Model to use"),
    workdir: Path | None = typer.Option(None, "--workdir", "-C", help="Working directory for tools"),
    debug: bool = typer.Option(False, "--debug", help="Verbose logging and error details"),
    allow_execute: bool = typer.Option(False, "--allow-execute", help="Grant the execute capability (shell tool)"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Run tools without asking for confirmation"),
) -> None:
    """Chat with the model; tools act on the working directory."""
    try:
        settings = build_settings(model, workdir, debug, allow_execute, yes)
    except TernError as e:
        report_error(e, debug)
        raise typer.Exit(EXIT_ERROR) from None
    configure_logging(settings)

    if prompt is None and not sys.stdin.isatty():
        prompt = sys.stdin.read().strip() or None
    raise typer.Exit(run_session(settings, prompt, resume))


def run() -> None:
    """Console script entry point."""
    app()


if __name__ == "__main__":
    run()
