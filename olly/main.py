"""Command-line entry point for Olly."""

import asyncio
import signal
import sys
from pathlib import Path

import typer

from olly.agent import describe_error
from olly.cli import TerminalUI
from olly.config import Config, get_config, set_config
from olly.exceptions import ConfigurationError, SessionBusyError
from olly.llm import get_provider
from olly.logging import configure_logging, get_logger
from olly.session import Session, SessionRunner
from olly.tools.registry import create_default_registry
from olly.types import AgentResult, Mode

log = get_logger(__name__)

app = typer.Typer(help="Olly - a terminal coding assistant for local models", add_completion=False)


async def run_turn(runner: SessionRunner, ui: TerminalUI, prompt: str) -> bool:
    """Run one prompt; Ctrl-C cancels it. Returns True on a final answer."""
    loop = asyncio.get_running_loop()
    handler_installed = False
    try:
        loop.add_signal_handler(signal.SIGINT, runner.cancel)
        handler_installed = True
    except (NotImplementedError, RuntimeError):
        log.debug("SIGINT handler unavailable; Ctrl-C will interrupt the process")

    ui.begin_turn()
    try:
        outcome = await runner.send(prompt, ui.callbacks())
    except SessionBusyError as e:
        ui.print_error(str(e))
        return False
    finally:
        if handler_installed:
            loop.remove_signal_handler(signal.SIGINT)

    if isinstance(outcome, AgentResult):
        ui.print_answer(outcome.final_answer)
        return True
    ui.print_error(describe_error(outcome))
    return False


async def handle_command(runner: SessionRunner, ui: TerminalUI, line: str) -> bool:
    """Handle a slash command. Returns False when the REPL should exit."""
    command = ui.parse_command(line)
    if command is None:
        return True
    if command.name in ("/exit", "/quit", "/q"):
        return False
    if command.name in ("/help", "/h", "/?"):
        ui.print_help()
    elif command.name == "/mode":
        if command.argument:
            try:
                mode = runner.set_mode(command.argument.lower())
            except ValueError:
                ui.print_error(f"Unknown mode: {command.argument}")
                return True
        else:
            mode = runner.toggle_mode()
        ui.print_info(f"Mode: {mode.value}")
    elif command.name == "/context":
        ui.print_context_stats(await runner.context_stats())
    elif command.name == "/compact":
        ui.print_compaction(await runner.compact())
    elif command.name == "/policy":
        if command.argument == "reset":
            runner.session.tool_policy.clear()
            ui.print_info("Remembered tool choices cleared.")
        else:
            ui.print_policy(runner.session.tool_policy)
    elif command.name == "/clear":
        runner.session.messages.clear()
        ui.print_info("History cleared.")
    else:
        ui.print_error(f"Unknown command: {command.name}")
    return True


async def run_repl(runner: SessionRunner, ui: TerminalUI) -> None:
    while True:
        try:
            line = await asyncio.to_thread(ui.read_input, runner.session.mode)
        except (EOFError, KeyboardInterrupt):
            ui.console.print()
            return
        if not line.strip():
            continue
        if line.strip().startswith("/"):
            if not await handle_command(runner, ui, line):
                return
            continue
        await run_turn(runner, ui, line)


async def run_session(prompt: str, mode: Mode, ui: TerminalUI) -> int:
    cfg = get_config()
    provider = get_provider()
    registry = create_default_registry(cfg.resolved_project_root())
    session = Session(mode=mode)
    runner = SessionRunner(session, provider, registry, config=cfg)
    try:
        if prompt:
            return 0 if await run_turn(runner, ui, prompt) else 1
        ui.print_welcome(cfg.model.model, mode)
        await run_repl(runner, ui)
        return 0
    finally:
        await provider.close()


@app.command()
def main(
    prompt: str = typer.Argument("", help="Run a single prompt and exit"),
    mode: str = typer.Option("", "--mode", help="plan or build (default from config)"),
    model: str = typer.Option("", "-m", "--model", help="Override model"),
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
    project: str = typer.Option("", "-C", "--project", help="Project root (default: current directory)"),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Debug logging"),
) -> None:
    """Start Olly: one-shot when PROMPT is given, otherwise interactive."""
    try:
        cfg = Config.load(Path(config) if config else None)
    except ConfigurationError as e:
        typer.echo(str(e), err=True)
        raise typer.Exit(code=2)
    if model:
        cfg.model.model = model
    if project:
        cfg.safety.project_root = str(Path(project).expanduser().resolve())
    set_config(cfg)

    try:
        selected_mode = Mode((mode or cfg.agent.default_mode).lower())
    except ValueError:
        raise typer.BadParameter(f"Unknown mode: {mode}", param_hint="--mode")

    ui = TerminalUI()
    configure_logging("DEBUG" if verbose else None, sink=ui.print_log_line)
    try:
        exit_code = asyncio.run(run_session(prompt, selected_mode, ui))
    except KeyboardInterrupt:
        log.info("Shutting down")
        exit_code = 130
    sys.exit(exit_code)


if __name__ == "__main__":
    app()
