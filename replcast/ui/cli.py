"""Main CLI entry point - clean subcommand architecture."""

import logging
import signal
import sys
from pathlib import Path
from typing import List, Optional

import typer

from replcast.core.cancel import CancelToken
from replcast.core.configs import (
    get_address,
    get_run_context,
    load_env_file,
    load_raw_config,
)
from replcast.core.errors import ReplcastError
from replcast.core.wrapping import call_main
from replcast.nrepl.client import NreplClient
from replcast.nrepl.session import OutcomeStatus, SessionOrchestrator
from replcast.ui.output import UIManager

app = typer.Typer(
    add_completion=False,
    no_args_is_help=True,
    help="replcast - run Clojure code on a running nREPL server as if it were local.",
)

ui = UIManager()


class Options:
    """Global options shared by every subcommand."""

    def __init__(
        self,
        host: Optional[str] = None,
        port: Optional[int] = None,
        debug: bool = False,
        pipes: Optional[bool] = None,
    ):
        self.host = host
        self.port = port
        self.debug = debug
        self.pipes = pipes


def configure_logging(debug: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


# ============================================================================
# Shared run path
# ============================================================================

def _execute(options: Options, source: str, argv: List[str]) -> None:
    """
    Resolve settings, run ``source`` and exit with the outcome's status.

    Exit codes: 0 success, 1 remote exception, 2 client failure,
    130 interrupted.
    """
    try:
        load_env_file()
        raw_config = load_raw_config()
        context = get_run_context(
            raw_config, debug=options.debug or None, force_pipes=options.pipes
        )
        host, port = get_address(raw_config, port=options.port)
    except ReplcastError as e:
        ui.error(f"Error: {e}")
        raise typer.Exit(OutcomeStatus.FAILED.exit_code)
    configure_logging(context.debug)

    if options.host:
        host = options.host

    if not source.strip():
        return

    cancel = CancelToken()

    def _on_sigint(signum, frame):
        # A second Ctrl-C while cleaning up is only counted.
        cancel.cancel()

    previous_handler = signal.signal(signal.SIGINT, _on_sigint)
    try:
        client = NreplClient(host, port, cancel=cancel, hard_timeout=context.hard_timeout)
        orchestrator = SessionOrchestrator(client, context, read_input=_input_reader())
        outcome = orchestrator.execute(source, argv)
    finally:
        signal.signal(signal.SIGINT, previous_handler)

    ui.report(outcome, verbose=context.debug)
    raise typer.Exit(outcome.status.exit_code)


def _input_reader():
    """Terminal line reader when stdin is interactive, else None."""
    if not sys.stdin.isatty():
        return None
    from replcast.ui.prompts import PromptManager
    return PromptManager().read_line


# ============================================================================
# Commands
# ============================================================================

@app.callback()
def main_options(
    ctx: typer.Context,
    host: Optional[str] = typer.Option(None, "--host", "-H", help="nREPL server host"),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="nREPL server port"),
    debug: bool = typer.Option(False, "--debug", "-d", help="Log protocol traffic"),
    pipes: Optional[bool] = typer.Option(
        None, "--pipes/--no-pipes", help="Force local stdin/stdout pipes on or off"
    ),
) -> None:
    """Global connection options."""
    ctx.obj = Options(host=host, port=port, debug=debug, pipes=pipes)


@app.command("eval")
def eval_code(
    ctx: typer.Context,
    code: str = typer.Argument(..., help="Clojure code to evaluate"),
    args: Optional[List[str]] = typer.Argument(None, help="Bound to *command-line-args*"),
) -> None:
    """
    Evaluate inline code.

    Example: replcast eval '(println (+ 1 2))'
    """
    _execute(ctx.obj, code, list(args or []))


@app.command()
def run(
    ctx: typer.Context,
    path: str = typer.Argument(..., help="Source file, or - to read stdin"),
    args: Optional[List[str]] = typer.Argument(None, help="Bound to *command-line-args*"),
) -> None:
    """
    Evaluate a source file.

    Example: replcast run script.clj -- --flag value
    """
    if path == "-":
        source = sys.stdin.read()
    else:
        try:
            source = Path(path).read_text(encoding="utf-8")
        except OSError as e:
            ui.error(f"Error reading {path}: {e}")
            raise typer.Exit(OutcomeStatus.FAILED.exit_code)
    _execute(ctx.obj, source, list(args or []))


@app.command("main")
def main_namespace(
    ctx: typer.Context,
    namespace: str = typer.Argument(..., help="Namespace whose -main to call"),
    args: Optional[List[str]] = typer.Argument(None, help="Arguments for -main"),
) -> None:
    """
    Require a namespace and call its -main.

    Example: replcast main my.app.core arg1 arg2
    """
    argv = list(args or [])
    _execute(ctx.obj, call_main(namespace, argv), argv)


def run_cli() -> None:
    """Entry point for console script mapping."""
    app()


if __name__ == "__main__":
    run_cli()
