"""
Terminal reporting for run outcomes.
Everything goes to stderr so program output on stdout stays clean.
"""

from typing import Optional

from rich.console import Console
from rich.markup import escape

from replcast.core.errors import RemoteEvaluationError
from replcast.nrepl.session import OutcomeStatus, RunOutcome


class UIManager:
    """Colour-coded messages on stderr."""

    def __init__(self, console: Optional[Console] = None):
        self.console = console or Console(stderr=True, highlight=False)

    def success(self, message: str) -> None:
        self.console.print(f"[green]{escape(message)}[/green]")

    def error(self, message: str) -> None:
        self.console.print(f"[bold red]{escape(message)}[/bold red]")

    def warning(self, message: str) -> None:
        self.console.print(f"[yellow]{escape(message)}[/yellow]")

    def dim(self, text: str) -> None:
        self.console.print(f"[dim]{escape(text)}[/dim]")

    def remote_error(self, error: RemoteEvaluationError) -> None:
        """Print a remote exception with its stack frames."""
        headline = error.remote_class
        if error.remote_message:
            headline += f": {error.remote_message}"
        self.error(headline)
        for frame in error.frames:
            self.dim(f"  at {frame}")

    def report(self, outcome: RunOutcome, verbose: bool = False) -> None:
        """
        Describe a finished run.

        Args:
            outcome: Result of the run
            verbose: Also print timing for successful runs
        """
        if outcome.status is OutcomeStatus.REMOTE_ERROR and isinstance(
            outcome.error, RemoteEvaluationError
        ):
            self.remote_error(outcome.error)
        elif outcome.status is OutcomeStatus.CANCELLED:
            self.warning("Interrupted.")
        elif outcome.error is not None:
            self.error(f"Error: {outcome.error}")

        if verbose:
            self.dim(f"[{outcome.status.name.lower()} in {outcome.elapsed:.3f}s]")
