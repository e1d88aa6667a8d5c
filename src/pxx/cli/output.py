"""Console output helpers for the CLI."""

from rich.console import Console
from rich.markup import escape

console = Console(stderr=True, highlight=False)


def print_error(message: str) -> None:
    """Print an error message."""
    console.print(f"[bold red]Error:[/bold red] {escape(message)}")
