"""
pxx CLI entry point.

Usage:
    pxx [OPTIONS] [COMMAND]...

Examples:
    # Expose a local dev server on all interfaces while it runs
    pxx -p "[::]:80->localhost:8080" "npm run dev"

    # Reach the Docker socket over TCP
    pxx -p "192.168.0.1:2375->unix:///var/run/docker.sock" "sleep infinity"

    # Serve on the Tailscale address for the duration of a shell
    pxx -p "tailscale:8080->localhost:5555" --replace "$SHELL"
"""

import asyncio
from typing import Annotated

import typer
from rich.table import Table

from pxx.cli.output import console, print_error
from pxx.config import config
from pxx.models.enums import CommandMode, LogLevel
from pxx.process.runner import Command
from pxx.proxy.exceptions import BindFailed, ParseError
from pxx.proxy.mapping import Mapping, parse_mapping
from pxx.supervisor.supervisor import Supervisor
from pxx.utils.logger import configure_logging

app = typer.Typer(
    name="pxx",
    help="Proxy TCP, Unix socket and named pipe connections while executing commands.",
    rich_markup_mode="rich",
    add_completion=False,
)


def build_commands(
    commands: list[str],
    raw_commands: list[str],
    replace: bool,
) -> list[Command]:
    """
    Turn positional and raw command strings into Commands.

    Raises:
        ValueError: Replace mode without exactly one command.
    """
    mode = CommandMode.REPLACE if replace else CommandMode.PARALLEL
    result = [Command(text, mode) for text in commands]
    result += [Command(text, mode, raw=True) for text in raw_commands]

    if replace and len(result) != 1:
        raise ValueError(
            f"--replace requires exactly one command, got {len(result)}"
        )
    return result


def print_summary(mappings: list[Mapping], commands: list[Command]) -> None:
    """Print the proxies and the exact command lines about to run."""
    if mappings:
        table = Table(title="Proxies", title_justify="left")
        table.add_column("Listen", style="cyan")
        table.add_column("")
        table.add_column("Target", style="yellow")
        for mapping in mappings:
            table.add_row(str(mapping.listen), "→", str(mapping.target))
        console.print(table)

    for index, command in enumerate(commands, 1):
        argv = command.argv(config.SHELL, config.SHELL_ARGS)
        console.print(
            f"[dim][{index}][/dim] [bold]{' '.join(argv)}[/bold] "
            f"[dim]({command.mode.value}{', raw' if command.raw else ''})[/dim]"
        )


def _version_callback(value: bool) -> None:
    if value:
        from pxx import __version__

        console.print(f"pxx v{__version__}")
        raise typer.Exit()


@app.command(no_args_is_help=True)
def main(
    commands: Annotated[
        list[str] | None,
        typer.Argument(
            help="Commands to run in the shell, in parallel",
            show_default=False,
        ),
    ] = None,
    proxies: Annotated[
        list[str] | None,
        typer.Option(
            "--proxy",
            "-p",
            metavar="LISTEN->TARGET",
            help=(
                "Proxy directive, repeatable. Endpoints are `HOST:PORT`, "
                "`tcp://HOST:PORT`, `unix://PATH`, `pipe://NAME` or `tailscale:PORT`."
            ),
            show_default=False,
        ),
    ] = None,
    raw_commands: Annotated[
        list[str] | None,
        typer.Option(
            "--raw",
            "-r",
            metavar="COMMAND",
            help=(
                "Command to run without a shell (split with shell quoting rules), "
                "repeatable"
            ),
            show_default=False,
        ),
    ] = None,
    replace: Annotated[
        bool,
        typer.Option(
            "--replace",
            help="Run exactly one (interactive) command; its exit ends the run",
        ),
    ] = False,
    shell: Annotated[
        str | None,
        typer.Option("--shell", "-s", envvar="PXX_SHELL", help="Shell to use"),
    ] = None,
    shell_args: Annotated[
        list[str] | None,
        typer.Option(
            "--shell-arg",
            "-a",
            metavar="ARG",
            help="Argument passed to the shell before the command, repeatable",
            show_default=False,
        ),
    ] = None,
    buffered: Annotated[
        bool,
        typer.Option(
            "--buffered",
            "-b",
            envvar="PXX_BUFFERED",
            help="Buffer command output at newlines",
        ),
    ] = False,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Print proxies and commands at startup"),
    ] = False,
    log_level: Annotated[
        LogLevel | None,
        typer.Option(
            "--log-level",
            "-l",
            envvar="PXX_LOG_LEVEL",
            case_sensitive=False,
            help="Log verbosity",
        ),
    ] = None,
    connect_timeout: Annotated[
        float | None,
        typer.Option(
            "--connect-timeout",
            envvar="PXX_CONNECT_TIMEOUT",
            min=0.0,
            help="Seconds allowed for connecting to a target",
        ),
    ] = None,
    grace: Annotated[
        float | None,
        typer.Option(
            "--grace",
            envvar="PXX_SHUTDOWN_GRACE",
            min=0.0,
            help="Seconds to wait for commands and proxies on shutdown",
        ),
    ] = None,
    version: Annotated[
        bool,
        typer.Option(
            "--version",
            callback=_version_callback,
            is_eager=True,
            help="Show version and exit",
        ),
    ] = False,
):
    """
    Proxy connections while executing commands.

    Connections to each LISTEN endpoint are proxied to its TARGET for as long
    as the commands run. Without --replace the proxies stay up until every
    command has exited and pxx exits with the worst exit code.
    """
    if log_level:
        config.LOG_LEVEL = log_level
    elif verbose:
        config.LOG_LEVEL = LogLevel.INFO
    configure_logging(config.LOG_LEVEL)

    if shell:
        config.SHELL = shell
    if shell_args:
        config.SHELL_ARGS = list(shell_args)
    config.BUFFERED_OUTPUT = buffered
    if connect_timeout is not None:
        config.CONNECT_TIMEOUT = connect_timeout
    if grace is not None:
        config.SHUTDOWN_GRACE = grace

    try:
        mappings = [parse_mapping(proxy) for proxy in proxies or []]
    except ParseError as e:
        print_error(str(e))
        raise typer.Exit(2)

    try:
        command_list = build_commands(commands or [], raw_commands or [], replace)
    except ValueError as e:
        print_error(str(e))
        raise typer.Exit(2)

    if not mappings and not command_list:
        print_error("Nothing to do: specify at least one proxy or command.")
        raise typer.Exit(2)

    if verbose:
        print_summary(mappings, command_list)

    supervisor = Supervisor(mappings, command_list)
    try:
        code = asyncio.run(supervisor.run(handle_signals=True))
    except BindFailed as e:
        print_error(str(e))
        raise typer.Exit(1)
    except KeyboardInterrupt:
        console.print("\n[dim]Stopped.[/dim]")
        code = 130

    raise typer.Exit(code)


def run():
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    run()
