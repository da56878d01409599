"""
Shared CLI state: Typer apps, console, and utilities.
"""

import json
import sys
from typing import Any, Dict, NoReturn

import typer
from rich.console import Console

# Main app
app = typer.Typer(
    name="muxwatch",
    help="Track agent sessions running in tmux panes and stream their state",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

# Hooks subcommand group
hooks_app = typer.Typer(
    name="hooks",
    help="Manage agent hook integration.",
    no_args_is_help=True,
)
app.add_typer(hooks_app, name="hooks")

# Config subcommand group
config_app = typer.Typer(
    name="config",
    help="Manage configuration",
    no_args_is_help=False,
    invoke_without_command=True,
)
app.add_typer(config_app, name="config")

# Console for rich output
console = Console()

# Exit codes of the scripting commands
EXIT_TIMEOUT = 1
EXIT_ERROR = 2


def emit_json(data: Dict[str, Any]) -> None:
    """One JSON object per line on stdout."""
    sys.stdout.write(json.dumps(data) + "\n")
    sys.stdout.flush()


def emit_stderr(data: Dict[str, Any]) -> None:
    sys.stderr.write(json.dumps(data) + "\n")
    sys.stderr.flush()


def fail(error: str, code: int = EXIT_ERROR, **extra: Any) -> NoReturn:
    """Report a scripting error as JSON on stderr and exit."""
    emit_stderr({"error": error, **extra})
    raise typer.Exit(code=code)


@app.callback()
def main_callback():
    """Track agent sessions running in tmux panes and stream their state."""
    from ..logging_config import setup_cli_logging

    setup_cli_logging()
