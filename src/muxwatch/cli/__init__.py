"""
CLI interface for muxwatch using Typer.
"""

# Import shared state (apps, console, utilities) first
from ._shared import app  # noqa: F401

# Import submodules to register their commands with the Typer apps
from . import sessions  # noqa: F401
from . import hooks  # noqa: F401
from . import server  # noqa: F401
from . import config  # noqa: F401


def main():
    """Main entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
