"""
Config commands: init, show, path.
"""

from typing import Annotated

import typer
from rich import print as rprint

from ._shared import config_app


CONFIG_TEMPLATE = """\
# muxwatch configuration
# Location: ~/.muxwatch/config.yaml

# Server bind and authentication
# web:
#   host: 127.0.0.1
#   port: 7890
#   api_key: "your-secret-key"   # required when host is not localhost

# Client caps per broadcast channel
# broadcast:
#   max_sessions_clients: 50
#   max_terminal_clients_per_target: 10
#   max_terminal_clients_total: 100
#   max_beads_clients: 50

# Batch runs
# batch:
#   prompt_template: |
#     Work on beads issue {id}: {title}
#
#     {description}
"""


@config_app.callback(invoke_without_command=True)
def config_default(ctx: typer.Context):
    """Show current configuration (default when no subcommand given)."""
    if ctx.invoked_subcommand is None:
        _config_show()


@config_app.command("init")
def config_init(
    force: Annotated[
        bool, typer.Option("--force", "-f", help="Overwrite existing config file")
    ] = False,
):
    """Create a config file with documented defaults.

    All options are commented out. Use --force to overwrite an existing file.
    """
    from .. import config

    config.CONFIG_PATH.parent.mkdir(parents=True, exist_ok=True)

    if config.CONFIG_PATH.exists() and not force:
        rprint(f"[yellow]Config file already exists:[/yellow] {config.CONFIG_PATH}")
        rprint("[dim]Use --force to overwrite[/dim]")
        raise typer.Exit(1)

    config.CONFIG_PATH.write_text(CONFIG_TEMPLATE)
    rprint(f"[green]✓[/green] Created config file: [bold]{config.CONFIG_PATH}[/bold]")


@config_app.command("show")
def config_show():
    """Show current configuration."""
    _config_show()


def _config_show():
    from .. import config

    if not config.CONFIG_PATH.exists():
        rprint(f"[dim]No config file found at {config.CONFIG_PATH}[/dim]")
        rprint("[dim]Run 'muxwatch config init' to create one[/dim]")
        return

    if not config.load_config():
        rprint(f"[dim]Config file is empty: {config.CONFIG_PATH}[/dim]")
        return

    bind = config.get_server_bind()
    rprint(f"[bold]Configuration[/bold] ({config.CONFIG_PATH}):\n")
    rprint(f"  web.host: {bind['host']}")
    rprint(f"  web.port: {bind['port']}")
    rprint(f"  web.api_key: {'set' if config.get_web_api_key() else '[dim]not set[/dim]'}")
    rprint("  broadcast:")
    for key, value in config.get_broadcast_limits().items():
        rprint(f"    {key}: {value}")
    template = config.get_batch_prompt_template()
    if template:
        first_line = template.splitlines()[0]
        display = first_line[:60] + "..." if len(first_line) > 60 else first_line
        rprint(f"  batch.prompt_template: \"{display}\"")


@config_app.command("path")
def config_path():
    """Show the config file path."""
    from .. import config

    print(config.CONFIG_PATH)
