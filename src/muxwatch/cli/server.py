"""
Server command: serve.
"""

from typing import Annotated, Optional

import typer
from rich import print as rprint

from ._shared import app


@app.command()
def serve(
    host: Annotated[
        Optional[str], typer.Option("--host", "-h", help="Host to bind to (default from config, else 127.0.0.1)")
    ] = None,
    port: Annotated[
        Optional[int], typer.Option("--port", "-p", help="Port to listen on (default from config, else 7890)")
    ] = None,
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Debug logging")] = False,
):
    """Run the HTTP/WebSocket server in the foreground.

    Examples:
        muxwatch serve                      # localhost:7890
        muxwatch serve --port 3000          # Custom port
        muxwatch serve --host 0.0.0.0       # LAN access (needs web.api_key)
    """
    import logging

    from ..config import get_server_bind
    from ..logging_config import setup_server_logging
    from ..web_server import ServerConfigError, run_server

    bind = get_server_bind()
    host = host or bind["host"]
    port = port or bind["port"]

    setup_server_logging(level=logging.DEBUG if verbose else logging.INFO)

    rprint("[bold]muxwatch server[/bold]")
    rprint(f"  REST API:  http://{host}:{port}/api/sessions")
    rprint(f"  Streams:   ws://{host}:{port}/api/sessions/stream")
    rprint(f"  Health:    http://{host}:{port}/health")

    try:
        run_server(host=host, port=port)
    except ServerConfigError as e:
        rprint(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)
    except KeyboardInterrupt:
        rprint("\n[dim]Server stopped[/dim]")
