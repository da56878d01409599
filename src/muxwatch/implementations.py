"""
Real implementations of protocol interfaces.

RealTmux manages tmux sessions and panes through libtmux; RealProcesses
signals agent processes. Read-only pane probes live in pane_inspector.
"""

import os
import signal
from typing import List, Optional

import libtmux
from libtmux.exc import LibTmuxException
from libtmux._internal.query_list import ObjectDoesNotExist

from .logging_config import get_logger
from .settings import get_tmux_socket


log = get_logger("tmux")


class RealTmux:
    """Production implementation of TmuxControl using libtmux."""

    def __init__(self, socket_name: Optional[str] = None):
        """Initialize with optional socket name for test isolation.

        If no socket_name is provided, checks MUXWATCH_TMUX_SOCKET.
        """
        self._socket_name = socket_name or get_tmux_socket()
        self._server: Optional[libtmux.Server] = None

    @property
    def server(self) -> libtmux.Server:
        """Lazy-load the tmux server connection."""
        if self._server is None:
            if self._socket_name:
                self._server = libtmux.Server(socket_name=self._socket_name)
            else:
                self._server = libtmux.Server()
        return self._server

    def _global_option(self, name: str, default: str = "0") -> str:
        try:
            result = self.server.cmd("show-option", "-gv", name)
        except LibTmuxException:
            return default
        if result.stdout and result.stdout[0].strip():
            return result.stdout[0].strip()
        return default

    def has_session(self, session: str) -> bool:
        try:
            return self.server.has_session(session)
        except LibTmuxException:
            return False

    def new_session(self, name: str, cwd: str, command: List[str]) -> Optional[str]:
        """Start a detached session running `command` in `cwd`.

        Returns the pane target of the session's first pane, built from the
        server's base-index/pane-base-index so it matches what hooks report.
        """
        try:
            self.server.new_session(
                session_name=name,
                attach=False,
                start_directory=cwd,
                window_command=" ".join(command),
            )
        except LibTmuxException as e:
            log.warning(f"Failed to create tmux session {name}: {e}")
            return None
        base_index = self._global_option("base-index")
        pane_base_index = self._global_option("pane-base-index")
        return f"{name}:{base_index}.{pane_base_index}"

    def kill_session(self, session: str) -> bool:
        try:
            sess = self.server.sessions.get(session_name=session)
            sess.kill()
            return True
        except (LibTmuxException, ObjectDoesNotExist):
            return False

    def kill_pane(self, target: str) -> bool:
        try:
            result = self.server.cmd("kill-pane", "-t", target)
        except LibTmuxException:
            return False
        return not result.stderr


class RealProcesses:
    """Production implementation of ProcessControl."""

    def kill(self, pid: int) -> bool:
        """SIGKILL an agent process (agents may ignore SIGTERM)."""
        if pid <= 0:
            return False
        try:
            os.kill(pid, signal.SIGKILL)
            return True
        except (ProcessLookupError, PermissionError):
            return False
