"""
Read-only probes (plus text injection) against tmux panes.

Every call shells out to tmux with a short timeout. Failures of any kind
(tmux missing, pane gone, timeout) come back as None/False: callers treat
"no data" as "no change".
"""

import os
import re
import subprocess
from typing import Dict, Optional

from .logging_config import get_logger
from .settings import TERMINAL_CAPTURE_LINES, TIMING, tmux_base_args
from .status_constants import STATE_IDLE


log = get_logger("pane")

# Present in the pane while the agent is mid-turn
WORKING_HINTS = ("Esc to interrupt", "esc to interrupt", "ctrl+c to interrupt")
# Present in the bottom lines while a turn or a menu is still live
ACTIVE_UI_HINTS = ("Esc to cancel", "Esc to interrupt", "ctrl+c to interrupt")

SEPARATOR_PREFIX = "─────"
TURN_MARKERS = ("●", "❯")
MAX_TURN_SCAN = 15

INTERRUPTED = "interrupted"
DECLINED = "declined"


def is_actively_working(text: Optional[str]) -> bool:
    """True if the pane shows an interrupt hint (agent mid-turn)."""
    if not text:
        return False
    return any(hint in text for hint in WORKING_HINTS)


def detect_interruption(text: Optional[str]) -> Optional[str]:
    """Detect a fresh interruption/decline in the most recent turn.

    Pane layout near the bottom:

        ● / ❯ ...            <- start of the last turn
          ⎿  Interrupted     <- signal
        ─────────────        <- inner (upper) separator
        ❯ [input]
        ─────────────        <- outer separator
          status line

    Returns INTERRUPTED, DECLINED, or None.
    """
    if not text:
        return None
    lines = text.split("\n")

    bottom = "\n".join(lines[-5:])
    if any(hint in bottom for hint in ACTIVE_UI_HINTS):
        return None

    outer = _last_separator(lines, len(lines))
    if outer is None:
        return None
    inner = _last_separator(lines, outer)
    if inner is None:
        return None

    start = None
    for i in range(inner - 1, max(0, inner - MAX_TURN_SCAN) - 1, -1):
        if lines[i].startswith(TURN_MARKERS):
            start = i
            break
    if start is None:
        return None

    turn = "\n".join(lines[start:inner])
    if "Interrupted" in turn:
        return INTERRUPTED
    if "User declined to answer" in turn:
        return DECLINED
    return None


def _last_separator(lines, before: int) -> Optional[int]:
    for i in range(before - 1, -1, -1):
        if lines[i].startswith(SEPARATOR_PREFIX):
            return i
    return None


def window_target(target: str) -> str:
    """'sess:1.2' -> 'sess:1' (resize works on windows)."""
    return re.sub(r"\.\d+$", "", target)


def clamp(value: float, low: int, high: int) -> int:
    return max(low, min(high, int(value)))


class PaneInspector:
    """tmux pane probes. Stateless; safe to call from worker threads."""

    def _run(self, args, timeout: float, input_text: Optional[str] = None) -> Optional[str]:
        try:
            result = subprocess.run(
                tmux_base_args() + list(args),
                input=input_text,
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except (subprocess.SubprocessError, OSError) as e:
            log.debug(f"tmux {args[0]} failed: {e}")
            return None
        if result.returncode != 0:
            return None
        return result.stdout

    def capture_text(
        self,
        target: str,
        last_lines: Optional[int] = None,
        escapes: bool = False,
    ) -> Optional[str]:
        """Capture pane text, optionally only the last N lines and with colors."""
        args = ["capture-pane", "-p", "-t", target]
        if escapes:
            args.append("-e")
        if last_lines:
            args += ["-S", f"-{last_lines}"]
        return self._run(args, TIMING.pane_capture_timeout)

    def capture_for_viewer(self, target: str) -> Optional[str]:
        return self.capture_text(target, last_lines=TERMINAL_CAPTURE_LINES)

    def title(self, target: str) -> Optional[str]:
        out = self._run(["display-message", "-p", "-t", target, "#{pane_title}"], TIMING.pane_title_timeout)
        if out is None:
            return None
        return out.strip() or None

    def all_titles(self) -> Dict[str, Optional[str]]:
        """Titles of every pane on the server in one call."""
        out = self._run(
            ["list-panes", "-a", "-F", "#{session_name}:#{window_index}.#{pane_index}\t#{pane_title}"],
            TIMING.pane_capture_timeout,
        )
        titles: Dict[str, Optional[str]] = {}
        if not out:
            return titles
        for line in out.strip().split("\n"):
            target, sep, title = line.partition("\t")
            if not sep:
                continue
            titles[target] = title.strip() or None
        return titles

    def resize(self, target: str, cols: float, rows: float) -> bool:
        try:
            cols = clamp(cols, 20, 500)
            rows = clamp(rows, 5, 200)
        except (TypeError, ValueError, OverflowError):
            log.debug(f"Ignoring resize of {target} to {cols}x{rows}")
            return False
        out = self._run(
            ["resize-window", "-t", window_target(target), "-x", str(cols), "-y", str(rows)],
            TIMING.resize_timeout,
        )
        return out is not None

    def send_text(self, target: str, text: str, buffer_name: str = "muxwatch-input") -> bool:
        """Paste text through a named buffer, then press Enter.

        The buffer route avoids send-keys escaping and line-length limits.
        """
        steps = [
            (["load-buffer", "-b", buffer_name, "-"], text),
            (["paste-buffer", "-b", buffer_name, "-t", target], None),
            (["delete-buffer", "-b", buffer_name], None),
            (["send-keys", "-t", target, "Enter"], None),
        ]
        for args, stdin in steps:
            if self._run(args, TIMING.tmux_timeout, input_text=stdin) is None:
                log.warning(f"Failed to send text to {target} ({args[0]})")
                return False
        return True

    def send_keys(self, target: str, keys: str) -> bool:
        """Send raw tmux key names (e.g. 'Escape', 'C-c')."""
        return self._run(["send-keys", "-t", target, keys], TIMING.tmux_timeout) is not None

    def check_for_interruption(self, target: str) -> Optional[dict]:
        """Field update for a session whose pane shows an interrupted turn."""
        text = self.capture_text(target)
        if not text:
            return None
        if detect_interruption(text):
            return {"state": STATE_IDLE, "current_action": None, "prompt_text": None}
        return None

    def current_pane_target(self) -> Optional[str]:
        """Pane target of the calling process (only when running inside tmux)."""
        if not os.environ.get("TMUX"):
            return None
        args = ["display-message", "-p"]
        pane_id = os.environ.get("TMUX_PANE")
        if pane_id:
            args += ["-t", pane_id]
        args.append("#{session_name}:#{window_index}.#{pane_index}")
        out = self._run(args, TIMING.pane_title_timeout)
        if out is None:
            return None
        return out.strip() or None
