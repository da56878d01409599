"""Edit the agent's settings.json to register muxwatch hooks.

Hook entries live under settings["hooks"][<Event>] as matcher groups:

    {"matcher": "idle_prompt", "hooks": [{"type": "command", "command": "..."}]}

Notification hooks share one event name and differ only by matcher, so
every lookup here keys on (event, command, matcher).
"""

from __future__ import annotations

import copy
import json
from pathlib import Path
from typing import Iterable

from .session_store import write_json_atomic


HookSpec = tuple[str, str, str]


class AgentSettingsEditor:
    """Read-modify-write access to one settings.json file."""

    def __init__(self, path: Path):
        self.path = Path(path)

    @classmethod
    def user_level(cls) -> AgentSettingsEditor:
        return cls(Path.home() / ".claude" / "settings.json")

    @classmethod
    def project_level(cls, project_dir: Path | None = None) -> AgentSettingsEditor:
        base = Path(project_dir) if project_dir else Path.cwd()
        return cls(base / ".claude" / "settings.json")

    def load(self) -> dict:
        """Parsed settings, {} if the file is missing.

        Raises ValueError on invalid JSON so a broken file is never
        overwritten with a stripped-down copy.
        """
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text())
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in {self.path}: {e}") from e
        if not isinstance(data, dict):
            raise ValueError(f"{self.path} contains non-object JSON")
        return data

    def save(self, settings: dict) -> None:
        write_json_atomic(self.path, settings)

    @staticmethod
    def _groups(settings: dict, event: str) -> list:
        hooks = settings.get("hooks")
        if not isinstance(hooks, dict):
            return []
        groups = hooks.get(event)
        return groups if isinstance(groups, list) else []

    @staticmethod
    def _commands(group: dict) -> list[str]:
        return [h.get("command", "") for h in group.get("hooks", []) if isinstance(h, dict)]

    def registered(self, command_prefix: str) -> list[HookSpec]:
        """Every (event, command, matcher) whose command starts with prefix."""
        settings = self.load()
        found: list[HookSpec] = []
        for event in settings.get("hooks", {}) or {}:
            for group in self._groups(settings, event):
                if not isinstance(group, dict):
                    continue
                for command in self._commands(group):
                    if command.startswith(command_prefix):
                        found.append((event, command, group.get("matcher", "")))
        return found

    def has_hook(self, event: str, command: str, matcher: str = "") -> bool:
        for group in self._groups(self.load(), event):
            if isinstance(group, dict) and group.get("matcher", "") == matcher and command in self._commands(group):
                return True
        return False

    def install(self, specs: Iterable[HookSpec]) -> list[HookSpec]:
        """Register each missing hook; returns the ones actually added."""
        settings = copy.deepcopy(self.load())
        added: list[HookSpec] = []
        for event, command, matcher in specs:
            groups = settings.setdefault("hooks", {}).setdefault(event, [])
            present = any(
                isinstance(g, dict) and g.get("matcher", "") == matcher and command in self._commands(g)
                for g in groups
            )
            if present:
                continue
            groups.append({"matcher": matcher, "hooks": [{"type": "command", "command": command}]})
            added.append((event, command, matcher))
        if added:
            self.save(settings)
        return added

    def uninstall(self, command_prefix: str) -> int:
        """Drop every hook command starting with prefix.

        Matcher groups left without commands are removed, then empty event
        lists, then an empty "hooks" object.
        """
        settings = copy.deepcopy(self.load())
        hooks = settings.get("hooks")
        if not isinstance(hooks, dict):
            return 0
        removed = 0
        for event in list(hooks):
            kept_groups = []
            for group in self._groups(settings, event):
                if not isinstance(group, dict):
                    kept_groups.append(group)
                    continue
                entries = group.get("hooks", [])
                kept = [h for h in entries if not (isinstance(h, dict) and h.get("command", "").startswith(command_prefix))]
                removed += len(entries) - len(kept)
                if kept:
                    kept_groups.append({**group, "hooks": kept})
            if kept_groups:
                hooks[event] = kept_groups
            else:
                del hooks[event]
        if not hooks:
            del settings["hooks"]
        if removed:
            self.save(settings)
        return removed
