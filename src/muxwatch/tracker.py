"""
Client for the `bd` (beads) work-queue tracker CLI.

Every call runs `bd ... --json --no-daemon` in the project directory with a
timeout. Missing binary, non-zero exit, timeout and malformed JSON all
come back as an empty result; nothing here raises.
"""

import json
import subprocess
from typing import Any, Dict, List, Optional

from .logging_config import get_logger
from .settings import TIMING


log = get_logger("tracker")

PARENT_CHILD = "parent-child"
EPIC = "epic"
DEFAULT_PRIORITY = 4


def _resolved_dep(dep: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": dep.get("id"),
        "title": dep.get("title"),
        "status": dep.get("status"),
        "type": dep.get("issue_type"),
    }


def _epic_links_from_list(list_issues: List[Dict[str, Any]]):
    """epic -> children and child -> epic from `bd list` dependency rows.

    Children point at their epic with a parent-child dependency.
    """
    epic_ids = {i.get("id") for i in list_issues if i.get("issue_type") == EPIC}
    children: Dict[str, List[str]] = {}
    parents: Dict[str, str] = {}
    for issue in list_issues:
        for dep in issue.get("dependencies") or []:
            if dep.get("type") != PARENT_CHILD or dep.get("depends_on_id") not in epic_ids:
                continue
            epic_id = dep["depends_on_id"]
            children.setdefault(epic_id, []).append(issue["id"])
            parents.setdefault(issue["id"], epic_id)
    return children, parents


def _epic_links_from_show(list_issues, show_map):
    children: Dict[str, List[str]] = {}
    parents: Dict[str, str] = {}
    for issue in list_issues:
        if issue.get("issue_type") != EPIC:
            continue
        shown = show_map.get(issue.get("id"))
        if not shown or not shown.get("dependents"):
            continue
        child_ids = [d.get("id") for d in shown["dependents"] if d.get("dependency_type") == PARENT_CHILD]
        children[issue["id"]] = child_ids
        for child_id in child_ids:
            parents.setdefault(child_id, issue["id"])
    return children, parents


def map_issues(
    list_issues: List[Dict[str, Any]],
    show_map: Optional[Dict[str, Dict[str, Any]]] = None,
) -> List[Dict[str, Any]]:
    """Turn raw `bd list` rows (plus optional `bd show` data) into work items.

    With show data, needs/unblocks carry resolved titles and epic children
    come from the epics' dependents; closed children that `bd list` left
    out are appended as synthesized items. Without it, epic grouping is
    rebuilt from the list's own dependency rows.
    """
    if show_map:
        epic_children, parent_epic = _epic_links_from_show(list_issues, show_map)
    else:
        epic_children, parent_epic = _epic_links_from_list(list_issues)

    listed = {i.get("id") for i in list_issues}
    missing: Dict[str, tuple] = {}
    if show_map:
        for issue in list_issues:
            if issue.get("issue_type") != EPIC:
                continue
            shown = show_map.get(issue.get("id")) or {}
            for dep in shown.get("dependents") or []:
                if dep.get("dependency_type") == PARENT_CHILD and dep.get("id") not in listed:
                    missing[dep["id"]] = (dep, issue["id"])

    items = []
    for issue in list_issues:
        is_epic = issue.get("issue_type") == EPIC
        shown = (show_map or {}).get(issue.get("id"))
        needs: List[Dict[str, Any]] = []
        unblocks: List[Dict[str, Any]] = []
        if shown and not is_epic:
            needs = [_resolved_dep(d) for d in shown.get("dependencies") or [] if d.get("issue_type") != EPIC]
            unblocks = [_resolved_dep(d) for d in shown.get("dependents") or []]

        item = {
            "id": issue.get("id"),
            "title": issue.get("title"),
            "description": issue.get("description"),
            "status": issue.get("status"),
            "priority": issue.get("priority"),
            "issue_type": issue.get("issue_type"),
            "owner": issue.get("owner"),
            "assignee": issue.get("assignee"),
            "created_at": issue.get("created_at"),
            "updated_at": issue.get("updated_at"),
            "needs": needs,
            "unblocks": unblocks,
        }
        if is_epic:
            item["epic_children"] = epic_children.get(issue["id"], [])
        if issue.get("id") in parent_epic:
            item["parent_epic_id"] = parent_epic[issue["id"]]
        items.append(item)

    for dep, epic_id in missing.values():
        items.append({
            "id": dep.get("id"),
            "title": dep.get("title"),
            "description": dep.get("description"),
            "status": dep.get("status"),
            "priority": dep.get("priority", DEFAULT_PRIORITY),
            "issue_type": dep.get("issue_type"),
            "owner": dep.get("owner"),
            "assignee": dep.get("assignee"),
            "created_at": dep.get("created_at"),
            "updated_at": dep.get("updated_at"),
            "needs": [],
            "unblocks": [],
            "parent_epic_id": epic_id,
        })
    return items


class BeadsTracker:
    """Production TrackerProtocol backed by the `bd` binary."""

    def __init__(self, binary: str = "bd"):
        self.binary = binary

    def _run(self, project: str, args: List[str], timeout: float) -> Optional[str]:
        try:
            result = subprocess.run(
                [self.binary] + args,
                cwd=project,
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except (subprocess.SubprocessError, OSError) as e:
            log.debug(f"bd {args[0]} failed in {project}: {e}")
            return None
        if result.returncode != 0:
            log.debug(f"bd {args[0]} exited {result.returncode} in {project}")
            return None
        return result.stdout

    def _json_list(self, project: str, args: List[str], timeout: float) -> List[Dict[str, Any]]:
        out = self._run(project, args + ["--json", "--no-daemon"], timeout)
        if not out:
            return []
        try:
            data = json.loads(out)
        except json.JSONDecodeError:
            return []
        if not isinstance(data, list):
            return []
        return [d for d in data if isinstance(d, dict) and d.get("id")]

    def sync(self, project: str) -> bool:
        """Import the JSONL file so `--no-daemon` queries see fresh data."""
        return self._run(project, ["sync", "--import-only"], TIMING.tracker_timeout) is not None

    def list_basic(self, project: str) -> List[Dict[str, Any]]:
        issues = self._json_list(project, ["list", "--limit", "0", "--all"], TIMING.tracker_timeout)
        if not issues:
            return []
        return map_issues(issues)

    def list_enriched(self, project: str) -> List[Dict[str, Any]]:
        issues = self._json_list(project, ["list", "--limit", "0"], TIMING.tracker_timeout)
        if not issues:
            return []
        ids = [i["id"] for i in issues]
        shown = self._json_list(project, ["show"] + ids, TIMING.tracker_show_timeout)
        show_map = {s["id"]: s for s in shown}
        return map_issues(issues, show_map or None)

    def next_ready(self, project: str, parent_id: str) -> Optional[Dict[str, Any]]:
        ready = self._json_list(
            project, ["ready", "--limit", "1", "--parent", parent_id], TIMING.tracker_timeout
        )
        return ready[0] if ready else None

    def ready_count(self, project: str, parent_id: str) -> int:
        return len(self._json_list(
            project, ["ready", "--limit", "0", "--parent", parent_id], TIMING.tracker_timeout
        ))

    def is_closed(self, project: str, issue_id: str) -> bool:
        shown = self._json_list(project, ["show", issue_id], TIMING.tracker_timeout)
        return bool(shown) and shown[0].get("status") == "closed"
