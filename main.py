"""MCP server exposing the harness task state machine."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from mcp.server.fastmcp import FastMCP

from harness_state.state_logging import setup_logging
from harness_state.workflow import WorkflowManager

mcp = FastMCP("harness-state")


PROJECT_MARKER_DIRECTORIES = (".harness",)
PROJECT_ROOT_ENV = "HARNESS_PROJECT_ROOT"


def _candidate_bases() -> List[Path]:
    cwd = Path.cwd().resolve()
    return [cwd, *cwd.parents]


def _locate_workspace_root() -> Optional[Path]:
    for base in _candidate_bases():
        for marker in PROJECT_MARKER_DIRECTORIES:
            if (base / marker).exists():
                return base
    return None


def _resolve_root(root: Optional[str]) -> Path:
    if root:
        resolved = Path(root).expanduser().resolve()
        if not resolved.exists():
            raise ValueError(f"Provided root '{root}' does not exist.")
        return resolved

    env_root = os.getenv(PROJECT_ROOT_ENV)
    if env_root:
        env_path = Path(env_root).expanduser().resolve()
        if not env_path.exists():
            raise ValueError(
                f"Environment variable {PROJECT_ROOT_ENV} points to '{env_root}', which does not exist."
            )
        return env_path

    detected_root = _locate_workspace_root()
    if detected_root:
        return detected_root

    raise ValueError(
        "Unable to determine project root automatically. Provide the 'root' argument when calling the tool "
        f"or set the {PROJECT_ROOT_ENV} environment variable."
    )


def _manager(root: Optional[str]) -> WorkflowManager:
    return WorkflowManager(_resolve_root(root))


@mcp.tool()
def init_state(
    tasks_path: str,
    feature_id: str,
    ticket: Optional[Dict[str, str]] = None,
    replace: bool = False,
    root: Optional[str] = None,
) -> Dict[str, Any]:
    """STEP 1: Create the feature state record from tasks.md.
    Open checklist lines such as '- [ ] T001 [P] [US1]: description' become a linked
    task chain; the first task becomes the current task.
    ticket may carry name, branch, system, id and url."""

    return _manager(root).init_state(tasks_path, feature_id, ticket, replace=replace)


@mcp.tool()
def update_state(
    feature_id: str,
    task_id: str,
    status: str,
    tdd_phase: Optional[str] = None,
    root: Optional[str] = None,
) -> Dict[str, Any]:
    """STEP 2 (repeat): Record a task status change.
    status is one of pending, in-progress, red, green, refactor, done. Marking the current
    task done moves the cursor to the next task; after the last task the feature is all_complete."""

    return _manager(root).update_state(feature_id, task_id, status, tdd_phase)


@mcp.tool()
def resume_state(feature_id: str, root: Optional[str] = None) -> Dict[str, Any]:
    """Show progress, the current task and the next task for an interrupted feature."""

    return _manager(root).resume_state(feature_id)


@mcp.tool()
def validate_state(feature_id: str, root: Optional[str] = None) -> Dict[str, Any]:
    """Validate the persisted state record against the state schema."""

    return _manager(root).validate_state(feature_id)


@mcp.tool()
def check_coherence(feature_id: str, task_id: Optional[str] = None, root: Optional[str] = None) -> Dict[str, Any]:
    """Check that spec, plan, tasks and the state record agree.
    Blockers make the feature incoherent; warnings are informational."""

    return _manager(root).check_coherence(feature_id, task_id)


@mcp.tool()
def cleanup_state(
    feature_id: str,
    archive: bool = False,
    force: bool = False,
    root: Optional[str] = None,
) -> Dict[str, Any]:
    """FINAL STEP: Archive and remove the state record once every task is done."""

    return _manager(root).cleanup_state(feature_id, archive=archive, force=force)


@mcp.resource("harness://states")
def resource_states() -> str:
    """Resource view listing live state records."""

    try:
        manager = _manager(None)
    except ValueError:
        return f"No project root detected. Launch tools with a 'root' argument or set {PROJECT_ROOT_ENV}."

    states = manager.list_states()["states"]
    if not states:
        return "No state files have been created yet."

    lines = ["Harness States"]
    for state in states:
        lines.append("")
        lines.append(f"- {state['feature_id']}: {state['progress']} ({state['status']})")
        if state.get("current_task"):
            lines.append(f"  Current task: {state['current_task']}")
        lines.append(f"  File: {state['path']}")
    return "\n".join(lines)


def main() -> None:
    setup_logging()
    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
