"""Structural validation of persisted state records."""

from __future__ import annotations

from functools import lru_cache
from importlib import resources
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml

from .exceptions import SchemaViolation

SCHEMA_RESOURCE = "state-machine.yaml"


@lru_cache(maxsize=None)
def _packaged_schema() -> Dict[str, Any]:
    text = resources.files("harness_state").joinpath("schemas", SCHEMA_RESOURCE).read_text(encoding="utf-8")
    return yaml.safe_load(text)


def load_schema(path: Optional[Path] = None) -> Dict[str, Any]:
    """Load the record schema, from ``path`` or the copy shipped with the package."""
    if path is None:
        return _packaged_schema()
    return yaml.safe_load(Path(path).read_text(encoding="utf-8"))


def validate_record(data: Any, schema: Optional[Mapping[str, Any]] = None) -> List[str]:
    """Validate a persisted record and return every error found."""
    schema = schema or load_schema()
    if not isinstance(data, Mapping):
        return ["State record must be a JSON object"]

    errors: List[str] = []
    for name in schema.get("required", []):
        if data.get(name) in (None, ""):
            errors.append(f"Missing required field: {name}")

    if data.get("version") != schema["version"]:
        errors.append(f"Invalid version: {data.get('version')} (expected {schema['version']})")

    properties = schema.get("properties", {})
    for section in ("feature", "stateFile", "currentTask", "workflow", "coherence"):
        value = data.get(section)
        if not isinstance(value, Mapping):
            if value is not None:
                errors.append(f"{section} must be an object")
            continue
        for name in properties.get(section, {}).get("required", []):
            if name not in value:
                errors.append(f"{section}.{name} required")

    workflow = data.get("workflow")
    workflow_tasks = workflow.get("tasks") if isinstance(workflow, Mapping) else None
    if isinstance(workflow_tasks, Mapping):
        for name in ("totalTasks", "completedTasks"):
            value = workflow_tasks.get(name, 0)
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                errors.append(f"workflow.tasks.{name} must be a non-negative integer")

    current = data.get("currentTask")
    if isinstance(current, Mapping) and "status" in current:
        allowed = properties["currentTask"]["status"]["enum"]
        if current["status"] not in allowed:
            errors.append(f"Invalid currentTask.status: {current['status']}")

    tasks = data.get("tasks")
    if tasks is not None and not isinstance(tasks, Mapping):
        errors.append("tasks must be an object keyed by task id")
    elif tasks:
        errors.extend(_validate_tasks(tasks, properties.get("tasks", {}).get("item", {})))
    return errors


def _validate_tasks(tasks: Mapping[str, Any], item_schema: Mapping[str, Any]) -> List[str]:
    errors: List[str] = []
    statuses = item_schema.get("status", {}).get("enum", [])
    phases = item_schema.get("tddPhase", {}).get("enum", [])

    for task_id, task in tasks.items():
        if not isinstance(task, Mapping):
            errors.append(f"Task {task_id}: must be an object")
            continue
        for name in item_schema.get("required", []):
            if not task.get(name):
                errors.append(f"Task {task_id}: missing {name}")
        if task.get("status") and statuses and task["status"] not in statuses:
            errors.append(f"Task {task_id}: invalid status {task['status']}")
        if task.get("tddPhase") is not None and phases and task["tddPhase"] not in phases:
            errors.append(f"Task {task_id}: invalid tddPhase {task['tddPhase']}")

        if "dependencies" in task and not isinstance(task["dependencies"], list):
            errors.append(f"Task {task_id}: dependencies must be a list")
        if "parallel" in task and not isinstance(task["parallel"], bool):
            errors.append(f"Task {task_id}: parallel must be true or false")

        for field_name in ("nextTask", "previousTask"):
            link = task.get(field_name)
            if link is None:
                continue
            if not isinstance(link, str):
                errors.append(f"Task {task_id}: {field_name} must be a task id")
            elif link and link != "null" and link not in tasks:
                errors.append(f"Task {task_id}: {field_name} {link} not found")
    return errors


def ensure_valid(data: Any, source: Optional[str] = None) -> None:
    """Raise ``SchemaViolation`` if ``data`` is not a valid state record."""
    errors = validate_record(data)
    if errors:
        raise SchemaViolation(errors, source)
