"""Persisted workflow operations for the harness.

``WorkflowManager`` wraps the in-memory state machine with the workspace:
each mutating call runs as one load -> mutate -> store unit under the
feature's lock, so a failed call never leaves a partial record behind.
Results are plain dictionaries ready to hand back to an MCP client.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from .coherence import CoherenceChecker
from .exceptions import MalformedInput
from .models import CoherenceReport, check_feature_id
from .state_logging import log_error_with_context, log_operation
from .state_machine import StateMachine
from .validation import validate_record
from .workspace import Workspace

logger = logging.getLogger("harness.workflow")


class WorkflowManager:
    """Drive a feature's state record from initialization to cleanup."""

    def __init__(self, root: Path | str, *, state_dir: Optional[str] = None, lock_timeout: Optional[float] = None):
        self.workspace = Workspace(root, state_dir=state_dir, lock_timeout=lock_timeout)
        self.store = self.workspace.store
        self.state_machine = StateMachine(self.store)
        self.checker = CoherenceChecker(self.state_machine)

    def _failure(self, operation: str, error: Exception, suggestion: str, next_step: str, **context) -> Dict[str, Any]:
        log_error_with_context(error, {"operation": operation, **context})
        return {
            "success": False,
            "error": f"Failed to {operation.replace('_', ' ')}: {error}",
            "error_type": type(error).__name__,
            "suggestion": suggestion,
            "next_suggested_step": next_step,
            "message": f"Error: {error}",
        }

    # ------------------------------------------------------------------
    # Initialization
    # ------------------------------------------------------------------

    def init_state(
        self,
        tasks_path: Path | str,
        feature_id: str,
        ticket_info: Optional[Mapping[str, Any]] = None,
        *,
        replace: bool = False,
    ) -> Dict[str, Any]:
        """Create the state record for a feature from its tasks.md."""
        try:
            check_feature_id(feature_id)
            with log_operation("init_state", feature_id=feature_id, tasks_path=str(tasks_path)):
                with self.store.lock(feature_id):
                    existing = self.store.find(feature_id)
                    if existing and not replace:
                        return {
                            "success": False,
                            "error": f"State already exists for feature '{feature_id}': {existing}",
                            "error_type": "FileExistsError",
                            "suggestion": "Resume the existing state, or pass replace=True to start over",
                            "next_suggested_step": "resume_state",
                            "message": "State file already exists",
                        }

                    raw_tasks = self.workspace.read_raw_tasks(tasks_path)
                    paths = {name: self.workspace.relative(p) for name, p in self.workspace.document_paths(feature_id).items()}
                    paths["tasks"] = self.workspace.relative(tasks_path)
                    state = self.state_machine.initialize(
                        feature_id,
                        ticket_info or {},
                        raw_tasks,
                        self.workspace.document_flags(feature_id, tasks_path),
                        paths,
                    )
                    path = self.store.create(state)
                    if existing and existing != path:
                        existing.unlink()

            return {
                "success": True,
                "stateFile": state.state_path,
                "path": str(path),
                "totalTasks": state.documents.total_tasks,
                "firstTask": state.cursor.id,
                "next_suggested_step": "update_state",
                "message": f"State initialized with {state.documents.total_tasks} tasks",
            }
        except Exception as e:
            return self._failure(
                "init_state", e,
                f"Check that {tasks_path} exists and lists open tasks like '- [ ] T001: description'",
                "init_state",
                feature_id=feature_id,
            )

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def update_state(
        self,
        feature_id: str,
        task_id: str,
        status: str,
        tdd_phase: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Record a task status change and move the cursor when a task is done."""
        try:
            check_feature_id(feature_id)
            with log_operation("update_state", feature_id=feature_id, task_id=task_id, status=status):
                with self.store.transaction(feature_id) as state:
                    self.state_machine.advance(state, task_id, status, tdd_phase)

            return {
                "success": True,
                "taskId": task_id,
                "status": status,
                "nextTask": state.cursor.id,
                "completedTasks": state.documents.completed_tasks,
                "totalTasks": state.documents.total_tasks,
                "allComplete": state.cursor.is_terminal,
                "next_suggested_step": "cleanup_state" if state.cursor.is_terminal else "update_state",
            }
        except Exception as e:
            return self._failure(
                "update_state", e,
                f"Use resume_state to see the current task of feature '{feature_id}'",
                "resume_state",
                feature_id=feature_id,
                task_id=task_id,
                status=status,
            )

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    def resume_state(self, feature_id: str) -> Dict[str, Any]:
        try:
            check_feature_id(feature_id)
            return self.state_machine.resume(self.store.load(feature_id))
        except Exception as e:
            return self._failure(
                "resume_state", e,
                f"Initialize state for feature '{feature_id}' first",
                "init_state",
                feature_id=feature_id,
            )

    def validate_state(self, feature_id: str) -> Dict[str, Any]:
        """Structural validation of the persisted record."""
        try:
            check_feature_id(feature_id)
        except MalformedInput as e:
            return {"valid": False, "errors": [str(e)], "path": None}
        path = self.store.find(feature_id)
        if path is None:
            return {
                "valid": False,
                "errors": [f"No state file found for feature '{feature_id}'"],
                "path": None,
            }
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except ValueError as e:
            return {"valid": False, "errors": [f"Not valid JSON: {e}"], "path": str(path)}

        errors = validate_record(data)
        if errors:
            logger.warning(f"State file {path} is invalid: {len(errors)} errors")
        return {
            "valid": not errors,
            "errors": errors,
            "path": str(path),
            "message": "State file valid" if not errors else f"{len(errors)} validation errors",
        }

    def check_coherence(self, feature_id: str, task_id: Optional[str] = None) -> Dict[str, Any]:
        """Check documents and record structure, and note the result on the record."""
        try:
            check_feature_id(feature_id)
            if not self.store.exists(feature_id):
                flags = self.workspace.document_flags(feature_id)
                violations = self.checker.check_documents(flags)
                if task_id is not None:
                    violations += self.checker.check_state(False, feature_id)
                report = CoherenceReport(violations=violations)
            else:
                with self.store.transaction(feature_id) as state:
                    flags = self.workspace.document_flags(feature_id, state.documents.tasks.path or None)
                    report = self.checker.full_check(state, flags, task_id)
                    self.checker.record(state, report)

            result = report.to_dict()
            result["feature_id"] = feature_id
            result["blockers"] = [v.to_dict() for v in report.blockers]
            result["warnings"] = [v.to_dict() for v in report.warnings]
            return result
        except Exception as e:
            return self._failure(
                "check_coherence", e,
                f"Run validate_state for feature '{feature_id}' to inspect the record",
                "validate_state",
                feature_id=feature_id,
                task_id=task_id,
            )

    def list_states(self) -> Dict[str, Any]:
        states = self.store.list_states()
        return {
            "states": states,
            "count": len(states),
            "message": f"Found {len(states)} state files" if states else "No state files yet. Use init_state to create one.",
        }

    # ------------------------------------------------------------------
    # Disposal
    # ------------------------------------------------------------------

    def cleanup_state(self, feature_id: str, *, archive: bool = False, force: bool = False) -> Dict[str, Any]:
        try:
            check_feature_id(feature_id)
            with log_operation("cleanup_state", feature_id=feature_id, archive=archive):
                with self.store.lock(feature_id):
                    state = self.store.load(feature_id)
                    result = self.state_machine.cleanup(state, archive=archive, force=force)
                self.store.remove_lock(feature_id)
            return result
        except Exception as e:
            return self._failure(
                "cleanup_state", e,
                "Finish every task first, or pass force=True to discard the record",
                "resume_state",
                feature_id=feature_id,
            )
