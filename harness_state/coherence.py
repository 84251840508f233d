"""Coherence checks between a state record and the feature's documents.

Findings are returned as data (``Violation`` / ``CoherenceReport``); callers
decide whether a blocker halts their workflow.
"""

from __future__ import annotations

import logging
from typing import Any, List, Mapping, Optional, Union

from .models import (
    BLOCKER,
    CoherenceReport,
    DocumentFlags,
    FeatureState,
    Violation,
    utc_now,
)
from .state_logging import log_coherence_check
from .state_machine import StateMachine

logger = logging.getLogger("harness.coherence")

_DOCUMENT_VIOLATIONS = (
    ("spec", "missing-spec", "Specification missing"),
    ("plan", "missing-plan", "Plan missing"),
    ("tasks", "missing-tasks", "Tasks missing"),
)


class CoherenceChecker:
    """Detect divergence between the state record, its own structure and its documents."""

    def __init__(self, state_machine: Optional[StateMachine] = None):
        self.state_machine = state_machine or StateMachine()

    def check_documents(self, document_flags: Union[DocumentFlags, Mapping[str, Any], None]) -> List[Violation]:
        flags = DocumentFlags.from_value(document_flags)
        return [
            Violation(kind, BLOCKER, description)
            for name, kind, description in _DOCUMENT_VIOLATIONS
            if not getattr(flags, name)
        ]

    def check_state(self, present: bool, feature_id: str = "") -> List[Violation]:
        if present:
            return []
        return [Violation("missing-state", BLOCKER, f"State file missing for feature '{feature_id}'")]

    def check_task_reference(self, state: FeatureState, task_id: str) -> List[Violation]:
        if task_id in state.tasks:
            return []
        return [Violation("unknown-task", BLOCKER, f"Task {task_id} not in state")]

    def check_link_integrity(self, state: FeatureState) -> List[Violation]:
        """Check every link resolves and that the chain from the head covers every task once."""
        violations: List[Violation] = []
        tasks = state.tasks

        for task_id in tasks:
            task = tasks[task_id]
            if task.next_task is not None:
                if task.next_task not in tasks:
                    violations.append(Violation(
                        "broken-next", BLOCKER, f"Task {task_id}: nextTask {task.next_task} not found"
                    ))
                elif tasks[task.next_task].previous_task != task_id:
                    violations.append(Violation(
                        "broken-next", BLOCKER,
                        f"Task {task_id}: nextTask {task.next_task} does not point back to it",
                    ))
            if task.previous_task is not None:
                if task.previous_task not in tasks:
                    violations.append(Violation(
                        "broken-previous", BLOCKER,
                        f"Task {task_id}: previousTask {task.previous_task} not found",
                    ))
                elif tasks[task.previous_task].next_task != task_id:
                    violations.append(Violation(
                        "broken-previous", BLOCKER,
                        f"Task {task_id}: previousTask {task.previous_task} does not point forward to it",
                    ))

        if not len(tasks):
            return violations

        heads = [t for t in tasks if tasks[t].previous_task is None]
        if len(heads) != 1:
            violations.append(Violation(
                "cycle-detected" if not heads else "broken-previous",
                BLOCKER,
                f"Expected exactly one head task, found {len(heads)}" + (f": {', '.join(heads)}" if heads else ""),
            ))
            if not heads:
                return violations

        visited: List[str] = []
        current: Optional[str] = heads[0]
        while current is not None and current in tasks:
            if current in visited:
                violations.append(Violation(
                    "cycle-detected", BLOCKER, f"Task {current} is reached twice following nextTask links"
                ))
                break
            visited.append(current)
            current = tasks[current].next_task

        orphans = [t for t in tasks if t not in visited]
        if orphans and not any(v.type == "cycle-detected" for v in violations):
            violations.append(Violation(
                "cycle-detected", BLOCKER,
                "Tasks not reachable from head " + heads[0] + ": " + ", ".join(orphans),
            ))
        return violations

    def check_counts(self, state: FeatureState) -> List[Violation]:
        violations: List[Violation] = []
        documents = state.documents
        done = state.tasks.completed_count()

        if documents.completed_tasks != done:
            violations.append(Violation(
                "count-mismatch", BLOCKER,
                f"completedTasks is {documents.completed_tasks} but {done} tasks are done",
            ))
        if documents.completed_tasks > documents.total_tasks:
            violations.append(Violation(
                "count-overflow", BLOCKER,
                f"completedTasks {documents.completed_tasks} exceeds totalTasks {documents.total_tasks}",
            ))
        return violations

    def check_cursor(self, state: FeatureState) -> List[Violation]:
        return [
            Violation("cursor-desync", BLOCKER, problem)
            for problem in self.state_machine.cursor_problems(state)
        ]

    def full_check(
        self,
        state: FeatureState,
        document_flags: Union[DocumentFlags, Mapping[str, Any], None] = None,
        task_id: Optional[str] = None,
    ) -> CoherenceReport:
        """Aggregate every check; documents default to the flags stored on the record."""
        flags = state.documents.flags if document_flags is None else document_flags
        violations: List[Violation] = []
        violations.extend(self.check_documents(flags))
        if task_id is not None:
            violations.extend(self.check_task_reference(state, task_id))
        violations.extend(self.check_link_integrity(state))
        violations.extend(self.check_counts(state))
        violations.extend(self.check_cursor(state))

        report = CoherenceReport(violations=violations, checked_at=utc_now())
        if not report.coherent:
            logger.warning(
                f"Feature '{state.feature_id}' is not coherent: "
                + ", ".join(v.type for v in report.blockers)
            )
        log_coherence_check(state.feature_id, report.coherent, len(violations))
        return report

    def record(self, state: FeatureState, report: CoherenceReport) -> FeatureState:
        """Store a report's findings on the record without touching task data."""
        kinds = {v.type for v in report.blockers}
        coherence = state.coherence
        coherence.violations = list(report.violations)
        coherence.last_check = report.checked_at
        coherence.spec_plan_alignment = not kinds & {"missing-spec", "missing-plan"}
        coherence.plan_tasks_alignment = not kinds & {"missing-plan", "missing-tasks"}
        return state
