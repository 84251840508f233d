"""Task state machine for a feature.

Creates a ``FeatureState`` from a raw task list, advances tasks through
``pending -> in-progress -> {red -> green -> refactor}* -> done`` and keeps
the current-task cursor in step with the task it points at. All operations
are in-memory; persistence is the job of the injected store.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Mapping, Optional, Union

from .exceptions import (
    AlreadyComplete,
    AlreadyDone,
    EmptyTaskList,
    InvalidTransition,
    MalformedInput,
    UnknownTask,
)
from .models import (
    FOUNDATION,
    TASK_STATUSES,
    TDD_PHASES,
    CurrentTask,
    DocumentFlags,
    FeatureInfo,
    FeatureState,
    RawTask,
    Task,
    TaskList,
    WorkflowDocuments,
    check_feature_id,
    utc_now,
)
from .state_logging import (
    log_feature_completed,
    log_performance,
    log_state_cleanup,
    log_state_initialized,
    log_task_advanced,
)

if TYPE_CHECKING:
    from .workspace import StateStore

logger = logging.getLogger("harness.state_machine")

# pending < working states < done; a task never moves to a lower rank.
_STATUS_RANK = {
    "pending": 0,
    "in-progress": 1,
    "red": 1,
    "green": 1,
    "refactor": 1,
    "done": 2,
}


def determine_phase(user_story: Optional[str]) -> str:
    """Map a task's user-story classification to a workflow phase."""
    if user_story == FOUNDATION:
        return "foundation"
    if user_story and user_story.startswith("US-"):
        return "user-story"
    return "polish"


class StateMachine:
    """Owns the transitions that create and advance a ``FeatureState``."""

    def __init__(self, store: Optional["StateStore"] = None):
        self.store = store

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    @log_performance("initialize_state")
    def initialize(
        self,
        feature_id: str,
        ticket_info: Optional[Mapping[str, Any]],
        raw_tasks: Iterable[Union[RawTask, Mapping[str, Any]]],
        document_flags: Union[DocumentFlags, Mapping[str, Any], None] = None,
        document_paths: Optional[Mapping[str, str]] = None,
    ) -> FeatureState:
        """Build a new state record with the cursor on the first task."""
        if not feature_id or not feature_id.strip():
            raise MalformedInput("Feature id cannot be empty")
        check_feature_id(feature_id)
        raw = list(raw_tasks or [])
        if not raw:
            raise EmptyTaskList(f"Feature '{feature_id}' has no tasks to track")

        tasks = TaskList.build(raw)
        flags = DocumentFlags.from_value(document_flags)
        state = FeatureState(
            feature=FeatureInfo.from_ticket_info(feature_id, ticket_info),
            tasks=tasks,
            cursor=self._cursor_at(tasks.get(tasks.head)),
            documents=WorkflowDocuments.for_feature(feature_id, flags, len(raw), document_paths),
        )

        logger.info(f"Initialized state for feature '{feature_id}' with {len(tasks)} tasks")
        log_state_initialized(feature_id, len(tasks), first_task=state.cursor.id)
        return state

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    @log_performance("advance_task")
    def advance(
        self,
        state: FeatureState,
        task_id: str,
        new_status: str,
        tdd_phase: Optional[str] = None,
    ) -> FeatureState:
        """Move ``task_id`` to ``new_status`` and recompute the cursor.

        Every precondition is checked before anything is written, so a raised
        error leaves ``state`` exactly as it was.
        """
        if task_id not in state.tasks:
            raise UnknownTask(task_id, state.feature_id)
        if new_status not in TASK_STATUSES:
            raise InvalidTransition(
                f"Invalid status '{new_status}'; expected one of {', '.join(TASK_STATUSES)}"
            )
        if tdd_phase is not None and tdd_phase not in TDD_PHASES:
            raise InvalidTransition(
                f"Invalid TDD phase '{tdd_phase}'; expected one of {', '.join(TDD_PHASES)}"
            )
        if state.cursor.is_terminal:
            raise AlreadyComplete(
                f"Feature '{state.feature_id}' is already complete; no further transitions allowed"
            )

        task = state.tasks.get(task_id)
        if task.is_done:
            raise AlreadyDone(f"Task '{task_id}' is already done (completed at {task.completed_at})")
        if _STATUS_RANK[new_status] < _STATUS_RANK[task.status]:
            raise InvalidTransition(
                f"Task '{task_id}' cannot move from '{task.status}' back to '{new_status}'"
            )

        previous_status = task.status
        task.status = new_status
        if tdd_phase is not None:
            task.tdd_phase = tdd_phase

        if new_status == "done":
            task.completed_at = utc_now()
            state.documents.completed_tasks += 1
            if state.cursor.id == task_id:
                state.cursor = self._cursor_after(state.tasks, task)
        elif state.cursor.id == task_id:
            state.cursor.status = task.status
            state.cursor.tdd_phase = task.tdd_phase

        state.touch()

        if previous_status != new_status:
            logger.info(f"Task '{task_id}' of '{state.feature_id}': {previous_status} -> {new_status}")
        log_task_advanced(
            state.feature_id,
            task_id,
            new_status,
            previous_status=previous_status,
            tdd_phase=task.tdd_phase,
            next_task=state.cursor.id,
        )
        if state.cursor.is_terminal:
            log_feature_completed(state.feature_id, state.documents.total_tasks)
        return state

    def _cursor_at(self, task: Task) -> CurrentTask:
        return CurrentTask(
            id=task.id,
            status=task.status,
            phase=determine_phase(task.user_story),
            next_task_id=task.next_task,
            tdd_phase=task.tdd_phase,
        )

    def _cursor_after(self, tasks: TaskList, completed: Task) -> CurrentTask:
        """Cursor for the first unfinished task after ``completed``.

        Tasks finished out of order (parallel work) are skipped; if nothing
        after ``completed`` is open, earlier open tasks are picked up from
        the head before the feature counts as complete.
        """
        seen = {completed.id}
        current = completed.next_task
        while current is not None and current in tasks and current not in seen:
            seen.add(current)
            candidate = tasks.get(current)
            if not candidate.is_done:
                return self._cursor_at(candidate)
            current = candidate.next_task

        for candidate in tasks.ordered():
            if not candidate.is_done:
                return self._cursor_at(candidate)
        return CurrentTask.terminal()

    # ------------------------------------------------------------------
    # Projection
    # ------------------------------------------------------------------

    def resume(self, state: FeatureState) -> Dict[str, Any]:
        """Read-only summary of where the feature stands."""
        cursor = state.cursor
        current = state.tasks[cursor.id] if cursor.id in state.tasks else None
        upcoming = state.tasks[cursor.next_task_id] if cursor.next_task_id in state.tasks else None

        return {
            "feature": state.feature.to_dict(),
            "progress": state.progress,
            "phase": cursor.phase,
            "currentTask": {
                "id": cursor.id,
                "description": current.description if current else None,
                "status": cursor.status,
                "tddPhase": cursor.tdd_phase,
                "userStory": current.user_story if current else None,
            },
            "nextTask": {
                "id": cursor.next_task_id,
                "description": upcoming.description if upcoming else None,
            },
            "coherence": state.coherence.to_dict(),
        }

    def cursor_problems(self, state: FeatureState) -> List[str]:
        """Describe every way the cursor disagrees with the task it mirrors."""
        problems: List[str] = []
        cursor = state.cursor
        # An empty task list counts as finished.
        all_done = not len(state.tasks) or state.tasks.all_done()

        if cursor.id is None:
            if not cursor.is_terminal:
                problems.append(f"Cursor has no task but status is '{cursor.status}'")
            if not all_done:
                open_ids = [t for t in state.tasks if not state.tasks[t].is_done]
                problems.append("Cursor is complete while tasks remain: " + ", ".join(open_ids))
            return problems

        if cursor.is_terminal:
            problems.append(f"Cursor is all_complete but still points at '{cursor.id}'")
        if cursor.id not in state.tasks:
            problems.append(f"Cursor points at unknown task '{cursor.id}'")
            return problems

        task = state.tasks[cursor.id]
        if not cursor.is_terminal and task.status != cursor.status:
            problems.append(
                f"Cursor status '{cursor.status}' does not match task '{task.id}' status '{task.status}'"
            )
        if task.next_task != cursor.next_task_id:
            problems.append(
                f"Cursor nextTaskId '{cursor.next_task_id}' does not match task '{task.id}' next '{task.next_task}'"
            )
        if all_done:
            problems.append("All tasks are done but the cursor is not all_complete")
        return problems

    # ------------------------------------------------------------------
    # Disposal
    # ------------------------------------------------------------------

    def cleanup(self, state: FeatureState, *, archive: bool = False, force: bool = False) -> Dict[str, Any]:
        """Archive and/or discard the persisted record of a finished feature."""
        if self.store is None:
            raise RuntimeError("StateMachine.cleanup requires a state store")
        if not state.cursor.is_terminal and not force:
            raise InvalidTransition(
                f"Feature '{state.feature_id}' still has open tasks ({state.progress}); "
                "pass force=True to discard it anyway"
            )

        archive_path = self.store.archive(state) if archive else None
        self.store.discard(state)

        logger.info(f"Cleaned up state for feature '{state.feature_id}' (archived={archive})")
        log_state_cleanup(state.feature_id, archive, archive_path=str(archive_path) if archive_path else None)
        return {
            "success": True,
            "archived": archive,
            "archivePath": str(archive_path) if archive_path else None,
            "feature": state.feature_id,
        }
