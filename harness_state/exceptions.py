"""Exception types raised by the harness state machine."""

from __future__ import annotations

from typing import TYPE_CHECKING, List

if TYPE_CHECKING:
    from .models import CoherenceReport


class HarnessStateError(Exception):
    """Base class for all harness state errors."""


class MalformedInput(HarnessStateError, ValueError):
    """Raw task source is empty, unparseable or contains duplicates."""


class EmptyTaskList(MalformedInput):
    """A feature cannot be initialized without tasks."""


class NotFound(HarnessStateError, LookupError):
    """A task id does not resolve inside the task list."""

    def __init__(self, task_id: str, message: str | None = None):
        self.task_id = task_id
        super().__init__(message or f"Task '{task_id}' not found")


class UnknownTask(NotFound):
    """A transition referenced a task that is not part of the state record."""

    def __init__(self, task_id: str, feature_id: str | None = None):
        self.feature_id = feature_id
        where = f" for feature '{feature_id}'" if feature_id else ""
        super().__init__(task_id, f"Task '{task_id}' not in state{where}")


class AlreadyDone(HarnessStateError, RuntimeError):
    """A task that is already done was transitioned again."""


class AlreadyComplete(AlreadyDone):
    """The feature cursor reached all_complete; no transition leaves it."""


class InvalidTransition(HarnessStateError, ValueError):
    """A status or TDD phase change that the task lifecycle does not allow."""


class SchemaViolation(HarnessStateError, ValueError):
    """A persisted state record failed structural validation."""

    def __init__(self, errors: List[str], source: str | None = None):
        self.errors = list(errors)
        self.source = source
        prefix = f"Invalid state record {source}" if source else "Invalid state record"
        super().__init__(f"{prefix}: " + "; ".join(self.errors))


class CoherenceBlocker(HarnessStateError, RuntimeError):
    """Raised on request when a coherence report contains blockers."""

    def __init__(self, report: "CoherenceReport"):
        self.report = report
        kinds = ", ".join(v.type for v in report.blockers)
        super().__init__(f"Coherence blocked: {kinds}")


class StateLockTimeout(HarnessStateError, TimeoutError):
    """Another session holds the writable state record for this feature."""

    def __init__(self, feature_id: str, timeout: float):
        self.feature_id = feature_id
        self.timeout = timeout
        super().__init__(
            f"Could not acquire state lock for feature '{feature_id}' within {timeout}s"
        )
