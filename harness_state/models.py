"""Data models for harness feature state.

This module contains the records that make up a feature's state: the linked
task list, the current-task cursor, document metadata, coherence findings and
the ``FeatureState`` record that is persisted between sessions.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Union

from .exceptions import CoherenceBlocker, EmptyTaskList, MalformedInput, NotFound


STATE_VERSION = "1.0.0"

TASK_STATUSES = ("pending", "in-progress", "red", "green", "refactor", "done")
TDD_PHASES = ("red", "green", "refactor")
ALL_COMPLETE = "all_complete"
CURSOR_STATUSES = TASK_STATUSES + (ALL_COMPLETE,)

FOUNDATION = "foundation"
POLISH = "polish"
PHASES = ("foundation", "user-story", "polish", "qa")

BLOCKER = "blocker"
WARNING = "warning"
SEVERITIES = (BLOCKER, WARNING)

SPECS_DIR = ".harness/specs"

_FEATURE_ID = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
_STORY_MARKER = re.compile(r"^\[US-?(?P<number>\d+)\]$", re.IGNORECASE)
_PARALLEL_MARKER = "[P]"
_POLISH_MARKER = "[POLISH]"


def utc_now() -> str:
    """Current UTC time as an ISO-8601 string with a ``Z`` suffix."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def check_feature_id(feature_id: Any) -> str:
    """Return ``feature_id`` if it is usable as a single path component."""
    if not isinstance(feature_id, str) or not _FEATURE_ID.match(feature_id) or ".." in feature_id:
        raise MalformedInput(
            f"Invalid feature id {feature_id!r}; use letters, digits, '.', '_' or '-' "
            "and start with a letter or digit"
        )
    return feature_id


def feature_document_paths(feature_id: str) -> Dict[str, str]:
    """Conventional locations of a feature's spec, plan and task list."""
    base = f"{SPECS_DIR}/{check_feature_id(feature_id)}"
    return {
        "spec": f"{base}/spec.md",
        "plan": f"{base}/plan.md",
        "tasks": f"{base}/tasks.md",
    }


@dataclass(slots=True)
class RawTask:
    """A decoded task-list entry before it is linked into a ``TaskList``."""

    task_id: str
    description: str
    annotations: List[str] = field(default_factory=list)

    @property
    def parallel(self) -> bool:
        return any(a.upper() == _PARALLEL_MARKER for a in self.annotations)

    @property
    def user_story(self) -> str:
        """Classify the entry as ``US-n``, ``polish`` or ``foundation``."""
        for annotation in self.annotations:
            match = _STORY_MARKER.match(annotation.strip())
            if match:
                return f"US-{int(match.group('number'))}"
        if any(a.strip().upper() == _POLISH_MARKER for a in self.annotations):
            return POLISH
        return FOUNDATION

    @classmethod
    def from_value(cls, value: Union["RawTask", Mapping[str, Any]]) -> "RawTask":
        """Accept either a ``RawTask`` or a mapping with ``id``/``description``.

        Mappings may carry ``annotations`` directly, or the decoded
        ``parallel``/``userStory`` values, which are folded back into markers.
        """
        if isinstance(value, RawTask):
            return value
        if not isinstance(value, Mapping):
            raise MalformedInput(f"Unsupported raw task entry: {value!r}")

        task_id = value.get("id") or value.get("task_id")
        if not task_id or not str(task_id).strip():
            raise MalformedInput(f"Raw task entry without id: {dict(value)!r}")
        description = str(value.get("description") or "").strip()
        if not description:
            raise MalformedInput(f"Task '{task_id}' has an empty description")

        annotations = [str(a) for a in value.get("annotations", [])]
        if value.get("parallel") and _PARALLEL_MARKER not in annotations:
            annotations.append(_PARALLEL_MARKER)
        story = value.get("userStory") or value.get("user_story")
        if story and story != FOUNDATION:
            if str(story).lower() == POLISH:
                annotations.append(_POLISH_MARKER)
            else:
                annotations.append(f"[{str(story).upper().replace('-', '')}]")
        return cls(task_id=str(task_id).strip(), description=description, annotations=annotations)


@dataclass(slots=True)
class Task:
    """One unit of implementation work and its link into the task chain."""

    id: str
    description: str
    status: str = "pending"
    user_story: str = FOUNDATION
    next_task: Optional[str] = None
    previous_task: Optional[str] = None
    dependencies: List[str] = field(default_factory=list)
    parallel: bool = False
    tdd_phase: Optional[str] = None
    completed_at: Optional[str] = None

    @property
    def is_done(self) -> bool:
        return self.status == "done"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the persisted task shape."""
        data: Dict[str, Any] = {
            "id": self.id,
            "description": self.description,
            "status": self.status,
            "userStory": self.user_story,
            "nextTask": self.next_task,
            "previousTask": self.previous_task,
            "dependencies": list(self.dependencies),
            "parallel": self.parallel,
        }
        if self.tdd_phase is not None:
            data["tddPhase"] = self.tdd_phase
        if self.completed_at is not None:
            data["completedAt"] = self.completed_at
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Task":
        """Create from the persisted task shape."""
        return cls(
            id=data["id"],
            description=data["description"],
            status=data.get("status", "pending"),
            user_story=data.get("userStory", FOUNDATION),
            next_task=_link(data.get("nextTask")),
            previous_task=_link(data.get("previousTask")),
            dependencies=list(data.get("dependencies", [])),
            parallel=bool(data.get("parallel", False)),
            tdd_phase=data.get("tddPhase"),
            completed_at=data.get("completedAt"),
        )

    def validate(self) -> List[str]:
        """Validate the task and return any issues."""
        issues = []
        if not self.id:
            issues.append("Task id is required")
        if not self.description:
            issues.append(f"Task {self.id}: description is required")
        if self.status not in TASK_STATUSES:
            issues.append(f"Task {self.id}: invalid status {self.status!r}")
        if self.tdd_phase is not None and self.tdd_phase not in TDD_PHASES:
            issues.append(f"Task {self.id}: invalid tddPhase {self.tdd_phase!r}")
        if self.next_task == self.id:
            issues.append(f"Task {self.id}: is its own successor")
        return issues


def _link(value: Any) -> Optional[str]:
    # Older records wrote the string "null" for a missing link.
    if value in (None, "", "null"):
        return None
    return str(value)


class TaskList:
    """Arena of tasks keyed by id, ordered by their ``next``/``previous`` links.

    Links are plain ids resolved through the arena, so mapping order carries
    no meaning.
    """

    def __init__(self, tasks: Optional[Mapping[str, Task]] = None):
        self._tasks: Dict[str, Task] = dict(tasks or {})

    @classmethod
    def build(cls, raw_tasks: Iterable[Union[RawTask, Mapping[str, Any]]]) -> "TaskList":
        """Link raw task entries into a chain in input order."""
        if raw_tasks is None:
            raise MalformedInput("Raw task source is missing")

        tasks: Dict[str, Task] = {}
        previous: Optional[Task] = None
        for value in raw_tasks:
            raw = RawTask.from_value(value)
            if raw.task_id in tasks:
                raise MalformedInput(f"Duplicate task id '{raw.task_id}'")

            task = Task(
                id=raw.task_id,
                description=raw.description,
                user_story=raw.user_story,
                parallel=raw.parallel,
                previous_task=previous.id if previous else None,
            )
            if previous is not None:
                previous.next_task = task.id
            tasks[task.id] = task
            previous = task

        if not tasks:
            raise EmptyTaskList("Task source contains no tasks")
        return cls(tasks)

    def get(self, task_id: str) -> Task:
        try:
            return self._tasks[task_id]
        except KeyError:
            raise NotFound(task_id) from None

    def successor_of(self, task_id: str) -> Optional[str]:
        return self.get(task_id).next_task

    def predecessor_of(self, task_id: str) -> Optional[str]:
        return self.get(task_id).previous_task

    @property
    def head(self) -> Optional[str]:
        """Id of the first task without a predecessor, if any."""
        for task in self._tasks.values():
            if task.previous_task is None:
                return task.id
        return None

    @property
    def tail(self) -> Optional[str]:
        for task in self._tasks.values():
            if task.next_task is None:
                return task.id
        return None

    def ordered(self) -> Iterator[Task]:
        """Walk the chain from the head, stopping at a dangling link or a revisit."""
        seen = set()
        current = self.head
        while current is not None and current in self._tasks and current not in seen:
            seen.add(current)
            task = self._tasks[current]
            yield task
            current = task.next_task

    def ids(self) -> List[str]:
        return list(self._tasks)

    def values(self) -> List[Task]:
        return list(self._tasks.values())

    def completed_count(self) -> int:
        return sum(1 for task in self._tasks.values() if task.is_done)

    def all_done(self) -> bool:
        return bool(self._tasks) and all(task.is_done for task in self._tasks.values())

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._tasks

    def __len__(self) -> int:
        return len(self._tasks)

    def __iter__(self) -> Iterator[str]:
        return iter(self._tasks)

    def __getitem__(self, task_id: str) -> Task:
        return self._tasks[task_id]

    def __setitem__(self, task_id: str, task: Task) -> None:
        self._tasks[task_id] = task

    def __delitem__(self, task_id: str) -> None:
        del self._tasks[task_id]

    def to_dict(self) -> Dict[str, Dict[str, Any]]:
        return {task_id: task.to_dict() for task_id, task in self._tasks.items()}

    @classmethod
    def from_dict(cls, data: Mapping[str, Mapping[str, Any]]) -> "TaskList":
        return cls({task_id: Task.from_dict(task) for task_id, task in data.items()})


@dataclass(slots=True)
class TicketInfo:
    """Reference to the external ticket tracking the feature."""

    system: str = "none"
    id: str = ""
    url: str = ""

    def to_dict(self) -> Dict[str, str]:
        return {"system": self.system, "id": self.id, "url": self.url}

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "TicketInfo":
        data = data or {}
        return cls(
            system=data.get("system") or "none",
            id=data.get("id") or "",
            url=data.get("url") or "",
        )


@dataclass(slots=True)
class FeatureInfo:
    """Identity of the feature a state record tracks."""

    id: str
    name: str
    branch: str
    ticket: TicketInfo = field(default_factory=TicketInfo)

    @classmethod
    def from_ticket_info(cls, feature_id: str, ticket_info: Optional[Mapping[str, Any]]) -> "FeatureInfo":
        """Build the identity from a feature id and caller-supplied ticket info."""
        ticket_info = ticket_info or {}
        ticket = TicketInfo.from_dict(ticket_info)
        if not ticket.id:
            ticket.id = feature_id
        return cls(
            id=feature_id,
            name=ticket_info.get("name") or feature_id,
            branch=ticket_info.get("branch") or feature_id,
            ticket=ticket,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "branch": self.branch,
            "ticket": self.ticket.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "FeatureInfo":
        return cls(
            id=data["id"],
            name=data.get("name") or data["id"],
            branch=data.get("branch") or data["id"],
            ticket=TicketInfo.from_dict(data.get("ticket")),
        )


@dataclass(slots=True)
class CurrentTask:
    """Cursor over the task chain: which task is active and where it stands."""

    id: Optional[str]
    status: str
    phase: str
    next_task_id: Optional[str] = None
    tdd_phase: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status == ALL_COMPLETE

    @classmethod
    def terminal(cls) -> "CurrentTask":
        return cls(id=None, status=ALL_COMPLETE, phase="qa", next_task_id=None)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "status": self.status,
            "phase": self.phase,
            "nextTaskId": self.next_task_id,
        }
        if self.tdd_phase is not None:
            data["tddPhase"] = self.tdd_phase
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CurrentTask":
        return cls(
            id=_link(data.get("id")),
            status=data["status"],
            phase=data.get("phase", FOUNDATION),
            next_task_id=_link(data.get("nextTaskId")),
            tdd_phase=data.get("tddPhase"),
        )


@dataclass(slots=True)
class DocumentFlags:
    """Which of the feature's three documents exist."""

    spec: bool = True
    plan: bool = True
    tasks: bool = True

    @classmethod
    def from_value(cls, value: Union["DocumentFlags", Mapping[str, Any], None]) -> "DocumentFlags":
        if isinstance(value, DocumentFlags):
            return value
        value = value or {}
        return cls(
            spec=bool(value.get("spec", True)),
            plan=bool(value.get("plan", True)),
            tasks=bool(value.get("tasks", True)),
        )

    def missing(self) -> List[str]:
        return [name for name in ("spec", "plan", "tasks") if not getattr(self, name)]

    def to_dict(self) -> Dict[str, bool]:
        return {"spec": self.spec, "plan": self.plan, "tasks": self.tasks}


@dataclass(slots=True)
class DocumentRef:
    """Filesystem pointer for one of the feature's documents."""

    path: str
    exists: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {"path": self.path, "exists": self.exists}


@dataclass(slots=True)
class WorkflowDocuments:
    """Document metadata plus the aggregate task totals."""

    spec: DocumentRef
    plan: DocumentRef
    tasks: DocumentRef
    total_tasks: int = 0
    completed_tasks: int = 0

    @classmethod
    def for_feature(
        cls,
        feature_id: str,
        flags: DocumentFlags,
        total_tasks: int,
        paths: Optional[Mapping[str, str]] = None,
    ) -> "WorkflowDocuments":
        resolved = feature_document_paths(feature_id)
        resolved.update({k: v for k, v in (paths or {}).items() if v})
        return cls(
            spec=DocumentRef(resolved["spec"], flags.spec),
            plan=DocumentRef(resolved["plan"], flags.plan),
            tasks=DocumentRef(resolved["tasks"], flags.tasks),
            total_tasks=total_tasks,
        )

    @property
    def flags(self) -> DocumentFlags:
        return DocumentFlags(spec=self.spec.exists, plan=self.plan.exists, tasks=self.tasks.exists)

    def to_dict(self) -> Dict[str, Any]:
        tasks = self.tasks.to_dict()
        tasks.update({"totalTasks": self.total_tasks, "completedTasks": self.completed_tasks})
        return {"spec": self.spec.to_dict(), "plan": self.plan.to_dict(), "tasks": tasks}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "WorkflowDocuments":
        tasks = data.get("tasks", {})
        return cls(
            spec=DocumentRef(data.get("spec", {}).get("path", ""), bool(data.get("spec", {}).get("exists"))),
            plan=DocumentRef(data.get("plan", {}).get("path", ""), bool(data.get("plan", {}).get("exists"))),
            tasks=DocumentRef(tasks.get("path", ""), bool(tasks.get("exists"))),
            total_tasks=int(tasks.get("totalTasks", 0)),
            completed_tasks=int(tasks.get("completedTasks", 0)),
        )


@dataclass(slots=True)
class Violation:
    """One coherence finding."""

    type: str
    severity: str = BLOCKER
    description: str = ""

    @property
    def is_blocker(self) -> bool:
        return self.severity == BLOCKER

    def to_dict(self) -> Dict[str, str]:
        return {"type": self.type, "severity": self.severity, "description": self.description}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Violation":
        return cls(
            type=data["type"],
            severity=data.get("severity", BLOCKER),
            description=data.get("description", ""),
        )


@dataclass(slots=True)
class CoherenceReport:
    """Result of a coherence check."""

    violations: List[Violation] = field(default_factory=list)
    checked_at: str = field(default_factory=utc_now)

    @property
    def coherent(self) -> bool:
        return not any(v.is_blocker for v in self.violations)

    @property
    def blockers(self) -> List[Violation]:
        return [v for v in self.violations if v.is_blocker]

    @property
    def warnings(self) -> List[Violation]:
        return [v for v in self.violations if not v.is_blocker]

    def raise_for_blockers(self) -> None:
        if not self.coherent:
            raise CoherenceBlocker(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "coherent": self.coherent,
            "violations": [v.to_dict() for v in self.violations],
            "checkedAt": self.checked_at,
        }


@dataclass(slots=True)
class CoherenceSummary:
    """Coherence annotations stored on the state record."""

    spec_plan_alignment: bool = True
    plan_tasks_alignment: bool = True
    plan_implementation_alignment: bool = True
    violations: List[Violation] = field(default_factory=list)
    last_check: str = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "specPlanAlignment": self.spec_plan_alignment,
            "planTasksAlignment": self.plan_tasks_alignment,
            "planImplementationAlignment": self.plan_implementation_alignment,
            "violations": [v.to_dict() for v in self.violations],
            "lastCheck": self.last_check,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CoherenceSummary":
        return cls(
            spec_plan_alignment=bool(data.get("specPlanAlignment", True)),
            plan_tasks_alignment=bool(data.get("planTasksAlignment", True)),
            plan_implementation_alignment=bool(data.get("planImplementationAlignment", True)),
            violations=[Violation.from_dict(v) for v in data.get("violations", [])],
            last_check=data.get("lastCheck") or utc_now(),
        )


@dataclass(slots=True)
class FeatureState:
    """The durable record for one feature's progress."""

    feature: FeatureInfo
    tasks: TaskList
    cursor: CurrentTask
    documents: WorkflowDocuments
    coherence: CoherenceSummary = field(default_factory=CoherenceSummary)
    state_path: str = ""
    created_at: str = field(default_factory=utc_now)
    last_updated: str = field(default_factory=utc_now)
    version: str = STATE_VERSION

    @property
    def feature_id(self) -> str:
        return self.feature.id

    @property
    def progress(self) -> str:
        return f"{self.documents.completed_tasks}/{self.documents.total_tasks}"

    def touch(self) -> str:
        """Refresh the update and last-check timestamps."""
        now = utc_now()
        self.last_updated = now
        self.coherence.last_check = now
        return now

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the persisted record shape."""
        return {
            "version": self.version,
            "feature": self.feature.to_dict(),
            "stateFile": {
                "path": self.state_path,
                "createdAt": self.created_at,
                "lastUpdated": self.last_updated,
            },
            "currentTask": self.cursor.to_dict(),
            "workflow": self.documents.to_dict(),
            "coherence": self.coherence.to_dict(),
            "tasks": self.tasks.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "FeatureState":
        """Create from the persisted record shape."""
        state_file = data.get("stateFile", {})
        return cls(
            feature=FeatureInfo.from_dict(data["feature"]),
            tasks=TaskList.from_dict(data["tasks"]),
            cursor=CurrentTask.from_dict(data["currentTask"]),
            documents=WorkflowDocuments.from_dict(data["workflow"]),
            coherence=CoherenceSummary.from_dict(data.get("coherence", {})),
            state_path=state_file.get("path", ""),
            created_at=state_file.get("createdAt") or utc_now(),
            last_updated=state_file.get("lastUpdated") or utc_now(),
            version=data.get("version", STATE_VERSION),
        )
