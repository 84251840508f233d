"""Workspace and state record storage for the harness.

``Workspace`` knows where a feature's documents live and how to decode its
task list. ``StateStore`` owns the persisted state records: it locates them
by feature id, hands out an exclusive per-feature lock and writes atomically
so a racing reader never sees a partial record.
"""

from __future__ import annotations

import json
import logging
import os
import re
import shutil
import tempfile
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from filelock import FileLock, Timeout

from .exceptions import MalformedInput, SchemaViolation, StateLockTimeout
from .models import (
    SPECS_DIR,
    DocumentFlags,
    FeatureState,
    RawTask,
    check_feature_id,
    feature_document_paths,
)
from .state_logging import log_error_with_context, log_operation, log_state_stored
from .validation import ensure_valid

logger = logging.getLogger("harness.workspace")


class Workspace:
    """Locate a feature's spec, plan and task list under a project root."""

    def __init__(self, root: Path | str, *, state_dir: Optional[str] = None, lock_timeout: Optional[float] = None):
        self.root = Path(root).resolve()
        self.specs_dir = self.root / SPECS_DIR
        self.store = StateStore(self.root, state_dir=state_dir, lock_timeout=lock_timeout)

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    def feature_dir(self, feature_id: str) -> Path:
        return self.specs_dir / feature_id

    def document_paths(self, feature_id: str) -> Dict[str, Path]:
        """Absolute paths of the feature's documents."""
        return {name: self.root / rel for name, rel in feature_document_paths(feature_id).items()}

    def document_flags(self, feature_id: str, tasks_path: Optional[Path | str] = None) -> DocumentFlags:
        """Existence flags for the feature's spec, plan and task list."""
        paths = self.document_paths(feature_id)
        if tasks_path is not None:
            paths["tasks"] = self._resolve(tasks_path)
        return DocumentFlags(
            spec=paths["spec"].exists(),
            plan=paths["plan"].exists(),
            tasks=paths["tasks"].exists(),
        )

    def relative(self, path: Path | str) -> str:
        """Render ``path`` relative to the project root when it lies inside it."""
        resolved = self._resolve(path)
        try:
            return resolved.relative_to(self.root).as_posix()
        except ValueError:
            return str(resolved)

    def _resolve(self, path: Path | str) -> Path:
        path = Path(path).expanduser()
        return (path if path.is_absolute() else self.root / path).resolve()

    # ------------------------------------------------------------------
    # Task list decoding
    # ------------------------------------------------------------------

    _TASK_LINE_PATTERN = re.compile(
        r"^\s*-\s*\[(?P<mark> |x|X)\]\s*(?P<id>T\d{3,})(?P<markers>(?:\s*\[[^\]]+\])*)\s*:\s*(?P<description>.+)$"
    )
    _MARKER_PATTERN = re.compile(r"\[[^\]]+\]")

    def read_raw_tasks(self, tasks_path: Path | str) -> List[RawTask]:
        """Decode the open checklist entries of a tasks.md file, in file order."""
        path = self._resolve(tasks_path)
        try:
            content = path.read_text(encoding="utf-8")
        except OSError as e:
            raise MalformedInput(f"Cannot read task list {path}: {e}") from e

        raw_tasks = self.parse_task_lines(content)
        if not raw_tasks:
            raise MalformedInput(f"No open tasks found in {path}")
        return raw_tasks

    def parse_task_lines(self, content: str) -> List[RawTask]:
        raw_tasks: List[RawTask] = []
        for line in content.splitlines():
            match = self._TASK_LINE_PATTERN.match(line)
            if not match or match.group("mark") != " ":
                continue
            raw_tasks.append(RawTask(
                task_id=match.group("id").upper(),
                description=match.group("description").strip(),
                annotations=self._MARKER_PATTERN.findall(match.group("markers")),
            ))
        return raw_tasks


class StateStore:
    """Persisted state records, one live file per feature."""

    STATE_DIR_ENV = "HARNESS_STATE_DIR"
    LOCK_TIMEOUT_ENV = "HARNESS_LOCK_TIMEOUT"
    DEFAULT_STATE_DIR = "tmp"
    DEFAULT_LOCK_TIMEOUT = 10.0
    ARCHIVE_NAME = "state-archive.json"

    def __init__(self, root: Path | str, *, state_dir: Optional[str] = None, lock_timeout: Optional[float] = None):
        self.root = Path(root).resolve()
        self.state_dir = self.root / (state_dir or os.getenv(self.STATE_DIR_ENV) or self.DEFAULT_STATE_DIR)
        if lock_timeout is None:
            lock_timeout = float(os.getenv(self.LOCK_TIMEOUT_ENV, self.DEFAULT_LOCK_TIMEOUT))
        self.lock_timeout = lock_timeout

    # ------------------------------------------------------------------
    # Locating records
    # ------------------------------------------------------------------

    def _record_pattern(self, feature_id: str) -> re.Pattern:
        return re.compile(rf"^\d{{4}}-\d{{2}}-\d{{2}}-\d{{6}}-{re.escape(feature_id)}\.json$")

    def new_path(self, feature_id: str) -> Path:
        check_feature_id(feature_id)
        stamp = datetime.now(timezone.utc).strftime("%Y-%m-%d-%H%M%S")
        return self.state_dir / f"{stamp}-{feature_id}.json"

    def find(self, feature_id: str) -> Optional[Path]:
        """Latest live record for the feature, if any."""
        check_feature_id(feature_id)
        if not self.state_dir.is_dir():
            return None
        pattern = self._record_pattern(feature_id)
        matches = sorted(p for p in self.state_dir.iterdir() if pattern.match(p.name))
        return matches[-1] if matches else None

    def exists(self, feature_id: str) -> bool:
        return self.find(feature_id) is not None

    def path_for(self, state: FeatureState) -> Path:
        if state.state_path:
            path = Path(state.state_path)
            return path if path.is_absolute() else self.root / path
        return self.find(state.feature_id) or self.new_path(state.feature_id)

    def archive_path(self, feature_id: str) -> Path:
        check_feature_id(feature_id)
        return self.root / SPECS_DIR / feature_id / self.ARCHIVE_NAME

    def list_states(self) -> List[Dict[str, Any]]:
        """Summaries of every live record in the state directory."""
        if not self.state_dir.is_dir():
            return []
        summaries = []
        for path in sorted(self.state_dir.glob("*.json")):
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
                workflow_tasks = data["workflow"]["tasks"]
                summaries.append({
                    "feature_id": data["feature"]["id"],
                    "path": str(path),
                    "current_task": data["currentTask"].get("id"),
                    "status": data["currentTask"].get("status"),
                    "progress": f"{workflow_tasks['completedTasks']}/{workflow_tasks['totalTasks']}",
                })
            except (OSError, ValueError, KeyError, TypeError) as e:
                logger.warning(f"Skipping unreadable state record {path}: {e}")
        return summaries

    # ------------------------------------------------------------------
    # Locking
    # ------------------------------------------------------------------

    def lock_path(self, feature_id: str) -> Path:
        return self.state_dir / f".{check_feature_id(feature_id)}.lock"

    def remove_lock(self, feature_id: str) -> None:
        """Delete the lock file of a feature whose record is gone."""
        if self.exists(feature_id):
            return
        self.lock_path(feature_id).unlink(missing_ok=True)

    @contextmanager
    def lock(self, feature_id: str) -> Iterator[None]:
        """Exclusive acquisition of a feature's record; at most one writer at a time."""
        self.state_dir.mkdir(parents=True, exist_ok=True)
        lock = FileLock(self.lock_path(feature_id), timeout=self.lock_timeout)
        try:
            lock.acquire()
        except Timeout as e:
            raise StateLockTimeout(feature_id, self.lock_timeout) from e
        try:
            yield
        finally:
            lock.release()

    @contextmanager
    def transaction(self, feature_id: str) -> Iterator[FeatureState]:
        """Load under the lock, yield for mutation, store only if the block succeeds."""
        with self.lock(feature_id):
            state = self.load(feature_id)
            yield state
            self.save(state)

    # ------------------------------------------------------------------
    # Reading and writing
    # ------------------------------------------------------------------

    def load(self, feature_id: str) -> FeatureState:
        path = self.find(feature_id)
        if path is None:
            raise FileNotFoundError(
                f"No state file found for feature '{feature_id}' in {self.state_dir}. Initialize state first."
            )
        return self.load_path(path)

    def load_path(self, path: Path | str) -> FeatureState:
        path = Path(path)
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise SchemaViolation([f"Not valid JSON: {e}"], str(path)) from e
        ensure_valid(data, str(path))

        try:
            state = FeatureState.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            raise SchemaViolation([f"Cannot read state record: {type(e).__name__}: {e}"], str(path)) from e
        if not state.state_path:
            state.state_path = self._relative(path)
        return state

    def create(self, state: FeatureState) -> Path:
        """Write a brand-new record for ``state`` and remember its path on it."""
        path = self.new_path(state.feature_id)
        state.state_path = self._relative(path)
        return self.save(state)

    def save(self, state: FeatureState) -> Path:
        """Atomically replace the record file with ``state``."""
        path = self.path_for(state)
        if not state.state_path:
            state.state_path = self._relative(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        content = json.dumps(state.to_dict(), indent=2) + "\n"

        with log_operation("store_state", feature_id=state.feature_id, path=str(path)):
            fd, temp_path = tempfile.mkstemp(suffix=".tmp", prefix=path.stem + "_", dir=path.parent)
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    handle.write(content)
                os.replace(temp_path, path)
            except Exception as e:
                Path(temp_path).unlink(missing_ok=True)
                log_error_with_context(e, {"operation": "store_state", "path": str(path)})
                raise

        log_state_stored(state.feature_id, str(path))
        return path

    def archive(self, state: FeatureState) -> Path:
        """Copy the record next to the feature's documents."""
        target = self.archive_path(state.feature_id)
        target.parent.mkdir(parents=True, exist_ok=True)
        source = self.path_for(state)
        if source.exists():
            shutil.copyfile(source, target)
        else:
            target.write_text(json.dumps(state.to_dict(), indent=2) + "\n", encoding="utf-8")
        logger.info(f"State archived to: {target}")
        return target

    def discard(self, state: FeatureState) -> None:
        path = self.path_for(state)
        path.unlink(missing_ok=True)
        logger.info(f"State file removed: {path}")

    def _relative(self, path: Path) -> str:
        try:
            return path.resolve().relative_to(self.root).as_posix()
        except ValueError:
            return str(path)
