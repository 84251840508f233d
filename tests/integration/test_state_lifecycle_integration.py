"""
Integration test for the feature state lifecycle:
init_state -> update_state (repeated) -> check_coherence -> cleanup_state,
driven through the MCP tool functions against a real project directory.
"""

import json
import tempfile
from pathlib import Path

import pytest

import main


TASKS_MD = """# Tasks: Password reset

## Phase 1: Setup
- [ ] T001: Add reset token table

## Phase 3: User Story 1
- [ ] T002 [US1]: Write failing reset request test
- [ ] T003 [P] [US1]: Send reset email

## Phase 4: User Story 2
- [ ] T004 [US2]: Expire used tokens

## Phase 5: Polish
- [ ] T005 [POLISH]: Document the reset flow
"""

FEATURE = "password-reset"


class TestStateLifecycleIntegration:
    """Integration tests for a complete feature run."""

    @pytest.fixture
    def project_dir(self):
        """Create a project with spec, plan and tasks for one feature."""
        with tempfile.TemporaryDirectory() as temp_dir:
            project_path = Path(temp_dir)
            feature_dir = project_path / ".harness" / "specs" / FEATURE
            feature_dir.mkdir(parents=True)
            (feature_dir / "spec.md").write_text("# Spec: Password reset\n", encoding="utf-8")
            (feature_dir / "plan.md").write_text("# Plan: Password reset\n", encoding="utf-8")
            (feature_dir / "tasks.md").write_text(TASKS_MD, encoding="utf-8")
            yield project_path

    @pytest.fixture
    def root(self, project_dir):
        return str(project_dir)

    def test_complete_lifecycle(self, root, project_dir):
        """Walk every task through TDD phases to completion and archive the record."""
        init = main.init_state(
            f".harness/specs/{FEATURE}/tasks.md",
            FEATURE,
            {"name": "Password reset", "system": "github", "id": "42", "url": "https://example.test/issues/42"},
            root=root,
        )
        assert init["success"] is True
        assert init["totalTasks"] == 5
        assert init["firstTask"] == "T001"

        resumed = main.resume_state(FEATURE, root=root)
        assert resumed["phase"] == "foundation"
        assert resumed["feature"]["name"] == "Password reset"

        expected_next = ["T002", "T003", "T004", "T005", None]
        for index, task_id in enumerate(["T001", "T002", "T003", "T004", "T005"]):
            for phase in ("red", "green", "refactor"):
                step = main.update_state(FEATURE, task_id, phase, phase, root=root)
                assert step["success"] is True, step
                assert step["nextTask"] == task_id

            done = main.update_state(FEATURE, task_id, "done", root=root)
            assert done["success"] is True
            assert done["completedTasks"] == index + 1
            assert done["nextTask"] == expected_next[index]

            coherence = main.check_coherence(FEATURE, root=root)
            assert coherence["coherent"] is True, coherence["violations"]

        assert done["allComplete"] is True
        assert main.validate_state(FEATURE, root=root)["valid"] is True

        final = main.resume_state(FEATURE, root=root)
        assert final["progress"] == "5/5"
        assert final["currentTask"]["id"] is None
        assert final["currentTask"]["status"] == "all_complete"
        assert final["phase"] == "qa"

        rejected = main.update_state(FEATURE, "T003", "done", root=root)
        assert rejected["success"] is False
        assert rejected["error_type"] == "AlreadyComplete"

        cleanup = main.cleanup_state(FEATURE, archive=True, root=root)
        assert cleanup["success"] is True

        archive = project_dir.resolve() / ".harness" / "specs" / FEATURE / "state-archive.json"
        archived = json.loads(archive.read_text(encoding="utf-8"))
        assert archived["workflow"]["tasks"]["completedTasks"] == 5
        assert all(task["completedAt"] for task in archived["tasks"].values())
        assert main.resume_state(FEATURE, root=root)["success"] is False

    def test_parallel_task_finished_early_is_skipped(self, root):
        """A task finished ahead of the cursor is not offered again."""
        main.init_state(f".harness/specs/{FEATURE}/tasks.md", FEATURE, root=root)

        early = main.update_state(FEATURE, "T003", "done", root=root)
        assert early["nextTask"] == "T001"

        main.update_state(FEATURE, "T001", "done", root=root)
        after_t002 = main.update_state(FEATURE, "T002", "done", root=root)

        assert after_t002["nextTask"] == "T004"
        assert after_t002["completedTasks"] == 3

    def test_interrupted_update_can_resume(self, root):
        """State survives across independent tool calls, as across sessions."""
        main.init_state(f".harness/specs/{FEATURE}/tasks.md", FEATURE, root=root)
        main.update_state(FEATURE, "T001", "done", root=root)
        main.update_state(FEATURE, "T002", "red", "red", root=root)

        resumed = main.resume_state(FEATURE, root=root)

        assert resumed["progress"] == "1/5"
        assert resumed["currentTask"] == {
            "id": "T002",
            "description": "Write failing reset request test",
            "status": "red",
            "tddPhase": "red",
            "userStory": "US-1",
        }
        assert resumed["nextTask"]["id"] == "T003"

    def test_missing_plan_blocks_coherence(self, root, project_dir):
        """Removing a document mid-feature is reported as a blocker."""
        main.init_state(f".harness/specs/{FEATURE}/tasks.md", FEATURE, root=root)
        (project_dir / ".harness" / "specs" / FEATURE / "plan.md").unlink()

        result = main.check_coherence(FEATURE, "T001", root=root)

        assert result["coherent"] is False
        assert result["blockers"] == [
            {"type": "missing-plan", "severity": "blocker", "description": "Plan missing"}
        ]

    def test_hand_edited_record_fails_validation(self, root):
        """A broken link written by hand is caught by validate_state and update_state."""
        init = main.init_state(f".harness/specs/{FEATURE}/tasks.md", FEATURE, root=root)
        path = Path(init["path"])
        data = json.loads(path.read_text(encoding="utf-8"))
        data["tasks"]["T004"]["previousTask"] = "T999"
        path.write_text(json.dumps(data, indent=2), encoding="utf-8")

        validation = main.validate_state(FEATURE, root=root)
        update = main.update_state(FEATURE, "T001", "done", root=root)

        assert validation["valid"] is False
        assert "Task T004: previousTask T999 not found" in validation["errors"]
        assert update["success"] is False
        assert update["error_type"] == "SchemaViolation"

    def test_root_from_environment(self, project_dir, monkeypatch):
        """Tools fall back to HARNESS_PROJECT_ROOT when no root is given."""
        monkeypatch.setenv("HARNESS_PROJECT_ROOT", str(project_dir))

        result = main.init_state(f".harness/specs/{FEATURE}/tasks.md", FEATURE)

        assert result["success"] is True
        assert "Harness States" in main.resource_states()
        assert f"- {FEATURE}: 0/5 (pending)" in main.resource_states()

    def test_unknown_root_is_rejected(self):
        """An explicit root that does not exist is an error."""
        with pytest.raises(ValueError, match="does not exist"):
            main.resume_state(FEATURE, root="/nonexistent/harness/root")
