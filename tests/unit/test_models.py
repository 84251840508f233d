"""Unit tests for harness state models.

This module tests task classification, the linked task list and the
serialization of the persisted state record.
"""

import pytest

from harness_state.exceptions import (
    CoherenceBlocker,
    EmptyTaskList,
    MalformedInput,
    NotFound,
)
from harness_state.models import (
    ALL_COMPLETE,
    CoherenceReport,
    CoherenceSummary,
    CurrentTask,
    DocumentFlags,
    FeatureInfo,
    RawTask,
    Task,
    TaskList,
    Violation,
    WorkflowDocuments,
    check_feature_id,
    feature_document_paths,
)


class TestRawTask:
    """Test cases for annotation classification."""

    def test_no_annotations_is_foundation(self):
        raw = RawTask("T001", "Setup project")

        assert raw.user_story == "foundation"
        assert raw.parallel is False

    def test_story_and_parallel_markers(self):
        raw = RawTask("T004", "Add login form", ["[P]", "[US2]"])

        assert raw.user_story == "US-2"
        assert raw.parallel is True

    def test_multi_digit_story_number(self):
        assert RawTask("T020", "Export", ["[US12]"]).user_story == "US-12"

    def test_polish_marker(self):
        assert RawTask("T030", "Docs pass", ["[Polish]"]).user_story == "polish"

    def test_from_mapping_with_annotations(self):
        raw = RawTask.from_value({"id": "T002", "description": "Build", "annotations": ["[US1]"]})

        assert raw.task_id == "T002"
        assert raw.user_story == "US-1"

    def test_from_mapping_with_decoded_values(self):
        raw = RawTask.from_value({"id": "T003", "description": "Cache", "parallel": True, "userStory": "US-3"})

        assert raw.parallel is True
        assert raw.user_story == "US-3"

    def test_from_mapping_without_id_is_malformed(self):
        with pytest.raises(MalformedInput):
            RawTask.from_value({"description": "No id"})

    def test_from_mapping_with_blank_description_is_malformed(self):
        with pytest.raises(MalformedInput):
            RawTask.from_value({"id": "T001", "description": "   "})


class TestTaskListBuild:
    """Test cases for TaskList.build and lookups."""

    @pytest.fixture
    def task_list(self):
        return TaskList.build([
            {"id": "T001", "description": "Setup"},
            {"id": "T002", "description": "Model", "annotations": ["[P]", "[US1]"]},
            {"id": "T003", "description": "Polish docs", "annotations": ["[POLISH]"]},
        ])

    def test_links_follow_input_order(self, task_list):
        assert task_list.get("T001").previous_task is None
        assert task_list.get("T001").next_task == "T002"
        assert task_list.get("T002").previous_task == "T001"
        assert task_list.get("T002").next_task == "T003"
        assert task_list.get("T003").next_task is None

    def test_head_tail_and_order(self, task_list):
        assert task_list.head == "T001"
        assert task_list.tail == "T003"
        assert [t.id for t in task_list.ordered()] == ["T001", "T002", "T003"]

    def test_classification(self, task_list):
        assert task_list.get("T001").user_story == "foundation"
        assert task_list.get("T002").user_story == "US-1"
        assert task_list.get("T002").parallel is True
        assert task_list.get("T003").user_story == "polish"

    def test_all_tasks_start_pending(self, task_list):
        assert {task.status for task in task_list.values()} == {"pending"}
        assert task_list.completed_count() == 0
        assert task_list.all_done() is False

    def test_successor_and_predecessor(self, task_list):
        assert task_list.successor_of("T001") == "T002"
        assert task_list.successor_of("T003") is None
        assert task_list.predecessor_of("T001") is None
        assert task_list.predecessor_of("T003") == "T002"

    def test_lookup_of_missing_id(self, task_list):
        with pytest.raises(NotFound):
            task_list.get("T999")
        with pytest.raises(NotFound):
            task_list.successor_of("T999")
        with pytest.raises(NotFound):
            task_list.predecessor_of("T999")

    def test_empty_input(self):
        with pytest.raises(EmptyTaskList):
            TaskList.build([])

    def test_empty_input_is_malformed_input(self):
        with pytest.raises(MalformedInput):
            TaskList.build([])

    def test_duplicate_id(self):
        with pytest.raises(MalformedInput, match="Duplicate task id 'T001'"):
            TaskList.build([
                {"id": "T001", "description": "Setup"},
                {"id": "T001", "description": "Again"},
            ])

    def test_ordered_stops_on_cycle(self):
        tasks = TaskList({
            "T001": Task("T001", "a", next_task="T002"),
            "T002": Task("T002", "b", previous_task="T001", next_task="T001"),
        })

        assert [t.id for t in tasks.ordered()] == ["T001", "T002"]


class TestTaskSerialization:
    """Test cases for Task persistence shape."""

    def test_to_dict_omits_unset_optional_fields(self):
        data = Task("T001", "Setup").to_dict()

        assert data == {
            "id": "T001",
            "description": "Setup",
            "status": "pending",
            "userStory": "foundation",
            "nextTask": None,
            "previousTask": None,
            "dependencies": [],
            "parallel": False,
        }

    def test_from_dict_treats_null_string_as_no_link(self):
        task = Task.from_dict({
            "id": "T001", "description": "Setup", "status": "pending", "nextTask": "null",
        })

        assert task.next_task is None

    def test_validate_reports_problems(self):
        task = Task("T001", "", status="blocked", tdd_phase="purple", next_task="T001")

        issues = task.validate()

        assert any("description" in issue for issue in issues)
        assert any("invalid status" in issue for issue in issues)
        assert any("invalid tddPhase" in issue for issue in issues)
        assert any("own successor" in issue for issue in issues)


class TestFeatureRecords:
    """Test cases for feature identity, cursor and documents."""

    def test_feature_info_defaults_from_feature_id(self):
        info = FeatureInfo.from_ticket_info("demo", {})

        assert info.name == "demo"
        assert info.branch == "demo"
        assert info.ticket.system == "none"
        assert info.ticket.id == "demo"
        assert info.ticket.url == ""

    def test_feature_info_uses_ticket_fields(self):
        info = FeatureInfo.from_ticket_info(
            "demo", {"name": "Demo", "system": "jira", "id": "PROJ-1", "url": "https://example.test/PROJ-1"}
        )

        assert info.to_dict() == {
            "id": "demo",
            "name": "Demo",
            "branch": "demo",
            "ticket": {"system": "jira", "id": "PROJ-1", "url": "https://example.test/PROJ-1"},
        }

    def test_terminal_cursor(self):
        cursor = CurrentTask.terminal()

        assert cursor.is_terminal
        assert cursor.to_dict() == {"id": None, "status": ALL_COMPLETE, "phase": "qa", "nextTaskId": None}

    def test_document_flags_from_mapping(self):
        flags = DocumentFlags.from_value({"spec": True, "plan": False})

        assert flags.tasks is True
        assert flags.missing() == ["plan"]

    def test_workflow_documents_shape(self):
        documents = WorkflowDocuments.for_feature("demo", DocumentFlags(plan=False), 3)

        assert documents.to_dict() == {
            "spec": {"path": ".harness/specs/demo/spec.md", "exists": True},
            "plan": {"path": ".harness/specs/demo/plan.md", "exists": False},
            "tasks": {
                "path": ".harness/specs/demo/tasks.md",
                "exists": True,
                "totalTasks": 3,
                "completedTasks": 0,
            },
        }
        assert documents.flags == DocumentFlags(plan=False)

    def test_feature_document_paths(self):
        assert feature_document_paths("x")["tasks"] == ".harness/specs/x/tasks.md"


class TestCoherenceRecords:
    """Test cases for violations and reports."""

    def test_report_without_blockers_is_coherent(self):
        report = CoherenceReport([Violation("stale-plan", "warning", "Plan older than tasks")])

        assert report.coherent is True
        assert report.blockers == []
        assert len(report.warnings) == 1
        report.raise_for_blockers()

    def test_report_with_blocker(self):
        report = CoherenceReport([Violation("missing-plan", "blocker", "Plan missing")])

        assert report.coherent is False
        assert report.to_dict()["coherent"] is False
        with pytest.raises(CoherenceBlocker, match="missing-plan"):
            report.raise_for_blockers()

    def test_summary_round_trip(self):
        summary = CoherenceSummary(violations=[Violation("missing-spec", "blocker", "Specification missing")])

        restored = CoherenceSummary.from_dict(summary.to_dict())

        assert restored.violations == summary.violations
        assert restored.last_check == summary.last_check


class TestCheckFeatureId:
    """Test cases for feature id checking."""

    @pytest.mark.parametrize("feature_id", ["demo", "login-2", "v1.2_beta", "001-auth"])
    def test_accepts_slugs(self, feature_id):
        assert check_feature_id(feature_id) == feature_id

    @pytest.mark.parametrize("feature_id", ["", "../outside", "a/b", ".hidden", "a..b", "with space", None])
    def test_rejects_path_like_ids(self, feature_id):
        with pytest.raises(MalformedInput, match="Invalid feature id"):
            check_feature_id(feature_id)

    def test_document_paths_reject_traversal(self):
        with pytest.raises(MalformedInput):
            feature_document_paths("../../etc")
