"""Tests for the kanban task board."""

import pytest

from crew_orchestrator.core import projects as projects_mod
from crew_orchestrator.core import tasks as tasks_mod
from crew_orchestrator.db.models import TaskColumn


class TestSlugify:
    def test_basic(self):
        assert tasks_mod.slugify("Hello World") == "hello-world"

    def test_special_chars(self):
        assert tasks_mod.slugify("Auth: Login & Signup!") == "auth-login-signup"

    def test_multiple_spaces(self):
        assert tasks_mod.slugify("  too   many   spaces  ") == "too-many-spaces"

    def test_truncation(self):
        assert len(tasks_mod.slugify("a" * 100)) <= 60


class TestTaskCRUD:
    def test_create_task(self, db):
        task = tasks_mod.create_task(db, "Build login page", "demo", created_by="team-lead-1")
        assert task.id == "build-login-page"
        assert task.column == TaskColumn.BACKLOG
        assert task.position == 0
        assert task.created_by == "team-lead-1"
        assert task.assignee_agent_id is None

    def test_create_duplicate_gets_suffix(self, db):
        t1 = tasks_mod.create_task(db, "Build login page", "demo")
        t2 = tasks_mod.create_task(db, "Build login page", "demo")
        assert t1.id == "build-login-page"
        assert t2.id == "build-login-page-2"

    def test_positions_append(self, db):
        tasks_mod.create_task(db, "First", "demo")
        second = tasks_mod.create_task(db, "Second", "demo")
        assert second.position == 1

    def test_insert_at_position_shifts_others(self, db):
        tasks_mod.create_task(db, "First", "demo")
        tasks_mod.create_task(db, "Second", "demo")
        tasks_mod.create_task(db, "Urgent", "demo", position=0)
        ids = [t.id for t in tasks_mod.list_tasks(db, "demo", TaskColumn.BACKLOG)]
        assert ids == ["urgent", "first", "second"]

    def test_labels_are_deduplicated(self, db):
        task = tasks_mod.create_task(db, "Check", "demo", labels=["qa", "verification", "qa"])
        assert task.labels == ["qa", "verification"]

    def test_unknown_blocker_rejected(self, db):
        with pytest.raises(ValueError, match="Blocking task not found"):
            tasks_mod.create_task(db, "Blocked", "demo", blocked_by=["missing"])
        assert tasks_mod.get_task(db, "blocked") is None

    def test_invalid_column_rejected(self, db):
        with pytest.raises(ValueError, match="Invalid column"):
            tasks_mod.create_task(db, "Odd", "demo", column="review")

    def test_list_tasks_board_order(self, db):
        tasks_mod.create_task(db, "A", "demo")
        tasks_mod.create_task(db, "B", "demo")
        tasks_mod.move_task(db, "a", TaskColumn.DONE)
        assert [t.id for t in tasks_mod.list_tasks(db, "demo")] == ["b", "a"]

    def test_delete_task(self, db):
        tasks_mod.create_task(db, "Base", "demo")
        tasks_mod.create_task(db, "Temp", "demo", blocked_by=["base"])
        assert tasks_mod.delete_task(db, "base") is True
        assert tasks_mod.get_task(db, "base") is None
        assert tasks_mod.get_task(db, "temp").blocked_by == []

    def test_delete_nonexistent(self, db):
        assert tasks_mod.delete_task(db, "nope") is False


class TestUpdateTask:
    def test_move_sets_completed_at(self, db):
        tasks_mod.create_task(db, "Ship", "demo")
        task = tasks_mod.move_task(db, "ship", TaskColumn.DONE)
        assert task.column == TaskColumn.DONE
        assert task.completed_at is not None

    def test_move_out_of_done_clears_completed_at(self, db):
        tasks_mod.create_task(db, "Ship", "demo")
        tasks_mod.move_task(db, "ship", TaskColumn.DONE)
        task = tasks_mod.move_task(db, "ship", TaskColumn.BACKLOG)
        assert task.completed_at is None

    def test_empty_assignee_clears(self, db):
        tasks_mod.create_task(db, "Work", "demo", assignee_agent_id="worker-1")
        task = tasks_mod.update_task(db, "work", assignee_agent_id="")
        assert task.assignee_agent_id is None

    def test_unknown_field_rejected(self, db):
        tasks_mod.create_task(db, "Work", "demo")
        with pytest.raises(ValueError, match="Unknown task fields"):
            tasks_mod.update_task(db, "work", priority=1)

    def test_update_missing_returns_none(self, db):
        assert tasks_mod.update_task(db, "missing", title="x") is None

    def test_events_logged(self, db):
        tasks_mod.create_task(db, "Work", "demo")
        tasks_mod.update_task(db, "work", column=TaskColumn.IN_PROGRESS, assignee_agent_id="worker-1")
        types = [e.event_type for e in tasks_mod.get_task_events(db, "work")]
        assert types == ["created", "column_changed", "assignee_changed"]


class TestDependencies:
    def test_add_and_remove(self, db):
        tasks_mod.create_task(db, "Schema", "demo")
        tasks_mod.create_task(db, "API", "demo")
        task = tasks_mod.add_dependency(db, "api", "schema")
        assert task.blocked_by == ["schema"]
        task = tasks_mod.remove_dependency(db, "api", "schema")
        assert task.blocked_by == []

    def test_self_dependency_rejected(self, db):
        tasks_mod.create_task(db, "Loop", "demo")
        with pytest.raises(ValueError, match="cannot block itself"):
            tasks_mod.add_dependency(db, "loop", "loop")

    def test_ready_and_blocked(self, db):
        tasks_mod.create_task(db, "Schema", "demo")
        tasks_mod.create_task(db, "API", "demo", blocked_by=["schema"])
        assert [t.id for t in tasks_mod.get_ready_tasks(db, "demo")] == ["schema"]
        assert [t.id for t in tasks_mod.get_blocked_tasks(db, "demo")] == ["api"]

        tasks_mod.complete_task(db, "schema", "done")
        assert [t.id for t in tasks_mod.get_ready_tasks(db, "demo")] == ["api"]
        assert tasks_mod.get_blocked_tasks(db, "demo") == []


class TestBoardState:
    def test_empty_board_is_not_all_done(self, db):
        state = tasks_mod.board_state(db, "demo")
        assert state.total == 0
        assert state.all_done is False
        assert state.summary == "Board is empty."

    def test_counts(self, db):
        tasks_mod.create_task(db, "A", "demo")
        tasks_mod.create_task(db, "B", "demo", column=TaskColumn.IN_PROGRESS)
        tasks_mod.create_task(db, "C", "demo", column=TaskColumn.DONE)
        state = tasks_mod.board_state(db, "demo")
        assert (state.backlog, state.in_progress, state.done) == (1, 1, 1)
        assert state.all_done is False
        assert "3 task(s)" in state.summary

    def test_all_done(self, db):
        tasks_mod.create_task(db, "A", "demo", column=TaskColumn.DONE)
        assert tasks_mod.board_state(db, "demo").all_done is True

    def test_scoped_to_project(self, db):
        projects_mod.create_project(db, "Other", project_id="other")
        tasks_mod.create_task(db, "Elsewhere", "other")
        assert tasks_mod.board_state(db, "demo").total == 0


class TestAssignments:
    def test_orphaned_tasks(self, db):
        tasks_mod.create_task(db, "Live", "demo", column=TaskColumn.IN_PROGRESS, assignee_agent_id="w1")
        tasks_mod.create_task(db, "Lost", "demo", column=TaskColumn.IN_PROGRESS, assignee_agent_id="w2")
        tasks_mod.create_task(db, "Nobody", "demo", column=TaskColumn.IN_PROGRESS)
        orphans = tasks_mod.get_orphaned_tasks(db, "demo", {"w1"})
        assert sorted(t.id for t in orphans) == ["lost", "nobody"]

    def test_find_assigned_task(self, db):
        tasks_mod.create_task(db, "Work", "demo", column=TaskColumn.IN_PROGRESS, assignee_agent_id="w1")
        assert tasks_mod.find_assigned_task(db, "demo", "w1").id == "work"
        assert tasks_mod.find_assigned_task(db, "demo", "w2") is None

    def test_complete_stores_report(self, db):
        tasks_mod.create_task(db, "Work", "demo")
        task = tasks_mod.complete_task(db, "work", "All good")
        assert task.column == TaskColumn.DONE
        assert task.completion_report == "All good"


class TestRequeue:
    def test_requeue_returns_to_backlog(self, db):
        tasks_mod.create_task(
            db, "Work", "demo", description="Do it",
            column=TaskColumn.IN_PROGRESS, assignee_agent_id="w1",
        )
        task = tasks_mod.requeue_task(db, "work", "tests failed")
        assert task.column == TaskColumn.BACKLOG
        assert task.assignee_agent_id is None
        assert task.retry_count == 1
        assert task.description.startswith("PREVIOUS ATTEMPT FAILED (attempt 1): tests failed")
        assert task.description.endswith("Do it")

    def test_retries_exhausted_closes_as_failed(self, db):
        tasks_mod.create_task(db, "Work", "demo", column=TaskColumn.IN_PROGRESS)
        tasks_mod.requeue_task(db, "work", "one", max_retries=3)
        tasks_mod.requeue_task(db, "work", "two", max_retries=3)
        task = tasks_mod.requeue_task(db, "work", "three", max_retries=3)
        assert task.column == TaskColumn.DONE
        assert task.retry_count == 3
        assert task.completion_report.startswith("FAILED after 3 attempt(s)")

    def test_requeue_missing(self, db):
        assert tasks_mod.requeue_task(db, "missing", "x") is None


class TestFormatting:
    def test_format_task_line(self, db):
        tasks_mod.create_task(db, "Schema", "demo")
        task = tasks_mod.create_task(
            db, "API", "demo", blocked_by=["schema"],
            column=TaskColumn.IN_PROGRESS, assignee_agent_id="w1",
        )
        line = tasks_mod.format_task_line(task)
        assert line == "[in_progress] api: API (assignee: w1) (blocked by: schema)"
