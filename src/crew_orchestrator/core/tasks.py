"""Kanban task board operations."""

import json
import re
import sqlite3
from dataclasses import dataclass
from datetime import datetime

from crew_orchestrator.db.models import KanbanTask, TaskColumn, TaskEvent

_NOW = "strftime('%Y-%m-%d %H:%M:%f', 'now')"


@dataclass
class BoardState:
    backlog: int
    in_progress: int
    done: int
    summary: str

    @property
    def total(self) -> int:
        return self.backlog + self.in_progress + self.done

    @property
    def all_done(self) -> bool:
        return self.backlog == 0 and self.in_progress == 0 and self.done > 0


def slugify(title: str) -> str:
    """Convert a title to a URL-friendly slug."""
    slug = title.lower().strip()
    slug = re.sub(r"[^\w\s-]", "", slug)
    slug = re.sub(r"[\s_]+", "-", slug)
    slug = re.sub(r"-+", "-", slug)
    return slug.strip("-")[:60]


def _unique_id(db: sqlite3.Connection, base_slug: str) -> str:
    """Generate a unique task ID from a slug, appending a number if needed."""
    base_slug = base_slug or "task"
    existing = db.execute(
        "SELECT id FROM kanban_tasks WHERE id = ?", (base_slug,)
    ).fetchone()
    if not existing:
        return base_slug

    i = 2
    while True:
        candidate = f"{base_slug}-{i}"
        existing = db.execute(
            "SELECT id FROM kanban_tasks WHERE id = ?", (candidate,)
        ).fetchone()
        if not existing:
            return candidate
        i += 1


def _column(value: str | TaskColumn) -> TaskColumn:
    try:
        return TaskColumn(value)
    except ValueError:
        valid = ", ".join(c.value for c in TaskColumn)
        raise ValueError(f"Invalid column '{value}'. Valid columns: {valid}") from None


def next_position(db: sqlite3.Connection, project_id: str, column: str | TaskColumn) -> int:
    """Position just after the last task in a column."""
    row = db.execute(
        "SELECT MAX(position) AS pos FROM kanban_tasks WHERE project_id = ? AND task_column = ?",
        (project_id, _column(column).value),
    ).fetchone()
    return 0 if row["pos"] is None else row["pos"] + 1


def _make_room(
    db: sqlite3.Connection,
    project_id: str,
    column: TaskColumn,
    position: int,
    exclude_id: str | None = None,
):
    """Shift tasks at or after a position down by one so positions stay unique."""
    taken = db.execute(
        """SELECT id FROM kanban_tasks
           WHERE project_id = ? AND task_column = ? AND position = ? AND id IS NOT ?""",
        (project_id, column.value, position, exclude_id),
    ).fetchone()
    if not taken:
        return
    db.execute(
        """UPDATE kanban_tasks SET position = position + 1
           WHERE project_id = ? AND task_column = ? AND position >= ? AND id IS NOT ?""",
        (project_id, column.value, position, exclude_id),
    )


def create_task(
    db: sqlite3.Connection,
    title: str,
    project_id: str,
    description: str = "",
    created_by: str = "",
    labels: list[str] | None = None,
    blocked_by: list[str] | None = None,
    column: str | TaskColumn = TaskColumn.BACKLOG,
    position: int | None = None,
    assignee_agent_id: str | None = None,
) -> KanbanTask:
    """Create a new task on a project's board."""
    col = _column(column)
    task_id = _unique_id(db, slugify(title))

    if position is None:
        position = next_position(db, project_id, col)
    else:
        _make_room(db, project_id, col, position)

    db.execute(
        """INSERT INTO kanban_tasks
           (id, project_id, title, description, task_column, position,
            assignee_agent_id, created_by, labels)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            task_id,
            project_id,
            title,
            description,
            col.value,
            position,
            assignee_agent_id,
            created_by,
            json.dumps(sorted(set(labels or []))),
        ),
    )

    for dep_id in blocked_by or []:
        if not db.execute("SELECT 1 FROM kanban_tasks WHERE id = ?", (dep_id,)).fetchone():
            db.rollback()
            raise ValueError(f"Blocking task not found: {dep_id}")
        db.execute(
            "INSERT INTO task_dependencies (task_id, depends_on_task_id) VALUES (?, ?)",
            (task_id, dep_id),
        )

    _log_event(db, task_id, "created", None, col.value)
    db.commit()
    return get_task(db, task_id)


def get_task(db: sqlite3.Connection, task_id: str) -> KanbanTask | None:
    """Get a task by ID with its blockers."""
    row = db.execute("SELECT * FROM kanban_tasks WHERE id = ?", (task_id,)).fetchone()
    if not row:
        return None
    task = _row_to_task(row)
    task.blocked_by = _blockers(db, task_id)
    return task


def list_tasks(
    db: sqlite3.Connection,
    project_id: str,
    column: str | TaskColumn | None = None,
) -> list[KanbanTask]:
    """List tasks for a project in board order (column, then position)."""
    query = "SELECT * FROM kanban_tasks WHERE project_id = ?"
    params: list = [project_id]

    if column:
        query += " AND task_column = ?"
        params.append(_column(column).value)

    query += """ ORDER BY CASE task_column
                   WHEN 'backlog' THEN 0 WHEN 'in_progress' THEN 1 ELSE 2 END,
                 position ASC, created_at ASC"""
    rows = db.execute(query, params).fetchall()
    tasks = []
    for row in rows:
        task = _row_to_task(row)
        task.blocked_by = _blockers(db, task.id)
        tasks.append(task)
    return tasks


def update_task(
    db: sqlite3.Connection,
    task_id: str,
    **fields,
) -> KanbanTask | None:
    """Update task fields. Moving columns appends to the end of the target column
    unless a position is given. Returns the updated task, or None if not found."""
    task = get_task(db, task_id)
    if not task:
        return None

    allowed = {
        "title",
        "description",
        "column",
        "position",
        "assignee_agent_id",
        "labels",
        "retry_count",
        "completion_report",
    }
    unknown = set(fields) - allowed
    if unknown:
        raise ValueError(f"Unknown task fields: {', '.join(sorted(unknown))}")

    updates: dict = {}
    new_column = _column(fields["column"]) if fields.get("column") is not None else task.column

    if new_column != task.column:
        updates["task_column"] = new_column.value
        if new_column == TaskColumn.DONE:
            updates["completed_at"] = datetime.now().isoformat(sep=" ", timespec="milliseconds")
        elif task.column == TaskColumn.DONE:
            updates["completed_at"] = None

    position = fields.get("position")
    if position is not None:
        _make_room(db, task.project_id, new_column, position, exclude_id=task_id)
        updates["position"] = position
    elif new_column != task.column:
        updates["position"] = next_position(db, task.project_id, new_column)

    for key in ("title", "description", "retry_count", "completion_report"):
        if key in fields and fields[key] is not None:
            updates[key] = fields[key]

    if "assignee_agent_id" in fields:
        # Empty string clears the assignee
        updates["assignee_agent_id"] = fields["assignee_agent_id"] or None

    if fields.get("labels") is not None:
        updates["labels"] = json.dumps(sorted(set(fields["labels"])))

    if not updates:
        return task

    set_parts = [f"{k} = ?" for k in updates]
    set_parts.append(f"updated_at = {_NOW}")
    db.execute(
        f"UPDATE kanban_tasks SET {', '.join(set_parts)} WHERE id = ?",
        list(updates.values()) + [task_id],
    )

    if "task_column" in updates:
        _log_event(db, task_id, "column_changed", task.column.value, new_column.value)
    if "assignee_agent_id" in updates and updates["assignee_agent_id"] != task.assignee_agent_id:
        _log_event(
            db, task_id, "assignee_changed", task.assignee_agent_id, updates["assignee_agent_id"]
        )
    db.commit()
    return get_task(db, task_id)


def move_task(
    db: sqlite3.Connection,
    task_id: str,
    column: str | TaskColumn,
    position: int | None = None,
) -> KanbanTask | None:
    """Move a task to a column, optionally at a specific position."""
    return update_task(db, task_id, column=column, position=position)


def delete_task(db: sqlite3.Connection, task_id: str) -> bool:
    """Delete a task along with its dependency edges and event history."""
    task = get_task(db, task_id)
    if not task:
        return False

    db.execute(
        "DELETE FROM task_dependencies WHERE task_id = ? OR depends_on_task_id = ?",
        (task_id, task_id),
    )
    db.execute("DELETE FROM task_events WHERE task_id = ?", (task_id,))
    db.execute("DELETE FROM kanban_tasks WHERE id = ?", (task_id,))
    db.commit()
    return True


def add_dependency(
    db: sqlite3.Connection,
    task_id: str,
    depends_on_id: str,
) -> KanbanTask | None:
    """Mark a task as blocked by another task."""
    task = get_task(db, task_id)
    if not task:
        return None
    dep = get_task(db, depends_on_id)
    if not dep:
        raise ValueError(f"Blocking task not found: {depends_on_id}")
    if depends_on_id == task_id:
        raise ValueError("A task cannot block itself")
    if depends_on_id in task.blocked_by:
        return task
    db.execute(
        "INSERT INTO task_dependencies (task_id, depends_on_task_id) VALUES (?, ?)",
        (task_id, depends_on_id),
    )
    _log_event(db, task_id, "dependency_added", None, depends_on_id)
    db.commit()
    return get_task(db, task_id)


def remove_dependency(
    db: sqlite3.Connection,
    task_id: str,
    depends_on_id: str,
) -> KanbanTask | None:
    """Remove a blocker from a task."""
    task = get_task(db, task_id)
    if not task:
        return None
    db.execute(
        "DELETE FROM task_dependencies WHERE task_id = ? AND depends_on_task_id = ?",
        (task_id, depends_on_id),
    )
    _log_event(db, task_id, "dependency_removed", depends_on_id, None)
    db.commit()
    return get_task(db, task_id)


def get_task_events(db: sqlite3.Connection, task_id: str) -> list[TaskEvent]:
    """Get the event history for a task."""
    rows = db.execute(
        "SELECT * FROM task_events WHERE task_id = ? ORDER BY id",
        (task_id,),
    ).fetchall()
    return [
        TaskEvent(
            id=r["id"],
            task_id=r["task_id"],
            event_type=r["event_type"],
            old_value=r["old_value"],
            new_value=r["new_value"],
            created_at=_parse_dt(r["created_at"]),
        )
        for r in rows
    ]


# ── Board queries ────────────────────────────────────────────────────────────


def board_state(db: sqlite3.Connection, project_id: str) -> BoardState:
    """Counts per column plus a one-line summary.

    ``all_done`` holds only when there is at least one task and nothing is
    left in backlog or in progress.
    """
    rows = db.execute(
        """SELECT task_column, COUNT(*) AS n FROM kanban_tasks
           WHERE project_id = ? GROUP BY task_column""",
        (project_id,),
    ).fetchall()
    counts = {r["task_column"]: r["n"] for r in rows}
    backlog = counts.get(TaskColumn.BACKLOG.value, 0)
    in_progress = counts.get(TaskColumn.IN_PROGRESS.value, 0)
    done = counts.get(TaskColumn.DONE.value, 0)

    total = backlog + in_progress + done
    if total == 0:
        summary = "Board is empty."
    else:
        summary = (
            f"{total} task(s): {backlog} in backlog, "
            f"{in_progress} in progress, {done} done."
        )
    return BoardState(backlog=backlog, in_progress=in_progress, done=done, summary=summary)


def get_orphaned_tasks(
    db: sqlite3.Connection,
    project_id: str,
    live_agent_ids: set[str] | list[str],
) -> list[KanbanTask]:
    """In-progress tasks whose assignee is not among the live agents."""
    live = set(live_agent_ids)
    return [
        t
        for t in list_tasks(db, project_id, TaskColumn.IN_PROGRESS)
        if t.assignee_agent_id not in live
    ]


def get_ready_tasks(db: sqlite3.Connection, project_id: str) -> list[KanbanTask]:
    """Backlog tasks whose blockers are all done, lowest position first."""
    ready = []
    for task in list_tasks(db, project_id, TaskColumn.BACKLOG):
        if all(
            (dep := get_task(db, dep_id)) is None or dep.column == TaskColumn.DONE
            for dep_id in task.blocked_by
        ):
            ready.append(task)
    return ready


def get_blocked_tasks(db: sqlite3.Connection, project_id: str) -> list[KanbanTask]:
    """Backlog tasks waiting on at least one unfinished blocker."""
    ready_ids = {t.id for t in get_ready_tasks(db, project_id)}
    return [
        t for t in list_tasks(db, project_id, TaskColumn.BACKLOG) if t.id not in ready_ids
    ]


def find_assigned_task(
    db: sqlite3.Connection,
    project_id: str,
    agent_id: str,
) -> KanbanTask | None:
    """The in-progress task currently assigned to an agent, if any."""
    row = db.execute(
        """SELECT id FROM kanban_tasks
           WHERE project_id = ? AND task_column = 'in_progress' AND assignee_agent_id = ?
           ORDER BY position LIMIT 1""",
        (project_id, agent_id),
    ).fetchone()
    if not row:
        return None
    return get_task(db, row["id"])


def complete_task(
    db: sqlite3.Connection,
    task_id: str,
    report: str | None = None,
) -> KanbanTask | None:
    """Move a task to done and store the completion report."""
    return update_task(db, task_id, column=TaskColumn.DONE, completion_report=report)


def requeue_task(
    db: sqlite3.Connection,
    task_id: str,
    reason: str,
    max_retries: int = 3,
) -> KanbanTask | None:
    """Return a failed task to the backlog with its assignee cleared.

    Each requeue counts as one retry. Once the retry budget is spent the
    task is forced to done with a FAILED completion report instead.
    """
    task = get_task(db, task_id)
    if not task:
        return None

    retry_count = task.retry_count + 1
    if retry_count >= max_retries:
        return update_task(
            db,
            task_id,
            column=TaskColumn.DONE,
            assignee_agent_id="",
            retry_count=retry_count,
            completion_report=f"FAILED after {retry_count} attempt(s): {reason}",
        )

    description = (
        f"PREVIOUS ATTEMPT FAILED (attempt {retry_count}): {reason}\n\n{task.description}"
    ).strip()
    return update_task(
        db,
        task_id,
        column=TaskColumn.BACKLOG,
        assignee_agent_id="",
        retry_count=retry_count,
        description=description,
    )


def format_task_line(task: KanbanTask) -> str:
    """One-line human readable rendering used in prompts and the CLI."""
    parts = [f"[{task.column.value}] {task.id}: {task.title}"]
    if task.assignee_agent_id:
        parts.append(f"(assignee: {task.assignee_agent_id})")
    if task.blocked_by:
        parts.append(f"(blocked by: {', '.join(task.blocked_by)})")
    if task.retry_count:
        parts.append(f"(retries: {task.retry_count})")
    return " ".join(parts)


# ── Internals ────────────────────────────────────────────────────────────────


def _blockers(db: sqlite3.Connection, task_id: str) -> list[str]:
    rows = db.execute(
        "SELECT depends_on_task_id FROM task_dependencies WHERE task_id = ?",
        (task_id,),
    ).fetchall()
    return [r["depends_on_task_id"] for r in rows]


def _log_event(
    db: sqlite3.Connection,
    task_id: str,
    event_type: str,
    old_value: str | None,
    new_value: str | None,
):
    db.execute(
        "INSERT INTO task_events (task_id, event_type, old_value, new_value) VALUES (?, ?, ?, ?)",
        (task_id, event_type, old_value, new_value),
    )


def _row_to_task(row: sqlite3.Row) -> KanbanTask:
    return KanbanTask(
        id=row["id"],
        project_id=row["project_id"],
        title=row["title"],
        description=row["description"] or "",
        column=TaskColumn(row["task_column"]),
        position=row["position"] if row["position"] is not None else 0,
        assignee_agent_id=row["assignee_agent_id"],
        created_by=row["created_by"] or "",
        labels=json.loads(row["labels"] or "[]"),
        retry_count=row["retry_count"] or 0,
        completion_report=row["completion_report"],
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
        completed_at=_parse_dt(row["completed_at"]),
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
