"""Project management operations."""

import sqlite3
from datetime import datetime

from crew_orchestrator.core.tasks import slugify
from crew_orchestrator.db.models import Project

PROJECT_STATUSES = ("active", "completed", "deleted")


def _unique_project_id(db: sqlite3.Connection, base_slug: str) -> str:
    base_slug = base_slug or "project"
    candidate = base_slug
    i = 2
    while db.execute("SELECT 1 FROM projects WHERE id = ?", (candidate,)).fetchone():
        candidate = f"{base_slug}-{i}"
        i += 1
    return candidate


def create_project(
    db: sqlite3.Connection,
    name: str,
    description: str = "",
    charter: str = "",
    project_id: str | None = None,
) -> Project:
    """Create a new project. The id is derived from the name unless given."""
    if project_id is None:
        project_id = _unique_project_id(db, slugify(name))
    db.execute(
        """INSERT INTO projects (id, name, description, charter)
           VALUES (?, ?, ?, ?)""",
        (project_id, name, description, charter),
    )
    db.commit()
    return get_project(db, project_id)


def get_project(db: sqlite3.Connection, project_id: str) -> Project | None:
    """Get a project by ID."""
    row = db.execute("SELECT * FROM projects WHERE id = ?", (project_id,)).fetchone()
    if not row:
        return None
    return _row_to_project(row)


def list_projects(db: sqlite3.Connection, status: str | None = None) -> list[Project]:
    """List projects, newest first, optionally filtered by status."""
    if status:
        rows = db.execute(
            "SELECT * FROM projects WHERE status = ? ORDER BY created_at DESC", (status,)
        ).fetchall()
    else:
        rows = db.execute("SELECT * FROM projects ORDER BY created_at DESC").fetchall()
    return [_row_to_project(r) for r in rows]


def update_project(
    db: sqlite3.Connection,
    project_id: str,
    **kwargs,
) -> Project | None:
    """Update project fields."""
    allowed = {"name", "description", "charter", "status"}
    updates = {k: v for k, v in kwargs.items() if k in allowed and v is not None}
    if "status" in updates and updates["status"] not in PROJECT_STATUSES:
        raise ValueError(f"Invalid project status: {updates['status']}")
    if not updates:
        return get_project(db, project_id)

    set_clause = ", ".join(f"{k} = ?" for k in updates)
    values = list(updates.values()) + [project_id]
    db.execute(
        f"UPDATE projects SET {set_clause}, updated_at = strftime('%Y-%m-%d %H:%M:%f', 'now') WHERE id = ?",
        values,
    )
    db.commit()
    return get_project(db, project_id)


def delete_project(db: sqlite3.Connection, project_id: str) -> bool:
    """Soft-delete a project. Its tasks and message history are kept."""
    project = get_project(db, project_id)
    if not project or project.status == "deleted":
        return False
    update_project(db, project_id, status="deleted")
    return True


def _row_to_project(row: sqlite3.Row) -> Project:
    return Project(
        id=row["id"],
        name=row["name"],
        description=row["description"] or "",
        charter=row["charter"] or "",
        status=row["status"],
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
