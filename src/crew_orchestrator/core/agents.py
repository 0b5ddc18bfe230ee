"""Agent record persistence."""

import sqlite3
from datetime import datetime

from crew_orchestrator.db.models import Agent, AgentRole, AgentStatus

_NOW = "strftime('%Y-%m-%d %H:%M:%f', 'now')"


def save_agent(db: sqlite3.Connection, agent: Agent) -> Agent:
    """Insert an agent record, or refresh the mutable fields if it exists."""
    db.execute(
        f"""INSERT INTO agents
           (id, role, parent_id, project_id, status, registry_entry_id,
            model, provider, system_prompt, workspace_path)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
           ON CONFLICT(id) DO UPDATE SET
             status = excluded.status,
             model = excluded.model,
             provider = excluded.provider,
             system_prompt = excluded.system_prompt,
             workspace_path = excluded.workspace_path,
             updated_at = {_NOW}""",
        (
            agent.id,
            AgentRole(agent.role).value,
            agent.parent_id,
            agent.project_id,
            AgentStatus(agent.status).value,
            agent.registry_entry_id,
            agent.model,
            agent.provider,
            agent.system_prompt,
            agent.workspace_path,
        ),
    )
    db.commit()
    return get_agent(db, agent.id)


def get_agent(db: sqlite3.Connection, agent_id: str) -> Agent | None:
    row = db.execute("SELECT * FROM agents WHERE id = ?", (agent_id,)).fetchone()
    if not row:
        return None
    return _row_to_agent(row)


def update_agent_status(
    db: sqlite3.Connection,
    agent_id: str,
    status: AgentStatus | str,
) -> Agent | None:
    """Record a status transition for an agent."""
    db.execute(
        f"UPDATE agents SET status = ?, updated_at = {_NOW} WHERE id = ?",
        (AgentStatus(status).value, agent_id),
    )
    db.commit()
    return get_agent(db, agent_id)


def list_agents(
    db: sqlite3.Connection,
    project_id: str | None = None,
    role: AgentRole | str | None = None,
    include_done: bool = True,
) -> list[Agent]:
    """List agents, optionally filtered by project and role."""
    query = "SELECT * FROM agents WHERE 1=1"
    params: list = []
    if project_id is not None:
        query += " AND project_id = ?"
        params.append(project_id)
    if role is not None:
        query += " AND role = ?"
        params.append(AgentRole(role).value)
    if not include_done:
        query += " AND status != 'done'"
    query += " ORDER BY created_at, rowid"
    rows = db.execute(query, params).fetchall()
    return [_row_to_agent(r) for r in rows]


def mark_stale_agents_done(db: sqlite3.Connection) -> int:
    """Mark agents left running by a previous process as done.

    Live agents exist only in memory, so any non-done row at startup
    belongs to a process that is gone.
    """
    result = db.execute(
        f"UPDATE agents SET status = 'done', updated_at = {_NOW} WHERE status != 'done'"
    )
    db.commit()
    return result.rowcount


def _row_to_agent(row: sqlite3.Row) -> Agent:
    return Agent(
        id=row["id"],
        role=AgentRole(row["role"]),
        parent_id=row["parent_id"],
        project_id=row["project_id"],
        status=AgentStatus(row["status"]),
        registry_entry_id=row["registry_entry_id"],
        model=row["model"] or "",
        provider=row["provider"] or "",
        system_prompt=row["system_prompt"] or "",
        workspace_path=row["workspace_path"],
        created_at=_parse_dt(row["created_at"]),
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
