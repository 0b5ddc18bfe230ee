"""Worker template registry."""

import json
import sqlite3
import uuid
from datetime import datetime

from crew_orchestrator.db.models import AgentRole, RegistryEntry

DEFAULT_WORKER_TOOLS = ["read_file", "write_file", "list_files", "run_command"]

BUILTIN_ENTRIES = [
    RegistryEntry(
        id="builtin-coder",
        name="Coder",
        description="Writes and edits source code inside an isolated git worktree.",
        system_prompt=(
            "You are a Coder worker. You receive one focused coding task. "
            "Work only inside your workspace directory. Write complete, working code, "
            "run it where possible, and finish with a short summary of what you changed. "
            "If you cannot complete the task, say so clearly and explain why."
        ),
        capabilities=["code", "typescript", "python", "javascript", "refactoring"],
        tools=DEFAULT_WORKER_TOOLS,
        built_in=True,
    ),
    RegistryEntry(
        id="builtin-researcher",
        name="Researcher",
        description="Investigates a question and writes findings to the workspace.",
        system_prompt=(
            "You are a Researcher worker. Investigate the question you are given, "
            "write your findings to a markdown file in your workspace and summarise "
            "them in your final answer."
        ),
        capabilities=["research", "analysis", "documentation"],
        tools=["read_file", "write_file", "list_files"],
        built_in=True,
    ),
    RegistryEntry(
        id="builtin-tester",
        name="Tester",
        description="Builds and tests the merged project and reports failures.",
        system_prompt=(
            "You are a Tester worker. You work against the merged main repository. "
            "Install dependencies, build the project and run its tests. Report exactly "
            "what passed and what failed. Start your answer with 'VERIFICATION PASSED' "
            "or 'VERIFICATION FAILED:' followed by the reason."
        ),
        capabilities=["testing", "qa", "verification"],
        tools=DEFAULT_WORKER_TOOLS,
        built_in=True,
    ),
    RegistryEntry(
        id="builtin-deployer",
        name="Deployer",
        description="Starts the application as a background process and checks it responds.",
        system_prompt=(
            "You are a Deployer worker. Start the application in the main repository as a "
            "persistent background process (for example with nohup) and confirm it is "
            "reachable. Report the command used, the process id and the address. Start "
            "your answer with 'DEPLOYMENT SUCCEEDED' or 'DEPLOYMENT FAILED:' followed by the "
            "reason."
        ),
        capabilities=["deployment", "devops", "operations"],
        tools=DEFAULT_WORKER_TOOLS,
        built_in=True,
    ),
]


def seed_builtin_entries(db: sqlite3.Connection) -> int:
    """Insert the built-in templates that are missing. Returns the number added."""
    added = 0
    for entry in BUILTIN_ENTRIES:
        if get_entry(db, entry.id):
            continue
        _insert(db, entry)
        added += 1
    db.commit()
    return added


def create_entry(
    db: sqlite3.Connection,
    name: str,
    description: str,
    system_prompt: str,
    capabilities: list[str],
    tools: list[str] | None = None,
    default_model: str | None = None,
    default_provider: str | None = None,
) -> RegistryEntry:
    """Register a custom worker template."""
    entry = RegistryEntry(
        id=uuid.uuid4().hex[:12],
        name=name,
        description=description,
        system_prompt=system_prompt,
        capabilities=capabilities,
        tools=tools if tools is not None else list(DEFAULT_WORKER_TOOLS),
        default_model=default_model,
        default_provider=default_provider,
    )
    _insert(db, entry)
    db.commit()
    return get_entry(db, entry.id)


def get_entry(db: sqlite3.Connection, entry_id: str) -> RegistryEntry | None:
    row = db.execute("SELECT * FROM registry_entries WHERE id = ?", (entry_id,)).fetchone()
    if not row:
        return None
    return _row_to_entry(row)


def list_entries(db: sqlite3.Connection, role: AgentRole | str | None = None) -> list[RegistryEntry]:
    if role is None:
        rows = db.execute("SELECT * FROM registry_entries ORDER BY built_in DESC, name").fetchall()
    else:
        rows = db.execute(
            "SELECT * FROM registry_entries WHERE role = ? ORDER BY built_in DESC, name",
            (AgentRole(role).value,),
        ).fetchall()
    return [_row_to_entry(r) for r in rows]


def search_entries(db: sqlite3.Connection, capability: str) -> list[RegistryEntry]:
    """Worker templates with a capability containing the search string."""
    needle = capability.lower().strip()
    return [
        e
        for e in list_entries(db, AgentRole.WORKER)
        if any(needle in c.lower() for c in e.capabilities)
    ]


def delete_entry(db: sqlite3.Connection, entry_id: str) -> bool:
    """Delete a custom template. Built-in templates cannot be deleted."""
    entry = get_entry(db, entry_id)
    if not entry or entry.built_in:
        return False
    db.execute("DELETE FROM registry_entries WHERE id = ?", (entry_id,))
    db.commit()
    return True


def _insert(db: sqlite3.Connection, entry: RegistryEntry):
    db.execute(
        """INSERT INTO registry_entries
           (id, name, description, system_prompt, capabilities, tools, role,
            default_model, default_provider, built_in)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            entry.id,
            entry.name,
            entry.description,
            entry.system_prompt,
            json.dumps(entry.capabilities),
            json.dumps(entry.tools),
            AgentRole(entry.role).value,
            entry.default_model,
            entry.default_provider,
            1 if entry.built_in else 0,
        ),
    )


def _row_to_entry(row: sqlite3.Row) -> RegistryEntry:
    return RegistryEntry(
        id=row["id"],
        name=row["name"],
        description=row["description"] or "",
        system_prompt=row["system_prompt"] or "",
        capabilities=json.loads(row["capabilities"] or "[]"),
        tools=json.loads(row["tools"] or "[]"),
        role=AgentRole(row["role"]),
        default_model=row["default_model"],
        default_provider=row["default_provider"],
        built_in=bool(row["built_in"]),
        created_at=_parse_dt(row["created_at"]),
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
