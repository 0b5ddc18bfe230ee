"""CLI entry point for the crew orchestrator."""

import asyncio
import json
import logging
import sys

import click

from crew_orchestrator.bus.message_bus import MessageBus
from crew_orchestrator.config import get_config
from crew_orchestrator.core import agents as agents_mod
from crew_orchestrator.core import projects as projects_mod
from crew_orchestrator.core import registry as registry_mod
from crew_orchestrator.core import tasks as tasks_mod
from crew_orchestrator.core import worktrees as worktrees_mod
from crew_orchestrator.db.engine import get_db
from crew_orchestrator.db.models import TaskColumn

COLUMN_CHOICES = click.Choice([c.value for c in TaskColumn])
COLUMN_ICONS = {
    TaskColumn.BACKLOG: "○",
    TaskColumn.IN_PROGRESS: "●",
    TaskColumn.DONE: "✓",
}


def _get_db():
    config = get_config()
    return get_db(config.db_path)


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def main(verbose):
    """crew - autonomous agent team orchestrator"""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# ── Project Commands ──────────────────────────────────────────────────────────


@main.group("project")
def project_group():
    """Manage projects."""
    pass


@project_group.command("create")
@click.argument("name")
@click.option("--description", "-d", default="", help="Project description")
@click.option("--charter", default="", help="Goals, scope and constraints")
def project_create(name, description, charter):
    """Create a new project."""
    with _get_db() as db:
        project = projects_mod.create_project(db, name, description=description, charter=charter)
        click.echo(f"Project created: {project.id} ({project.name})")


@project_group.command("list")
@click.option("--status", default=None, type=click.Choice(projects_mod.PROJECT_STATUSES))
def project_list(status):
    """List projects."""
    with _get_db() as db:
        projects = projects_mod.list_projects(db, status=status)
        if not projects:
            click.echo("No projects found.")
            return
        for p in projects:
            click.echo(f"  {p.id}: {p.name} ({p.status})")


@project_group.command("show")
@click.argument("project_id")
def project_show(project_id):
    """Show a project with its board summary and agents."""
    with _get_db() as db:
        project = projects_mod.get_project(db, project_id)
        if not project:
            click.echo(f"Project not found: {project_id}", err=True)
            sys.exit(1)
        click.echo(f"Project: {project.id}")
        click.echo(f"  Name: {project.name}")
        click.echo(f"  Status: {project.status}")
        if project.description:
            click.echo(f"  Description: {project.description}")
        if project.charter:
            click.echo(f"  Charter: {project.charter}")
        click.echo(f"  Board: {tasks_mod.board_state(db, project_id).summary}")
        agents = agents_mod.list_agents(db, project_id=project_id)
        if agents:
            click.echo("  Agents:")
            for a in agents:
                click.echo(f"    - {a.role.value} {a.id} [{a.status.value}]")


@project_group.command("charter")
@click.argument("project_id")
@click.argument("charter")
def project_charter(project_id, charter):
    """Replace a project's charter."""
    with _get_db() as db:
        project = projects_mod.update_project(db, project_id, charter=charter)
        if not project:
            click.echo(f"Project not found: {project_id}", err=True)
            sys.exit(1)
        click.echo(f"Updated charter of {project_id}")


@project_group.command("delete")
@click.argument("project_id")
def project_delete(project_id):
    """Delete a project (its history is kept)."""
    with _get_db() as db:
        if not projects_mod.delete_project(db, project_id):
            click.echo(f"Project not found: {project_id}", err=True)
            sys.exit(1)
        click.echo(f"Deleted project: {project_id}")


# ── Task Commands ─────────────────────────────────────────────────────────────


@main.group("task")
def task_group():
    """Manage kanban tasks."""
    pass


@task_group.command("add")
@click.argument("project_id")
@click.argument("title")
@click.option("--description", "-d", default="", help="Task description")
@click.option("--blocked-by", default=None, help="Comma-separated task IDs that must finish first")
@click.option("--label", "labels", multiple=True, help="Label (repeatable)")
def task_add(project_id, title, description, blocked_by, labels):
    """Create a task in a project's backlog."""
    blockers = [b.strip() for b in blocked_by.split(",")] if blocked_by else None
    with _get_db() as db:
        if not projects_mod.get_project(db, project_id):
            click.echo(f"Project not found: {project_id}", err=True)
            sys.exit(1)
        try:
            task = tasks_mod.create_task(
                db,
                title,
                project_id,
                description=description,
                created_by="cli",
                labels=list(labels),
                blocked_by=blockers,
            )
        except ValueError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)
        click.echo(f"Created task: {task.id}")
        click.echo(f"  Title: {task.title}")
        click.echo(f"  Column: {task.column.value}")
        if task.blocked_by:
            click.echo(f"  Blocked by: {', '.join(task.blocked_by)}")


@task_group.command("list")
@click.argument("project_id")
@click.option("--column", default=None, type=COLUMN_CHOICES, help="Filter by column")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def task_list(project_id, column, json_output):
    """List tasks in board order."""
    with _get_db() as db:
        tasks = tasks_mod.list_tasks(db, project_id, column=column)

        if json_output:
            click.echo(json.dumps([_task_dict(t) for t in tasks], indent=2))
            return

        if not tasks:
            click.echo("No tasks found.")
            return

        for task in tasks:
            icon = COLUMN_ICONS.get(task.column, "?")
            click.echo(f"  {icon} {tasks_mod.format_task_line(task)}")


@task_group.command("board")
@click.argument("project_id")
def task_board(project_id):
    """Show the board grouped by column."""
    with _get_db() as db:
        state = tasks_mod.board_state(db, project_id)
        click.echo(state.summary)
        for column in TaskColumn:
            tasks = tasks_mod.list_tasks(db, project_id, column=column)
            click.echo(f"\n{column.value} ({len(tasks)})")
            for task in tasks:
                assignee = f" <- {task.assignee_agent_id}" if task.assignee_agent_id else ""
                click.echo(f"  {task.id}: {task.title}{assignee}")
        if state.all_done:
            click.echo("\nAll tasks done.")


@task_group.command("show")
@click.argument("task_id")
def task_show(task_id):
    """Show task details."""
    with _get_db() as db:
        task = tasks_mod.get_task(db, task_id)
        if not task:
            click.echo(f"Task not found: {task_id}", err=True)
            sys.exit(1)

        click.echo(f"Task: {task.id}")
        click.echo(f"  Title: {task.title}")
        click.echo(f"  Column: {task.column.value}")
        click.echo(f"  Project: {task.project_id}")
        if task.description:
            click.echo(f"  Description: {task.description}")
        if task.assignee_agent_id:
            click.echo(f"  Assignee: {task.assignee_agent_id}")
        if task.labels:
            click.echo(f"  Labels: {', '.join(task.labels)}")
        if task.blocked_by:
            click.echo(f"  Blocked by: {', '.join(task.blocked_by)}")
        if task.retry_count:
            click.echo(f"  Retries: {task.retry_count}")
        if task.completion_report:
            click.echo(f"  Report: {task.completion_report}")

        events = tasks_mod.get_task_events(db, task_id)
        if events:
            click.echo("  History:")
            for e in events:
                click.echo(f"    [{e.created_at}] {e.event_type}: {e.old_value} -> {e.new_value}")


@task_group.command("move")
@click.argument("task_id")
@click.argument("column", type=COLUMN_CHOICES)
@click.option("--position", type=int, default=None, help="Position within the column")
def task_move(task_id, column, position):
    """Move a task to another column."""
    with _get_db() as db:
        task = tasks_mod.move_task(db, task_id, column, position=position)
        if not task:
            click.echo(f"Task not found: {task_id}", err=True)
            sys.exit(1)
        click.echo(f"Moved {task_id} to {task.column.value} (position {task.position})")


@task_group.command("delete")
@click.argument("task_id")
def task_delete(task_id):
    """Delete a task."""
    with _get_db() as db:
        if not tasks_mod.delete_task(db, task_id):
            click.echo(f"Task not found: {task_id}", err=True)
            sys.exit(1)
        click.echo(f"Deleted task: {task_id}")


@task_group.command("add-dep")
@click.argument("task_id")
@click.argument("blocker_id")
def task_add_dep(task_id, blocker_id):
    """Block a task on another task."""
    with _get_db() as db:
        try:
            task = tasks_mod.add_dependency(db, task_id, blocker_id)
        except ValueError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)
        if not task:
            click.echo(f"Task not found: {task_id}", err=True)
            sys.exit(1)
        click.echo(f"{task_id} is now blocked by {', '.join(task.blocked_by)}")


@task_group.command("remove-dep")
@click.argument("task_id")
@click.argument("blocker_id")
def task_remove_dep(task_id, blocker_id):
    """Remove a blocker from a task."""
    with _get_db() as db:
        task = tasks_mod.remove_dependency(db, task_id, blocker_id)
        if not task:
            click.echo(f"Task not found: {task_id}", err=True)
            sys.exit(1)
        click.echo(f"{task_id} no longer blocked by {blocker_id}")


# ── Registry Commands ────────────────────────────────────────────────────────


@main.group("registry")
def registry_group():
    """Inspect worker templates."""
    pass


@registry_group.command("list")
def registry_list():
    """List worker templates."""
    with _get_db() as db:
        registry_mod.seed_builtin_entries(db)
        for e in registry_mod.list_entries(db):
            click.echo(f"  {e.id}: {e.name} [{', '.join(e.capabilities)}]")


@registry_group.command("search")
@click.argument("capability")
def registry_search(capability):
    """Find worker templates by capability."""
    with _get_db() as db:
        registry_mod.seed_builtin_entries(db)
        entries = registry_mod.search_entries(db, capability)
        if not entries:
            click.echo(f"No templates match '{capability}'.")
            return
        for e in entries:
            click.echo(f"  {e.id}: {e.name} - {e.description}")


# ── History Commands ─────────────────────────────────────────────────────────


@main.command("messages")
@click.option("--project", "project_id", default=None, help="Project ID")
@click.option("--agent", "agent_id", default=None, help="Agent ID (sender or recipient)")
@click.option("--conversation", "conversation_id", default=None, help="Conversation ID")
@click.option("--limit", "-n", default=20, type=int, help="Most recent N messages")
def messages_cmd(project_id, agent_id, conversation_id, limit):
    """Show bus message history."""
    with _get_db() as db:
        messages = MessageBus(db).get_history(
            project_id=project_id,
            agent_id=agent_id,
            conversation_id=conversation_id,
            limit=limit,
        )
        if not messages:
            click.echo("No messages.")
            return
        for m in messages:
            sender = m.from_agent_id or "user"
            target = m.to_agent_id or "all"
            click.echo(f"  [{m.timestamp:%H:%M:%S}] {m.type.value} {sender} -> {target}: {m.content}")


@main.command("agents")
@click.option("--project", "project_id", default=None, help="Project ID")
@click.option("--active", is_flag=True, help="Hide agents that are done")
def agents_cmd(project_id, active):
    """List agents."""
    with _get_db() as db:
        agents = agents_mod.list_agents(db, project_id=project_id, include_done=not active)
        if not agents:
            click.echo("No agents.")
            return
        for a in agents:
            parent = f" (parent {a.parent_id})" if a.parent_id else ""
            click.echo(f"  [{a.status.value}] {a.role.value} {a.id}{parent}")


# ── Worktree Commands ────────────────────────────────────────────────────────


@main.group("worktree")
def worktree_group():
    """Inspect worker worktrees."""
    pass


@worktree_group.command("list")
@click.argument("project_id")
@click.option("--status", default=None, help="active, merged, conflict or abandoned")
def worktree_list(project_id, status):
    """List worktree records for a project."""
    with _get_db() as db:
        records = worktrees_mod.list_worktree_records(db, project_id, status=status)
        if not records:
            click.echo("No worktrees found.")
            return
        for w in records:
            click.echo(f"  [{w.status.value}] {w.branch_name} at {w.worktree_path}")


# ── Runtime Commands ─────────────────────────────────────────────────────────


@main.command("chat")
@click.argument("message")
@click.option("--conversation", "conversation_id", default=None, help="Continue a conversation")
def chat_cmd(message, conversation_id):
    """Send a message to the COO and wait for the team to finish."""
    from crew_orchestrator.agents.llm import load_llm_client
    from crew_orchestrator.runtime import Orchestrator

    config = get_config()
    if not config.llm_client:
        click.echo("Set CREW_LLM_CLIENT to 'module:factory' to chat with the COO.", err=True)
        sys.exit(1)

    async def run():
        orchestrator = Orchestrator(config, load_llm_client(config.llm_client))
        try:
            return await orchestrator.ask(message, conversation_id)
        finally:
            orchestrator.shutdown()
            orchestrator.db.close()

    click.echo(asyncio.run(run()))


@main.command("serve")
@click.option("--host", default=None, help="Host to bind to")
@click.option("--port", default=None, type=int, help="Port to listen on")
def serve_command(host, port):
    """Serve the JSON API."""
    from crew_orchestrator.web.app import run_server

    config = get_config()
    host = host or config.host
    port = port or config.port
    click.echo(f"Serving API at http://{host}:{port}")
    run_server(host=host, port=port)


# ── Helpers ───────────────────────────────────────────────────────────────────


def _task_dict(task) -> dict:
    return {
        "id": task.id,
        "title": task.title,
        "column": task.column.value,
        "position": task.position,
        "project": task.project_id,
        "description": task.description,
        "assignee": task.assignee_agent_id,
        "labels": task.labels,
        "blocked_by": task.blocked_by,
        "retry_count": task.retry_count,
    }


if __name__ == "__main__":
    main()
