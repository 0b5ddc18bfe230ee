"""JSON API over the task board, agents, worktrees and message history."""

import json

import uvicorn
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from crew_orchestrator.bus.message_bus import MessageBus
from crew_orchestrator.config import get_config
from crew_orchestrator.core import agents as agents_mod
from crew_orchestrator.core import projects as projects_mod
from crew_orchestrator.core import registry as registry_mod
from crew_orchestrator.core import tasks as tasks_mod
from crew_orchestrator.core import worktrees as worktrees_mod
from crew_orchestrator.db.engine import init_db

TASK_FIELDS = {"title", "description", "column", "position", "assignee_agent_id", "labels"}


def _get_db():
    config = get_config()
    return init_db(config.db_path)


async def _json_body(request: Request) -> dict | None:
    try:
        body = await request.json()
    except json.JSONDecodeError:
        return None
    return body if isinstance(body, dict) else None


# ── Projects ──────────────────────────────────────────────────────────────────


async def api_list_projects(request: Request):
    db = _get_db()
    try:
        projects = projects_mod.list_projects(db, status=request.query_params.get("status"))
        return JSONResponse([_project_dict(p) for p in projects])
    finally:
        db.close()


async def api_create_project(request: Request):
    body = await _json_body(request)
    if not body or not body.get("name"):
        return JSONResponse({"error": "name is required"}, status_code=400)
    db = _get_db()
    try:
        project = projects_mod.create_project(
            db,
            body["name"],
            description=body.get("description", ""),
            charter=body.get("charter", ""),
        )
        return JSONResponse(_project_dict(project), status_code=201)
    finally:
        db.close()


async def api_get_project(request: Request):
    project_id = request.path_params["project_id"]
    db = _get_db()
    try:
        project = projects_mod.get_project(db, project_id)
        if not project:
            return JSONResponse({"error": "Project not found"}, status_code=404)
        return JSONResponse(_project_dict(project))
    finally:
        db.close()


async def api_project_board(request: Request):
    project_id = request.path_params["project_id"]
    db = _get_db()
    try:
        if not projects_mod.get_project(db, project_id):
            return JSONResponse({"error": "Project not found"}, status_code=404)
        state = tasks_mod.board_state(db, project_id)
        return JSONResponse({
            "project_id": project_id,
            "backlog": state.backlog,
            "in_progress": state.in_progress,
            "done": state.done,
            "total": state.total,
            "all_done": state.all_done,
            "summary": state.summary,
        })
    finally:
        db.close()


async def api_project_agents(request: Request):
    project_id = request.path_params["project_id"]
    db = _get_db()
    try:
        agents = agents_mod.list_agents(db, project_id=project_id)
        return JSONResponse([_agent_dict(a) for a in agents])
    finally:
        db.close()


async def api_project_worktrees(request: Request):
    project_id = request.path_params["project_id"]
    db = _get_db()
    try:
        records = worktrees_mod.list_worktree_records(
            db, project_id, status=request.query_params.get("status")
        )
        return JSONResponse([_worktree_dict(w) for w in records])
    except ValueError as e:
        return JSONResponse({"error": str(e)}, status_code=400)
    finally:
        db.close()


# ── Tasks ─────────────────────────────────────────────────────────────────────


async def api_project_tasks(request: Request):
    project_id = request.path_params["project_id"]
    db = _get_db()
    try:
        if request.method == "POST":
            body = await _json_body(request)
            if not body or not body.get("title"):
                return JSONResponse({"error": "title is required"}, status_code=400)
            if not projects_mod.get_project(db, project_id):
                return JSONResponse({"error": "Project not found"}, status_code=404)
            try:
                task = tasks_mod.create_task(
                    db,
                    body["title"],
                    project_id,
                    description=body.get("description", ""),
                    created_by=body.get("created_by", "api"),
                    labels=body.get("labels"),
                    blocked_by=body.get("blocked_by"),
                )
            except ValueError as e:
                return JSONResponse({"error": str(e)}, status_code=400)
            return JSONResponse(_task_dict(task), status_code=201)

        try:
            tasks = tasks_mod.list_tasks(db, project_id, column=request.query_params.get("column"))
        except ValueError as e:
            return JSONResponse({"error": str(e)}, status_code=400)
        return JSONResponse([_task_dict(t) for t in tasks])
    finally:
        db.close()


async def api_task(request: Request):
    task_id = request.path_params["task_id"]
    db = _get_db()
    try:
        task = tasks_mod.get_task(db, task_id)
        if not task:
            return JSONResponse({"error": "Task not found"}, status_code=404)

        if request.method == "DELETE":
            tasks_mod.delete_task(db, task_id)
            return JSONResponse({"deleted": task_id})

        if request.method == "PATCH":
            body = await _json_body(request)
            if body is None:
                return JSONResponse({"error": "JSON object body required"}, status_code=400)
            unknown = set(body) - TASK_FIELDS
            if unknown:
                return JSONResponse(
                    {"error": f"Unknown fields: {', '.join(sorted(unknown))}"}, status_code=400
                )
            try:
                task = tasks_mod.update_task(db, task_id, **body)
            except ValueError as e:
                return JSONResponse({"error": str(e)}, status_code=400)

        td = _task_dict(task)
        td["events"] = [_event_dict(e) for e in tasks_mod.get_task_events(db, task_id)]
        return JSONResponse(td)
    finally:
        db.close()


# ── History ───────────────────────────────────────────────────────────────────


async def api_messages(request: Request):
    params = request.query_params
    try:
        limit = int(params["limit"]) if "limit" in params else None
    except ValueError:
        return JSONResponse({"error": "limit must be an integer"}, status_code=400)
    db = _get_db()
    try:
        messages = MessageBus(db).get_history(
            project_id=params.get("project_id"),
            agent_id=params.get("agent_id"),
            conversation_id=params.get("conversation_id"),
            limit=limit,
        )
        return JSONResponse([_message_dict(m) for m in messages])
    finally:
        db.close()


async def api_conversation(request: Request):
    conversation_id = request.path_params["conversation_id"]
    db = _get_db()
    try:
        messages = MessageBus(db).get_conversation_messages(conversation_id)
        return JSONResponse([_message_dict(m) for m in messages])
    finally:
        db.close()


async def api_registry(request: Request):
    db = _get_db()
    try:
        registry_mod.seed_builtin_entries(db)
        capability = request.query_params.get("capability")
        if capability:
            entries = registry_mod.search_entries(db, capability)
        else:
            entries = registry_mod.list_entries(db)
        return JSONResponse([_entry_dict(e) for e in entries])
    finally:
        db.close()


# ── Serialization ─────────────────────────────────────────────────────────────


def _iso(value):
    return value.isoformat() if value else None


def _project_dict(p) -> dict:
    return {
        "id": p.id,
        "name": p.name,
        "description": p.description,
        "charter": p.charter,
        "status": p.status,
        "created_at": _iso(p.created_at),
        "updated_at": _iso(p.updated_at),
    }


def _task_dict(t) -> dict:
    return {
        "id": t.id,
        "project_id": t.project_id,
        "title": t.title,
        "description": t.description,
        "column": t.column.value,
        "position": t.position,
        "assignee_agent_id": t.assignee_agent_id,
        "created_by": t.created_by,
        "labels": t.labels,
        "blocked_by": t.blocked_by,
        "retry_count": t.retry_count,
        "completion_report": t.completion_report,
        "created_at": _iso(t.created_at),
        "updated_at": _iso(t.updated_at),
        "completed_at": _iso(t.completed_at),
    }


def _event_dict(e) -> dict:
    return {
        "id": e.id,
        "event_type": e.event_type,
        "old_value": e.old_value,
        "new_value": e.new_value,
        "created_at": _iso(e.created_at),
    }


def _agent_dict(a) -> dict:
    return {
        "id": a.id,
        "role": a.role.value,
        "parent_id": a.parent_id,
        "project_id": a.project_id,
        "status": a.status.value,
        "registry_entry_id": a.registry_entry_id,
        "model": a.model,
        "workspace_path": a.workspace_path,
        "created_at": _iso(a.created_at),
    }


def _worktree_dict(w) -> dict:
    return {
        "agent_id": w.agent_id,
        "project_id": w.project_id,
        "branch_name": w.branch_name,
        "worktree_path": w.worktree_path,
        "status": w.status.value,
        "created_at": _iso(w.created_at),
        "merged_at": _iso(w.merged_at),
    }


def _message_dict(m) -> dict:
    return {
        "id": m.id,
        "from_agent_id": m.from_agent_id,
        "to_agent_id": m.to_agent_id,
        "type": m.type.value,
        "content": m.content,
        "metadata": m.metadata,
        "project_id": m.project_id,
        "conversation_id": m.conversation_id,
        "correlation_id": m.correlation_id,
        "timestamp": _iso(m.timestamp),
    }


def _entry_dict(e) -> dict:
    return {
        "id": e.id,
        "name": e.name,
        "description": e.description,
        "capabilities": e.capabilities,
        "tools": e.tools,
        "built_in": e.built_in,
    }


# ── App ───────────────────────────────────────────────────────────────────────


def create_app() -> Starlette:
    routes = [
        Route("/api/projects", api_list_projects, methods=["GET"]),
        Route("/api/projects", api_create_project, methods=["POST"]),
        Route("/api/projects/{project_id}", api_get_project),
        Route("/api/projects/{project_id}/board", api_project_board),
        Route("/api/projects/{project_id}/tasks", api_project_tasks, methods=["GET", "POST"]),
        Route("/api/projects/{project_id}/agents", api_project_agents),
        Route("/api/projects/{project_id}/worktrees", api_project_worktrees),
        Route("/api/tasks/{task_id}", api_task, methods=["GET", "PATCH", "DELETE"]),
        Route("/api/messages", api_messages),
        Route("/api/conversations/{conversation_id}/messages", api_conversation),
        Route("/api/registry", api_registry),
    ]
    return Starlette(routes=routes)


def run_server(host: str = "127.0.0.1", port: int = 8765):
    app = create_app()
    uvicorn.run(app, host=host, port=port)
