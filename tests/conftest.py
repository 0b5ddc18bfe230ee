"""Shared fixtures: temp database, workspace, git repo and a scripted LLM."""

import os
import subprocess
import tempfile
from pathlib import Path

import pytest

from crew_orchestrator.agents.llm import LLMResponse, ToolInvocation
from crew_orchestrator.bus.message_bus import MessageBus
from crew_orchestrator.config import Config
from crew_orchestrator.core import projects as projects_mod
from crew_orchestrator.core.registry import seed_builtin_entries
from crew_orchestrator.core.workspace import WorkspaceManager
from crew_orchestrator.db.engine import init_db

GIT_ENV = {
    **os.environ,
    "GIT_AUTHOR_NAME": "Test",
    "GIT_AUTHOR_EMAIL": "test@test.com",
    "GIT_COMMITTER_NAME": "Test",
    "GIT_COMMITTER_EMAIL": "test@test.com",
}


def call(tool_name: str, /, **arguments) -> ToolInvocation:
    return ToolInvocation(name=tool_name, arguments=arguments)


def reply(text: str = "", *invocations: ToolInvocation) -> LLMResponse:
    return LLMResponse(text=text, tool_invocations=list(invocations))


class ScriptedLLM:
    """Fake LLM client.

    Responses are taken from ``script`` in order. A callable entry is
    called with the invoke arguments and must return an LLMResponse. Once
    the script runs out, ``default`` is returned.
    """

    def __init__(self, script=None, default: LLMResponse | None = None):
        self.script = list(script or [])
        self.default = default or reply("ok")
        self.calls = []

    def push(self, *responses):
        self.script.extend(responses)

    async def invoke(self, system_prompt, history, tools, model=None):
        self.calls.append(
            {
                "system_prompt": system_prompt,
                "history": list(history),
                "tools": [t.name for t in tools],
                "model": model,
            }
        )
        if not self.script:
            return self.default
        response = self.script.pop(0)
        if callable(response):
            response = response(system_prompt, history, tools)
        if isinstance(response, Exception):
            raise response
        return response


class RoutedLLM:
    """Fake LLM that keeps one ScriptedLLM per system prompt keyword."""

    def __init__(self, **routes: ScriptedLLM):
        self.routes = routes
        self.fallback = ScriptedLLM()

    async def invoke(self, system_prompt, history, tools, model=None):
        for keyword, llm in self.routes.items():
            if keyword.lower() in system_prompt.lower():
                return await llm.invoke(system_prompt, history, tools, model)
        return await self.fallback.invoke(system_prompt, history, tools, model)


@pytest.fixture
def tmp_root():
    with tempfile.TemporaryDirectory() as tmp:
        yield Path(tmp)


@pytest.fixture
def config(tmp_root):
    return Config(
        db_path=tmp_root / "crew.db",
        workspace_root=tmp_root / "workspace",
        max_continuation_cycles=4,
        max_tool_rounds=5,
        status_timeout=0.2,
        project_status_timeout=0.5,
        command_timeout=10,
    )


@pytest.fixture
def db(config):
    conn = init_db(config.db_path)
    seed_builtin_entries(conn)
    projects_mod.create_project(conn, "Demo", description="Demo project", project_id="demo")
    yield conn
    conn.close()


@pytest.fixture
def bus(db):
    return MessageBus(db)


@pytest.fixture
def workspace(config):
    manager = WorkspaceManager(config.workspace_root)
    manager.create_project("demo")
    return manager


@pytest.fixture
def git_repo(tmp_root):
    """A git repository on main with one commit."""
    repo = tmp_root / "repo"
    repo.mkdir()
    subprocess.run(["git", "init", "-b", "main"], cwd=repo, capture_output=True, check=True)
    (repo / "README.md").write_text("# Test")
    subprocess.run(["git", "add", "."], cwd=repo, capture_output=True, check=True)
    subprocess.run(["git", "commit", "-m", "init"], cwd=repo, capture_output=True, check=True, env=GIT_ENV)
    return repo
