"""Top-level agent: talks to the user and runs one Team Lead per project."""

import asyncio
import logging

from pydantic import BaseModel, Field

from crew_orchestrator.agents.base import BaseAgent
from crew_orchestrator.agents.llm import ChatTurn
from crew_orchestrator.agents.prompts import TEAM_LEAD_PROMPT, team_lead_context
from crew_orchestrator.agents.team_lead import TeamLead
from crew_orchestrator.agents.tools import Tool, ToolSet
from crew_orchestrator.bus.message_bus import new_message
from crew_orchestrator.core import projects
from crew_orchestrator.core.agents import list_agents
from crew_orchestrator.core.workspace import WorkspaceManager
from crew_orchestrator.core.worktrees import WorktreeManager
from crew_orchestrator.db.models import AgentRole, BusMessage, MessageType

logger = logging.getLogger(__name__)

RECENT_ACTIVITY = 5
SEED_HISTORY = 20


class CreateProjectArgs(BaseModel):
    name: str = Field(description="Short project name")
    description: str = Field(default="", description="What needs to be done")
    charter: str = Field(default="", description="Goals, scope and constraints for the team")
    directive: str | None = Field(default=None, description="First directive for the Team Lead")


class DirectiveArgs(BaseModel):
    project_id: str
    directive: str


class CharterArgs(BaseModel):
    project_id: str
    charter: str


class ProjectStatusArgs(BaseModel):
    project_id: str | None = Field(default=None, description="Leave empty for all active projects")


class ProjectIdArgs(BaseModel):
    project_id: str


class COO(BaseAgent):
    role = AgentRole.COO

    def __init__(self, *args, workspace: WorkspaceManager, **kwargs):
        super().__init__(*args, **kwargs)
        self.workspace = workspace
        self.team_leads: dict[str, TeamLead] = {}
        self.conversations: dict[str, list[ChatTurn]] = {}
        self.project_conversations: dict[str, str] = {}
        self.current_conversation_id: str | None = None
        self._tools = self._build_tools()

    def children(self) -> list[BaseAgent]:
        return list(self.team_leads.values())

    def get_tools(self) -> ToolSet:
        return self._tools

    async def handle_message(self, message: BusMessage):
        if message.type == MessageType.CHAT:
            await self.handle_user_message(message)
        elif message.type == MessageType.REPORT:
            await self.handle_team_lead_report(message)
        elif message.type == MessageType.STATUS_REQUEST:
            self.respond_status(message)

    async def handle_user_message(self, message: BusMessage):
        self.current_conversation_id = message.conversation_id
        self._load_conversation(message.conversation_id, exclude_id=message.id)
        result = await self.think(message.content)
        self._store_conversation(message.conversation_id)
        self.send_message(None, MessageType.CHAT, result.text, conversation_id=message.conversation_id)

    async def handle_team_lead_report(self, message: BusMessage):
        conversation_id = self.project_conversations.get(message.project_id or "", self.current_conversation_id)
        self._load_conversation(conversation_id)
        result = await self.think(f"[Report from Team Lead {message.from_agent_id}]: {message.content}")
        self._store_conversation(conversation_id)
        if result.text.strip():
            self.send_message(None, MessageType.CHAT, result.text, conversation_id=conversation_id)

    # ── Conversations ────────────────────────────────────────────────────

    def _load_conversation(self, conversation_id: str | None, exclude_id: str | None = None):
        if conversation_id is None:
            self.history = self.conversations.setdefault("", [])
            return
        if conversation_id not in self.conversations:
            turns = []
            for m in self.bus.get_conversation_messages(conversation_id):
                if m.id == exclude_id or m.type != MessageType.CHAT:
                    continue
                role = "assistant" if m.from_agent_id == self.id else "user"
                turns.append(ChatTurn(role=role, content=m.content))
            self.conversations[conversation_id] = turns
        self.history = self.conversations[conversation_id]

    def _store_conversation(self, conversation_id: str | None):
        self.conversations[conversation_id or ""] = self.history

    # ── Projects ─────────────────────────────────────────────────────────

    def create_project(self, name: str, description: str = "", charter: str = "", directive: str | None = None) -> str:
        project = projects.create_project(self.db, name, description=description, charter=charter)
        self.workspace.create_project(project.id)
        if self.current_conversation_id:
            self.project_conversations[project.id] = self.current_conversation_id
        team_lead = self.team_lead_for(project.id)
        result = f'Project "{name}" created ({project.id}). Team Lead {team_lead.id} assigned.'
        if directive:
            self.send_directive(project.id, directive)
            result += " Directive sent."
        return result

    def team_lead_for(self, project_id: str) -> TeamLead:
        """The project's Team Lead, created on first use."""
        if project_id in self.team_leads:
            return self.team_leads[project_id]
        project = projects.get_project(self.db, project_id)
        if project is None or project.status == "deleted":
            raise ValueError(f"Project not found: {project_id}")

        self.workspace.create_project(project_id)
        history = [
            f"[{m.type.value}] {m.from_agent_id or 'user'}: {m.content[:200]}"
            for m in self.bus.get_history(project_id=project_id, limit=SEED_HISTORY)
        ]
        team_lead = TeamLead(
            self.db,
            self.bus,
            self.llm,
            self.config,
            system_prompt=f"{TEAM_LEAD_PROMPT}\n\n{team_lead_context(project.name, project.charter, history)}",
            model=self.config.team_lead_model,
            parent_id=self.id,
            project_id=project_id,
            workspace_path=str(self.workspace.project_path(project_id)),
            workspace=self.workspace,
        )
        self.team_leads[project_id] = team_lead
        return team_lead

    def send_directive(self, project_id: str, directive: str) -> str:
        try:
            team_lead = self.team_lead_for(project_id)
        except ValueError as e:
            return str(e)
        if self.current_conversation_id:
            self.project_conversations.setdefault(project_id, self.current_conversation_id)
        self.bus.send(
            new_message(
                MessageType.DIRECTIVE,
                directive,
                from_agent_id=self.id,
                to_agent_id=team_lead.id,
                project_id=project_id,
                metadata={"project_id": project_id},
            )
        )
        return f"Directive sent to Team Lead {team_lead.id} of project {project_id}."

    def update_charter(self, project_id: str, charter: str) -> str:
        project = projects.get_project(self.db, project_id)
        if project is None or project.status == "deleted":
            return f"Project not found: {project_id}"
        projects.update_project(self.db, project_id, charter=charter)
        team_lead = self.team_leads.get(project_id)
        if team_lead is not None:
            team_lead.system_prompt = f"{TEAM_LEAD_PROMPT}\n\n{team_lead_context(project.name, charter, [])}"
        return f"Charter of project {project_id} updated."

    async def get_project_status(self, project_id: str | None = None) -> str:
        if project_id:
            return await self._single_project_status(project_id)
        active = projects.list_projects(self.db, status="active")
        if not active:
            return "No active projects."
        summaries = await asyncio.gather(*(self._single_project_status(p.id) for p in active))
        return "\n\n---\n\n".join(summaries)

    async def _single_project_status(self, project_id: str) -> str:
        project = projects.get_project(self.db, project_id)
        if project is None:
            return f"Project {project_id} not found."

        agents = list_agents(self.db, project_id=project_id)
        agent_lines = [f"  - {a.role.value} {a.id} [{a.status.value}]" for a in agents]

        activity = []
        for m in self.bus.get_history(project_id=project_id, limit=RECENT_ACTIVITY):
            content = m.content if len(m.content) <= 100 else m.content[:100] + "..."
            activity.append(
                f"  - [{m.type.value}] {m.from_agent_id or 'user'} -> {m.to_agent_id or 'user'}: {content}"
            )

        live = "  (no Team Lead assigned)"
        team_lead = self.team_leads.get(project_id)
        if team_lead is not None:
            reply = await self.bus.request(
                new_message(
                    MessageType.STATUS_REQUEST,
                    "status",
                    from_agent_id=self.id,
                    to_agent_id=team_lead.id,
                    project_id=project_id,
                ),
                self.config.project_status_timeout,
            )
            live = reply.content if reply else f"  Team Lead {team_lead.id}: no response (may be busy)"

        return "\n".join(
            [
                f'Project "{project.name}" ({project.status})',
                f"Agents ({len(agents)}):",
                *agent_lines,
                "",
                "Live status from Team Lead:",
                live,
                "",
                "Recent activity:",
                *(activity or ["  (no recent messages)"]),
            ]
        )

    def delete_project(self, project_id: str) -> str:
        team_lead = self.team_leads.pop(project_id, None)
        if team_lead is not None:
            team_lead.destroy()
        else:
            WorktreeManager(
                self.db,
                project_id,
                self.workspace.repo_path(project_id),
                self.workspace.worktrees_path(project_id),
            ).abandon_all()
        if not projects.delete_project(self.db, project_id):
            return f"Project not found: {project_id}"
        self.project_conversations.pop(project_id, None)
        return f"Project {project_id} deleted."

    def destroy(self):
        if self.destroyed:
            return
        for team_lead in list(self.team_leads.values()):
            team_lead.destroy()
        self.team_leads.clear()
        super().destroy()

    def get_status_summary(self) -> str:
        return f"COO {self.id} ({self.status.value}), {len(self.team_leads)} active project(s)"

    # ── Tools ────────────────────────────────────────────────────────────

    def _build_tools(self) -> ToolSet:
        def create(args: CreateProjectArgs) -> str:
            return self.create_project(args.name, args.description, args.charter, args.directive)

        def directive(args: DirectiveArgs) -> str:
            return self.send_directive(args.project_id, args.directive)

        def charter(args: CharterArgs) -> str:
            return self.update_charter(args.project_id, args.charter)

        async def status(args: ProjectStatusArgs) -> str:
            return await self.get_project_status(args.project_id)

        def delete(args: ProjectIdArgs) -> str:
            return self.delete_project(args.project_id)

        return ToolSet(
            [
                Tool(
                    "create_project",
                    "Create a project with a charter and assign it a Team Lead. "
                    "Pass a directive to start work immediately.",
                    create,
                    CreateProjectArgs,
                ),
                Tool("send_directive", "Send a directive to a project's Team Lead.", directive, DirectiveArgs),
                Tool("update_charter", "Replace a project's charter.", charter, CharterArgs),
                Tool(
                    "get_project_status",
                    "Status of one project, or all active projects: agents, live Team Lead "
                    "status and recent activity.",
                    status,
                    ProjectStatusArgs,
                ),
                Tool(
                    "delete_project",
                    "Delete a project, stopping its Team Lead and workers.",
                    delete,
                    ProjectIdArgs,
                ),
            ]
        )
