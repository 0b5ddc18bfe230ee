"""Shared agent runtime: identity, status, inbox and the think loop."""

import asyncio
import logging
import sqlite3
import uuid
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass

from crew_orchestrator.agents.llm import ChatTurn, LLMClient
from crew_orchestrator.agents.tools import DecisionCycle, ToolSet
from crew_orchestrator.bus.message_bus import MessageBus, new_message
from crew_orchestrator.config import Config
from crew_orchestrator.core.agents import save_agent, update_agent_status
from crew_orchestrator.db.models import Agent, AgentRole, AgentStatus, BusMessage, MessageType

logger = logging.getLogger(__name__)

TOOL_CALLS_PLACEHOLDER = "(tool calls executed)"


@dataclass
class ThinkResult:
    text: str
    had_tool_calls: bool = False


class BaseAgent(ABC):
    """Common envelope of the COO, Team Lead and Worker roles.

    Messages addressed to an agent are queued and handled one at a time in
    arrival order by a background task, so the bus never waits on an
    agent's work. ``think`` runs one model turn, executing requested tools
    and feeding their results back until the model answers without tools
    or the round limit is reached.
    """

    role: AgentRole

    def __init__(
        self,
        db: sqlite3.Connection,
        bus: MessageBus,
        llm: LLMClient,
        config: Config,
        system_prompt: str = "",
        model: str = "",
        agent_id: str | None = None,
        parent_id: str | None = None,
        project_id: str | None = None,
        workspace_path: str | None = None,
        registry_entry_id: str | None = None,
    ):
        self.db = db
        self.bus = bus
        self.llm = llm
        self.config = config
        self.id = agent_id or f"{self.role.value.replace('_', '-')}-{uuid.uuid4().hex[:8]}"
        self.parent_id = parent_id
        self.project_id = project_id
        self.system_prompt = system_prompt
        self.model = model
        self.workspace_path = workspace_path
        self.registry_entry_id = registry_entry_id
        self.status = AgentStatus.IDLE
        self.history: list[ChatTurn] = []
        self.cycle: DecisionCycle | None = None
        self.destroyed = False

        self._inbox: deque[BusMessage] = deque()
        self._drain_task: asyncio.Task | None = None

        save_agent(
            db,
            Agent(
                id=self.id,
                role=self.role,
                parent_id=parent_id,
                project_id=project_id,
                status=self.status,
                registry_entry_id=registry_entry_id,
                model=model,
                provider=config.provider,
                system_prompt=system_prompt,
                workspace_path=workspace_path,
            ),
        )
        bus.subscribe(self.id, self.enqueue)
        logger.info("Agent %s (%s) created in project %s", self.id, self.role.value, project_id)

    # ── Inbox ────────────────────────────────────────────────────────────

    def enqueue(self, message: BusMessage):
        if self.destroyed:
            return
        self._inbox.append(message)
        if self._drain_task is None or self._drain_task.done():
            self._drain_task = asyncio.get_running_loop().create_task(self._drain())

    async def _drain(self):
        while self._inbox and not self.destroyed:
            message = self._inbox.popleft()
            try:
                await self.handle_message(message)
            except Exception:
                logger.exception("%s failed handling %s message %s", self.id, message.type.value, message.id)

    @property
    def busy(self) -> bool:
        return bool(self._inbox) or (self._drain_task is not None and not self._drain_task.done())

    def children(self) -> list["BaseAgent"]:
        return []

    async def wait_idle(self):
        """Wait until this agent and all of its descendants have empty inboxes."""
        while True:
            pending = [a._drain_task for a in self._subtree() if a.busy and a._drain_task]
            if not pending:
                return
            await asyncio.wait(pending)
            await asyncio.sleep(0)

    def _subtree(self) -> list["BaseAgent"]:
        agents = [self]
        for child in self.children():
            agents.extend(child._subtree())
        return agents

    # ── Behaviour ────────────────────────────────────────────────────────

    @abstractmethod
    async def handle_message(self, message: BusMessage):
        """React to one message from the inbox."""

    @abstractmethod
    def get_tools(self) -> ToolSet:
        """Tools this role may call."""

    async def think(self, user_message: str) -> ThinkResult:
        self.cycle = DecisionCycle()
        self.set_status(AgentStatus.THINKING)
        self.history.append(ChatTurn(role="user", content=user_message))
        had_tool_calls = False
        text = ""
        try:
            tools = self.get_tools()
            for _ in range(self.config.max_tool_rounds):
                response = await self.llm.invoke(
                    self.system_prompt, list(self.history), tools.definitions(), self.model or None
                )
                text = response.text or ""
                self.history.append(
                    ChatTurn(role="assistant", content=text, tool_invocations=list(response.tool_invocations))
                )
                if not response.tool_invocations:
                    break
                had_tool_calls = True
                for invocation in response.tool_invocations:
                    result = await tools.execute(invocation, self.cycle)
                    self.history.append(
                        ChatTurn(
                            role="tool",
                            content=result,
                            tool_name=invocation.name,
                            tool_call_id=invocation.id,
                        )
                    )
                    if self.destroyed:
                        break
                if self.destroyed:
                    break
            else:
                logger.warning("%s stopped after %d tool rounds", self.id, self.config.max_tool_rounds)
        except Exception as e:
            logger.exception("%s failed to think", self.id)
            self.set_status(AgentStatus.ERROR)
            return ThinkResult(text=f"Error: {e}", had_tool_calls=had_tool_calls)
        finally:
            self.cycle = None

        if self.status == AgentStatus.THINKING:
            self.set_status(AgentStatus.IDLE)
        if not text.strip() and had_tool_calls:
            text = TOOL_CALLS_PLACEHOLDER
        return ThinkResult(text=text, had_tool_calls=had_tool_calls)

    def send_message(
        self,
        to_agent_id: str | None,
        type: MessageType,
        content: str,
        metadata: dict | None = None,
        conversation_id: str | None = None,
        correlation_id: str | None = None,
    ) -> BusMessage:
        return self.bus.send(
            new_message(
                type,
                content,
                from_agent_id=self.id,
                to_agent_id=to_agent_id,
                metadata=metadata,
                project_id=self.project_id,
                conversation_id=conversation_id,
                correlation_id=correlation_id,
            )
        )

    def respond_status(self, request: BusMessage, content: str | None = None) -> BusMessage:
        return self.send_message(
            request.from_agent_id,
            MessageType.STATUS_RESPONSE,
            content if content is not None else self.get_status_summary(),
            correlation_id=request.correlation_id,
        )

    def set_status(self, status: AgentStatus):
        if self.status == status:
            return
        self.status = status
        update_agent_status(self.db, self.id, status)

    def get_status_summary(self) -> str:
        return f"{self.role.value} {self.id}: {self.status.value}"

    def destroy(self):
        """Stop receiving messages and mark the agent done."""
        if self.destroyed:
            return
        self.destroyed = True
        self.bus.unsubscribe(self.id)
        self._inbox.clear()
        task = self._drain_task
        if task is not None and not task.done() and task is not _current_task():
            task.cancel()
        self.set_status(AgentStatus.DONE)
        logger.info("Agent %s destroyed", self.id)


def _current_task() -> asyncio.Task | None:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None
