"""Wires the database, bus, registry and COO into a running orchestrator."""

import logging
import sqlite3
import uuid

from crew_orchestrator.agents.coo import COO
from crew_orchestrator.agents.llm import LLMClient
from crew_orchestrator.agents.prompts import COO_PROMPT
from crew_orchestrator.bus.message_bus import MessageBus, new_message
from crew_orchestrator.config import Config
from crew_orchestrator.core.agents import mark_stale_agents_done
from crew_orchestrator.core.registry import seed_builtin_entries
from crew_orchestrator.core.workspace import WorkspaceManager
from crew_orchestrator.db.engine import init_db
from crew_orchestrator.db.models import BusMessage, MessageType

logger = logging.getLogger(__name__)

COO_ID = "coo"


class Orchestrator:
    """One process worth of agents.

    On start, agent rows left running by an earlier process are marked done
    and the built-in worker templates are seeded. The COO is the only agent
    created up front; Team Leads and Workers appear as work arrives.
    """

    def __init__(self, config: Config, llm: LLMClient, db: sqlite3.Connection | None = None):
        self.config = config
        self.db = db if db is not None else init_db(config.db_path)
        self.bus = MessageBus(self.db)
        self.workspace = WorkspaceManager(config.workspace_root)

        swept = mark_stale_agents_done(self.db)
        if swept:
            logger.info("Marked %d agent(s) from a previous run as done", swept)
        seed_builtin_entries(self.db)

        self.coo = COO(
            self.db,
            self.bus,
            llm,
            config,
            system_prompt=COO_PROMPT,
            model=config.coo_model,
            agent_id=COO_ID,
            workspace=self.workspace,
        )

    def submit(self, content: str, conversation_id: str | None = None) -> BusMessage:
        """Post a user chat message to the COO. Must be called from the event loop."""
        return self.bus.send(
            new_message(
                MessageType.CHAT,
                content,
                to_agent_id=self.coo.id,
                conversation_id=conversation_id or uuid.uuid4().hex,
            )
        )

    async def ask(self, content: str, conversation_id: str | None = None) -> str:
        """Submit a message and wait until every agent has gone quiet.

        Returns the COO's last chat reply in the conversation.
        """
        message = self.submit(content, conversation_id)
        await self.wait_idle()
        replies = [
            m
            for m in self.bus.get_conversation_messages(message.conversation_id)
            if m.from_agent_id == self.coo.id and m.type == MessageType.CHAT
        ]
        return replies[-1].content if replies else ""

    async def wait_idle(self):
        await self.coo.wait_idle()

    def shutdown(self):
        self.coo.destroy()
        logger.info("Orchestrator shut down")
