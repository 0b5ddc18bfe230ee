"""Leaf agent that executes a single task and reports back."""

import logging

from crew_orchestrator.agents.base import BaseAgent
from crew_orchestrator.agents.tools import ToolSet
from crew_orchestrator.agents.worker_tools import build_worker_tools
from crew_orchestrator.db.models import AgentRole, AgentStatus, BusMessage, MessageType

logger = logging.getLogger(__name__)


class Worker(BaseAgent):
    """Runs one directive inside its workspace, sends one Report, then is done."""

    role = AgentRole.WORKER

    def __init__(self, *args, tool_names: list[str] | None = None, task_id: str | None = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.task_id = task_id
        self.reported = False
        self._tools = ToolSet(
            build_worker_tools(
                self.workspace_path or ".",
                names=tool_names,
                command_timeout=self.config.command_timeout,
            )
        )

    def get_tools(self) -> ToolSet:
        return self._tools

    async def handle_message(self, message: BusMessage):
        if message.type == MessageType.STATUS_REQUEST:
            self.respond_status(message)
        elif message.type == MessageType.DIRECTIVE:
            await self.execute_task(message.content)

    async def execute_task(self, directive: str) -> str:
        if self.reported:
            logger.warning("Worker %s already reported; ignoring further directive", self.id)
            return ""
        try:
            result = await self.think(directive)
            report = self._report_text(result.text)
        except Exception as e:
            logger.exception("Worker %s failed", self.id)
            report = f"WORKER ERROR: Task failed: {e}"

        self.reported = True
        if self.parent_id:
            self.send_message(
                self.parent_id,
                MessageType.REPORT,
                report,
                metadata={"task_id": self.task_id} if self.task_id else None,
            )
        self.set_status(AgentStatus.DONE)
        return report

    def _report_text(self, text: str) -> str:
        text = text.strip()
        if not text:
            return "WORKER ERROR: Task produced no output"
        if text.startswith("Error:"):
            return f"WORKER ERROR: Task failed: {text[len('Error:'):].strip()}"
        return text

    def get_status_summary(self) -> str:
        summary = f"Worker {self.id}: {self.status.value}"
        if self.task_id:
            summary += f" (task {self.task_id})"
        return summary
