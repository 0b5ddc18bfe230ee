"""In-process message bus with durable history and request/reply."""

import asyncio
import json
import logging
import sqlite3
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Callable

from crew_orchestrator.db.models import BusMessage, MessageType

logger = logging.getLogger(__name__)

MessageHandler = Callable[[BusMessage], Any]


def new_message(
    type: MessageType | str,
    content: str,
    from_agent_id: str | None = None,
    to_agent_id: str | None = None,
    metadata: dict | None = None,
    project_id: str | None = None,
    conversation_id: str | None = None,
    correlation_id: str | None = None,
) -> BusMessage:
    """Build a message with a fresh id and timestamp."""
    return BusMessage(
        id=uuid.uuid4().hex,
        from_agent_id=from_agent_id,
        to_agent_id=to_agent_id,
        type=MessageType(type),
        content=content,
        metadata=dict(metadata or {}),
        project_id=project_id,
        conversation_id=conversation_id,
        correlation_id=correlation_id,
        timestamp=datetime.now(timezone.utc),
    )


class MessageBus:
    """Routes messages between agents.

    ``send`` persists a message, hands it to the addressed agent's handler
    and then to every broadcast subscriber. Handlers are expected to return
    quickly (agents enqueue and process later), so a send never waits on a
    receiver's work. A failing handler is logged and does not stop delivery
    to the others.
    """

    def __init__(self, db: sqlite3.Connection):
        self.db = db
        self._handlers: dict[str, MessageHandler] = {}
        self._broadcast_handlers: list[MessageHandler] = []
        self._pending: dict[str, asyncio.Future] = {}

    # ── Subscriptions ────────────────────────────────────────────────────

    def subscribe(self, agent_id: str, handler: MessageHandler):
        self._handlers[agent_id] = handler

    def unsubscribe(self, agent_id: str):
        self._handlers.pop(agent_id, None)

    def is_subscribed(self, agent_id: str) -> bool:
        return agent_id in self._handlers

    def on_broadcast(self, handler: MessageHandler):
        if handler not in self._broadcast_handlers:
            self._broadcast_handlers.append(handler)

    def off_broadcast(self, handler: MessageHandler):
        if handler in self._broadcast_handlers:
            self._broadcast_handlers.remove(handler)

    # ── Delivery ─────────────────────────────────────────────────────────

    def send(self, message: BusMessage) -> BusMessage:
        """Persist and deliver a message."""
        self._persist(message)

        if message.type == MessageType.STATUS_RESPONSE and message.correlation_id:
            future = self._pending.get(message.correlation_id)
            if future is not None and not future.done():
                future.set_result(message)

        if message.to_agent_id:
            handler = self._handlers.get(message.to_agent_id)
            if handler is None:
                logger.debug("No handler for %s; message %s stored only", message.to_agent_id, message.id)
            else:
                try:
                    handler(message)
                except Exception:
                    logger.exception("Handler for %s failed on message %s", message.to_agent_id, message.id)

        for observer in list(self._broadcast_handlers):
            try:
                observer(message)
            except Exception:
                logger.exception("Broadcast subscriber failed on message %s", message.id)

        return message

    async def request(self, message: BusMessage, timeout: float) -> BusMessage | None:
        """Send a message and wait for the StatusResponse that answers it.

        The message gets a fresh correlation id. Returns None when no
        matching response arrives within ``timeout`` seconds.
        """
        correlation_id = uuid.uuid4().hex
        message = replace(message, correlation_id=correlation_id)
        future = asyncio.get_running_loop().create_future()
        self._pending[correlation_id] = future
        try:
            self.send(message)
            return await asyncio.wait_for(future, timeout)
        except asyncio.TimeoutError:
            logger.info("Request %s to %s got no response within %.1fs", correlation_id, message.to_agent_id, timeout)
            return None
        finally:
            self._pending.pop(correlation_id, None)

    # ── History ──────────────────────────────────────────────────────────

    def get_history(
        self,
        project_id: str | None = None,
        agent_id: str | None = None,
        conversation_id: str | None = None,
        limit: int | None = None,
    ) -> list[BusMessage]:
        """Stored messages in send order.

        ``agent_id`` matches either sender or recipient. ``limit`` keeps the
        most recent messages.
        """
        query = "SELECT * FROM messages WHERE 1=1"
        params: list = []
        if project_id is not None:
            query += " AND project_id = ?"
            params.append(project_id)
        if agent_id is not None:
            query += " AND (from_agent_id = ? OR to_agent_id = ?)"
            params.extend([agent_id, agent_id])
        if conversation_id is not None:
            query += " AND conversation_id = ?"
            params.append(conversation_id)
        query += " ORDER BY seq DESC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        rows = self.db.execute(query, params).fetchall()
        return [_row_to_message(r) for r in reversed(rows)]

    def get_conversation_messages(self, conversation_id: str) -> list[BusMessage]:
        return self.get_history(conversation_id=conversation_id)

    def _persist(self, message: BusMessage):
        timestamp = message.timestamp or datetime.now(timezone.utc)
        self.db.execute(
            """INSERT INTO messages
               (id, from_agent_id, to_agent_id, type, content, metadata,
                project_id, conversation_id, correlation_id, timestamp)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                message.id,
                message.from_agent_id,
                message.to_agent_id,
                MessageType(message.type).value,
                message.content,
                json.dumps(message.metadata or {}),
                message.project_id,
                message.conversation_id,
                message.correlation_id,
                timestamp.isoformat(),
            ),
        )
        self.db.commit()


def _row_to_message(row: sqlite3.Row) -> BusMessage:
    return BusMessage(
        id=row["id"],
        from_agent_id=row["from_agent_id"],
        to_agent_id=row["to_agent_id"],
        type=MessageType(row["type"]),
        content=row["content"],
        metadata=json.loads(row["metadata"] or "{}"),
        project_id=row["project_id"],
        conversation_id=row["conversation_id"],
        correlation_id=row["correlation_id"],
        timestamp=datetime.fromisoformat(row["timestamp"]),
    )
