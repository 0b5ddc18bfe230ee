"""Data models for the crew orchestrator."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class AgentRole(str, Enum):
    COO = "coo"
    TEAM_LEAD = "team_lead"
    WORKER = "worker"


class AgentStatus(str, Enum):
    IDLE = "idle"
    THINKING = "thinking"
    DONE = "done"
    ERROR = "error"


class MessageType(str, Enum):
    DIRECTIVE = "directive"
    REPORT = "report"
    CHAT = "chat"
    STATUS_REQUEST = "status_request"
    STATUS_RESPONSE = "status_response"


class TaskColumn(str, Enum):
    BACKLOG = "backlog"
    IN_PROGRESS = "in_progress"
    DONE = "done"


class WorktreeStatus(str, Enum):
    ACTIVE = "active"
    MERGED = "merged"
    CONFLICT = "conflict"
    ABANDONED = "abandoned"


@dataclass
class Project:
    id: str
    name: str
    description: str = ""
    charter: str = ""
    status: str = "active"
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class Agent:
    id: str
    role: AgentRole
    parent_id: str | None = None
    project_id: str | None = None
    status: AgentStatus = AgentStatus.IDLE
    registry_entry_id: str | None = None
    model: str = ""
    provider: str = ""
    system_prompt: str = ""
    workspace_path: str | None = None
    created_at: datetime | None = None


@dataclass(frozen=True)
class BusMessage:
    id: str
    from_agent_id: str | None
    to_agent_id: str | None
    type: MessageType
    content: str
    metadata: dict[str, Any] = field(default_factory=dict)
    project_id: str | None = None
    conversation_id: str | None = None
    correlation_id: str | None = None
    timestamp: datetime | None = None


@dataclass
class KanbanTask:
    id: str
    project_id: str
    title: str
    description: str = ""
    column: TaskColumn = TaskColumn.BACKLOG
    position: int = 0
    assignee_agent_id: str | None = None
    created_by: str = ""
    labels: list[str] = field(default_factory=list)
    blocked_by: list[str] = field(default_factory=list)
    retry_count: int = 0
    completion_report: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    completed_at: datetime | None = None


@dataclass
class TaskEvent:
    id: int | None = None
    task_id: str = ""
    event_type: str = ""
    old_value: str | None = None
    new_value: str | None = None
    created_at: datetime | None = None


@dataclass
class Worktree:
    agent_id: str
    project_id: str
    branch_name: str
    worktree_path: str
    status: WorktreeStatus = WorktreeStatus.ACTIVE
    created_at: datetime | None = None
    merged_at: datetime | None = None


@dataclass
class RegistryEntry:
    id: str
    name: str
    description: str = ""
    system_prompt: str = ""
    capabilities: list[str] = field(default_factory=list)
    tools: list[str] = field(default_factory=list)
    role: AgentRole = AgentRole.WORKER
    default_model: str | None = None
    default_provider: str | None = None
    built_in: bool = False
    created_at: datetime | None = None
