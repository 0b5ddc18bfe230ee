"""Project coordinator: owns the board, the workers and their worktrees."""

import asyncio
import logging
import uuid

from pydantic import BaseModel, Field

from crew_orchestrator.agents.base import BaseAgent, ThinkResult
from crew_orchestrator.agents.continuation import (
    ENGINE_PHASES,
    BoardSnapshot,
    Phase,
    continuation_prompt,
    determine_phase,
)
from crew_orchestrator.agents.prompts import (
    WORKER_FALLBACK_PROMPT,
    status_request_summary,
    worker_directive,
    worker_report_prompt,
)
from crew_orchestrator.agents.tools import Tool, ToolSet
from crew_orchestrator.agents.worker import Worker
from crew_orchestrator.bus.message_bus import new_message
from crew_orchestrator.core import registry
from crew_orchestrator.core.tasks import (
    board_state,
    complete_task,
    create_task,
    find_assigned_task,
    format_task_line,
    get_orphaned_tasks,
    get_ready_tasks,
    get_task,
    list_tasks,
    requeue_task,
    update_task,
)
from crew_orchestrator.core.workspace import WorkspaceManager
from crew_orchestrator.core.worktrees import WorktreeManager
from crew_orchestrator.db.models import AgentRole, BusMessage, KanbanTask, MessageType, TaskColumn
from crew_orchestrator.integrations.git import GitError

logger = logging.getLogger(__name__)

DEFAULT_TEMPLATE = "builtin-coder"
VERIFICATION_LABEL = "verification"
DEPLOYMENT_LABEL = "deployment"

# Labelled tasks run from a fixed template against the merged main repository.
LABEL_TEMPLATES = {
    VERIFICATION_LABEL: "builtin-tester",
    DEPLOYMENT_LABEL: "builtin-deployer",
}

FAILURE_SIGNALS = (
    "worker error",
    "worker cancelled",
    "exit code: 1",
    "error:",
    "permission denied",
    "failed:",
)

VERIFICATION_INSTRUCTIONS = (
    "Verify the merged project in the main repository. Install its dependencies, build it "
    "and run its test suite. Report what passed and what failed. Begin your answer with "
    "'VERIFICATION PASSED' or 'VERIFICATION FAILED:' followed by the reason."
)

DEPLOYMENT_INSTRUCTIONS = (
    "Deploy the merged project from the main repository. Start the application as a "
    "persistent background process, then confirm it is reachable. Report the start "
    "command, the process id and the address. Begin your answer with 'DEPLOYMENT "
    "SUCCEEDED' or 'DEPLOYMENT FAILED:' followed by the reason."
)


def is_failure_report(report: str) -> bool:
    """A worker report counts as a failure when blank or carrying a failure signal."""
    text = report.strip().lower()
    if not text:
        return True
    return any(signal in text for signal in FAILURE_SIGNALS)


class SearchRegistryArgs(BaseModel):
    capability: str = Field(description="Capability to search for, e.g. 'code' or 'testing'")


class SpawnWorkerArgs(BaseModel):
    registry_entry_id: str = Field(description="Worker template id from search_registry")
    task: str = Field(description="Detailed instructions for the worker")
    task_id: str | None = Field(default=None, description="Kanban task the worker is assigned to")
    use_main_repo: bool = Field(
        default=False, description="Work directly in the merged main repository instead of a new branch"
    )


class CreateTaskArgs(BaseModel):
    title: str
    description: str = ""
    blocked_by: list[str] = Field(default_factory=list, description="Ids of tasks that must finish first")
    labels: list[str] = Field(default_factory=list)


class UpdateTaskArgs(BaseModel):
    task_id: str
    column: TaskColumn | None = None
    title: str | None = None
    description: str | None = None
    assignee_agent_id: str | None = None
    position: int | None = Field(default=None, ge=0)
    labels: list[str] | None = None


class ListTasksArgs(BaseModel):
    column: TaskColumn | None = None


class AgentIdArgs(BaseModel):
    agent_id: str = Field(description="Worker agent id")


class StopWorkerArgs(BaseModel):
    agent_id: str
    reason: str = ""


class ReportArgs(BaseModel):
    content: str


class TeamLead(BaseAgent):
    """Drives one project from directive to deployed result.

    The Team Lead is the only writer of task columns and assignees for its
    project, and the only holder of its live workers and their worktrees.
    """

    role = AgentRole.TEAM_LEAD

    def __init__(self, *args, workspace: WorkspaceManager, **kwargs):
        super().__init__(*args, **kwargs)
        self.workspace = workspace
        self.workers: dict[str, Worker] = {}
        self.worktrees = WorktreeManager(
            self.db,
            self.project_id,
            workspace.repo_path(self.project_id),
            workspace.worktrees_path(self.project_id),
        )
        self.verification_requested = False
        self.deployment_requested = False
        self.final_report_sent = False
        self._tools = self._build_tools()

    def children(self) -> list[BaseAgent]:
        return list(self.workers.values())

    def get_tools(self) -> ToolSet:
        return self._tools

    # ── Messages ─────────────────────────────────────────────────────────

    async def handle_message(self, message: BusMessage):
        if message.type == MessageType.DIRECTIVE:
            await self.handle_directive(message)
        elif message.type == MessageType.REPORT:
            await self.handle_worker_report(message)
        elif message.type == MessageType.STATUS_REQUEST:
            await self.handle_status_request(message)

    async def handle_directive(self, message: BusMessage):
        self.verification_requested = False
        self.deployment_requested = False
        self.final_report_sent = False

        previous = self.snapshot()
        result = await self.think(message.content)
        result = await self.run_continuation(result, previous)

        if self.parent_id and result.text.strip() and not self.final_report_sent:
            self.send_message(self.parent_id, MessageType.REPORT, result.text, metadata={"kind": "progress"})

    async def handle_worker_report(self, message: BusMessage):
        worker_id = message.from_agent_id or ""
        previous = self.snapshot()

        task = find_assigned_task(self.db, self.project_id, worker_id)
        if task is None and message.metadata.get("task_id"):
            task = get_task(self.db, message.metadata["task_id"])
        failed = is_failure_report(message.content)
        reassigned = task is not None and task.assignee_agent_id not in (None, "", worker_id)

        if reassigned:
            outcome = (
                f"task {task.id} was reassigned to {task.assignee_agent_id}; left unchanged. "
                f"This worker's work was discarded."
            )
        elif task is not None and self.ensure_task_moved(task.id, message.content):
            task = get_task(self.db, task.id)
            if task.column == TaskColumn.DONE and task.completion_report and task.completion_report.startswith("FAILED"):
                outcome = f"task {task.id} exhausted its retries and was closed as FAILED."
            elif failed:
                outcome = f"task {task.id} failed and was moved back to backlog (attempt {task.retry_count})."
            else:
                outcome = f"task {task.id} moved to done."
        elif task is not None:
            outcome = f"task {task.id} was already in {task.column.value}; left unchanged."
        else:
            outcome = "this worker had no task on the board."

        if failed or reassigned:
            self.worktrees.abandon_worktree(worker_id)
        worker = self.workers.pop(worker_id, None)
        if worker is not None:
            worker.destroy()
        logger.info("Report from %s processed: %s", worker_id, outcome)

        action_items = [
            f"Task {t.id} '{t.title}' is in_progress but its assignee "
            f"{t.assignee_agent_id or '(none)'} is no longer running. Move it back to backlog "
            f"with update_task so it can be reassigned."
            for t in self.get_orphaned_tasks()
        ]
        if action_items:
            logger.info("Orphaned tasks in %s: %d", self.project_id, len(action_items))

        result = await self.think(worker_report_prompt(worker_id, message.content, outcome, action_items))
        await self.run_continuation(result, previous)
        if not self.destroyed:
            self.auto_spawn_ready_tasks()

    async def handle_status_request(self, message: BusMessage):
        worker_ids = list(self.workers)
        replies = await asyncio.gather(
            *(
                self.bus.request(
                    new_message(
                        MessageType.STATUS_REQUEST,
                        "status",
                        from_agent_id=self.id,
                        to_agent_id=worker_id,
                        project_id=self.project_id,
                    ),
                    self.config.status_timeout,
                )
                for worker_id in worker_ids
            )
        )
        lines = [
            reply.content if reply else f"Worker {worker_id}: no response (may be busy)"
            for worker_id, reply in zip(worker_ids, replies)
        ]
        board = board_state(self.db, self.project_id)
        header = f"{self.get_status_summary()}\nBoard: {board.summary}"
        self.respond_status(message, status_request_summary(header, lines))

    # ── Continuation engine ──────────────────────────────────────────────

    def snapshot(self) -> BoardSnapshot:
        return BoardSnapshot.of(board_state(self.db, self.project_id), self.worktrees.unmerged_count())

    def current_phase(self) -> Phase:
        return determine_phase(
            board_state(self.db, self.project_id),
            self.worktrees.unmerged_count(),
            self.verification_requested,
            self.deployment_requested,
        )

    async def run_continuation(self, result: ThinkResult, previous: BoardSnapshot) -> ThinkResult:
        """Keep deciding while the project advances.

        Each cycle compares the board and worktree counts with the previous
        cycle and stops on the first cycle that changed nothing. It also
        stops while workers are still running, once a model turn makes no
        tool calls, or after the configured number of cycles.
        """
        for cycle in range(self.config.max_continuation_cycles):
            if self.destroyed:
                break
            current = self.snapshot()
            if current == previous:
                logger.info("%s: stale state after %d cycle(s), stopping continuation", self.id, cycle)
                break
            previous = current

            phase = self.current_phase()
            if phase == Phase.AWAITING:
                break
            if phase in ENGINE_PHASES:
                self.start_engine_phase(phase)
                continue
            if phase == Phase.REPORTING and self.final_report_sent:
                break
            # Entering assembly or reporting always prompts; other phases need tool activity.
            if not result.had_tool_calls and phase not in (Phase.FINAL_ASSEMBLY, Phase.REPORTING):
                break

            result = await self.think(await self._continuation_prompt(phase))
        else:
            logger.info("%s: reached %d continuation cycles", self.id, self.config.max_continuation_cycles)
        return result

    def start_engine_phase(self, phase: Phase):
        if phase == Phase.VERIFICATION:
            self.verification_requested = True
            title, label, instructions = "Verify merged build", VERIFICATION_LABEL, VERIFICATION_INSTRUCTIONS
        else:
            self.deployment_requested = True
            title, label, instructions = "Deploy application", DEPLOYMENT_LABEL, DEPLOYMENT_INSTRUCTIONS

        task = create_task(
            self.db,
            title,
            self.project_id,
            description=instructions,
            created_by=self.id,
            labels=[label],
        )
        outcome = self.spawn_worker(LABEL_TEMPLATES[label], instructions, task.id, use_main_repo=True)
        logger.info("%s: %s phase started: %s", self.id, phase.value, outcome)

    async def _continuation_prompt(self, phase: Phase) -> str:
        board = board_state(self.db, self.project_id)
        ready = [format_task_line(t) for t in get_ready_tasks(self.db, self.project_id)]
        overview = await self.worktrees.branch_overview() if phase == Phase.FINAL_ASSEMBLY else ""
        reports = []
        if phase == Phase.REPORTING:
            for task in list_tasks(self.db, self.project_id, TaskColumn.DONE):
                if VERIFICATION_LABEL in task.labels or DEPLOYMENT_LABEL in task.labels:
                    reports.append(f"{task.title}: {task.completion_report or '(no report)'}")
        return continuation_prompt(
            phase,
            board,
            ready,
            self.idle_capacity(),
            branch_overview=overview,
            completed_reports=reports,
        )

    # ── Board reconciliation ─────────────────────────────────────────────

    def get_orphaned_tasks(self) -> list[KanbanTask]:
        return get_orphaned_tasks(self.db, self.project_id, set(self.workers))

    def ensure_task_moved(self, task_id: str, report: str) -> bool:
        """Move a reported task out of in_progress according to the report.

        Returns False when the task had already left in_progress.
        """
        task = get_task(self.db, task_id)
        if task is None or task.column != TaskColumn.IN_PROGRESS:
            return False
        if is_failure_report(report):
            reason = report.strip()[:500] or "worker produced no output"
            requeue_task(self.db, task_id, reason, max_retries=self.config.max_task_retries)
        else:
            complete_task(self.db, task_id, report.strip())
        return True

    def update_kanban_task(self, task_id: str, **changes) -> str:
        changes = {k: v for k, v in changes.items() if v is not None}
        task = get_task(self.db, task_id)
        if task is None or task.project_id != self.project_id:
            return f"Task not found: {task_id}"

        column = changes.pop("column", None)
        column = TaskColumn(column) if column is not None else None

        if column is not None and column == task.column and not changes:
            return f"Task {task_id} is already in {column.value}. No change made."
        if task.column == TaskColumn.DONE and column in (TaskColumn.BACKLOG, TaskColumn.IN_PROGRESS):
            return (
                f"REJECTED: task {task_id} is done and cannot move back to {column.value}. "
                f"Create a new task for follow-up work."
            )
        if column == TaskColumn.IN_PROGRESS and task.column != TaskColumn.IN_PROGRESS:
            assignee = changes.get("assignee_agent_id") or task.assignee_agent_id
            if assignee not in self.workers:
                return (
                    f"REJECTED: task {task_id} needs a live worker assignee to be in_progress. "
                    f"Use spawn_worker with task_id={task_id} instead."
                )

        if column == TaskColumn.BACKLOG and task.column == TaskColumn.IN_PROGRESS:
            reason = changes.pop("description", None) or "moved back to backlog by the Team Lead"
            changes.pop("assignee_agent_id", None)
            if changes:
                update_task(self.db, task_id, **changes)
            updated = requeue_task(self.db, task_id, reason, max_retries=self.config.max_task_retries)
            if updated.column == TaskColumn.DONE:
                return f"Task {task_id} updated: retries exhausted, closed as FAILED."
            return f"Task {task_id} updated: back in backlog (attempt {updated.retry_count})."

        if column is not None:
            changes["column"] = column
        try:
            updated = update_task(self.db, task_id, **changes)
        except ValueError as e:
            return f"Could not update task {task_id}: {e}"
        return f"Task {task_id} updated: {format_task_line(updated)}"

    # ── Workers ──────────────────────────────────────────────────────────

    def idle_capacity(self) -> int:
        return max(0, self.config.max_concurrent_workers - len(self.workers))

    def spawn_worker(
        self,
        registry_entry_id: str,
        instructions: str,
        task_id: str | None = None,
        use_main_repo: bool = False,
    ) -> str:
        if self.destroyed:
            return "Team Lead is shutting down; no workers can be spawned."
        if self.idle_capacity() == 0:
            return (
                f"Cannot spawn: {len(self.workers)} worker(s) already running "
                f"(limit {self.config.max_concurrent_workers}). Wait for a report."
            )
        entry = registry.get_entry(self.db, registry_entry_id)
        if entry is None or entry.role != AgentRole.WORKER:
            return f"Registry entry not found: {registry_entry_id}. Use search_registry to find one."

        task = None
        if task_id:
            task = get_task(self.db, task_id)
            if task is None or task.project_id != self.project_id:
                return f"Task not found: {task_id}"
            if task.column == TaskColumn.DONE:
                return f"Task {task_id} is already done."
            if task.assignee_agent_id in self.workers:
                return f"Task {task_id} is already assigned to live worker {task.assignee_agent_id}."

        worker_id = f"worker-{uuid.uuid4().hex[:8]}"
        try:
            if use_main_repo:
                workspace_path = str(self.worktrees.ensure_repo())
            elif "code" in entry.capabilities:
                workspace_path = self.worktrees.create_worktree(worker_id).worktree_path
            else:
                workspace_path = str(self.workspace.create_agent_workspace(self.project_id, worker_id))
        except GitError as e:
            logger.exception("Could not prepare workspace for %s", worker_id)
            return f"Failed to prepare a workspace for the worker: {e}"

        worker = Worker(
            self.db,
            self.bus,
            self.llm,
            self.config,
            system_prompt=entry.system_prompt or WORKER_FALLBACK_PROMPT,
            model=entry.default_model or self.config.worker_model,
            agent_id=worker_id,
            parent_id=self.id,
            project_id=self.project_id,
            workspace_path=workspace_path,
            registry_entry_id=entry.id,
            tool_names=entry.tools,
            task_id=task.id if task else None,
        )
        self.workers[worker_id] = worker

        if task is not None:
            update_task(self.db, task.id, column=TaskColumn.IN_PROGRESS, assignee_agent_id=worker_id)

        self.send_message(
            worker_id,
            MessageType.DIRECTIVE,
            worker_directive(task.title if task else "", instructions, workspace_path, task_id),
        )
        logger.info("Spawned %s (%s) for task %s", worker_id, entry.id, task_id)
        suffix = f" for task {task_id}" if task_id else ""
        return f"Spawned worker {worker_id} ({entry.name}){suffix}. Workspace: {workspace_path}"

    def auto_spawn_ready_tasks(self) -> list[str]:
        """Assign ready backlog tasks to new workers while capacity allows."""
        spawned = []
        for task in get_ready_tasks(self.db, self.project_id):
            if self.idle_capacity() == 0:
                break
            template = DEFAULT_TEMPLATE
            use_main_repo = False
            for label, entry_id in LABEL_TEMPLATES.items():
                if label in task.labels:
                    template, use_main_repo = entry_id, True
                    break
            outcome = self.spawn_worker(
                template, task.description or task.title, task.id, use_main_repo=use_main_repo
            )
            if outcome.startswith("Spawned"):
                spawned.append(task.id)
        if spawned:
            logger.info("%s auto-spawned workers for %s", self.id, ", ".join(spawned))
        return spawned

    def stop_worker(self, agent_id: str, reason: str = "") -> str:
        worker = self.workers.pop(agent_id, None)
        if worker is None:
            return f"No live worker {agent_id}."
        worker.destroy()
        self.worktrees.abandon_worktree(agent_id)
        logger.info("Stopped worker %s: %s", agent_id, reason or "no reason given")
        task = find_assigned_task(self.db, self.project_id, agent_id)
        if task is not None:
            return (
                f"Stopped worker {agent_id}. Task {task.id} is now orphaned; move it back to "
                f"backlog with update_task."
            )
        return f"Stopped worker {agent_id}."

    def destroy(self):
        if self.destroyed:
            return
        for worker in list(self.workers.values()):
            worker.destroy()
        self.workers.clear()
        abandoned = self.worktrees.abandon_all()
        if abandoned:
            logger.info("%s abandoned %d worktree(s)", self.id, abandoned)
        super().destroy()

    def get_status_summary(self) -> str:
        return f"Team Lead {self.id} ({self.status.value}), {len(self.workers)} live worker(s)"

    # ── Tools ────────────────────────────────────────────────────────────

    def _build_tools(self) -> ToolSet:
        def search_registry(args: SearchRegistryArgs) -> str:
            entries = registry.search_entries(self.db, args.capability)
            if not entries:
                names = ", ".join(e.id for e in registry.list_entries(self.db, AgentRole.WORKER))
                return f"No worker templates match '{args.capability}'. Available: {names or 'none'}"
            return "\n".join(
                f"- {e.id}: {e.name}. {e.description} (capabilities: {', '.join(e.capabilities)})"
                for e in entries
            )

        def spawn(args: SpawnWorkerArgs) -> str:
            return self.spawn_worker(args.registry_entry_id, args.task, args.task_id, args.use_main_repo)

        def create(args: CreateTaskArgs) -> str:
            try:
                task = create_task(
                    self.db,
                    args.title,
                    self.project_id,
                    description=args.description,
                    created_by=self.id,
                    labels=args.labels,
                    blocked_by=args.blocked_by,
                )
            except ValueError as e:
                return f"Could not create task: {e}"
            return f"Created task {task.id}: {task.title}"

        def update(args: UpdateTaskArgs) -> str:
            return self.update_kanban_task(**args.model_dump())

        def list_board(args: ListTasksArgs) -> str:
            board = board_state(self.db, self.project_id)
            tasks = list_tasks(self.db, self.project_id, args.column)
            lines = [board.summary]
            lines.extend(format_task_line(t) for t in tasks)
            return "\n".join(lines)

        async def merge_branch(args: AgentIdArgs) -> str:
            if args.agent_id in self.workers:
                return f"Worker {args.agent_id} is still running. Wait for its report before merging."
            return (await self.worktrees.merge_branch(args.agent_id)).message

        async def sync_branch(args: AgentIdArgs) -> str:
            return (await self.worktrees.update_worktree(args.agent_id)).message

        def discard_branch(args: AgentIdArgs) -> str:
            if args.agent_id in self.workers:
                return f"Worker {args.agent_id} is still running. Use stop_worker instead."
            if self.worktrees.abandon_worktree(args.agent_id):
                return f"Discarded the branch of {args.agent_id}."
            return f"No unmerged branch for {args.agent_id}."

        async def branch_status(args) -> str:
            return await self.worktrees.branch_overview()

        def report(args: ReportArgs) -> str:
            if not self.parent_id:
                return "No parent to report to."
            self.send_message(self.parent_id, MessageType.REPORT, args.content, metadata={"kind": "final"})
            self.final_report_sent = True
            return "Report sent to the COO."

        def stop(args: StopWorkerArgs) -> str:
            return self.stop_worker(args.agent_id, args.reason)

        return ToolSet(
            [
                Tool("search_registry", "Find worker templates by capability.", search_registry, SearchRegistryArgs),
                Tool(
                    "spawn_worker",
                    "Start a worker from a registry template. Pass task_id to assign a board task; "
                    "code workers get their own git branch.",
                    spawn,
                    SpawnWorkerArgs,
                ),
                Tool("create_task", "Add a task to the project backlog.", create, CreateTaskArgs),
                Tool(
                    "update_task",
                    "Change a task's column, title, description, assignee, position or labels.",
                    update,
                    UpdateTaskArgs,
                ),
                Tool("list_tasks", "Show the project board.", list_board, ListTasksArgs, max_calls_per_cycle=1),
                Tool(
                    "merge_worker_branch",
                    "Merge a finished worker's branch into main. The worktree is removed afterwards.",
                    merge_branch,
                    AgentIdArgs,
                ),
                Tool(
                    "sync_worker_branch",
                    "Rebase a worker's branch onto the latest main. A branch kept after a merge "
                    "conflict is checked out again first.",
                    sync_branch,
                    AgentIdArgs,
                ),
                Tool(
                    "discard_worker_branch",
                    "Delete a finished worker's unmerged branch without merging it.",
                    discard_branch,
                    AgentIdArgs,
                ),
                Tool(
                    "get_branch_status",
                    "Overview of unmerged worker branches: ahead/behind, uncommitted changes, diff.",
                    branch_status,
                    max_calls_per_cycle=1,
                ),
                Tool("report_to_coo", "Send a report to the COO.", report, ReportArgs, max_calls_per_cycle=1),
                Tool("stop_worker", "Stop a running worker and discard its branch.", stop, StopWorkerArgs),
            ]
        )
