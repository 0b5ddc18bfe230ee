"""Project phases driving the Team Lead's continuation loop."""

from dataclasses import dataclass
from enum import Enum

from crew_orchestrator.core.tasks import BoardState


class Phase(str, Enum):
    PLANNING = "planning"
    WORKING = "working"
    AWAITING = "awaiting"
    FINAL_ASSEMBLY = "final_assembly"
    VERIFICATION = "verification"
    DEPLOYMENT = "deployment"
    REPORTING = "reporting"


# Phases the engine carries out itself instead of prompting the model.
ENGINE_PHASES = (Phase.VERIFICATION, Phase.DEPLOYMENT)


@dataclass(frozen=True)
class BoardSnapshot:
    """Column counts plus the number of unmerged worker branches.

    Two snapshots compare equal when the counts match, even if different
    tasks moved between the same columns in between.
    """

    backlog: int
    in_progress: int
    done: int
    worktrees: int

    @classmethod
    def of(cls, board: BoardState, worktrees: int) -> "BoardSnapshot":
        return cls(board.backlog, board.in_progress, board.done, worktrees)


def determine_phase(
    board: BoardState,
    unmerged_branches: int,
    verification_requested: bool,
    deployment_requested: bool,
) -> Phase:
    if board.total == 0:
        return Phase.PLANNING
    if board.backlog > 0:
        return Phase.WORKING
    if board.in_progress > 0:
        return Phase.AWAITING
    if unmerged_branches > 0:
        return Phase.FINAL_ASSEMBLY
    if not verification_requested:
        return Phase.VERIFICATION
    if not deployment_requested:
        return Phase.DEPLOYMENT
    return Phase.REPORTING


def continuation_prompt(
    phase: Phase,
    board: BoardState,
    ready_tasks: list[str],
    idle_capacity: int,
    branch_overview: str = "",
    completed_reports: list[str] | None = None,
) -> str:
    """Follow-up message fed to the Team Lead after a productive cycle."""
    header = f"[Continuation: {phase.value}] {board.summary}"

    if phase == Phase.PLANNING:
        return (
            f"{header}\n\n"
            f"The board is empty. Break the directive into tasks with create_task, "
            f"then spawn workers for the first tasks."
        )

    if phase == Phase.WORKING:
        lines = [header, ""]
        if ready_tasks:
            lines.append("Ready backlog tasks:")
            lines.extend(f"- {t}" for t in ready_tasks)
        else:
            lines.append("All backlog tasks are blocked by unfinished work.")
        if idle_capacity > 0 and ready_tasks:
            lines.append("")
            lines.append(
                f"You can run {idle_capacity} more worker(s) right now. Spawn workers "
                f"for ready tasks with spawn_worker, passing the task_id."
            )
        else:
            lines.append("")
            lines.append("No more workers can start now. Wait for the next worker report.")
        return "\n".join(lines)

    if phase == Phase.FINAL_ASSEMBLY:
        return (
            f"{header}\n\n"
            f"All tasks are done. Worker branches still need to be merged into main:\n"
            f"{branch_overview}\n\n"
            f"Merge them one at a time with merge_worker_branch, dependencies first. "
            f"A branch kept after a conflict can be retried with sync_worker_branch and "
            f"merge_worker_branch. If it still conflicts, create a task that redoes its work on "
            f"main, then drop the branch with discard_worker_branch."
        )

    if phase == Phase.REPORTING:
        reports = "\n".join(f"- {r}" for r in completed_reports or []) or "- (no reports)"
        return (
            f"{header}\n\n"
            f"Build, verification and deployment have run. Outcomes:\n{reports}\n\n"
            f"If everything succeeded, call report_to_coo with a final summary covering the "
            f"build, the verification result and how to reach the deployed application. "
            f"If verification or deployment failed, create remediation tasks instead."
        )

    return header
