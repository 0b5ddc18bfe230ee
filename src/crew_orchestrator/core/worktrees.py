"""Per-worker git worktree lifecycle: creation, sync, merge and cleanup."""

import asyncio
import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from crew_orchestrator.db.models import Worktree, WorktreeStatus
from crew_orchestrator.integrations.git import (
    GitError,
    ahead_behind,
    branch_exists,
    commit_all,
    conflict_files,
    delete_branch,
    diff_stat,
    get_status,
    init_repo,
    is_repo,
    merge,
    merge_abort,
    rebase,
    rebase_abort,
    worktree_add,
    worktree_prune,
    worktree_remove,
)

logger = logging.getLogger(__name__)

MAIN_BRANCH = "main"

# Branches that still hold work not yet in main.
UNMERGED = (WorktreeStatus.ACTIVE, WorktreeStatus.CONFLICT)


@dataclass
class MergeResult:
    success: bool
    message: str
    conflicts: list[str] = field(default_factory=list)


@dataclass
class BranchInfo:
    agent_id: str
    branch_name: str
    worktree_path: str
    status: WorktreeStatus = WorktreeStatus.ACTIVE
    ahead: int = 0
    behind: int = 0


# ── Records ──────────────────────────────────────────────────────────────────


def record_worktree(db: sqlite3.Connection, worktree: Worktree) -> Worktree:
    db.execute(
        """INSERT INTO worktrees (agent_id, project_id, branch_name, worktree_path, status)
           VALUES (?, ?, ?, ?, ?)
           ON CONFLICT(agent_id) DO UPDATE SET
             branch_name = excluded.branch_name,
             worktree_path = excluded.worktree_path,
             status = excluded.status,
             merged_at = NULL,
             updated_at = strftime('%Y-%m-%d %H:%M:%f', 'now')""",
        (
            worktree.agent_id,
            worktree.project_id,
            worktree.branch_name,
            worktree.worktree_path,
            WorktreeStatus(worktree.status).value,
        ),
    )
    db.commit()
    return get_worktree(db, worktree.agent_id)


def get_worktree(db: sqlite3.Connection, agent_id: str) -> Worktree | None:
    row = db.execute("SELECT * FROM worktrees WHERE agent_id = ?", (agent_id,)).fetchone()
    if not row:
        return None
    return _row_to_worktree(row)


def list_worktree_records(
    db: sqlite3.Connection,
    project_id: str,
    status: WorktreeStatus | str | None = None,
) -> list[Worktree]:
    query = "SELECT * FROM worktrees WHERE project_id = ?"
    params: list = [project_id]
    if status is not None:
        query += " AND status = ?"
        params.append(WorktreeStatus(status).value)
    query += " ORDER BY created_at, rowid"
    return [_row_to_worktree(r) for r in db.execute(query, params).fetchall()]


def set_worktree_status(
    db: sqlite3.Connection,
    agent_id: str,
    status: WorktreeStatus | str,
) -> Worktree | None:
    status = WorktreeStatus(status)
    merged_at = "strftime('%Y-%m-%d %H:%M:%f', 'now')" if status == WorktreeStatus.MERGED else "merged_at"
    db.execute(
        f"""UPDATE worktrees SET status = ?, merged_at = {merged_at},
              updated_at = strftime('%Y-%m-%d %H:%M:%f', 'now')
            WHERE agent_id = ?""",
        (status.value, agent_id),
    )
    db.commit()
    return get_worktree(db, agent_id)


def _row_to_worktree(row: sqlite3.Row) -> Worktree:
    return Worktree(
        agent_id=row["agent_id"],
        project_id=row["project_id"],
        branch_name=row["branch_name"],
        worktree_path=row["worktree_path"],
        status=WorktreeStatus(row["status"]),
        created_at=_parse_dt(row["created_at"]),
        merged_at=_parse_dt(row["merged_at"]),
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)


# ── Manager ──────────────────────────────────────────────────────────────────


class WorktreeManager:
    """Git isolation for the workers of one project.

    Every code-producing worker gets its own branch ``worker/<agent_id>``
    checked out in ``<worktrees_dir>/<agent_id>``. Branches are merged back
    into ``main`` of the project repository one at a time by the owning
    Team Lead. Merging, abandoning or a conflict removes the worktree from
    disk. A branch kept after a conflict is checked out again when it is
    synced or merged.
    """

    def __init__(
        self,
        db: sqlite3.Connection,
        project_id: str,
        repo_path: str | Path,
        worktrees_dir: str | Path,
    ):
        self.db = db
        self.project_id = project_id
        self.repo_path = Path(repo_path)
        self.worktrees_dir = Path(worktrees_dir)

    def ensure_repo(self) -> Path:
        """Create the project repository on first use."""
        if not is_repo(self.repo_path):
            logger.info("Initialising repository for project %s at %s", self.project_id, self.repo_path)
            init_repo(self.repo_path, MAIN_BRANCH)
        return self.repo_path

    def branch_name(self, agent_id: str) -> str:
        return f"worker/{agent_id}"

    def worktree_path(self, agent_id: str) -> Path:
        return self.worktrees_dir / agent_id

    def create_worktree(self, agent_id: str) -> Worktree:
        """Branch off main into a fresh worktree for ``agent_id``."""
        self.ensure_repo()
        self.worktrees_dir.mkdir(parents=True, exist_ok=True)
        branch = self.branch_name(agent_id)
        path = self.worktree_path(agent_id)

        create_branch = not branch_exists(self.repo_path, branch)
        worktree_add(self.repo_path, path, branch, MAIN_BRANCH, create_branch=create_branch)
        logger.info("Created worktree %s on %s", path, branch)

        return record_worktree(
            self.db,
            Worktree(
                agent_id=agent_id,
                project_id=self.project_id,
                branch_name=branch,
                worktree_path=str(path),
            ),
        )

    def get_worktree(self, agent_id: str) -> Worktree | None:
        record = get_worktree(self.db, agent_id)
        if record and record.project_id == self.project_id:
            return record
        return None

    async def update_worktree(self, agent_id: str) -> MergeResult:
        """Rebase a worker's branch onto the current main."""
        try:
            record = await self._checked_out(agent_id)
        except GitError as e:
            return MergeResult(False, f"Could not check out the branch of {agent_id}: {e}")
        if record is None:
            return MergeResult(False, f"No unmerged branch for {agent_id}.")
        return await asyncio.to_thread(self._rebase, record)

    async def merge_branch(self, agent_id: str) -> MergeResult:
        """Commit outstanding work, merge the branch into main, then remove the worktree.

        The filesystem worktree is removed on every path. A clean merge or
        an empty branch also deletes the branch; a conflicting branch is kept
        so it can be inspected, and its record is marked ``conflict``.
        Git runs in a worker thread; records are written on the caller's loop.
        """
        try:
            record = await self._checked_out(agent_id)
        except GitError as e:
            return MergeResult(False, f"Could not check out the branch of {agent_id}: {e}")
        if record is None:
            return MergeResult(False, f"No unmerged branch for {agent_id}.")

        status, result = await asyncio.to_thread(self._merge, record)
        set_worktree_status(self.db, agent_id, status)
        logger.info("Merge of %s: %s", record.branch_name, result.message)
        return result

    def _rebase(self, record: Worktree) -> MergeResult:
        path = Path(record.worktree_path)
        commit_all(path, f"Auto-commit before sync: worker {record.agent_id}")
        try:
            rebase(path, MAIN_BRANCH)
        except GitError as e:
            conflicts = _safe_conflict_files(path)
            try:
                rebase_abort(path)
            except GitError:
                logger.warning("rebase --abort failed in %s", path)
            logger.info("Rebase conflict for %s: %s", record.branch_name, e)
            files = ", ".join(conflicts) if conflicts else "unknown files"
            return MergeResult(
                False,
                f"Rebase conflict for {record.branch_name} ({files}). Branch left unchanged.",
                conflicts,
            )
        return MergeResult(True, f"Rebased {record.branch_name} onto {MAIN_BRANCH}.")

    def _merge(self, record: Worktree) -> tuple[WorktreeStatus, MergeResult]:
        branch = record.branch_name
        path = Path(record.worktree_path)
        status = WorktreeStatus.MERGED
        try:
            if path.exists():
                commit_all(path, f"Auto-commit: worker {record.agent_id}")
            # Work left behind in main by main-repo workers must not block the merge.
            commit_all(self.repo_path, "Auto-commit: main working tree")

            ahead, _ = ahead_behind(self.repo_path, branch, MAIN_BRANCH)
            if ahead == 0:
                result = MergeResult(
                    True, f"Nothing to merge: {branch} is up to date with {MAIN_BRANCH}."
                )
            else:
                try:
                    merge(self.repo_path, branch, f"Merge {branch}")
                    result = MergeResult(
                        True, f"Merged {branch} into {MAIN_BRANCH} ({ahead} commit(s))."
                    )
                except GitError as e:
                    conflicts = _safe_conflict_files(self.repo_path)
                    try:
                        merge_abort(self.repo_path)
                    except GitError:
                        logger.warning("merge --abort failed in %s", self.repo_path)
                    status = WorktreeStatus.CONFLICT
                    listed = ", ".join(conflicts) if conflicts else str(e)
                    result = MergeResult(
                        False,
                        f"Merge conflict merging {branch} into {MAIN_BRANCH}. "
                        f"Conflicting files: {listed}. The branch was kept; try "
                        f"sync_worker_branch and merge again, or create a task that redoes "
                        f"the work on main and then discard_worker_branch.",
                        conflicts,
                    )
        except GitError as e:
            status = WorktreeStatus.CONFLICT
            result = MergeResult(False, f"Merge of {branch} failed: {e}")
        finally:
            self._remove_from_disk(path)

        if status == WorktreeStatus.MERGED:
            self._delete_branch(branch)
        return status, result

    def abandon_worktree(self, agent_id: str) -> bool:
        """Discard a worker's worktree and branch without merging."""
        record = self._unmerged(agent_id)
        if record is None:
            return False
        self._remove_from_disk(Path(record.worktree_path))
        self._delete_branch(record.branch_name)
        set_worktree_status(self.db, agent_id, WorktreeStatus.ABANDONED)
        logger.info("Abandoned worktree for %s", agent_id)
        return True

    def abandon_all(self) -> int:
        count = 0
        for record in self._unmerged_records():
            if self.abandon_worktree(record.agent_id):
                count += 1
        return count

    def list_worktrees(self) -> list[BranchInfo]:
        """Unmerged branches with their ahead/behind counts against main."""
        return self._branch_infos(self._unmerged_records())

    def unmerged_count(self) -> int:
        return len(self._unmerged_records())

    def get_branch_diff(self, agent_id: str) -> str:
        try:
            return diff_stat(self.repo_path, self.branch_name(agent_id), MAIN_BRANCH) or "(no changes)"
        except GitError:
            return "(no diff available)"

    def get_branch_status(self, agent_id: str) -> str:
        """Uncommitted changes in a worker's worktree."""
        try:
            return get_status(self.worktree_path(agent_id)) or "(clean)"
        except GitError:
            return "(status unavailable)"

    async def branch_overview(self) -> str:
        """Human-readable summary of every unmerged branch."""
        return await asyncio.to_thread(self._describe, self._unmerged_records())

    def _describe(self, records: list[Worktree]) -> str:
        branches = self._branch_infos(records)
        if not branches:
            return "No unmerged worker branches. Nothing left to merge."
        lines = [f"{len(branches)} unmerged worker branch(es):"]
        for info in branches:
            line = f"- {info.branch_name}: {info.ahead} ahead, {info.behind} behind {MAIN_BRANCH}"
            if info.status == WorktreeStatus.CONFLICT:
                lines.append(f"{line} (kept after a merge conflict)")
            else:
                lines.append(line)
                status = self.get_branch_status(info.agent_id)
                if status != "(clean)":
                    lines.append(f"  uncommitted:\n{_indent(status, 4)}")
            diff = self.get_branch_diff(info.agent_id)
            lines.append(f"  diff vs {MAIN_BRANCH}:\n{_indent(diff, 4)}")
        return "\n".join(lines)

    def _branch_infos(self, records: list[Worktree]) -> list[BranchInfo]:
        result = []
        for record in records:
            ahead, behind = self._ahead_behind(record.branch_name)
            result.append(
                BranchInfo(
                    agent_id=record.agent_id,
                    branch_name=record.branch_name,
                    worktree_path=record.worktree_path,
                    status=record.status,
                    ahead=ahead,
                    behind=behind,
                )
            )
        return result

    def _unmerged_records(self) -> list[Worktree]:
        return [
            r for r in list_worktree_records(self.db, self.project_id) if r.status in UNMERGED
        ]

    def _unmerged(self, agent_id: str) -> Worktree | None:
        record = self.get_worktree(agent_id)
        if record is None or record.status not in UNMERGED:
            return None
        return record

    async def _checked_out(self, agent_id: str) -> Worktree | None:
        """The unmerged record for ``agent_id``, with a kept conflict branch checked out again."""
        record = self._unmerged(agent_id)
        if record is None or record.status == WorktreeStatus.ACTIVE:
            return record
        await asyncio.to_thread(self._check_out_again, record)
        return set_worktree_status(self.db, agent_id, WorktreeStatus.ACTIVE)

    def _check_out_again(self, record: Worktree):
        path = Path(record.worktree_path)
        self._remove_from_disk(path)
        self.worktrees_dir.mkdir(parents=True, exist_ok=True)
        worktree_add(self.repo_path, path, record.branch_name, MAIN_BRANCH, create_branch=False)
        logger.info("Checked out kept branch %s again at %s", record.branch_name, path)

    def _ahead_behind(self, branch: str) -> tuple[int, int]:
        try:
            return ahead_behind(self.repo_path, branch, MAIN_BRANCH)
        except GitError:
            return 0, 0

    def _remove_from_disk(self, path: Path):
        try:
            if path.exists():
                worktree_remove(self.repo_path, path, force=True)
            worktree_prune(self.repo_path)
        except GitError:
            logger.exception("Failed to remove worktree %s", path)

    def _delete_branch(self, branch: str):
        if branch_exists(self.repo_path, branch):
            try:
                delete_branch(self.repo_path, branch, force=True)
            except GitError:
                logger.warning("Could not delete branch %s", branch)


def _safe_conflict_files(cwd: Path) -> list[str]:
    try:
        return conflict_files(cwd)
    except GitError:
        return []


def _indent(text: str, spaces: int) -> str:
    pad = " " * spaces
    return "\n".join(pad + line for line in text.splitlines())
