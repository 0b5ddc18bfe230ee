"""Filesystem layout for projects and agents."""

from pathlib import Path


class WorkspaceManager:
    """Resolves and creates the per-project directory tree.

    Layout under the workspace root::

        projects/<project_id>/repo          merged main repository
        projects/<project_id>/worktrees     per-worker git worktrees
        projects/<project_id>/agents/<id>   private scratch space
        projects/<project_id>/shared        specs, docs and artifacts
    """

    def __init__(self, root: str | Path):
        self.root = Path(root).resolve()

    def create_project(self, project_id: str) -> Path:
        project_path = self.project_path(project_id)
        for sub in (
            self.shared_path(project_id) / "specs",
            self.shared_path(project_id) / "docs",
            self.shared_path(project_id) / "artifacts",
            project_path / "agents",
            self.worktrees_path(project_id),
        ):
            sub.mkdir(parents=True, exist_ok=True)
        return project_path

    def create_agent_workspace(self, project_id: str, agent_id: str) -> Path:
        path = self.agent_path(project_id, agent_id)
        path.mkdir(parents=True, exist_ok=True)
        return path

    def project_path(self, project_id: str) -> Path:
        return self.root / "projects" / project_id

    def repo_path(self, project_id: str) -> Path:
        return self.project_path(project_id) / "repo"

    def worktrees_path(self, project_id: str) -> Path:
        return self.project_path(project_id) / "worktrees"

    def agent_path(self, project_id: str, agent_id: str) -> Path:
        return self.project_path(project_id) / "agents" / agent_id

    def shared_path(self, project_id: str) -> Path:
        return self.project_path(project_id) / "shared"


def resolve_inside(base: str | Path, requested: str) -> Path | None:
    """Resolve a path relative to base, or None if it escapes base."""
    base_path = Path(base).resolve()
    candidate = (base_path / requested).resolve()
    if candidate == base_path or base_path in candidate.parents:
        return candidate
    return None
