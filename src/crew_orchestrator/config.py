"""Configuration loading from environment variables."""

import os
from dataclasses import dataclass, field
from pathlib import Path


@dataclass
class Config:
    db_path: Path = field(default_factory=lambda: Path.home() / ".crew_orchestrator" / "crew.db")
    workspace_root: Path = field(
        default_factory=lambda: Path.home() / ".crew_orchestrator" / "workspace"
    )
    provider: str = "anthropic"
    coo_model: str = "sonnet"
    team_lead_model: str = "sonnet"
    worker_model: str = "sonnet"
    max_continuation_cycles: int = 8
    max_tool_rounds: int = 25
    max_task_retries: int = 3
    max_concurrent_workers: int = 3
    status_timeout: float = 5.0
    project_status_timeout: float = 10.0
    command_timeout: float = 120.0
    llm_client: str | None = None
    host: str = "127.0.0.1"
    port: int = 8765

    @classmethod
    def from_env(cls) -> "Config":
        config = cls()

        if db := os.environ.get("CREW_DB_PATH"):
            config.db_path = Path(db)

        if root := os.environ.get("CREW_WORKSPACE_ROOT"):
            config.workspace_root = Path(root)

        if provider := os.environ.get("CREW_PROVIDER"):
            config.provider = provider

        if model := os.environ.get("CREW_COO_MODEL"):
            config.coo_model = model

        if model := os.environ.get("CREW_TEAM_LEAD_MODEL"):
            config.team_lead_model = model

        if model := os.environ.get("CREW_WORKER_MODEL"):
            config.worker_model = model

        if cycles := os.environ.get("CREW_MAX_CONTINUATION_CYCLES"):
            config.max_continuation_cycles = int(cycles)

        if rounds := os.environ.get("CREW_MAX_TOOL_ROUNDS"):
            config.max_tool_rounds = int(rounds)

        if retries := os.environ.get("CREW_MAX_TASK_RETRIES"):
            config.max_task_retries = int(retries)

        if workers := os.environ.get("CREW_MAX_WORKERS"):
            config.max_concurrent_workers = int(workers)

        if timeout := os.environ.get("CREW_STATUS_TIMEOUT"):
            config.status_timeout = float(timeout)

        if timeout := os.environ.get("CREW_PROJECT_STATUS_TIMEOUT"):
            config.project_status_timeout = float(timeout)

        if timeout := os.environ.get("CREW_COMMAND_TIMEOUT"):
            config.command_timeout = float(timeout)

        if client := os.environ.get("CREW_LLM_CLIENT"):
            config.llm_client = client

        if host := os.environ.get("CREW_HOST"):
            config.host = host

        if port := os.environ.get("CREW_PORT"):
            config.port = int(port)

        return config


def get_config() -> Config:
    return Config.from_env()
