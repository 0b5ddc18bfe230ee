"""Workspace-scoped tools available to Workers."""

import asyncio
from pathlib import Path

from pydantic import BaseModel, Field

from crew_orchestrator.agents.tools import Tool
from crew_orchestrator.core.workspace import resolve_inside

MAX_READ_CHARS = 50_000
MAX_OUTPUT_CHARS = 20_000
SKIP_DIRS = {".git", "node_modules", "__pycache__", ".venv"}


class ReadFileArgs(BaseModel):
    path: str = Field(description="File path relative to the workspace")


class WriteFileArgs(BaseModel):
    path: str = Field(description="File path relative to the workspace")
    content: str = Field(description="Full file content")


class ListFilesArgs(BaseModel):
    path: str = Field(default=".", description="Directory relative to the workspace")


class RunCommandArgs(BaseModel):
    command: str = Field(description="Shell command to run in the workspace")
    timeout: float | None = Field(default=None, gt=0, description="Seconds before the command is killed")


def build_worker_tools(
    workspace: str | Path,
    names: list[str] | None = None,
    command_timeout: float = 120.0,
) -> list[Tool]:
    """Tools bound to one workspace directory.

    ``names`` restricts the result to a template's tool list; unknown names
    are ignored.
    """
    root = Path(workspace)

    def read_file(args: ReadFileArgs) -> str:
        target = resolve_inside(root, args.path)
        if target is None:
            return f"Access denied: {args.path} is outside the workspace."
        if not target.is_file():
            return f"File not found: {args.path}"
        text = target.read_text(errors="replace")
        if len(text) > MAX_READ_CHARS:
            return text[:MAX_READ_CHARS] + f"\n... (truncated, {len(text)} chars total)"
        return text

    def write_file(args: WriteFileArgs) -> str:
        target = resolve_inside(root, args.path)
        if target is None:
            return f"Access denied: {args.path} is outside the workspace."
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(args.content)
        return f"Wrote {len(args.content)} chars to {args.path}"

    def list_files(args: ListFilesArgs) -> str:
        target = resolve_inside(root, args.path)
        if target is None:
            return f"Access denied: {args.path} is outside the workspace."
        if not target.is_dir():
            return f"Directory not found: {args.path}"
        entries = []
        for p in sorted(target.rglob("*")):
            rel = p.relative_to(root)
            if SKIP_DIRS.intersection(rel.parts):
                continue
            entries.append(f"{rel}/" if p.is_dir() else str(rel))
        return "\n".join(entries) if entries else "(empty)"

    async def run_command(args: RunCommandArgs) -> str:
        timeout = args.timeout or command_timeout
        proc = await asyncio.create_subprocess_shell(
            args.command,
            cwd=str(root),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
        try:
            stdout, _ = await asyncio.wait_for(proc.communicate(), timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            return f"Command timed out after {timeout:.0f}s: {args.command}"
        output = stdout.decode(errors="replace")
        if len(output) > MAX_OUTPUT_CHARS:
            output = "... (truncated)\n" + output[-MAX_OUTPUT_CHARS:]
        return f"exit code: {proc.returncode}\n{output}".rstrip()

    tools = [
        Tool("read_file", "Read a text file from your workspace.", read_file, ReadFileArgs),
        Tool("write_file", "Create or overwrite a file in your workspace.", write_file, WriteFileArgs),
        Tool("list_files", "List files under a directory of your workspace.", list_files, ListFilesArgs),
        Tool(
            "run_command",
            "Run a shell command with the workspace as working directory. "
            "Returns the exit code and combined output.",
            run_command,
            RunCommandArgs,
        ),
    ]
    if names is None:
        return tools
    wanted = set(names)
    return [t for t in tools if t.name in wanted]
