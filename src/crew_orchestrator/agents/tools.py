"""Typed tool table for agents.

A tool pairs a name with a pydantic model describing its arguments and a
handler. Arguments coming from the model are validated before dispatch,
and every failure is turned into text the agent can read and react to.
"""

import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from pydantic import BaseModel, ValidationError

from crew_orchestrator.agents.llm import ToolDefinition, ToolInvocation

logger = logging.getLogger(__name__)

ToolHandler = Callable[[Any], "str | Awaitable[str]"]


class NoArguments(BaseModel):
    pass


@dataclass
class Tool:
    name: str
    description: str
    handler: ToolHandler
    parameters: type[BaseModel] = NoArguments
    max_calls_per_cycle: int | None = None

    def definition(self) -> ToolDefinition:
        return ToolDefinition(
            name=self.name,
            description=self.description,
            parameters=self.parameters.model_json_schema(),
        )


@dataclass
class DecisionCycle:
    """Call bookkeeping for one ``think`` invocation."""

    calls: dict[str, int] = field(default_factory=dict)

    def count(self, name: str) -> int:
        return self.calls.get(name, 0)

    def record(self, name: str) -> int:
        self.calls[name] = self.count(name) + 1
        return self.calls[name]


class ToolSet:
    def __init__(self, tools: list[Tool] | None = None):
        self._tools: dict[str, Tool] = {}
        for tool in tools or []:
            self.add(tool)

    def add(self, tool: Tool):
        self._tools[tool.name] = tool

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    @property
    def names(self) -> list[str]:
        return list(self._tools)

    def definitions(self) -> list[ToolDefinition]:
        return [t.definition() for t in self._tools.values()]

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    async def execute(self, invocation: ToolInvocation, cycle: DecisionCycle) -> str:
        tool = self._tools.get(invocation.name)
        if tool is None:
            available = ", ".join(self._tools) or "none"
            return f"Unknown tool '{invocation.name}'. Available tools: {available}."

        try:
            args = tool.parameters.model_validate(invocation.arguments or {})
        except ValidationError as e:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or 'arguments'}: {err['msg']}"
                for err in e.errors()
            )
            return f"Invalid arguments for {tool.name}: {problems}"

        if tool.max_calls_per_cycle is not None and cycle.count(tool.name) >= tool.max_calls_per_cycle:
            return (
                f"{tool.name} was already called {cycle.count(tool.name)} time(s) in this "
                f"decision cycle. Use the result you already have and wait for the next report."
            )
        cycle.record(tool.name)

        try:
            result = tool.handler(args)
            if inspect.isawaitable(result):
                result = await result
        except Exception as e:
            logger.exception("Tool %s failed", tool.name)
            return f"Tool {tool.name} failed: {e}"
        return "" if result is None else str(result)
