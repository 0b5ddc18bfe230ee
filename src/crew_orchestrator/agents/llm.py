"""Contract between agents and the language model that drives them.

Agents depend only on ``LLMClient.invoke``. Provider adapters live outside
this package and are plugged in with ``load_llm_client("module:factory")``.
"""

import importlib
from dataclasses import dataclass, field
from typing import Any, Protocol


@dataclass
class ToolDefinition:
    name: str
    description: str
    parameters: dict[str, Any]


@dataclass
class ToolInvocation:
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)
    id: str = ""


@dataclass
class LLMResponse:
    text: str = ""
    tool_invocations: list[ToolInvocation] = field(default_factory=list)


@dataclass
class ChatTurn:
    """One entry of an agent's conversation history.

    ``role`` is ``user``, ``assistant`` or ``tool``. Assistant turns carry
    the invocations they requested; tool turns carry the name and id of
    the invocation they answer.
    """

    role: str
    content: str
    tool_invocations: list[ToolInvocation] = field(default_factory=list)
    tool_name: str | None = None
    tool_call_id: str | None = None


class LLMClient(Protocol):
    async def invoke(
        self,
        system_prompt: str,
        history: list[ChatTurn],
        tools: list[ToolDefinition],
        model: str | None = None,
    ) -> LLMResponse: ...


def load_llm_client(target: str, **kwargs) -> LLMClient:
    """Import ``package.module:factory`` and call it to build a client."""
    module_name, sep, attr = target.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"LLM client must be given as 'module:factory', got {target!r}")
    module = importlib.import_module(module_name)
    factory = getattr(module, attr)
    return factory(**kwargs)
