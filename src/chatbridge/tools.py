"""Tool-call helpers used by the automatic tool-calling loops."""

from __future__ import annotations

import inspect
import json
import logging
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass
from typing import Any, Union

from chatbridge.errors import ToolExecutionError
from chatbridge.types import FunctionCall, Message, ToolCall, ToolCallDelta, ToolChoice

logger = logging.getLogger(__name__)

ToolHandler = Callable[[Any], Union[Any, Awaitable[Any]]]
ToolHandlers = Mapping[str, ToolHandler]


def parse_tool_arguments(arguments: str | None) -> Any:
    """Decode a tool-call argument string; invalid or empty JSON yields ``{}``."""
    if not arguments:
        return {}
    try:
        return json.loads(arguments)
    except json.JSONDecodeError:
        logger.debug("Tool arguments are not valid JSON, using {}: %r", arguments)
        return {}


def next_tool_choice(choice: ToolChoice | None) -> ToolChoice:
    """Tool choice for the round after a tool round.

    A forced tool or ``required`` drops to ``none`` so the model has to answer
    in prose; everything else continues with ``auto``.
    """
    if choice == "required" or (choice is not None and not isinstance(choice, str)):
        return "none"
    return "auto"


def _serialize_result(result: Any) -> str:
    if isinstance(result, str):
        return result
    return json.dumps(result, default=str)


async def _invoke(call: ToolCall, handlers: ToolHandlers) -> Any:
    name = call.function.name
    handler = handlers.get(name)
    if handler is None:
        raise ToolExecutionError(name, f"No handler for tool: {name}")
    args = parse_tool_arguments(call.function.arguments)
    try:
        result = handler(args)
        if inspect.isawaitable(result):
            result = await result
    except Exception as exc:
        raise ToolExecutionError(name, str(exc) or type(exc).__name__) from exc
    return result


async def run_tool_calls(calls: Iterable[ToolCall], handlers: ToolHandlers) -> list[Message]:
    """Execute each call once, in order, and return the ``tool`` result messages.

    Handler failures and missing handlers become ``{"error": message}`` results
    that are fed back to the model instead of aborting the round.
    """
    messages = []
    for call in calls:
        logger.debug("Invoking tool %s (call %s)", call.function.name, call.id)
        try:
            result = await _invoke(call, handlers)
        except ToolExecutionError as exc:
            logger.warning("Tool %s failed: %s", exc.tool_name, exc)
            result = {"error": str(exc)}
        messages.append(Message(role="tool", content=_serialize_result(result), tool_call_id=call.id))
    return messages


@dataclass
class _PendingCall:
    name: str | None = None
    arguments: str = ""


class ToolCallAccumulator:
    """Reassembles streamed tool-call fragments keyed by call id.

    The first non-empty function name sticks; argument fragments are concatenated
    in arrival order.
    """

    def __init__(self) -> None:
        self._calls: dict[str, _PendingCall] = {}

    def __len__(self) -> int:
        return len(self._calls)

    def add(self, fragments: Iterable[ToolCallDelta] | None) -> None:
        for fragment in fragments or ():
            pending = self._calls.setdefault(fragment.id, _PendingCall())
            if fragment.function.name and not pending.name:
                pending.name = fragment.function.name
            if fragment.function.arguments:
                pending.arguments += fragment.function.arguments

    def tool_calls(self) -> list[ToolCall]:
        """Completed calls, dropping entries that never received a function name."""
        return [
            ToolCall(id=call_id, function=FunctionCall(name=p.name, arguments=p.arguments or "{}"))
            for call_id, p in self._calls.items()
            if p.name
        ]
