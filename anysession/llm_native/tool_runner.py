from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Sequence

from anysession.utils.exceptions import SchemaMismatch, ToolExecutionError
from anysession.utils.logger import get_logger

from .content import ContentKind, GeneratedContent
from .tools import ToolRegistry
from .transcript import TextSegment, ToolCall, ToolOutput

logger = get_logger(__name__)


def parse_tool_arguments(arguments_json: str) -> GeneratedContent:
    """
    Decode raw tool-call arguments.

    Blank text and ``null`` mean "no arguments" (an empty object). Malformed JSON raises
    ParseError; any other non-object value raises SchemaMismatch at ``$``.
    """
    raw = str(arguments_json or "").strip()
    if not raw:
        return GeneratedContent({})

    parsed = GeneratedContent.from_json(raw)
    if parsed.kind == ContentKind.NULL:
        return GeneratedContent({})
    if parsed.kind != ContentKind.STRUCTURE:
        raise SchemaMismatch("$", ContentKind.STRUCTURE.value, parsed.kind.value)
    return parsed


def tool_not_found_output(call: ToolCall) -> ToolOutput:
    return ToolOutput(
        id=call.id,
        tool_name=call.tool_name,
        segments=(TextSegment(content=f"Tool not found: {call.tool_name}"),),
    )


@dataclass(slots=True)
class ToolRunner:
    """
    Execute resolved tool calls against a session's registry.

    Scope:
    - Calls run strictly one after another, in the order the backend emitted them.
    - Unknown tool names become a visible "Tool not found: <name>" output; the turn goes on.
    - Any failure inside a tool is raised as ToolExecutionError naming the tool and call id.
    - Optional per-tool timeout (a timeout is a tool failure).
    """

    registry: ToolRegistry
    timeout_s: float | None = None

    async def run(self, calls: Sequence[ToolCall]) -> list[ToolOutput]:
        results: list[ToolOutput] = []
        for call in calls:
            results.append(await self.run_call(call))
        return results

    async def run_call(self, call: ToolCall) -> ToolOutput:
        tool = self.registry.get(call.tool_name)
        if tool is None:
            logger.warning("model requested unknown tool: %s (call_id=%s)", call.tool_name, call.id)
            return tool_not_found_output(call)

        logger.debug("executing tool %s (call_id=%s)", call.tool_name, call.id)
        try:
            if self.timeout_s is not None:
                segments = await asyncio.wait_for(tool.call(call.arguments), self.timeout_s)
            else:
                segments = await tool.call(call.arguments)
        except ToolExecutionError:
            raise
        except Exception as exc:
            logger.debug("tool %s failed: %s: %s", call.tool_name, type(exc).__name__, exc)
            raise ToolExecutionError(call.tool_name, exc, call.id) from exc

        return ToolOutput(id=call.id, tool_name=call.tool_name, segments=tuple(segments))


__all__ = ["ToolRunner", "parse_tool_arguments", "tool_not_found_output"]
