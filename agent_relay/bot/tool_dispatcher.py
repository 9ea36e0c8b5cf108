"""
Execution of client tool calls requested by the upstream agent.

A dispatch never raises: an unknown tool or a failing handler becomes an
error-tagged ToolResult that the bridge sends back upstream as a
``client_tool_result`` with ``is_error`` set.
"""

import inspect
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict

from pydantic_core import PydanticSerializationError, to_jsonable_python

from agent_relay.bot.exceptions import ToolResolutionFailure
from agent_relay.config.constants import LOGGER_NAME
from agent_relay.tools.registry import ToolRegistry

logger = logging.getLogger(LOGGER_NAME)


def jsonable_result(result: Any) -> Any:
    """
    Coerce a handler's return value into something the upstream JSON envelope
    can carry. Dates, bytes and similar values are converted by pydantic; objects
    it cannot convert fall back to their string form.
    """
    try:
        json.dumps(result)
        return result
    except (TypeError, ValueError):
        pass
    try:
        return to_jsonable_python(result, fallback=str)
    except (PydanticSerializationError, TypeError, ValueError):
        return str(result)


@dataclass(frozen=True)
class ToolInvocation:
    """One requested tool call; lives only until its result is produced."""

    call_id: str
    tool_name: str
    session_id: str
    parameters: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ToolResult:
    call_id: str
    result: Any
    is_error: bool = False
    duration_ms: float = 0.0


class ToolDispatcher:
    """Resolves tool names against a ToolRegistry and runs the handlers."""

    def __init__(self, registry: ToolRegistry):
        self.registry = registry

    async def dispatch(self, invocation: ToolInvocation) -> ToolResult:
        """
        Run the handler for ``invocation`` and wrap its outcome.

        Args:
            invocation: The tool call to execute

        Returns:
            ToolResult: success with the handler's return value, or an error
            result carrying the resolution/execution failure message
        """
        start_time = time.time()
        handler = self.registry.resolve(invocation.tool_name)
        if handler is None:
            failure = ToolResolutionFailure(invocation.tool_name)
            logger.warning(f"{failure} (session: {invocation.session_id})")
            return ToolResult(call_id=invocation.call_id, result=str(failure), is_error=True)

        logger.info(
            f"Executing tool {invocation.tool_name} (call {invocation.call_id}) "
            f"for session: {invocation.session_id}"
        )
        try:
            result = handler(invocation.session_id, dict(invocation.parameters))
            if inspect.isawaitable(result):
                result = await result
        except Exception as e:
            # Handler failures are reported upstream, never fatal to the session
            duration_ms = (time.time() - start_time) * 1000
            logger.error(f"Tool {invocation.tool_name} failed: {e}", exc_info=True)
            return ToolResult(
                call_id=invocation.call_id,
                result=str(e) or e.__class__.__name__,
                is_error=True,
                duration_ms=duration_ms,
            )

        duration_ms = (time.time() - start_time) * 1000
        logger.info(f"Tool {invocation.tool_name} completed in {duration_ms:.1f}ms")
        return ToolResult(call_id=invocation.call_id, result=jsonable_result(result), duration_ms=duration_ms)
