"""
Built-in telephony tools.

These call the telephony control service (``AMI_URL``) to hang up or transfer
the caller's channel, identified by the session id.
"""

import logging
from typing import Any, Dict, List

import httpx

from agent_relay.bot.exceptions import ToolExecutionFailure
from agent_relay.config.constants import LOGGER_NAME, TOOL_REQUEST_TIMEOUT
from agent_relay.tools.registry import ToolDefinition

logger = logging.getLogger(LOGGER_NAME)


async def _post(url: str, payload: Dict[str, Any], action: str) -> Any:
    try:
        async with httpx.AsyncClient(timeout=TOOL_REQUEST_TIMEOUT) as client:
            response = await client.post(url, json=payload)
            response.raise_for_status()
    except httpx.HTTPError as e:
        logger.error(f"Error during {action}: {e}")
        raise ToolExecutionFailure(f"Error during {action}: {e}") from e
    try:
        body = response.json()
    except ValueError:
        return response.text
    logger.info(f"{action.capitalize()} response: {body}")
    return body.get("message", body) if isinstance(body, dict) else body


def make_hangup_tool(ami_url: str) -> ToolDefinition:
    async def hangup(session_id: str, parameters: Dict[str, Any]) -> Any:
        logger.info(f"Hangup call: {session_id}")
        return await _post(f"{ami_url.rstrip('/')}/hangup", {"uuid": session_id}, "hangup")

    return ToolDefinition(
        name="avr_hangup",
        handler=hangup,
        description=(
            "Ends the call when the customer has no further information to request, "
            "after all relevant actions have been completed, or when the customer "
            "explicitly says goodbye."
        ),
    )


def make_transfer_tool(ami_url: str) -> ToolDefinition:
    async def transfer(session_id: str, parameters: Dict[str, Any]) -> Any:
        extension = parameters.get("transfer_extension")
        if not extension:
            raise ToolExecutionFailure("transfer_extension is required")
        logger.info(f"Transferring call {session_id} to: {extension}")
        payload = {
            "uuid": session_id,
            "exten": extension,
            "context": parameters.get("transfer_context") or "demo",
            "priority": parameters.get("transfer_priority") or 1,
        }
        return await _post(f"{ami_url.rstrip('/')}/transfer", payload, "transfer")

    return ToolDefinition(
        name="avr_transfer",
        handler=transfer,
        description=(
            "Transfers the call to a designated internal extension when the user "
            "requests to speak with an operator or be redirected to another extension."
        ),
        input_schema={
            "type": "object",
            "properties": {
                "transfer_extension": {
                    "type": "string",
                    "description": "The transfer extension to transfer the call to.",
                },
                "transfer_context": {
                    "type": "string",
                    "description": "The context to transfer the call to.",
                },
                "transfer_priority": {
                    "type": "string",
                    "description": "The priority of the transfer.",
                },
            },
            "required": ["transfer_extension"],
        },
    )


def builtin_tools(ami_url: str) -> List[ToolDefinition]:
    return [make_hangup_tool(ami_url), make_transfer_tool(ami_url)]
