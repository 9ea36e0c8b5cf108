"""
Registry mapping tool names to executable handlers.

The registry is populated once at startup (built-in tools plus any modules found
in ``TOOLS_DIR``) and is read-only afterwards, so it can be shared by every
session without locking.
"""

import importlib.util
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from agent_relay.config.constants import LOGGER_NAME

logger = logging.getLogger(LOGGER_NAME)

# handler(session_id, parameters) -> result, sync or async
ToolHandler = Callable[[str, Dict[str, Any]], Union[Any, Awaitable[Any]]]


@dataclass(frozen=True)
class ToolDefinition:
    """A named client tool the upstream agent may invoke."""

    name: str
    handler: ToolHandler
    description: str = ""
    input_schema: Dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}, "required": []}
    )


class ToolRegistry:
    """Name → ToolDefinition lookup shared across sessions."""

    def __init__(self, tools: Optional[List[ToolDefinition]] = None):
        self._tools: Dict[str, ToolDefinition] = {}
        for tool in tools or []:
            self.register(tool)

    def register(self, tool: ToolDefinition) -> None:
        """Register a tool, replacing any previous tool with the same name."""
        if not tool.name:
            raise ValueError("Tool name cannot be empty")
        if tool.name in self._tools:
            logger.warning(f"Replacing already registered tool: {tool.name}")
        self._tools[tool.name] = tool
        logger.debug(f"Registered tool: {tool.name}")

    def resolve(self, name: str) -> Optional[ToolHandler]:
        """Return the handler registered for ``name``, or None."""
        tool = self._tools.get(name)
        return tool.handler if tool else None

    def names(self) -> List[str]:
        return sorted(self._tools)

    def load_directory(self, directory: Union[str, Path]) -> int:
        """
        Import every ``*.py`` module in ``directory`` that defines a module-level
        ``TOOL`` (a ToolDefinition) and register it.

        Returns:
            int: number of tools registered
        """
        path = Path(directory)
        if not path.is_dir():
            logger.warning(f"Tools directory not found: {path}")
            return 0

        loaded = 0
        for module_path in sorted(path.glob("*.py")):
            if module_path.name.startswith("_"):
                continue
            spec = importlib.util.spec_from_file_location(f"relay_tools.{module_path.stem}", module_path)
            if spec is None or spec.loader is None:
                continue
            module = importlib.util.module_from_spec(spec)
            try:
                spec.loader.exec_module(module)
            except Exception as e:
                logger.error(f"Failed to load tool module {module_path.name}: {e}", exc_info=True)
                continue
            tool = getattr(module, "TOOL", None)
            if not isinstance(tool, ToolDefinition):
                logger.warning(f"Tool module {module_path.name} does not define TOOL, skipping")
                continue
            self.register(tool)
            loaded += 1
        logger.info(f"Loaded {loaded} tools from {path}")
        return loaded

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)
