"""
Client tools the upstream agent can invoke through the relay.

Usage examples:
```python
from agent_relay.tools import ToolRegistry, builtin_tools

registry = ToolRegistry(builtin_tools("http://127.0.0.1:6006"))
handler = registry.resolve("avr_hangup")
```
"""

from agent_relay.tools.builtin import builtin_tools
from agent_relay.tools.registry import ToolDefinition, ToolHandler, ToolRegistry

__all__ = ["ToolDefinition", "ToolHandler", "ToolRegistry", "builtin_tools"]
