"""
Configuration module for the agent relay.

Key components:
- constants: protocol message types, audio format contract and default limits.
- settings: environment-driven RelaySettings validated with pydantic.
- logging_config: console and rotating-file logging for the relay logger.

Usage examples:
```python
from agent_relay.config.settings import load_settings
from agent_relay.config.logging_config import configure_logging

logger = configure_logging()
settings = load_settings()
logger.info(f"Max frame size: {settings.max_frame_size}")
```
"""
