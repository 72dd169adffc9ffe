"""longmem: long-term memory for LLM conversations."""

import logging

__version__ = "0.1.0"

# The host application owns handler configuration
logging.getLogger(__name__).addHandler(logging.NullHandler())

from longmem.config import MemoryConfig, load_config, save_config  # noqa: E402
from longmem.exceptions import (  # noqa: E402
    MemoryEngineError,
    NotFoundError,
    QuerySyntaxError,
    ToolError,
    ValidationError,
)
from longmem.memory import (  # noqa: E402
    Memory,
    MemoryEngine,
    MemoryType,
    get_memory_engine,
    reset_memory_engine,
)

__all__ = [
    "Memory",
    "MemoryConfig",
    "MemoryEngine",
    "MemoryEngineError",
    "MemoryType",
    "NotFoundError",
    "QuerySyntaxError",
    "ToolError",
    "ValidationError",
    "get_memory_engine",
    "load_config",
    "reset_memory_engine",
    "save_config",
]
