"""Custom exception classes for longmem."""

from typing import Any, Optional


class MemoryEngineError(Exception):
    """Base exception for all memory engine errors."""


class ValidationError(MemoryEngineError, ValueError):
    """Raised when memory input is missing required fields or is invalid.

    Attributes:
        field: Name of the offending field, when known
    """

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class NotFoundError(MemoryEngineError, LookupError):
    """Raised when an operation targets a memory id that does not exist.

    Attributes:
        memory_id: The id that was looked up
    """

    def __init__(self, memory_id: Any, message: Optional[str] = None):
        super().__init__(message or f"Memory with ID {memory_id} not found")
        self.memory_id = memory_id


class QuerySyntaxError(MemoryEngineError):
    """Raised by the search query parser on malformed input.

    Never escapes the search engine: callers fall back to plain term matching.
    """


class ToolError(MemoryEngineError, RuntimeError):
    """Raised by the tool registry for unknown tools, missing arguments or failed calls.

    Attributes:
        tool_name: Name of the tool involved
    """

    def __init__(self, tool_name: str, message: str):
        super().__init__(f"Tool '{tool_name}': {message}")
        self.tool_name = tool_name
