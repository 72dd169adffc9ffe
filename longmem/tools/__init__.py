"""Tool registry for exposing memory operations to an LLM tool-calling loop."""

import inspect
import re
import typing
from dataclasses import dataclass
from typing import Any, Callable, Dict, List

from ..exceptions import ToolError


@dataclass
class ToolInfo:
    """Information about a registered tool."""

    name: str
    func: Callable
    description: str
    parameters: Dict[str, Any]


# Global tool registry
_tools: Dict[str, ToolInfo] = {}

_JSON_TYPES = {str: "string", int: "integer", float: "number", bool: "boolean", dict: "object", list: "array"}
_ARG_LINE_RE = re.compile(r"^\s+(\w+):\s*(.+)$")


def _json_type(annotation: Any) -> str:
    if typing.get_origin(annotation) is typing.Union:
        args = [a for a in typing.get_args(annotation) if a is not type(None)]
        annotation = args[0] if args else str
    return _JSON_TYPES.get(typing.get_origin(annotation) or annotation, "string")


def _arg_descriptions(doc: str) -> Dict[str, str]:
    """Parse the ``Args:`` section of a Google-style docstring."""
    descriptions = {}
    in_args = False
    for line in doc.splitlines():
        stripped = line.strip()
        if stripped == "Args:":
            in_args = True
            continue
        if in_args:
            if stripped and not line.startswith(" "):
                break
            match = _ARG_LINE_RE.match(line)
            if match:
                descriptions[match.group(1)] = match.group(2).strip()
    return descriptions


def tool(func: Callable) -> Callable:
    """Register a function as a tool."""
    sig = inspect.signature(func)
    doc = inspect.getdoc(func) or "No description available"
    arg_docs = _arg_descriptions(doc)

    parameters = {}
    for param_name, param in sig.parameters.items():
        parameters[param_name] = {
            "type": (param.annotation if param.annotation != inspect.Parameter.empty else str),
            "default": (param.default if param.default != inspect.Parameter.empty else None),
            "required": param.default == inspect.Parameter.empty,
            "description": arg_docs.get(param_name, ""),
        }

    _tools[func.__name__] = ToolInfo(
        name=func.__name__,
        func=func,
        description=doc.split("\n")[0].strip(),  # First line of docstring
        parameters=parameters,
    )
    return func


def get_tool(name: str) -> ToolInfo:
    """Get a registered tool by name."""
    if name not in _tools:
        message = "not found"
        similar = [t for t in _tools if name.lower() in t.lower() or t.lower() in name.lower()]
        if similar:
            message += f". Did you mean: {', '.join(similar[:3])}?"
        raise ToolError(name, message)
    return _tools[name]


def call_tool(name: str, **kwargs) -> Any:
    """Call a tool with the given arguments."""
    tool_info = get_tool(name)

    for param_name, param_info in tool_info.parameters.items():
        if param_info["required"] and param_name not in kwargs:
            raise ToolError(name, f"missing required parameter '{param_name}'")

    unknown = set(kwargs) - set(tool_info.parameters)
    if unknown:
        raise ToolError(name, f"unexpected parameters: {', '.join(sorted(unknown))}")

    try:
        return tool_info.func(**kwargs)
    except Exception as e:
        raise ToolError(name, f"failed to execute: {e}") from e


def list_tools() -> List[str]:
    """List all registered tool names."""
    return list(_tools.keys())


def tool_schema(name: str) -> Dict[str, Any]:
    """JSON-schema tool definition (name, description, input_schema) for a registered tool."""
    tool_info = get_tool(name)
    properties = {}
    required = []
    for param_name, param_info in tool_info.parameters.items():
        prop: Dict[str, Any] = {"type": _json_type(param_info["type"])}
        if param_info["description"]:
            prop["description"] = param_info["description"]
        properties[param_name] = prop
        if param_info["required"]:
            required.append(param_name)

    schema: Dict[str, Any] = {"type": "object", "properties": properties}
    if required:
        schema["required"] = required
    return {"name": tool_info.name, "description": tool_info.description, "input_schema": schema}


# Import tool modules at the end to avoid circular imports
# (they need to import 'tool' decorator from this module)
from . import memory as memory  # noqa: E402
