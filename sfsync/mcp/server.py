"""MCP Server definition and tool registration"""
import inspect
import logging

import pydantic
from mcp.server.fastmcp import FastMCP

from sfsync.config import get_config

logger = logging.getLogger(__name__)


def parse_docstring(func):
    """Split a tool docstring into its summary line and ``Args:`` descriptions."""
    docstring = inspect.getdoc(func)
    if not docstring:
        return "No description available.", {}

    lines = docstring.strip().split('\n')
    description = lines[0].strip()
    arg_descriptions = {}
    args_section = False

    for line in lines[1:]:
        line = line.strip()
        if line.lower() in ('args:', 'parameters:'):
            args_section = True
            continue
        if line.lower() in ('returns:', 'example:', 'examples:'):
            args_section = False
            continue
        if args_section and ':' in line:
            arg_name, arg_desc = line.split(':', 1)
            arg_descriptions[arg_name.strip()] = arg_desc.strip()

    return description, arg_descriptions


def create_model_from_func(func, arg_descriptions):
    """Creates a Pydantic model from a function's signature and descriptions."""
    fields = {}
    for param in inspect.signature(func).parameters.values():
        field_info = {
            "description": arg_descriptions.get(param.name, ""),
        }
        if param.default is not inspect.Parameter.empty:
            field_info["default"] = param.default
        fields[param.name] = (param.annotation, pydantic.Field(**field_info))

    return pydantic.create_model(f"{func.__name__}Schema", **fields)


mcp_server = FastMCP(name=get_config().mcp_server_name)

tool_registry = {}


def add_tool_to_registry(func):
    """Generate the schema of ``func`` and register it with the registry and the server."""
    tool_name = func.__name__

    try:
        description, arg_descriptions = parse_docstring(func)
        schema = create_model_from_func(func, arg_descriptions)

        tool_registry[tool_name] = {
            "name": tool_name,
            "description": description,
            "schema": schema,
            "function": func
        }

        mcp_server.tool()(func)
        logger.info("Registered tool: '%s'", tool_name)

    except (TypeError, ValueError, pydantic.PydanticUserError) as e:
        logger.error("Failed to register tool '%s': %s", tool_name, e)


def register_tool(func):
    """A decorator that registers a function as a tool."""
    add_tool_to_registry(func)
    return func


__all__ = ['mcp_server', 'register_tool', 'tool_registry']
