# sfsync/main.py
import sys
import logging
from sfsync.config import get_config
from sfsync.mcp.server import mcp_server, tool_registry
from sfsync.utils.logging import setup_structured_logging

# IMPORTANT: import tool modules so @register_tool executes.
# If you add more tool files later, import them here too.
from sfsync.mcp.tools import auth_tools as _auth_tools  # noqa: F401
from sfsync.mcp.tools import sync_tools as _sync_tools  # noqa: F401
from sfsync.mcp.tools import describe_tools as _describe_tools  # noqa: F401


def main(argv=None):
    argv = sys.argv[1:] if argv is None else argv
    config = get_config()
    setup_structured_logging(level=config.log_level, use_json=config.log_json)

    if "--sse" in argv or "--http" in argv:
        logging.info("MCP starting (SSE)")
        logging.info("Tools: %s", ", ".join(tool_registry.keys()) or "(none)")
        mcp_server.run(transport="sse")
    else:
        logging.info("MCP starting (stdio)")
        logging.info("Workspace: %s", config.workspace)
        logging.info("Tools: %s", ", ".join(tool_registry.keys()) or "(none)")
        mcp_server.run(transport="stdio")


if __name__ == "__main__":
    main()
