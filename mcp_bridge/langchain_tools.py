"""
Expose the tool server's tools as LangChain tools.

For in-process agents that want the GitLab tools without going through
HTTP: tools are discovered with tools/list and each call is a tools/call
through the same ToolServerManager (and argument reconciliation) the
HTTP front uses.

Usage:
    from mcp_bridge.langchain_tools import load_langchain_tools

    manager = ToolServerManager.from_config(load_config())
    tools = await load_langchain_tools(manager)
    agent = create_react_agent(model, tools)
"""

from __future__ import annotations

import json
from typing import Any

from langchain_core.tools import StructuredTool

from mcp_bridge.errors import BridgeError
from mcp_bridge.manager import ToolServerManager

EMPTY_SCHEMA = {"type": "object", "properties": {}}


async def discover_tools(manager: ToolServerManager) -> list[dict]:
    """Handshake with the tool server (once) and return its tool schemas."""
    await manager.ensure_initialized()
    return await manager.list_tools()


def mcp_to_langchain_tool(
    manager: ToolServerManager,
    tool_schema: dict,
    description_override: str | None = None,
) -> StructuredTool:
    """
    Create a LangChain StructuredTool that wraps a tool server call.

    The returned tool, when invoked by an agent, sends a tools/call request
    through the manager and returns the result as text.

    Args:
        manager: The ToolServerManager owning the process
        tool_schema: One entry of the tools/list result
        description_override: Optional override for the tool description
    """
    tool_name = tool_schema["name"]
    description = (
        description_override
        or tool_schema.get("description")
        or f"MCP tool: {tool_name}"
    )

    async def _call_mcp(**kwargs: Any) -> str:
        """Proxy call to the MCP tool server."""
        try:
            result = await manager.call_tool(tool_name, kwargs)
        except BridgeError as e:
            return f"Error calling {tool_name}: {e}"
        return render_tool_result(result)

    return StructuredTool.from_function(
        coroutine=_call_mcp,
        name=tool_name,
        description=description,
        args_schema=tool_schema.get("inputSchema") or EMPTY_SCHEMA,
    )


async def load_langchain_tools(manager: ToolServerManager) -> list[StructuredTool]:
    """Discover every tool and wrap it."""
    return [mcp_to_langchain_tool(manager, schema) for schema in await discover_tools(manager)]


def render_tool_result(result: Any) -> str:
    """Flatten an MCP tools/call result to text for the model."""
    if isinstance(result, str):
        return result
    if isinstance(result, dict) and isinstance(result.get("content"), list):
        texts = [
            block.get("text", "")
            for block in result["content"]
            if isinstance(block, dict) and block.get("type") == "text"
        ]
        text = "\n".join(texts) if texts else json.dumps(result["content"], indent=2)
        return f"[Error] {text}" if result.get("isError") else text
    return json.dumps(result, indent=2)
