"""LangChain tool wrappers over an in-memory tool server."""

import pytest

pytest.importorskip("langchain_core")

from mcp_bridge.langchain_tools import (  # noqa: E402
    load_langchain_tools,
    mcp_to_langchain_tool,
    render_tool_result,
)
from mcp_bridge.manager import ToolServerManager  # noqa: E402
from mcp_bridge.transport import JsonRpcMessage  # noqa: E402
from tests.helpers import FakeTransport  # noqa: E402

TOOLS = [
    {
        "name": "get_project",
        "description": "Get details of a GitLab project",
        "inputSchema": {
            "type": "object",
            "properties": {"project_id": {"type": "string"}},
            "required": ["project_id"],
        },
    },
    {"name": "list_groups"},
]


def gitlab_responder(message: JsonRpcMessage) -> list:
    if not message.is_request:
        return []
    if message.method == "initialize":
        result = {"protocolVersion": "2024-11-05", "capabilities": {"tools": {}}}
    elif message.method == "tools/list":
        result = {"tools": TOOLS}
    elif message.method == "tools/call":
        arguments = message.params["arguments"]
        result = {"content": [{"type": "text", "text": f"project {arguments.get('project_id')}"}]}
    else:
        return [JsonRpcMessage(id=message.id, error={"code": -32601, "message": "Method not found"})]
    return [JsonRpcMessage(id=message.id, result=result)]


def make_manager():
    transports = []

    def factory():
        transport = FakeTransport(gitlab_responder)
        transports.append(transport)
        return transport

    return ToolServerManager(transport_factory=factory), transports


@pytest.mark.asyncio
async def test_load_tools_discovers_every_tool():
    manager, transports = make_manager()

    tools = await load_langchain_tools(manager)

    assert [t.name for t in tools] == ["get_project", "list_groups"]
    assert tools[0].description == "Get details of a GitLab project"
    assert tools[1].description == "MCP tool: list_groups"
    methods = [m.method for m in transports[0].sent]
    assert methods == ["initialize", "notifications/initialized", "tools/list"]


@pytest.mark.asyncio
async def test_tool_call_forwards_reconciled_arguments():
    manager, transports = make_manager()
    tool = mcp_to_langchain_tool(manager, TOOLS[0])

    output = await tool.coroutine(project="group/app")

    assert output == "project group/app"
    assert transports[0].sent[-1].params == {
        "name": "get_project",
        "arguments": {"project_id": "group/app"},
    }


@pytest.mark.asyncio
async def test_description_override():
    manager, _ = make_manager()
    tool = mcp_to_langchain_tool(manager, TOOLS[0], description_override="Look up a project")
    assert tool.description == "Look up a project"


@pytest.mark.asyncio
async def test_bridge_failure_returned_as_text():
    def failing_responder(message):
        return [JsonRpcMessage(id=message.id, error={"code": -32602, "message": "Unknown tool"})]

    manager = ToolServerManager(transport_factory=lambda: FakeTransport(failing_responder))
    tool = mcp_to_langchain_tool(manager, {"name": "missing"})

    output = await tool.coroutine()

    assert output.startswith("Error calling missing:")
    assert "Unknown tool" in output


def test_render_text_content():
    result = {"content": [{"type": "text", "text": "a"}, {"type": "text", "text": "b"}]}
    assert render_tool_result(result) == "a\nb"


def test_render_error_result():
    result = {"content": [{"type": "text", "text": "404 Project Not Found"}], "isError": True}
    assert render_tool_result(result) == "[Error] 404 Project Not Found"


def test_render_other_results_as_json():
    assert render_tool_result({"value": 1}) == '{\n  "value": 1\n}'
    assert render_tool_result("plain") == "plain"
