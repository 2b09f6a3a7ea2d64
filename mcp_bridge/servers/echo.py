"""
Echo MCP Tool Server — stand-in for the GitLab tool server.

Used by the integration tests and for running the bridge locally without
GitLab credentials (MCP_SERVER_COMMAND="python -m mcp_bridge.servers.echo").

Launch:
    python -m mcp_bridge.servers.echo [--silent] [--noise] [--fatal]

Test:
    echo '{"jsonrpc":"2.0","method":"ping","params":{},"id":1}' | python -m mcp_bridge.servers.echo
"""

import argparse
import sys

from mcp_bridge.server import StdioToolServer, ToolHandler


class EchoTool(ToolHandler):
    name = "echo"
    description = "Echoes back the input message and arguments. Useful for testing."
    parameters = {
        "message": {
            "type": "string",
            "description": "The message to echo back",
        },
    }

    def handle(self, params: dict) -> dict:
        message = params.get("message", "")
        return {"echoed": message, "length": len(message), "arguments": params}


class AnnounceTool(ToolHandler):
    name = "announce"
    description = "Sends a notifications/message before replying."
    parameters = {
        "text": {"type": "string", "description": "Notification payload"},
    }
    required = ("text",)

    def handle(self, params: dict) -> dict:
        self.server.notify("notifications/message", {"level": "info", "data": params.get("text", "")})
        return {"announced": True}


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Echo MCP tool server (stdio)")
    parser.add_argument("--silent", action="store_true", help="Do not announce readiness on stderr")
    parser.add_argument("--noise", action="store_true", help="Print a non-JSON line on stdout at startup")
    parser.add_argument("--fatal", action="store_true", help="Report a fatal error on stderr and exit 1")
    args = parser.parse_args(argv)

    if args.fatal:
        sys.stderr.write("Error: Cannot find module '@gitlab/api-client'\n")
        sys.stderr.flush()
        sys.exit(1)

    if args.noise:
        sys.stdout.write("not json at all\n")
        sys.stdout.flush()

    server = StdioToolServer("Echo", announce_ready=not args.silent)
    server.register(EchoTool())
    server.register(AnnounceTool())
    server.run()


if __name__ == "__main__":
    main()
