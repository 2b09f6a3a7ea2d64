"""
Run Server — serve the GitLab MCP tool server over HTTP/SSE.

This is the script that wires everything together. It:
1. Loads configuration (.env file, then the environment)
2. Builds the Starlette app around a ToolServerManager
3. Serves it with uvicorn; the tool server starts on the first client

Usage:
    # Required: GITLAB_PERSONAL_ACCESS_TOKEN, GITLAB_API_URL, MCP_AUTH_SECRET
    python run_server.py

    # Different port, verbose logging
    python run_server.py --port 8080 --verbose

    # Local development without GitLab (reference echo server)
    MCP_SERVER_COMMAND="python -m mcp_bridge.servers.echo" python run_server.py

Endpoints:
    GET  /health          liveness (no auth)
    GET  /sse             event stream (Authorization: Bearer $MCP_AUTH_SECRET)
    POST /sse/messages    JSON-RPC messages (same auth)
"""

from __future__ import annotations

import argparse
import logging
import sys

import uvicorn
from dotenv import load_dotenv

from mcp_bridge.app import create_app
from mcp_bridge.config import load_config
from mcp_bridge.errors import ConfigError

logger = logging.getLogger(__name__)


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        description="Serve a stdio MCP tool server (GitLab by default) over HTTP/SSE.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python run_server.py
  python run_server.py --port 8080 --verbose
  python run_server.py --env-file deploy/.env.production
        """,
    )
    parser.add_argument("--host", type=str, default=None, help="Listen address (default: $HOST or 0.0.0.0)")
    parser.add_argument("--port", "-p", type=int, default=None, help="Listen port (default: $PORT or 3000)")
    parser.add_argument("--env-file", type=str, default=None, help="Load environment from this file (default: .env)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Show debug output")

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    load_dotenv(args.env_file)

    try:
        config = load_config()
    except ConfigError as e:
        logger.error(f"❌ {e}")
        sys.exit(1)

    if args.host:
        config.host = args.host
    if args.port:
        config.port = args.port

    app = create_app(config)

    logger.info(f"✅ GitLab MCP bridge listening on {config.host}:{config.port}")
    logger.info(f"   Tool server: {' '.join(config.server_command)}")
    logger.info("   Health check: /health")
    logger.info("   SSE endpoint: /sse")
    logger.info("   Messages endpoint: POST /sse/messages")

    uvicorn.run(app, host=config.host, port=config.port, log_level="debug" if args.verbose else "info")


if __name__ == "__main__":
    main()
