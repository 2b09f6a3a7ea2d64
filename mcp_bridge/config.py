"""
Bridge configuration, read from environment variables.

Required:
    GITLAB_PERSONAL_ACCESS_TOKEN  credential passed to the tool server
    GITLAB_API_URL                GitLab API base URL passed to the tool server
    MCP_AUTH_SECRET               bearer token remote clients must present

Everything else has a default; see load_config().
"""

from __future__ import annotations

import os
import shlex
from dataclasses import dataclass, field
from typing import Callable, Mapping, TypeVar

from mcp_bridge.errors import ConfigError

DEFAULT_SERVER_COMMAND = "npx --yes @modelcontextprotocol/server-gitlab"

REQUIRED_VARS = (
    "GITLAB_PERSONAL_ACCESS_TOKEN",
    "GITLAB_API_URL",
    "MCP_AUTH_SECRET",
)

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}

T = TypeVar("T", int, float)


@dataclass
class BridgeConfig:
    gitlab_token: str = field(repr=False)
    gitlab_api_url: str
    auth_secret: str = field(repr=False)
    host: str = "0.0.0.0"
    port: int = 3000
    server_command: list[str] = field(default_factory=lambda: shlex.split(DEFAULT_SERVER_COMMAND))
    request_timeout: float = 30.0
    startup_timeout: float = 10.0
    strict_readiness: bool = False
    stop_grace: float = 5.0
    session_ttl: float = 3600.0
    session_sweep_interval: float = 600.0
    sse_keepalive: float = 15.0
    cors_allow_origins: list[str] = field(default_factory=lambda: ["*"])

    def child_env(self, base: Mapping[str, str] | None = None) -> dict[str, str]:
        """Environment for the tool server: ours plus the GitLab settings."""
        env = dict(os.environ if base is None else base)
        env.update({
            "GITLAB_PERSONAL_ACCESS_TOKEN": self.gitlab_token,
            "GITLAB_API_URL": self.gitlab_api_url,
            # Keep npx quiet on stderr
            "npm_config_loglevel": "error",
        })
        return env


def load_config(environ: Mapping[str, str] | None = None) -> BridgeConfig:
    """
    Build a BridgeConfig from the environment.

    Raises:
        ConfigError: a required variable is missing or a value is malformed.
    """
    env = os.environ if environ is None else environ

    missing = [name for name in REQUIRED_VARS if not env.get(name, "").strip()]
    if missing:
        raise ConfigError(f"Missing required environment variable(s): {', '.join(missing)}")

    command = shlex.split(env.get("MCP_SERVER_COMMAND") or DEFAULT_SERVER_COMMAND)
    origins = [o.strip() for o in env.get("CORS_ALLOW_ORIGINS", "*").split(",") if o.strip()]

    return BridgeConfig(
        gitlab_token=env["GITLAB_PERSONAL_ACCESS_TOKEN"].strip(),
        gitlab_api_url=env["GITLAB_API_URL"].strip(),
        auth_secret=env["MCP_AUTH_SECRET"].strip(),
        host=env.get("HOST") or "0.0.0.0",
        port=_number(env, "PORT", 3000, int),
        server_command=command,
        request_timeout=_number(env, "MCP_REQUEST_TIMEOUT", 30.0, float),
        startup_timeout=_number(env, "MCP_STARTUP_TIMEOUT", 10.0, float),
        strict_readiness=_flag(env, "MCP_STRICT_READINESS", False),
        stop_grace=_number(env, "MCP_STOP_GRACE", 5.0, float),
        session_ttl=_number(env, "MCP_SESSION_TTL", 3600.0, float),
        session_sweep_interval=_number(env, "MCP_SESSION_SWEEP_INTERVAL", 600.0, float),
        sse_keepalive=_number(env, "MCP_SSE_KEEPALIVE", 15.0, float),
        cors_allow_origins=origins or ["*"],
    )


def _number(env: Mapping[str, str], name: str, default: T, cast: Callable[[str], T]) -> T:
    raw = env.get(name, "").strip()
    if not raw:
        return default
    try:
        value = cast(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from None
    if value <= 0:
        raise ConfigError(f"{name} must be positive, got {raw!r}")
    return value


def _flag(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name, "").strip().lower()
    if not raw:
        return default
    if raw in _TRUE:
        return True
    if raw in _FALSE:
        return False
    raise ConfigError(f"{name} must be a boolean, got {raw!r}")
