"""
Argument-name compatibility for tool calls.

Remote clients sometimes send generic argument names ("project") where the
GitLab tool server's schemas expect specific ones ("project_id"). A rename
only happens when the expected name is absent and the alternate is present.
"""

from __future__ import annotations

import dataclasses
import logging
from typing import Any

from mcp_bridge.transport import JsonRpcMessage

logger = logging.getLogger(__name__)

# (alternate, expected)
PARAMETER_RENAMES: tuple[tuple[str, str], ...] = (
    ("project", "project_id"),
    ("mr_iid", "merge_request_iid"),
    ("issue", "issue_iid"),
)


def reconcile_arguments(arguments: dict[str, Any]) -> dict[str, Any]:
    """Return a copy of tool arguments with alternate names renamed."""
    fixed = dict(arguments)
    for alternate, expected in PARAMETER_RENAMES:
        if expected not in fixed and alternate in fixed:
            fixed[expected] = fixed.pop(alternate)
    return fixed


def reconcile_tool_call(message: JsonRpcMessage) -> JsonRpcMessage:
    """Apply reconcile_arguments to a tools/call request; other messages pass through."""
    if message.method != "tools/call" or not isinstance(message.params, dict):
        return message

    arguments = message.params.get("arguments")
    if not isinstance(arguments, dict):
        return message

    fixed = reconcile_arguments(arguments)
    if fixed.keys() == arguments.keys():
        return message

    logger.debug(
        f"Renamed arguments for tool '{message.params.get('name')}': "
        f"{sorted(arguments)} -> {sorted(fixed)}"
    )
    return dataclasses.replace(message, params={**message.params, "arguments": fixed})
