"""Tests for JsonRpcMessage, LineCodec and stderr classification."""

import json

import pytest

from mcp_bridge.errors import InvalidMessageError
from mcp_bridge.transport import (
    Diagnostic,
    JsonRpcMessage,
    LineCodec,
    ProcessExit,
    classify_diagnostic,
)


class TestJsonRpcMessage:

    def test_request(self):
        msg = JsonRpcMessage.from_dict({"jsonrpc": "2.0", "id": 1, "method": "initialize", "params": {}})
        assert msg.is_request
        assert not msg.is_notification
        assert not msg.is_response

    def test_notification_has_no_id(self):
        msg = JsonRpcMessage.from_dict({"jsonrpc": "2.0", "method": "notifications/initialized"})
        assert msg.is_notification
        assert not msg.is_request
        assert "id" not in msg.to_dict()

    def test_response_with_result(self):
        msg = JsonRpcMessage.from_dict({"jsonrpc": "2.0", "id": "abc", "result": {"ok": True}})
        assert msg.is_response
        assert msg.to_dict() == {"jsonrpc": "2.0", "id": "abc", "result": {"ok": True}}

    def test_error_response_with_null_id(self):
        msg = JsonRpcMessage.from_dict(
            {"jsonrpc": "2.0", "id": None, "error": {"code": -32700, "message": "Parse error"}}
        )
        assert msg.is_response
        assert msg.to_dict()["id"] is None
        assert "result" not in msg.to_dict()

    def test_null_result_is_kept(self):
        msg = JsonRpcMessage(id=3, result=None)
        assert msg.to_dict() == {"jsonrpc": "2.0", "id": 3, "result": None}

    @pytest.mark.parametrize("bad", [
        [1, 2],
        "text",
        {"jsonrpc": "2.0", "method": 5},
        {"jsonrpc": "2.0", "id": {"nested": 1}, "method": "x"},
        {"jsonrpc": "2.0", "id": True, "method": "x"},
        {"jsonrpc": "2.0", "id": 1, "error": "boom"},
    ])
    def test_invalid_messages_rejected(self, bad):
        with pytest.raises(InvalidMessageError):
            JsonRpcMessage.from_dict(bad)

    def test_json_round_trip(self):
        msg = JsonRpcMessage(id=7, method="tools/call", params={"name": "echo", "arguments": {"message": "hé"}})
        assert JsonRpcMessage.from_json(msg.to_json()) == msg


class TestLineCodec:

    def test_encode_appends_single_newline(self):
        data = LineCodec.encode(JsonRpcMessage(id=1, method="ping"))
        assert data.endswith(b"\n")
        assert data.count(b"\n") == 1
        assert json.loads(data) == {"jsonrpc": "2.0", "id": 1, "method": "ping"}

    def test_encode_accepts_mapping(self):
        data = LineCodec.encode({"jsonrpc": "2.0", "method": "notifications/initialized"})
        assert json.loads(data)["method"] == "notifications/initialized"

    def test_feed_multiple_messages_in_one_chunk(self):
        codec = LineCodec()
        chunk = b'{"jsonrpc":"2.0","id":1,"result":{}}\n{"jsonrpc":"2.0","method":"n"}\n'
        messages = codec.feed(chunk)
        assert [m.id for m in messages] == [1, None]
        assert codec.pending_bytes == 0

    def test_partial_line_is_carried_over(self):
        codec = LineCodec()
        assert codec.feed(b'{"jsonrpc":"2.0","id":1,') == []
        messages = codec.feed(b'"result":"done"}\n')
        assert len(messages) == 1
        assert messages[0].result == "done"

    def test_non_json_line_dropped_in_same_read(self):
        codec = LineCodec()
        messages = codec.feed(b'not json at all\n{"jsonrpc":"2.0","id":2,"result":42}\n')
        assert len(messages) == 1
        assert messages[0].id == 2
        assert messages[0].result == 42

    def test_non_object_json_dropped(self):
        codec = LineCodec()
        assert codec.feed(b'42\n["a"]\n\n   \n') == []

    def test_crlf_line_endings(self):
        codec = LineCodec()
        messages = codec.feed(b'{"jsonrpc":"2.0","id":1,"result":1}\r\n')
        assert messages[0].result == 1

    def test_split_at_every_offset(self):
        """Any two-chunk split yields the same messages, none lost or duplicated."""
        originals = [
            JsonRpcMessage(id=1, method="tools/call", params={"name": "echo", "arguments": {"message": "héllo"}}),
            JsonRpcMessage(method="notifications/message", params={"data": "x"}),
            JsonRpcMessage(id="req_1", result={"content": []}),
        ]
        stream = b"".join(LineCodec.encode(m) for m in originals)
        for offset in range(len(stream) + 1):
            codec = LineCodec()
            decoded = codec.feed(stream[:offset]) + codec.feed(stream[offset:])
            assert decoded == originals, f"split at {offset}"

    def test_flush_parses_unterminated_tail(self):
        codec = LineCodec()
        assert codec.feed(b'{"jsonrpc":"2.0","id":9,"result":null}') == []
        messages = codec.flush()
        assert [m.id for m in messages] == [9]
        assert codec.flush() == []

    def test_invalid_utf8_does_not_raise(self):
        codec = LineCodec()
        messages = codec.feed(b'\xff\xfe garbage\n{"jsonrpc":"2.0","id":1,"result":1}\n')
        assert [m.id for m in messages] == [1]


class TestClassifyDiagnostic:

    @pytest.mark.parametrize("line", [
        "GitLab MCP Server running on stdio",
        "Echo MCP Server running on stdio",
    ])
    def test_ready(self, line):
        assert classify_diagnostic(line) is Diagnostic.READY

    @pytest.mark.parametrize("line", [
        "npm WARN deprecated node-fetch@2.6.0",
        "(node:42) DeprecationWarning: Buffer() is deprecated",
    ])
    def test_warning(self, line):
        assert classify_diagnostic(line) is Diagnostic.WARNING

    @pytest.mark.parametrize("line", [
        "Error: Cannot find module '@gitlab/api-client'",
        "Uncaught Exception: boom",
        "FATAL ERROR: Reached heap limit",
        "Traceback (most recent call last):",
    ])
    def test_fatal(self, line):
        assert classify_diagnostic(line) is Diagnostic.FATAL

    @pytest.mark.parametrize("line", [
        "Fetching project 42",
        "Request failed with status 404, retrying",
        "error count: 0",
    ])
    def test_everything_else_is_informational(self, line):
        assert classify_diagnostic(line) is Diagnostic.INFO


class TestProcessExit:

    def test_exit_code(self):
        assert ProcessExit.from_returncode(3) == ProcessExit(code=3, signal=None)

    def test_signal(self):
        assert ProcessExit.from_returncode(-15) == ProcessExit(code=None, signal="SIGTERM")
