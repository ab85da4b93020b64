"""
Tests for agent_sandbox/websocket/models.py - wire models and helpers.
"""

import base64

import pytest
from pydantic import ValidationError

from agent_sandbox.websocket.models import (
    GetStateRequest,
    TerminalCreateRequest,
    TerminalState,
    create_close_message,
    create_input_message,
    create_resize_message,
    create_stop_watch_message,
    create_watch_message,
    decode_base64_text,
    expected_reply_types,
    message_tag,
    parse_exec_result,
)


def b64(text: str) -> str:
    return base64.b64encode(text.encode("utf-8")).decode("ascii")


class TestOutboundMessages:
    """Tests for message construction."""

    def test_create_request_defaults(self):
        """Test that unset optional fields are omitted and aliases are used."""
        message = TerminalCreateRequest().to_message()

        assert message == {"action": "terminal_create", "cols": 120, "rows": 30, "force": False}

    def test_execute_style_request(self):
        """Test camelCase aliases for execution flags."""
        message = TerminalCreateRequest(
            terminal_id=0,
            command="ls",
            args=["-la"],
            task=True,
            force=True,
            with_logs=True,
            await_finish=True,
            timeout=30000,
        ).to_message()

        assert message["terminalId"] == 0
        assert message["withLogs"] is True
        assert message["awaitFinish"] is True
        assert message["args"] == ["-la"]
        assert "cwd" not in message

    def test_invalid_size_rejected(self):
        with pytest.raises(ValidationError):
            TerminalCreateRequest(cols=0)

    def test_short_form_messages(self):
        """Test input and resize messages use the short discriminator."""
        assert create_input_message(2, "ls\n") == {"a": "i", "id": 2, "d": "ls\n"}
        assert create_resize_message(2, 100, 40) == {"a": "r", "id": 2, "cols": 100, "rows": 40}

    def test_get_state_request(self):
        message = GetStateRequest(id=4, new_only=True).to_message()
        assert message == {
            "action": "get_state",
            "id": 4,
            "newOnly": True,
            "maxLines": 100,
            "direction": "bottom",
        }

    def test_close_and_watch_messages(self):
        assert create_close_message(7) == {"action": "terminal_close", "terminalId": 7, "force": True}
        assert create_watch_message(["node_modules"]) == {"type": "watch", "ignorePatterns": ["node_modules"]}
        assert create_watch_message() == {"type": "watch", "ignorePatterns": []}
        assert create_stop_watch_message() == {"type": "stop_watch"}


class TestTags:
    """Tests for message discrimination."""

    def test_message_tag_order(self):
        assert message_tag({"type": "terminal_state", "action": "get_state"}) == "terminal_state"
        assert message_tag({"action": "terminal_list"}) == "terminal_list"
        assert message_tag({"a": "i"}) == "i"
        assert message_tag({"data": 1}) is None

    def test_expected_reply_types(self):
        """Test the default reply filter table."""
        assert expected_reply_types({"action": "terminal_create"}) == {"terminal_created", "terminal_error"}
        assert expected_reply_types({"action": "terminal_close"}) == {"terminal_closed", "terminal_error"}
        assert expected_reply_types({"action": "terminal_list"}) == {"terminal_list", "terminal_error"}
        assert expected_reply_types({"action": "get_state"}) == {"terminal_state", "terminal_error"}
        assert expected_reply_types({"a": "r"}) == {"terminal_resized", "terminal_error"}
        assert expected_reply_types({"action": "custom"}) is None
        assert expected_reply_types({"type": "watch"}) is None


class TestReplies:
    """Tests for reply parsing."""

    def test_exec_result_nested_exit_code(self):
        """Test exit code lookup through exit.code.exitCode."""
        reply = {"exit": {"code": {"exitCode": 2, "signal": 9}}, "logs": b64("fail\n")}
        result = parse_exec_result(reply)

        assert result.exit_code == 2
        assert result.signal == 9
        assert result.logs == "fail\n"

    def test_exec_result_flat_exit_code(self):
        assert parse_exec_result({"exit": {"code": 3, "signal": 15}}).exit_code == 3
        assert parse_exec_result({"exit": {"code": 3, "signal": 15}}).signal == 15
        assert parse_exec_result({"exitCode": 4}).exit_code == 4

    def test_exec_result_defaults(self):
        result = parse_exec_result({"type": "terminal_created"})
        assert (result.exit_code, result.signal, result.logs) == (0, 0, "")

    def test_terminal_state_text(self):
        """Test TerminalState parsing and decoding."""
        state = TerminalState.model_validate({
            "type": "terminal_state",
            "state": b64("héllo"),
            "newOnly": True,
            "hasNewContent": True,
            "linesCount": 1,
        })

        assert state.text == "héllo"
        assert state.new_only is True
        assert state.has_new_content is True
        assert state.lines_count == 1

    def test_decode_base64_text_handles_bad_input(self):
        assert decode_base64_text("") == ""
        assert decode_base64_text("abc") == ""
        assert decode_base64_text(base64.b64encode(b"\xff ok").decode()) == "� ok"
