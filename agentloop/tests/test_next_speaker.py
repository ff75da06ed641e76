"""Tests for next-speaker inference."""

from unittest.mock import MagicMock

import pytest

from agentloop.chat_session import ChatSession
from agentloop.config import DEFAULT_FLASH_MODEL, EngineConfig
from agentloop.errors import ParseError, UnauthorizedError
from agentloop.next_speaker import RESPONSE_SCHEMA, check_next_speaker
from agentloop.plugins.model_provider.types import FunctionCall, FunctionResponse, Message, Part, Role
from agentloop.tests.fakes import FakeProvider


def _chat(*history: Message) -> ChatSession:
    return ChatSession(EngineConfig(), FakeProvider(), history=list(history))


def _user(text):
    return Message.from_text(Role.USER, text)


def _model(text):
    return Message.from_text(Role.MODEL, text)


class TestCheckNextSpeaker:

    def test_empty_history(self):
        orchestrator = MagicMock()
        assert check_next_speaker(_chat(), orchestrator) is None
        orchestrator.generate_json.assert_not_called()

    def test_function_response_means_model(self):
        response = Message(role=Role.USER, parts=[Part.from_function_response(
            FunctionResponse(id="1", name="ls", response={"output": "a"}))])
        orchestrator = MagicMock()
        result = check_next_speaker(_chat(_user("ls"), _model("calling"), response), orchestrator)
        assert result["next_speaker"] == "model"
        orchestrator.generate_json.assert_not_called()

    def test_empty_model_message_means_model(self):
        orchestrator = MagicMock()
        chat = _chat(_user("hi"), Message(role=Role.MODEL, parts=[]))
        assert check_next_speaker(chat, orchestrator)["next_speaker"] == "model"

    def test_last_curated_message_from_user(self):
        orchestrator = MagicMock()
        assert check_next_speaker(_chat(_user("hi")), orchestrator) is None
        orchestrator.generate_json.assert_not_called()

    def test_asks_flash_model(self):
        orchestrator = MagicMock()
        orchestrator.generate_json.return_value = {"reasoning": "question", "next_speaker": "user"}
        result = check_next_speaker(_chat(_user("hi"), _model("What file?")), orchestrator)
        assert result["next_speaker"] == "user"
        args, kwargs = orchestrator.generate_json.call_args
        contents, schema = args
        assert schema is RESPONSE_SCHEMA
        assert kwargs["model"] == DEFAULT_FLASH_MODEL
        assert contents[-1].role == Role.USER
        assert contents[-2].text == "What file?"

    def test_tool_exchange_left_out_of_request(self):
        call = Message(role=Role.MODEL, parts=[
            Part.from_text("Let me look."),
            Part.from_function_call(FunctionCall(id="1", name="ls", args={})),
        ])
        response = Message(role=Role.USER, parts=[Part.from_function_response(
            FunctionResponse(id="1", name="ls", response={"output": "a.py"}))])
        orchestrator = MagicMock()
        orchestrator.generate_json.return_value = {"reasoning": "done", "next_speaker": "user"}

        check_next_speaker(_chat(_user("list files"), call, response, _model("Done.")), orchestrator)

        contents = orchestrator.generate_json.call_args.args[0]
        assert [m for m in contents if m.is_function_response] == []
        assert not any(p.function_call for m in contents for p in m.parts)
        assert [m.role for m in contents] == [Role.USER, Role.MODEL, Role.USER]
        assert contents[1].text == "Let me look.Done."

    def test_invalid_answer(self):
        orchestrator = MagicMock()
        orchestrator.generate_json.return_value = {"next_speaker": "nobody"}
        assert check_next_speaker(_chat(_user("hi"), _model("ok")), orchestrator) is None

    def test_failure_is_undecided(self):
        orchestrator = MagicMock()
        orchestrator.generate_json.side_effect = ParseError("garbage")
        assert check_next_speaker(_chat(_user("hi"), _model("ok")), orchestrator) is None

    def test_unauthorized_propagates(self):
        orchestrator = MagicMock()
        orchestrator.generate_json.side_effect = UnauthorizedError()
        with pytest.raises(UnauthorizedError):
            check_next_speaker(_chat(_user("hi"), _model("ok")), orchestrator)
