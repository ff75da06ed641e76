"""Tests for the ToolScheduler lifecycle."""

import threading
from pathlib import Path
from typing import List
from unittest.mock import MagicMock, patch

import pytest

from agentloop.config import ApprovalMode, EngineConfig
from agentloop.errors import ConcurrentScheduleError
from agentloop.events import ToolCallRequestInfo
from agentloop.plugins.model_provider.types import CancelToken, FunctionResponse, Part
from agentloop.plugins.telemetry import ToolCallDecision, ToolCallEvent
from agentloop.tool_scheduler import (
    ToolCallStatus,
    ToolScheduler,
    convert_to_function_response,
)
from agentloop.tools.base import BaseTool, ToolConfirmationOutcome, ToolResult
from agentloop.tools.modifiable import ModifyContext
from agentloop.tools.registry import ToolRegistry
from agentloop.tools.trust import TrustPolicy
from agentloop.tests.fakes import BlockingTool, EchoTool, FailingTool


def _request(name: str, call_id: str = "c1", **args) -> ToolCallRequestInfo:
    return ToolCallRequestInfo(call_id=call_id, name=name, args=args)


class Harness:
    """Scheduler plus a registry and completion capture."""

    def __init__(self, *tools: BaseTool, approval_mode=ApprovalMode.DEFAULT, trust_policy=None, telemetry=None,
                 editor=None, output_update_handler=None):
        self.config = EngineConfig(approval_mode=approval_mode, editor=editor)
        self.registry = ToolRegistry(self.config)
        for tool in tools:
            self.registry.register_tool(tool)
        self.completions: List[list] = []
        self.updates: List[list] = []
        self.done = threading.Event()
        self.scheduler = ToolScheduler(
            self.registry,
            self.config,
            output_update_handler=output_update_handler,
            on_all_tool_calls_complete=self._on_complete,
            on_tool_calls_update=self.updates.append,
            trust_policy=trust_policy,
            telemetry=telemetry,
        )

    def _on_complete(self, calls):
        self.completions.append(calls)
        self.done.set()

    def wait(self, timeout: float = 5.0) -> list:
        assert self.done.wait(timeout), "batch did not complete"
        return self.completions[-1]


class TestConvertToFunctionResponse:

    def test_text(self):
        parts = convert_to_function_response("ls", "c1", "a.py")
        assert len(parts) == 1
        assert parts[0].function_response.response == {"output": "a.py"}
        assert parts[0].function_response.id == "c1"
        assert parts[0].function_response.name == "ls"

    def test_single_element_list_is_unwrapped(self):
        parts = convert_to_function_response("ls", "c1", ["only"])
        assert parts[0].function_response.response == {"output": "only"}

    def test_binary_part(self):
        blob = Part(inline_data={"mime_type": "image/png", "data": b"\x89PNG"})
        parts = convert_to_function_response("shot", "c1", blob)
        assert parts[0].function_response.response == {
            "output": "Binary content of type image/png was processed."
        }
        assert parts[1] is blob

    def test_multiple_parts(self):
        parts = convert_to_function_response("multi", "c1", ["one", Part.from_text("two")])
        assert parts[0].function_response.response == {"output": "Tool execution succeeded."}
        assert [p.text for p in parts[1:]] == ["one", "two"]

    def test_function_response_passthrough(self):
        inner = Part.from_function_response(FunctionResponse(id="x", name="t", response={"output": "raw"}))
        assert convert_to_function_response("t", "c1", inner) == [inner]


class TestScheduling:

    def test_successful_call(self):
        tool = EchoTool()
        harness = Harness(tool)
        harness.scheduler.schedule(_request("echo", text="hi"), CancelToken())
        [call] = harness.wait()
        assert call.status == ToolCallStatus.SUCCESS
        assert call.response.response_parts[0].function_response.response == {"output": "hi"}
        assert call.response.result_display == "hi"
        assert tool.executed == [{"text": "hi"}]
        assert harness.scheduler.tool_calls == []

    def test_pre_cancelled_token_cancels_without_executing(self):
        tool = EchoTool(needs_confirmation=True)
        harness = Harness(tool)
        token = CancelToken()
        token.cancel()
        harness.scheduler.schedule(_request("echo", text="hi"), token)
        [call] = harness.wait()
        assert call.status == ToolCallStatus.CANCELLED
        assert len(harness.completions) == 1
        assert tool.executed == []
        assert "[Operation Cancelled]" in call.response.response_parts[0].function_response.response["error"]

    def test_unknown_tool(self):
        harness = Harness()
        harness.scheduler.schedule(_request("nope"), CancelToken())
        [call] = harness.wait()
        assert call.status == ToolCallStatus.ERROR
        assert call.response.response_parts[0].function_response.response == {
            "error": 'Tool "nope" not found in registry.'
        }

    def test_execute_raises(self):
        harness = Harness(FailingTool())
        harness.scheduler.schedule(_request("boom"), CancelToken())
        [call] = harness.wait()
        assert call.status == ToolCallStatus.ERROR
        assert "disk on fire" in call.response.response_parts[0].function_response.response["error"]

    def test_execute_raises_after_cancel_is_cancelled(self):
        token = CancelToken()

        class CancelThenFail(BaseTool):
            def __init__(self):
                super().__init__("flaky", "flaky", "Cancels then fails.")

            def execute(self, params, cancel_token=None, update_output=None):
                token.cancel()
                raise RuntimeError("aborted")

        harness = Harness(CancelThenFail())
        harness.scheduler.schedule(_request("flaky"), token)
        [call] = harness.wait()
        assert call.status == ToolCallStatus.CANCELLED

    def test_tool_reported_error(self):
        tool = EchoTool(result=ToolResult(llm_content="exit 1", return_display="failed", error="exit 1"))
        harness = Harness(tool)
        harness.scheduler.schedule(_request("echo"), CancelToken())
        [call] = harness.wait()
        assert call.status == ToolCallStatus.ERROR
        assert call.response.result_display == "failed"

    def test_batch_completes_once_with_all_calls(self):
        harness = Harness(EchoTool("a"), EchoTool("b"), FailingTool())
        harness.scheduler.schedule([
            _request("a", "1", text="x"), _request("b", "2", text="y"), _request("boom", "3"),
        ], CancelToken())
        calls = harness.wait()
        assert [c.request.call_id for c in calls] == ["1", "2", "3"]
        assert [c.status for c in calls] == [
            ToolCallStatus.SUCCESS, ToolCallStatus.SUCCESS, ToolCallStatus.ERROR,
        ]
        assert len(harness.completions) == 1
        assert all(c.duration_ms is not None for c in calls)

    def test_admission_rejected_while_running(self):
        slow = BlockingTool()
        harness = Harness(slow, EchoTool())
        harness.scheduler.schedule(_request("slow"), CancelToken())
        assert slow.started.wait(5.0)
        with pytest.raises(ConcurrentScheduleError):
            harness.scheduler.schedule(_request("echo", "c2"), CancelToken())
        slow.release.set()
        [call] = harness.wait()
        assert call.status == ToolCallStatus.SUCCESS

    def test_nothing_executes_while_a_call_awaits_approval(self):
        auto = EchoTool("auto")
        gated = EchoTool("gated", needs_confirmation=True)
        harness = Harness(auto, gated)
        harness.scheduler.schedule([_request("auto", "1"), _request("gated", "2")], CancelToken())

        statuses = {c.request.call_id: c.status for c in harness.scheduler.tool_calls}
        assert statuses == {"1": ToolCallStatus.SCHEDULED, "2": ToolCallStatus.AWAITING_APPROVAL}
        assert auto.executed == []

        waiting = harness.scheduler.tool_calls[1]
        waiting.confirmation_details.on_confirm(ToolConfirmationOutcome.PROCEED_ONCE)
        calls = harness.wait()
        assert [c.status for c in calls] == [ToolCallStatus.SUCCESS, ToolCallStatus.SUCCESS]
        assert gated.confirm_outcomes == [ToolConfirmationOutcome.PROCEED_ONCE]


class TestConfirmation:

    def test_cancel_outcome(self):
        tool = EchoTool(needs_confirmation=True)
        harness = Harness(tool)
        harness.scheduler.schedule(_request("echo"), CancelToken())
        [waiting] = harness.scheduler.tool_calls
        waiting.confirmation_details.on_confirm(ToolConfirmationOutcome.CANCEL)
        [call] = harness.wait()
        assert call.status == ToolCallStatus.CANCELLED
        assert tool.executed == []
        assert call.outcome == ToolConfirmationOutcome.CANCEL

    def test_yolo_skips_confirmation(self):
        tool = EchoTool(needs_confirmation=True)
        harness = Harness(tool, approval_mode=ApprovalMode.YOLO)
        harness.scheduler.schedule(_request("echo", text="go"), CancelToken())
        [call] = harness.wait()
        assert call.status == ToolCallStatus.SUCCESS

    def test_proceed_always_is_remembered(self):
        trust = TrustPolicy()
        tool = EchoTool(needs_confirmation=True)
        harness = Harness(tool, trust_policy=trust)
        harness.scheduler.schedule(_request("echo"), CancelToken())
        harness.scheduler.tool_calls[0].confirmation_details.on_confirm(
            ToolConfirmationOutcome.PROCEED_ALWAYS
        )
        harness.wait()
        assert trust.is_trusted(None, "echo")

        harness.done.clear()
        harness.scheduler.schedule(_request("echo", "c2"), CancelToken())
        [call] = harness.wait()
        assert call.status == ToolCallStatus.SUCCESS
        assert len(tool.confirm_outcomes) == 1

    def test_confirmation_callback_failure_is_error(self):
        tool = EchoTool(needs_confirmation=True)
        harness = Harness(tool)
        harness.scheduler.schedule(_request("echo"), CancelToken())
        tool.confirm_outcomes = None
        harness.scheduler.tool_calls[0].confirmation_details.on_confirm(ToolConfirmationOutcome.PROCEED_ONCE)
        [call] = harness.wait()
        assert call.status == ToolCallStatus.ERROR

    def test_late_confirmation_is_ignored(self):
        tool = EchoTool(needs_confirmation=True)
        harness = Harness(tool)
        harness.scheduler.schedule(_request("echo"), CancelToken())
        on_confirm = harness.scheduler.tool_calls[0].confirmation_details.on_confirm
        on_confirm(ToolConfirmationOutcome.CANCEL)
        harness.wait()
        on_confirm(ToolConfirmationOutcome.PROCEED_ONCE)
        assert len(harness.completions) == 1
        assert tool.executed == []


class TestTelemetry:

    def test_one_record_per_call(self):
        telemetry = MagicMock()
        tool = EchoTool(needs_confirmation=True)
        harness = Harness(tool, telemetry=telemetry)
        harness.scheduler.schedule(_request("echo", text="x"), CancelToken())
        harness.scheduler.tool_calls[0].confirmation_details.on_confirm(ToolConfirmationOutcome.PROCEED_ONCE)
        harness.wait()
        records = [c.args[0] for c in telemetry.log_event.call_args_list]
        assert len(records) == 1
        assert isinstance(records[0], ToolCallEvent)
        assert records[0].function_name == "echo"
        assert records[0].success is True
        assert records[0].decision == ToolCallDecision.ACCEPT


class EditTool(EchoTool):
    """Confirmable tool whose proposal can be edited before it runs."""

    def __init__(self):
        super().__init__("edit", needs_confirmation=True)

    def get_modify_context(self, cancel_token):
        return ModifyContext(
            get_file_path=lambda params: params["file_path"],
            get_current_content=lambda params: "old line\n",
            get_proposed_content=lambda params: params["new_string"],
            create_updated_params=lambda old, new, params: {**params, "new_string": new},
        )


class StreamingTool(BaseTool):
    """Reports live output, then waits until released."""

    def __init__(self):
        super().__init__("tail", "tail", "Streams output.", can_update_output=True)
        self.reported = threading.Event()
        self.release = threading.Event()

    def execute(self, params, cancel_token=None, update_output=None):
        update_output("line 1")
        update_output("line 1\nline 2")
        self.reported.set()
        self.release.wait(5.0)
        return ToolResult(llm_content="line 1\nline 2")


class TestModifyWithEditor:

    def test_edit_keeps_call_awaiting_approval_until_proceed(self):
        tool = EditTool()
        harness = Harness(tool, editor="vim")
        harness.scheduler.schedule(
            _request("edit", file_path="/src/app.py", new_string="new line\n"), CancelToken()
        )
        [waiting] = harness.scheduler.tool_calls

        def user_edits(old_path, new_path, editor):
            Path(new_path).write_text("edited line\n", encoding="utf-8")

        with patch("agentloop.tools.modifiable.open_diff", side_effect=user_edits):
            waiting.confirmation_details.on_confirm(ToolConfirmationOutcome.MODIFY_WITH_EDITOR)

        [modified] = harness.scheduler.tool_calls
        assert modified.status == ToolCallStatus.AWAITING_APPROVAL
        assert modified.request.args["new_string"] == "edited line\n"
        assert "+edited line" in modified.confirmation_details.file_diff
        assert not modified.confirmation_details.is_modifying
        assert tool.executed == []
        assert harness.completions == []

        modified.confirmation_details.on_confirm(ToolConfirmationOutcome.PROCEED_ONCE)
        [call] = harness.wait()
        assert call.status == ToolCallStatus.SUCCESS
        assert tool.executed == [{"file_path": "/src/app.py", "new_string": "edited line\n"}]
        assert tool.confirm_outcomes == [
            ToolConfirmationOutcome.MODIFY_WITH_EDITOR, ToolConfirmationOutcome.PROCEED_ONCE,
        ]

    def test_without_editor_call_stays_waiting(self):
        tool = EditTool()
        harness = Harness(tool)
        harness.scheduler.schedule(
            _request("edit", file_path="/src/app.py", new_string="new line\n"), CancelToken()
        )
        harness.scheduler.tool_calls[0].confirmation_details.on_confirm(
            ToolConfirmationOutcome.MODIFY_WITH_EDITOR
        )
        [call] = harness.scheduler.tool_calls
        assert call.status == ToolCallStatus.AWAITING_APPROVAL
        assert call.request.args["new_string"] == "new line\n"


class TestExecution:

    def test_live_output_replaces_without_state_change(self):
        chunks = []
        tool = StreamingTool()
        harness = Harness(tool, output_update_handler=lambda call_id, chunk: chunks.append((call_id, chunk)))
        harness.scheduler.schedule(_request("tail"), CancelToken())
        assert tool.reported.wait(5.0)

        [call] = harness.scheduler.tool_calls
        assert call.status == ToolCallStatus.EXECUTING
        assert call.live_output == "line 1\nline 2"
        assert chunks == [("c1", "line 1"), ("c1", "line 1\nline 2")]

        tool.release.set()
        [done] = harness.wait()
        assert done.status == ToolCallStatus.SUCCESS

    def test_scheduled_calls_run_concurrently(self):
        first = BlockingTool("first")
        second = BlockingTool("second")
        harness = Harness(first, second)
        harness.scheduler.schedule([_request("first", "1"), _request("second", "2")], CancelToken())

        assert first.started.wait(5.0)
        assert second.started.wait(5.0)
        assert [c.status for c in harness.scheduler.tool_calls] == [
            ToolCallStatus.EXECUTING, ToolCallStatus.EXECUTING,
        ]
        assert harness.completions == []

        first.release.set()
        second.release.set()
        calls = harness.wait()
        assert [c.status for c in calls] == [ToolCallStatus.SUCCESS, ToolCallStatus.SUCCESS]
