"""Tool call scheduler.

Drives each tool call the model requested through its lifecycle::

    validating -> scheduled ------------------> executing -> success | error | cancelled
              \\-> awaiting_approval -> scheduled /
    validating -> error          (unknown tool, confirmation predicate raised)
    awaiting_approval -> cancelled | error | awaiting_approval (modify-with-editor)

One batch is in flight at a time. A batch starts executing only when none
of its calls is still validating or awaiting approval, and then every
scheduled call runs concurrently on a thread pool. When every call is
terminal the batch is drained in one step, an audit record is emitted per
call and ``on_all_tool_calls_complete`` fires exactly once.

Concurrency: the active-call list is guarded by one ``RLock``. Every status
change, the following "all terminal?" check and the drain happen inside a
single acquisition. Callbacks run after the lock is released.
"""

import dataclasses
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, ClassVar, Dict, List, Optional, Sequence, Union, TYPE_CHECKING

from .config import ApprovalMode
from .errors import ConcurrentScheduleError, ToolExecutionError
from .events import ToolCallRequestInfo, ToolCallResponseInfo
from .plugins.model_provider.types import CancelToken, FunctionResponse, Part
from .plugins.telemetry import ToolCallDecision, ToolCallEvent
from .tools.base import BaseTool, ToolCallConfirmationDetails, ToolConfirmationOutcome, ToolContent
from .tools.modifiable import is_modifiable_tool, modify_with_editor
from .tools.trust import TrustPolicy
from .trace import trace

if TYPE_CHECKING:
    from .config import EngineConfig
    from .plugins.telemetry import TelemetryQueue
    from .tools.registry import ToolRegistry

logger = logging.getLogger(__name__)


# ==================== Call States ====================

class ToolCallStatus(str, Enum):
    VALIDATING = "validating"
    SCHEDULED = "scheduled"
    AWAITING_APPROVAL = "awaiting_approval"
    EXECUTING = "executing"
    SUCCESS = "success"
    ERROR = "error"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({
    ToolCallStatus.SUCCESS,
    ToolCallStatus.ERROR,
    ToolCallStatus.CANCELLED,
})


@dataclass
class ValidatingToolCall:
    status: ClassVar[ToolCallStatus] = ToolCallStatus.VALIDATING
    request: ToolCallRequestInfo
    tool: BaseTool
    start_time: float
    outcome: Optional[ToolConfirmationOutcome] = None


@dataclass
class ScheduledToolCall:
    status: ClassVar[ToolCallStatus] = ToolCallStatus.SCHEDULED
    request: ToolCallRequestInfo
    tool: BaseTool
    start_time: float
    outcome: Optional[ToolConfirmationOutcome] = None


@dataclass
class WaitingToolCall:
    status: ClassVar[ToolCallStatus] = ToolCallStatus.AWAITING_APPROVAL
    request: ToolCallRequestInfo
    tool: BaseTool
    confirmation_details: ToolCallConfirmationDetails
    start_time: float
    outcome: Optional[ToolConfirmationOutcome] = None


@dataclass
class ExecutingToolCall:
    status: ClassVar[ToolCallStatus] = ToolCallStatus.EXECUTING
    request: ToolCallRequestInfo
    tool: BaseTool
    start_time: float
    live_output: Optional[str] = None
    outcome: Optional[ToolConfirmationOutcome] = None


@dataclass
class SuccessfulToolCall:
    status: ClassVar[ToolCallStatus] = ToolCallStatus.SUCCESS
    request: ToolCallRequestInfo
    tool: BaseTool
    response: ToolCallResponseInfo
    duration_ms: int = 0
    outcome: Optional[ToolConfirmationOutcome] = None


@dataclass
class ErroredToolCall:
    status: ClassVar[ToolCallStatus] = ToolCallStatus.ERROR
    request: ToolCallRequestInfo
    response: ToolCallResponseInfo
    duration_ms: int = 0
    outcome: Optional[ToolConfirmationOutcome] = None
    tool: Optional[BaseTool] = None


@dataclass
class CancelledToolCall:
    status: ClassVar[ToolCallStatus] = ToolCallStatus.CANCELLED
    request: ToolCallRequestInfo
    tool: BaseTool
    response: ToolCallResponseInfo
    duration_ms: int = 0
    outcome: Optional[ToolConfirmationOutcome] = None


ToolCall = Union[
    ValidatingToolCall,
    ScheduledToolCall,
    WaitingToolCall,
    ExecutingToolCall,
    SuccessfulToolCall,
    ErroredToolCall,
    CancelledToolCall,
]

CompletedToolCall = Union[SuccessfulToolCall, ErroredToolCall, CancelledToolCall]

STATUS_TO_VARIANT: Dict[ToolCallStatus, type] = {
    ToolCallStatus.VALIDATING: ValidatingToolCall,
    ToolCallStatus.SCHEDULED: ScheduledToolCall,
    ToolCallStatus.AWAITING_APPROVAL: WaitingToolCall,
    ToolCallStatus.EXECUTING: ExecutingToolCall,
    ToolCallStatus.SUCCESS: SuccessfulToolCall,
    ToolCallStatus.ERROR: ErroredToolCall,
    ToolCallStatus.CANCELLED: CancelledToolCall,
}

# Signature: (call_id, output_chunk) -> None
OutputUpdateHandler = Callable[[str, str], None]
AllToolCallsCompleteHandler = Callable[[List[CompletedToolCall]], None]
ToolCallsUpdateHandler = Callable[[List[ToolCall]], None]


# ==================== Response Conversion ====================

def _function_response_part(call_id: str, tool_name: str, output: str) -> Part:
    return Part.from_function_response(
        FunctionResponse(id=call_id, name=tool_name, response={"output": output})
    )


def _as_part(item: Union[str, Part]) -> Part:
    return Part.from_text(item) if isinstance(item, str) else item


def _text_of(items: Any) -> str:
    if isinstance(items, str):
        return items
    texts = []
    for item in items or []:
        if isinstance(item, Part):
            texts.append(item.text or "")
        elif isinstance(item, dict):
            texts.append(item.get("text") or "")
        elif isinstance(item, str):
            texts.append(item)
    return "".join(texts)


def convert_to_function_response(tool_name: str, call_id: str, content: ToolContent) -> List[Part]:
    """Wrap a tool's output into the parts sent back to the model.

    - text (or a one-element list holding text): one function response
      whose ``output`` is that text;
    - a list of several parts: a "succeeded" function response followed by
      the parts unchanged;
    - binary data: a function response naming the mime type, followed by
      the binary part itself.
    """
    if isinstance(content, list) and len(content) == 1:
        content = content[0]

    if isinstance(content, str):
        return [_function_response_part(call_id, tool_name, content)]

    if isinstance(content, list):
        return [_function_response_part(call_id, tool_name, "Tool execution succeeded.")] + [
            _as_part(item) for item in content
        ]

    if content.function_response is not None:
        inner = content.function_response.response.get("content")
        if inner:
            return [_function_response_part(call_id, tool_name, _text_of(inner))]
        return [content]

    if content.inline_data or content.file_data:
        mime_type = (
            (content.inline_data or {}).get("mime_type")
            or (content.file_data or {}).get("mime_type")
            or "unknown"
        )
        return [
            _function_response_part(call_id, tool_name, f"Binary content of type {mime_type} was processed."),
            content,
        ]

    if content.text is not None:
        return [_function_response_part(call_id, tool_name, content.text)]

    return [_function_response_part(call_id, tool_name, "Tool execution succeeded.")]


def create_error_response(request: ToolCallRequestInfo, error: Exception) -> ToolCallResponseInfo:
    message = str(error)
    return ToolCallResponseInfo(
        call_id=request.call_id,
        response_parts=[Part.from_function_response(
            FunctionResponse(id=request.call_id, name=request.name, response={"error": message})
        )],
        result_display=message,
        error=error,
    )


def _create_cancelled_response(request: ToolCallRequestInfo, reason: str) -> ToolCallResponseInfo:
    return ToolCallResponseInfo(
        call_id=request.call_id,
        response_parts=[Part.from_function_response(FunctionResponse(
            id=request.call_id,
            name=request.name,
            response={"error": f"[Operation Cancelled] Reason: {reason}"},
        ))],
        result_display=None,
        error=None,
    )


def _elapsed_ms(start_time: Optional[float]) -> int:
    if start_time is None:
        return 0
    return int((time.monotonic() - start_time) * 1000)


def _decision_for(outcome: Optional[ToolConfirmationOutcome]) -> Optional[ToolCallDecision]:
    if outcome is None:
        return None
    if outcome == ToolConfirmationOutcome.CANCEL:
        return ToolCallDecision.REJECT
    if outcome == ToolConfirmationOutcome.MODIFY_WITH_EDITOR:
        return ToolCallDecision.MODIFY
    return ToolCallDecision.ACCEPT


# ==================== Scheduler ====================

class ToolScheduler:
    """Runs batches of tool calls through confirmation and execution.

    Args:
        registry: Resolves tool names.
        config: Supplies the approval mode and the diff editor.
        output_update_handler: Receives live output chunks ``(call_id, chunk)``.
        on_all_tool_calls_complete: Called once per batch with every terminal call.
        on_tool_calls_update: Called with a snapshot after every state change.
        trust_policy: Session-scoped "always allow" answers.
        telemetry: Receives one ToolCallEvent per drained call.
        max_workers: Thread pool size for concurrent execution.
    """

    def __init__(
        self,
        registry: 'ToolRegistry',
        config: Optional['EngineConfig'] = None,
        output_update_handler: Optional[OutputUpdateHandler] = None,
        on_all_tool_calls_complete: Optional[AllToolCallsCompleteHandler] = None,
        on_tool_calls_update: Optional[ToolCallsUpdateHandler] = None,
        trust_policy: Optional[TrustPolicy] = None,
        telemetry: Optional['TelemetryQueue'] = None,
        max_workers: Optional[int] = None,
    ):
        self._registry = registry
        self._config = config
        self._output_update_handler = output_update_handler
        self._on_all_tool_calls_complete = on_all_tool_calls_complete
        self._on_tool_calls_update = on_tool_calls_update
        self._trust_policy = trust_policy if trust_policy is not None else TrustPolicy()
        self._telemetry = telemetry
        self._tool_calls: List[ToolCall] = []
        self._lock = threading.RLock()
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="agentloop-tool")

    @property
    def approval_mode(self) -> ApprovalMode:
        if self._config is None:
            return ApprovalMode.DEFAULT
        return self._config.approval_mode

    @property
    def trust_policy(self) -> TrustPolicy:
        return self._trust_policy

    @property
    def tool_calls(self) -> List[ToolCall]:
        with self._lock:
            return list(self._tool_calls)

    def is_running(self) -> bool:
        """True while a call is executing or awaiting approval."""
        with self._lock:
            return any(
                call.status in (ToolCallStatus.EXECUTING, ToolCallStatus.AWAITING_APPROVAL)
                for call in self._tool_calls
            )

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True)

    # ==================== State Transitions ====================

    def _build_state(self, call: ToolCall, new_status: ToolCallStatus, aux: Any) -> ToolCall:
        """New variant for a non-terminal ``call`` moving to ``new_status``."""
        request = call.request
        tool = call.tool
        start_time = call.start_time
        outcome = call.outcome

        if new_status == ToolCallStatus.SUCCESS:
            return SuccessfulToolCall(
                request=request, tool=tool, response=aux,
                duration_ms=_elapsed_ms(start_time), outcome=outcome,
            )
        elif new_status == ToolCallStatus.ERROR:
            return ErroredToolCall(
                request=request, response=aux,
                duration_ms=_elapsed_ms(start_time), outcome=outcome, tool=tool,
            )
        elif new_status == ToolCallStatus.CANCELLED:
            return CancelledToolCall(
                request=request, tool=tool, response=_create_cancelled_response(request, aux),
                duration_ms=_elapsed_ms(start_time), outcome=outcome,
            )
        elif new_status == ToolCallStatus.AWAITING_APPROVAL:
            return WaitingToolCall(
                request=request, tool=tool, confirmation_details=aux,
                start_time=start_time, outcome=outcome,
            )
        elif new_status == ToolCallStatus.SCHEDULED:
            return ScheduledToolCall(request=request, tool=tool, start_time=start_time, outcome=outcome)
        elif new_status == ToolCallStatus.VALIDATING:
            return ValidatingToolCall(request=request, tool=tool, start_time=start_time, outcome=outcome)
        elif new_status == ToolCallStatus.EXECUTING:
            return ExecutingToolCall(request=request, tool=tool, start_time=start_time, outcome=outcome)
        else:
            raise ValueError(f"Unhandled tool call status: {new_status}")

    def _find(self, call_id: str) -> Optional[ToolCall]:
        for call in self._tool_calls:
            if call.request.call_id == call_id:
                return call
        return None

    def _transition(self, call_id: str, new_status: ToolCallStatus, aux: Any = None) -> None:
        """Replace a call's state in place; terminal calls never change. Lock held."""
        for index, call in enumerate(self._tool_calls):
            if call.request.call_id != call_id:
                continue
            if call.status in TERMINAL_STATUSES:
                return
            self._tool_calls[index] = self._build_state(call, new_status, aux)
            trace("ToolScheduler", f"{call.request.name} ({call_id}): {call.status.value} -> {new_status.value}")
            return

    def _drain_if_complete(self) -> Optional[List[CompletedToolCall]]:
        """Take the whole batch if every call is terminal. Lock held."""
        if not self._tool_calls:
            return None
        if not all(call.status in TERMINAL_STATUSES for call in self._tool_calls):
            return None
        completed = list(self._tool_calls)
        self._tool_calls = []
        return completed

    def _set_status(self, call_id: str, new_status: ToolCallStatus, aux: Any = None) -> None:
        with self._lock:
            self._transition(call_id, new_status, aux)
            snapshot = list(self._tool_calls)
            completed = self._drain_if_complete()
        self._after_change(snapshot, completed)

    def _set_args(self, call_id: str, args: Dict[str, Any]) -> None:
        with self._lock:
            call = self._find(call_id)
            if call is not None:
                call.request.args = args

    def _after_change(self, snapshot: List[ToolCall], completed: Optional[List[CompletedToolCall]]) -> None:
        self._notify_update(snapshot)
        if completed:
            self._notify_completion(completed)

    def _notify_update(self, snapshot: List[ToolCall]) -> None:
        if self._on_tool_calls_update:
            self._on_tool_calls_update(snapshot)

    def _notify_completion(self, completed: List[CompletedToolCall]) -> None:
        for call in completed:
            self._log_tool_call(call)
        if self._on_all_tool_calls_complete:
            self._on_all_tool_calls_complete(completed)
        self._notify_update([])

    def _log_tool_call(self, call: CompletedToolCall) -> None:
        if self._telemetry is None:
            return
        error = call.response.error
        self._telemetry.log_event(ToolCallEvent(
            function_name=call.request.name,
            function_args=dict(call.request.args),
            duration_ms=call.duration_ms,
            success=call.status == ToolCallStatus.SUCCESS,
            decision=_decision_for(call.outcome),
            error=str(error) if error is not None else None,
            error_type=error.__class__.__name__ if error is not None else None,
        ))

    # ==================== Scheduling ====================

    def schedule(
        self,
        requests: Union[ToolCallRequestInfo, Sequence[ToolCallRequestInfo]],
        cancel_token: Optional[CancelToken] = None,
    ) -> None:
        """Admit a batch of tool calls and drive it as far as possible.

        Returns once every call is executing, awaiting approval or terminal.

        Raises:
            ConcurrentScheduleError: A previous batch is still executing or
                awaiting approval.
        """
        if isinstance(requests, ToolCallRequestInfo):
            requests = [requests]
        cancel_token = cancel_token or CancelToken()

        with self._lock:
            if self.is_running():
                raise ConcurrentScheduleError(
                    "Cannot schedule new tool calls while other tool calls are actively "
                    "running (executing or awaiting approval)."
                )
            new_calls: List[ToolCall] = []
            for request in requests:
                tool = self._registry.get_tool(request.name)
                if tool is None:
                    new_calls.append(ErroredToolCall(
                        request=request,
                        response=create_error_response(
                            request, LookupError(f'Tool "{request.name}" not found in registry.')
                        ),
                        duration_ms=0,
                    ))
                else:
                    new_calls.append(ValidatingToolCall(
                        request=request, tool=tool, start_time=time.monotonic(),
                    ))
            self._tool_calls.extend(new_calls)
            snapshot = list(self._tool_calls)
        self._notify_update(snapshot)

        for call in new_calls:
            if call.status != ToolCallStatus.VALIDATING:
                continue
            self._validate(call, cancel_token)

        self._attempt_execution(cancel_token)

        with self._lock:
            snapshot = list(self._tool_calls)
            completed = self._drain_if_complete()
        if completed:
            self._after_change(snapshot, completed)

    def _validate(self, call: ValidatingToolCall, cancel_token: CancelToken) -> None:
        """Confirmation gate for one call."""
        request = call.request
        tool = call.tool
        if cancel_token.is_cancelled:
            self._set_status(request.call_id, ToolCallStatus.CANCELLED, "User cancelled tool execution.")
            return

        server_name = getattr(tool, "server_name", None)
        tool_key = getattr(tool, "server_tool_name", tool.name)
        try:
            if (
                self.approval_mode == ApprovalMode.YOLO
                or self._trust_policy.is_trusted(server_name, tool_key)
            ):
                self._set_status(request.call_id, ToolCallStatus.SCHEDULED)
                return

            details = tool.should_confirm_execute(request.args, cancel_token)
            if details is None:
                self._set_status(request.call_id, ToolCallStatus.SCHEDULED)
                return

            original_on_confirm = details.on_confirm

            def on_confirm(outcome: ToolConfirmationOutcome) -> None:
                self.handle_confirmation_response(request.call_id, original_on_confirm, outcome, cancel_token)

            self._set_status(
                request.call_id,
                ToolCallStatus.AWAITING_APPROVAL,
                dataclasses.replace(details, on_confirm=on_confirm),
            )
        except Exception as exc:
            logger.warning(f"Confirmation check failed for {request.name}: {exc}")
            self._set_status(request.call_id, ToolCallStatus.ERROR, create_error_response(request, exc))

    def handle_confirmation_response(
        self,
        call_id: str,
        original_on_confirm: Callable[[ToolConfirmationOutcome], None],
        outcome: ToolConfirmationOutcome,
        cancel_token: CancelToken,
    ) -> None:
        """Resolve an awaiting-approval call with the user's answer."""
        with self._lock:
            call = self._find(call_id)
            if call is None or call.status != ToolCallStatus.AWAITING_APPROVAL:
                logger.warning(f"Ignoring confirmation for {call_id}: not awaiting approval")
                return
            call.outcome = outcome

        try:
            original_on_confirm(outcome)
        except Exception as exc:
            logger.warning(f"Confirmation callback failed for {call.request.name}: {exc}")
            self._set_status(call_id, ToolCallStatus.ERROR, create_error_response(call.request, exc))
            self._attempt_execution(cancel_token)
            return

        self._remember_trust(call.tool, outcome)

        if outcome == ToolConfirmationOutcome.CANCEL or cancel_token.is_cancelled:
            self._set_status(call_id, ToolCallStatus.CANCELLED, "User did not allow tool call")
        elif outcome == ToolConfirmationOutcome.MODIFY_WITH_EDITOR:
            self._modify_with_editor(call, cancel_token)
        else:
            self._set_status(call_id, ToolCallStatus.SCHEDULED)

        self._attempt_execution(cancel_token)

    def _remember_trust(self, tool: BaseTool, outcome: ToolConfirmationOutcome) -> None:
        server_name = getattr(tool, "server_name", None)
        tool_key = getattr(tool, "server_tool_name", tool.name)
        if outcome == ToolConfirmationOutcome.PROCEED_ALWAYS_SERVER and server_name is not None:
            self._trust_policy.trust_server(server_name)
        elif outcome in (ToolConfirmationOutcome.PROCEED_ALWAYS, ToolConfirmationOutcome.PROCEED_ALWAYS_TOOL):
            self._trust_policy.trust_tool(server_name, tool_key)

    def _modify_with_editor(self, call: WaitingToolCall, cancel_token: CancelToken) -> None:
        """Edit-before-execute round-trip; the call stays awaiting approval."""
        if not is_modifiable_tool(call.tool):
            return
        editor = self._config.editor if self._config is not None else None
        if not editor:
            return

        call_id = call.request.call_id
        details = call.confirmation_details
        self._set_status(
            call_id, ToolCallStatus.AWAITING_APPROVAL, dataclasses.replace(details, is_modifying=True)
        )
        try:
            result = modify_with_editor(
                call.request.args,
                call.tool.get_modify_context(cancel_token),
                editor,
                cancel_token,
            )
        except Exception as exc:
            logger.warning(f"Modify with editor failed for {call.request.name}: {exc}")
            self._set_status(call_id, ToolCallStatus.ERROR, create_error_response(call.request, exc))
            return

        self._set_args(call_id, result.updated_params)
        self._set_status(
            call_id,
            ToolCallStatus.AWAITING_APPROVAL,
            dataclasses.replace(details, file_diff=result.updated_diff, is_modifying=False),
        )

    # ==================== Execution ====================

    def _attempt_execution(self, cancel_token: CancelToken) -> None:
        """Launch every scheduled call once nothing is validating or awaiting approval."""
        with self._lock:
            ready = all(
                call.status == ToolCallStatus.SCHEDULED or call.status in TERMINAL_STATUSES
                for call in self._tool_calls
            )
            if not ready:
                return
            to_run = [call for call in self._tool_calls if call.status == ToolCallStatus.SCHEDULED]
            if not to_run:
                return
            for call in to_run:
                if cancel_token.is_cancelled:
                    self._transition(call.request.call_id, ToolCallStatus.CANCELLED, "User cancelled tool execution.")
                else:
                    self._transition(call.request.call_id, ToolCallStatus.EXECUTING)
            launched = [self._find(call.request.call_id) for call in to_run]
            launched = [call for call in launched if call is not None and call.status == ToolCallStatus.EXECUTING]
            snapshot = list(self._tool_calls)
            completed = self._drain_if_complete()
        self._after_change(snapshot, completed)

        for call in launched:
            self._executor.submit(self._execute_call, call, cancel_token)

    def _make_live_output_callback(self, call: ExecutingToolCall) -> Optional[Callable[[str], None]]:
        if not (call.tool.can_update_output and self._output_update_handler):
            return None
        call_id = call.request.call_id

        def update_output(chunk: str) -> None:
            self._output_update_handler(call_id, chunk)
            with self._lock:
                current = self._find(call_id)
                if current is None or current.status != ToolCallStatus.EXECUTING:
                    return
                current.live_output = chunk
                snapshot = list(self._tool_calls)
            self._notify_update(snapshot)

        return update_output

    def _execute_call(self, call: ExecutingToolCall, cancel_token: CancelToken) -> None:
        request = call.request
        try:
            result = call.tool.execute(request.args, cancel_token, self._make_live_output_callback(call))
        except Exception as exc:
            if cancel_token.is_cancelled:
                self._set_status(request.call_id, ToolCallStatus.CANCELLED, "User cancelled tool execution.")
            else:
                logger.warning(f"Tool {request.name} raised: {exc}")
                self._set_status(request.call_id, ToolCallStatus.ERROR, create_error_response(request, exc))
            return

        if cancel_token.is_cancelled:
            self._set_status(request.call_id, ToolCallStatus.CANCELLED, "User cancelled tool execution.")
        elif result.error:
            error = ToolExecutionError(result.error)
            response = create_error_response(request, error)
            if result.return_display:
                response.result_display = result.return_display
            self._set_status(request.call_id, ToolCallStatus.ERROR, response)
        else:
            self._set_status(request.call_id, ToolCallStatus.SUCCESS, ToolCallResponseInfo(
                call_id=request.call_id,
                response_parts=convert_to_function_response(request.name, request.call_id, result.llm_content),
                result_display=result.return_display,
                error=None,
            ))
