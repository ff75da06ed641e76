"""Conversation orchestrator: the top-level driver of the engine.

Owns the chat session and runs the bounded turn loop for each user
message::

    compress? -> Turn -> (tool calls? run them, continue with the results)
                      -> (no tool calls? ask who speaks next, maybe "Please continue.")

Usage:
    orchestrator = ConversationOrchestrator(load_config("agentloop.yaml"))
    orchestrator.initialize()

    for event in orchestrator.send_message_stream("Fix the failing test"):
        if event.type == EventType.CONTENT:
            print(event.value, end="")
        elif event.type == EventType.TOOL_CALL_CONFIRMATION:
            event.details.on_confirm(ToolConfirmationOutcome.PROCEED_ONCE)

    orchestrator.shutdown()
"""

import dataclasses
import json
import logging
import queue
import sys
from datetime import datetime
from typing import Any, Dict, Generator, List, Optional, Sequence, Tuple, Union

from .chat_session import ChatSession
from .config import DEFAULT_FLASH_MODEL, MAX_TURNS, EngineConfig
from .errors import (
    ContentGenerationError,
    EmbeddingError,
    EmptyResponseError,
    ParseError,
    UnauthorizedError,
    get_error_message,
)
from .events import (
    ChatCompressedEvent,
    ChatCompressionInfo,
    Event,
    ToolCallConfirmationEvent,
    ToolCallRequestInfo,
    ToolCallResponseEvent,
    ToolCallStartedEvent,
)
from .fallback import ModelFallbackPolicy
from .next_speaker import check_next_speaker
from .plugins.model_provider import ProviderConfig, load_provider
from .plugins.model_provider.base import ModelProviderPlugin
from .plugins.model_provider.types import (
    CancelledException,
    CancelToken,
    GenerationConfig,
    Message,
    Part,
    ProviderResponse,
    Role,
)
from .plugins.telemetry import TelemetryQueue, create_telemetry_plugin
from .prompts import COMPRESSION_PROMPT, COMPRESSION_REQUEST, get_core_system_prompt
from .retry_utils import with_retry
from .tool_scheduler import CompletedToolCall, ToolCallStatus, ToolScheduler
from .tools.base import ToolConfirmationOutcome
from .tools.registry import ToolRegistry
from .tools.trust import TrustPolicy
from .trace import trace
from .turn import Turn

logger = logging.getLogger(__name__)

ENV_ACK = "Got it. Thanks for the context!"
COMPRESSION_ACK = "Got it. Thanks for the additional context!"
CONTINUE_PROMPT = "Please continue."

# How often the tool phase checks the cancel token while waiting
_POLL_INTERVAL = 0.1

UserInput = Union[str, Part, Sequence[Union[str, Part]]]


def _to_parts(request: UserInput) -> List[Part]:
    if isinstance(request, str):
        return [Part.from_text(request)]
    if isinstance(request, Part):
        return [request]
    return [Part.from_text(item) if isinstance(item, str) else item for item in request]


def is_thinking_supported(model: str) -> bool:
    return model.startswith("gemini-2.5")


class ConversationOrchestrator:
    """Runs conversations against a model provider with tools.

    Args:
        config: Engine configuration.
        provider: Model backend. Loaded from ``google_genai`` in
            ``initialize`` when not given.
        registry: Tool registry. Created from ``config`` when not given.
        telemetry: Telemetry queue. Created from ``config.telemetry`` in
            ``initialize`` when not given.
        trust_policy: Session "always allow" answers shared by all batches.
        run_tools: Run requested tools inside ``send_message_stream``. When
            False the loop stops after a turn with tool calls and leaves them
            in ``turn.pending_tool_calls`` for the caller.
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        provider: Optional[ModelProviderPlugin] = None,
        registry: Optional[ToolRegistry] = None,
        telemetry: Optional[TelemetryQueue] = None,
        trust_policy: Optional[TrustPolicy] = None,
        run_tools: bool = True,
    ):
        self._config = config or EngineConfig()
        self._provider = provider
        self._registry = registry if registry is not None else ToolRegistry(self._config)
        self._telemetry = telemetry
        self._trust_policy = trust_policy if trust_policy is not None else TrustPolicy()
        self._run_tools = run_tools
        self._fallback_policy = ModelFallbackPolicy(self._config)
        self._generation_config = GenerationConfig(temperature=0, top_p=1)
        self._chat: Optional[ChatSession] = None
        self.next_speaker_checks = 0

    # ==================== Lifecycle ====================

    def initialize(
        self,
        provider_config: Optional[ProviderConfig] = None,
        discover_tools: bool = True,
    ) -> None:
        """Load the provider and telemetry, discover tools and start the chat."""
        if self._telemetry is None:
            settings = self._config.telemetry
            self._telemetry = TelemetryQueue(
                create_telemetry_plugin(settings.to_dict()), maxsize=settings.queue_size
            )
        if self._provider is None:
            if provider_config is None:
                provider_config = ProviderConfig(auth_type=self._config.auth_type)
            self._provider = load_provider("google_genai", provider_config)
        if discover_tools:
            self._registry.discover_tools()
        self._chat = self.start_chat()

    def shutdown(self) -> None:
        """Close MCP connections, flush telemetry and release the provider."""
        self._registry.shutdown()
        if self._telemetry is not None:
            self._telemetry.shutdown()
        if self._provider is not None:
            self._provider.shutdown()

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    def _require_provider(self) -> ModelProviderPlugin:
        if self._provider is None:
            raise RuntimeError("Model provider not initialized. Call initialize() first.")
        return self._provider

    # ==================== Chat ====================

    def get_chat(self) -> ChatSession:
        if self._chat is None:
            raise RuntimeError("Chat not initialized")
        return self._chat

    def _system_instruction(self) -> str:
        return get_core_system_prompt(self._config.user_memory, self._config.system_prompt)

    def get_environment(self) -> List[Part]:
        """Initial context describing the date, platform and working directory."""
        today = datetime.now().strftime("%A, %B %d, %Y")
        context = "\n".join([
            "This is the agentloop engine. We are setting up the context for our chat.",
            f"Today's date is {today}.",
            f"My operating system is: {sys.platform}",
            f"I'm currently working in the directory: {self._config.working_dir}",
        ])
        return [Part.from_text(context)]

    def start_chat(self, extra_history: Optional[List[Message]] = None) -> ChatSession:
        """New chat seeded with the environment context and the current tools."""
        history = [
            Message(role=Role.USER, parts=self.get_environment()),
            Message.from_text(Role.MODEL, ENV_ACK),
        ] + list(extra_history or [])

        generation_config = dataclasses.replace(
            self._generation_config,
            system_instruction=self._system_instruction(),
            tools=self._registry.get_function_declarations() or None,
            include_thoughts=is_thinking_supported(self._config.model),
        )
        return ChatSession(
            self._config,
            self._require_provider(),
            generation_config=generation_config,
            history=history,
            telemetry=self._telemetry,
            fallback_policy=self._fallback_policy,
        )

    def get_history(self) -> List[Message]:
        return self.get_chat().get_history()

    def set_history(self, history: List[Message]) -> None:
        self.get_chat().replace(history)

    def add_history(self, message: Message) -> None:
        self.get_chat().append(message)

    def reset_chat(self) -> None:
        self._chat = self.start_chat()

    # ==================== Turn Loop ====================

    def send_message_stream(
        self,
        request: UserInput,
        cancel_token: Optional[CancelToken] = None,
        max_turns: Optional[int] = None,
    ) -> Generator[Event, None, Turn]:
        """Process one user message, yielding engine events as they happen.

        At most ``max_turns`` model round-trips are made (never more than
        100); running out of turns ends the loop quietly.

        Returns:
            The last Turn run (``StopIteration.value``).

        Raises:
            UnauthorizedError: The backend rejected the credentials.
        """
        cancel_token = cancel_token or CancelToken()
        if max_turns is None:
            max_turns = self._config.max_session_turns
        remaining = min(max_turns, MAX_TURNS)
        parts = _to_parts(request)
        turn = Turn(self.get_chat())

        while remaining > 0:
            remaining -= 1

            compressed = self.try_compress_chat()
            if compressed is not None:
                yield ChatCompressedEvent(value=compressed)

            turn = Turn(self.get_chat())
            yield from turn.run(parts, cancel_token)

            if cancel_token.is_cancelled:
                break

            if turn.pending_tool_calls:
                if not self._run_tools or remaining <= 0:
                    break
                completed = yield from self._run_tool_phase(turn.pending_tool_calls, cancel_token)
                response_parts = [p for call in completed for p in call.response.response_parts]
                all_cancelled = all(call.status == ToolCallStatus.CANCELLED for call in completed)
                if cancel_token.is_cancelled or all_cancelled:
                    # Nothing left to ask the model; keep the history consistent
                    self.get_chat().append(Message(role=Role.USER, parts=response_parts))
                    break
                parts = response_parts
                continue

            if remaining <= 0:
                break
            next_speaker = self._check_next_speaker(cancel_token)
            if next_speaker is None or next_speaker.get("next_speaker") != "model":
                break
            trace("Orchestrator", f"model continues: {next_speaker.get('reasoning')}")
            parts = [Part.from_text(CONTINUE_PROMPT)]

        return turn

    def _check_next_speaker(self, cancel_token: CancelToken) -> Optional[Dict[str, Any]]:
        self.next_speaker_checks += 1
        return check_next_speaker(self.get_chat(), self, cancel_token)

    def _run_tool_phase(
        self,
        requests: List[ToolCallRequestInfo],
        cancel_token: CancelToken,
    ) -> Generator[Event, None, List[CompletedToolCall]]:
        """Run one batch of tool calls, yielding lifecycle events.

        Confirmation requests are yielded as ToolCallConfirmationEvent; the
        consumer answers them through ``event.details.on_confirm``. When the
        cancel token fires, calls still awaiting approval are cancelled.
        """
        updates: "queue.Queue[Tuple[str, List[Any]]]" = queue.Queue()
        scheduler = ToolScheduler(
            self._registry,
            self._config,
            on_all_tool_calls_complete=lambda calls: updates.put(("complete", calls)),
            on_tool_calls_update=lambda calls: updates.put(("update", calls)),
            trust_policy=self._trust_policy,
            telemetry=self._telemetry,
        )
        seen: Dict[str, Tuple[ToolCallStatus, int]] = {}
        cancel_handled = False
        try:
            scheduler.schedule(requests, cancel_token)
            while True:
                if cancel_token.is_cancelled and not cancel_handled:
                    cancel_handled = True
                    for call in scheduler.tool_calls:
                        if call.status == ToolCallStatus.AWAITING_APPROVAL:
                            call.confirmation_details.on_confirm(ToolConfirmationOutcome.CANCEL)

                try:
                    kind, calls = updates.get(timeout=_POLL_INTERVAL)
                except queue.Empty:
                    continue

                if kind == "complete":
                    for call in calls:
                        yield ToolCallResponseEvent(
                            name=call.request.name, status=call.status.value, value=call.response
                        )
                    return calls

                for call in calls:
                    call_id = call.request.call_id
                    if call.status == ToolCallStatus.AWAITING_APPROVAL:
                        key = (call.status, id(call.confirmation_details))
                        if seen.get(call_id) != key:
                            seen[call_id] = key
                            yield ToolCallConfirmationEvent(
                                request=call.request, details=call.confirmation_details
                            )
                    elif call.status == ToolCallStatus.EXECUTING:
                        key = (call.status, 0)
                        if seen.get(call_id) != key:
                            seen[call_id] = key
                            yield ToolCallStartedEvent(request=call.request)
        finally:
            scheduler.shutdown()

    # ==================== Compression ====================

    def try_compress_chat(self, force: bool = False) -> Optional[ChatCompressionInfo]:
        """Summarize the history when it nears the model's context window.

        Returns:
            Token counts before/after, or None when nothing was compressed.
        """
        chat = self.get_chat()
        curated = chat.get_history(curated=True)
        if not curated:
            return None

        provider = self._require_provider()
        model = self._config.model
        original_token_count = provider.count_tokens(model, curated)
        if original_token_count is None:
            logger.warning(f"Could not determine token count for model {model}; skipping compression.")
            return None

        threshold = self._config.compression_threshold * provider.get_context_limit(model)
        if not force and original_token_count < threshold:
            return None

        previous = chat.get_history()
        response = chat.send_message(
            [Part.from_text(COMPRESSION_REQUEST)],
            system_instruction=COMPRESSION_PROMPT,
        )
        summary = response.text
        if not summary:
            logger.warning("Compression returned an empty summary; keeping the full history.")
            chat.replace(previous)
            return None

        chat.replace([
            Message.from_text(Role.USER, summary),
            Message.from_text(Role.MODEL, COMPRESSION_ACK),
        ])

        # The model may have changed during send_message (fallback)
        new_token_count = provider.count_tokens(self._config.model, chat.get_history())
        if new_token_count is None:
            logger.warning("Could not determine compressed history token count.")
            return None

        trace("Orchestrator", f"compressed history {original_token_count} -> {new_token_count} tokens")
        return ChatCompressionInfo(
            original_token_count=original_token_count,
            new_token_count=new_token_count,
        )

    # ==================== One-shot Generation ====================

    def _one_shot(
        self,
        model_getter,
        contents: List[Message],
        request_config: GenerationConfig,
        context: str,
        cancel_token: Optional[CancelToken],
    ) -> ProviderResponse:
        provider = self._require_provider()
        result, _stats = with_retry(
            lambda: provider.generate_content(model_getter(), contents, request_config, cancel_token),
            config=self._config.retry,
            context=context,
            cancel_token=cancel_token,
            on_persistent_rate_limit=self._fallback_policy,
            auth_type=self._config.auth_type,
        )
        return result

    def generate_content(
        self,
        contents: List[Message],
        generation_config: Optional[GenerationConfig] = None,
        cancel_token: Optional[CancelToken] = None,
    ) -> ProviderResponse:
        """One-shot generation outside the chat history.

        Raises:
            ContentGenerationError: The call failed after retries.
        """
        model = self._config.model
        request_config = dataclasses.replace(
            generation_config or self._generation_config,
            system_instruction=self._system_instruction(),
        )
        try:
            return self._one_shot(
                lambda: self._config.model, contents, request_config, "generate_content", cancel_token
            )
        except (UnauthorizedError, CancelledException):
            raise
        except Exception as exc:
            if cancel_token is not None and cancel_token.is_cancelled:
                raise
            raise ContentGenerationError(
                f"Failed to generate content with model {model}: {get_error_message(exc)}"
            ) from exc

    def generate_json(
        self,
        contents: List[Message],
        schema: Dict[str, Any],
        cancel_token: Optional[CancelToken] = None,
        model: str = DEFAULT_FLASH_MODEL,
        generation_config: Optional[GenerationConfig] = None,
    ) -> Any:
        """One-shot structured output, parsed from JSON.

        Raises:
            EmptyResponseError: The model returned no text.
            ParseError: The text is not valid JSON.
            ContentGenerationError: The call failed after retries.
        """
        request_config = dataclasses.replace(
            generation_config or self._generation_config,
            system_instruction=self._system_instruction(),
            response_mime_type="application/json",
            response_schema=schema,
        )
        try:
            result = self._one_shot(lambda: model, contents, request_config, "generate_json", cancel_token)
        except (UnauthorizedError, CancelledException):
            raise
        except Exception as exc:
            if cancel_token is not None and cancel_token.is_cancelled:
                raise
            raise ContentGenerationError(
                f"Failed to generate JSON content: {get_error_message(exc)}"
            ) from exc

        text = result.text
        if not text:
            raise EmptyResponseError("API returned an empty response for generateJson.")
        try:
            return json.loads(text)
        except json.JSONDecodeError as exc:
            raise ParseError(f"Failed to parse API response as JSON: {exc}") from exc

    def generate_embedding(self, texts: List[str]) -> List[List[float]]:
        """Embed each text with the configured embedding model.

        Raises:
            EmbeddingError: Missing, mismatched or empty embeddings.
        """
        if not texts:
            return []

        vectors = self._require_provider().embed_content(self._config.embedding_model, list(texts))
        if not vectors:
            raise EmbeddingError("No embeddings found in API response.")
        if len(vectors) != len(texts):
            raise EmbeddingError(
                f"API returned a mismatched number of embeddings. Expected {len(texts)}, got {len(vectors)}."
            )
        for index, values in enumerate(vectors):
            if not values:
                raise EmbeddingError(
                    f'API returned an empty embedding for input text at index {index}: "{texts[index]}"'
                )
        return vectors
