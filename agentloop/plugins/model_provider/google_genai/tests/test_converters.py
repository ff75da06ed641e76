"""Tests for google.genai type conversion."""

from google.genai import types

from agentloop.plugins.model_provider.google_genai.converters import (
    config_to_sdk,
    message_to_sdk,
    part_from_sdk,
    response_from_sdk,
)
from agentloop.plugins.model_provider.types import (
    FinishReason,
    FunctionCall,
    FunctionResponse,
    GenerationConfig,
    Message,
    Part,
    Role,
    ToolSchema,
)


class TestToSdk:

    def test_message(self):
        message = Message(role=Role.MODEL, parts=[
            Part.from_text("calling"),
            Part.from_function_call(FunctionCall(id="c1", name="ls", args={"path": "."})),
        ])
        content = message_to_sdk(message)
        assert content.role == "model"
        assert content.parts[0].text == "calling"
        assert content.parts[1].function_call.name == "ls"
        assert content.parts[1].function_call.args == {"path": "."}

    def test_function_response(self):
        message = Message(role=Role.USER, parts=[Part.from_function_response(
            FunctionResponse(id="c1", name="ls", response={"output": "a.py"}))])
        part = message_to_sdk(message).parts[0]
        assert part.function_response.id == "c1"
        assert part.function_response.response == {"output": "a.py"}

    def test_config(self):
        config = config_to_sdk(GenerationConfig(
            temperature=0,
            top_p=1,
            system_instruction="be helpful",
            tools=[ToolSchema(name="ls", description="List", parameters={"type": "object"})],
            response_mime_type="application/json",
            response_schema={"type": "object"},
            include_thoughts=True,
        ))
        assert config.temperature == 0
        assert config.automatic_function_calling.disable is True
        assert config.tools[0].function_declarations[0].name == "ls"
        assert config.response_mime_type == "application/json"
        assert config.thinking_config.include_thoughts is True


class TestFromSdk:

    def test_thought_part(self):
        part = part_from_sdk(types.Part(text="**Plan** ...", thought=True))
        assert part.thought == "**Plan** ..."
        assert part.text is None

    def test_response_with_function_call(self):
        response = types.GenerateContentResponse(
            candidates=[types.Candidate(
                content=types.Content(role="model", parts=[
                    types.Part(text="Let me check."),
                    types.Part(function_call=types.FunctionCall(name="ls", args={"path": "."})),
                ]),
                finish_reason=types.FinishReason.STOP,
            )],
            usage_metadata=types.GenerateContentResponseUsageMetadata(
                prompt_token_count=10, candidates_token_count=5, total_token_count=15,
            ),
        )
        converted = response_from_sdk(response)
        assert converted.text == "Let me check."
        assert converted.function_calls[0].name == "ls"
        assert converted.finish_reason == FinishReason.TOOL_USE
        assert converted.usage.prompt_tokens == 10
        assert converted.usage.total_tokens == 15

    def test_empty_response(self):
        converted = response_from_sdk(types.GenerateContentResponse(candidates=[]))
        assert converted.parts == []
        assert converted.to_message() is None
