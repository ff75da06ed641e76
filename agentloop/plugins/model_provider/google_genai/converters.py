"""Conversion between agentloop types and google.genai SDK types."""

from typing import Any, List, Optional

from ._lazy import get_types
from ..types import (
    FinishReason,
    FunctionCall,
    FunctionResponse,
    GenerationConfig,
    Message,
    Part,
    ProviderResponse,
    TokenUsage,
    ToolSchema,
)


_FINISH_REASONS = {
    "STOP": FinishReason.STOP,
    "MAX_TOKENS": FinishReason.MAX_TOKENS,
    "SAFETY": FinishReason.SAFETY,
    "RECITATION": FinishReason.SAFETY,
    "BLOCKLIST": FinishReason.SAFETY,
    "PROHIBITED_CONTENT": FinishReason.SAFETY,
    "SPII": FinishReason.SAFETY,
    "MALFORMED_FUNCTION_CALL": FinishReason.ERROR,
}


# ==================== To SDK ====================

def part_to_sdk(part: Part) -> Any:
    """Convert a Part to google.genai.types.Part."""
    types = get_types()
    if part.thought is not None:
        return types.Part(text=part.thought, thought=True)
    if part.function_call is not None:
        fc = part.function_call
        return types.Part(function_call=types.FunctionCall(id=fc.id, name=fc.name, args=fc.args))
    if part.function_response is not None:
        fr = part.function_response
        return types.Part(function_response=types.FunctionResponse(
            id=fr.id, name=fr.name, response=fr.response,
        ))
    if part.inline_data is not None:
        return types.Part(inline_data=types.Blob(
            mime_type=part.inline_data.get("mime_type"),
            data=part.inline_data.get("data"),
        ))
    if part.file_data is not None:
        return types.Part(file_data=types.FileData(
            mime_type=part.file_data.get("mime_type"),
            file_uri=part.file_data.get("file_uri"),
        ))
    return types.Part(text=part.text or "")


def message_to_sdk(message: Message) -> Any:
    """Convert a Message to google.genai.types.Content."""
    return get_types().Content(
        role=message.role.value,
        parts=[part_to_sdk(p) for p in message.parts],
    )


def history_to_sdk(messages: List[Message]) -> List[Any]:
    """Convert a message list to a list of SDK Content objects."""
    return [message_to_sdk(m) for m in messages]


def tool_schemas_to_sdk_tool(schemas: List[ToolSchema]) -> Any:
    """Wrap tool declarations in a single SDK Tool."""
    types = get_types()
    return types.Tool(function_declarations=[
        types.FunctionDeclaration(
            name=s.name,
            description=s.description,
            parameters_json_schema=s.parameters or None,
        )
        for s in schemas
    ])


def config_to_sdk(config: GenerationConfig) -> Any:
    """Build a GenerateContentConfig; automatic function calling stays off."""
    types = get_types()
    kwargs = {
        "temperature": config.temperature,
        "top_p": config.top_p,
        "system_instruction": config.system_instruction,
        "automatic_function_calling": types.AutomaticFunctionCallingConfig(disable=True),
    }
    if config.tools:
        kwargs["tools"] = [tool_schemas_to_sdk_tool(config.tools)]
    if config.response_mime_type:
        kwargs["response_mime_type"] = config.response_mime_type
    if config.response_schema:
        kwargs["response_json_schema"] = config.response_schema
    if config.include_thoughts:
        kwargs["thinking_config"] = types.ThinkingConfig(include_thoughts=True)
    return types.GenerateContentConfig(**kwargs)


# ==================== From SDK ====================

def function_call_from_sdk(fc: Any) -> FunctionCall:
    return FunctionCall(
        id=getattr(fc, "id", None),
        name=getattr(fc, "name", None),
        args=dict(getattr(fc, "args", None) or {}),
    )


def part_from_sdk(part: Any) -> Optional[Part]:
    """Convert an SDK part; returns None for part kinds the engine ignores."""
    if getattr(part, "thought", None):
        return Part(thought=getattr(part, "text", None) or "")
    if getattr(part, "function_call", None):
        return Part(function_call=function_call_from_sdk(part.function_call))
    if getattr(part, "function_response", None):
        fr = part.function_response
        return Part(function_response=FunctionResponse(
            id=getattr(fr, "id", None),
            name=getattr(fr, "name", None) or "",
            response=dict(getattr(fr, "response", None) or {}),
        ))
    if getattr(part, "inline_data", None):
        blob = part.inline_data
        return Part(inline_data={"mime_type": blob.mime_type, "data": blob.data})
    if getattr(part, "file_data", None):
        fd = part.file_data
        return Part(file_data={"mime_type": fd.mime_type, "file_uri": fd.file_uri})
    if getattr(part, "text", None) is not None:
        return Part(text=part.text)
    return None


def finish_reason_from_sdk(reason: Any) -> FinishReason:
    name = getattr(reason, "name", None) or str(reason)
    return _FINISH_REASONS.get(name.upper(), FinishReason.UNKNOWN)


def usage_from_sdk(metadata: Any) -> TokenUsage:
    usage = TokenUsage(
        prompt_tokens=getattr(metadata, "prompt_token_count", 0) or 0,
        output_tokens=getattr(metadata, "candidates_token_count", 0) or 0,
        total_tokens=getattr(metadata, "total_token_count", 0) or 0,
    )
    usage.cache_read_tokens = getattr(metadata, "cached_content_token_count", None)
    usage.thinking_tokens = getattr(metadata, "thoughts_token_count", None)
    usage.tool_use_prompt_tokens = getattr(metadata, "tool_use_prompt_token_count", None)
    return usage


def response_from_sdk(response: Any) -> ProviderResponse:
    """Convert a GenerateContentResponse (or one stream chunk)."""
    parts: List[Part] = []
    finish_reason = FinishReason.UNKNOWN

    candidates = getattr(response, "candidates", None) or []
    if candidates:
        candidate = candidates[0]
        content = getattr(candidate, "content", None)
        for sdk_part in (getattr(content, "parts", None) or []):
            part = part_from_sdk(sdk_part)
            if part is not None:
                parts.append(part)
        if getattr(candidate, "finish_reason", None):
            finish_reason = finish_reason_from_sdk(candidate.finish_reason)

    if finish_reason in (FinishReason.STOP, FinishReason.UNKNOWN) and any(
        p.function_call for p in parts
    ):
        finish_reason = FinishReason.TOOL_USE

    usage = None
    if getattr(response, "usage_metadata", None):
        usage = usage_from_sdk(response.usage_metadata)

    return ProviderResponse(parts=parts, usage=usage, finish_reason=finish_reason, raw=response)
