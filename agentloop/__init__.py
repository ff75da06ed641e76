# agentloop package
#
# Unified import surface for the conversation engine:
#
#   from agentloop import (
#       ConversationOrchestrator, EngineConfig, load_config,
#       EventType, ToolConfirmationOutcome, CancelToken,
#   )
#
# Lazy loading: imports are deferred via __getattr__ so that importing the
# package does not pull in the model SDK or the MCP client.

# Mapping from public name -> (module_path, attribute_name)
_LAZY_IMPORTS = {
    # Orchestration
    "ConversationOrchestrator": (".orchestrator", "ConversationOrchestrator"),
    "ChatSession": (".chat_session", "ChatSession"),
    "Turn": (".turn", "Turn"),
    "ToolScheduler": (".tool_scheduler", "ToolScheduler"),
    "ToolCallStatus": (".tool_scheduler", "ToolCallStatus"),
    # Configuration
    "EngineConfig": (".config", "EngineConfig"),
    "ApprovalMode": (".config", "ApprovalMode"),
    "MCPServerConfig": (".config", "MCPServerConfig"),
    "load_config": (".config", "load_config"),
    # Events
    "EventType": (".events", "EventType"),
    "ToolCallRequestInfo": (".events", "ToolCallRequestInfo"),
    "ToolCallResponseInfo": (".events", "ToolCallResponseInfo"),
    # Tools
    "BaseTool": (".tools.base", "BaseTool"),
    "ToolResult": (".tools.base", "ToolResult"),
    "ToolConfirmationOutcome": (".tools.base", "ToolConfirmationOutcome"),
    "ToolRegistry": (".tools.registry", "ToolRegistry"),
    "TrustPolicy": (".tools.trust", "TrustPolicy"),
    # Model provider
    "ModelProviderPlugin": (".plugins.model_provider", "ModelProviderPlugin"),
    "ProviderConfig": (".plugins.model_provider", "ProviderConfig"),
    "load_provider": (".plugins.model_provider", "load_provider"),
    # Provider-agnostic types
    "CancelToken": (".plugins.model_provider.types", "CancelToken"),
    "Message": (".plugins.model_provider.types", "Message"),
    "Part": (".plugins.model_provider.types", "Part"),
    "Role": (".plugins.model_provider.types", "Role"),
    # Errors
    "AgentLoopError": (".errors", "AgentLoopError"),
    "UnauthorizedError": (".errors", "UnauthorizedError"),
}


def __getattr__(name):
    if name in _LAZY_IMPORTS:
        module_path, attr_name = _LAZY_IMPORTS[name]
        import importlib
        module = importlib.import_module(module_path, __name__)
        value = getattr(module, attr_name)
        globals()[name] = value
        return value
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = sorted(_LAZY_IMPORTS)
