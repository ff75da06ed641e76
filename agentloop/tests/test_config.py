"""Tests for EngineConfig, load_config and the model fallback policy."""

import json
from unittest.mock import MagicMock, patch

from agentloop.config import (
    DEFAULT_MODEL,
    MAX_TURNS,
    ApprovalMode,
    EngineConfig,
    load_config,
)
from agentloop.fallback import ModelFallbackPolicy
from agentloop.plugins.model_provider.base import AuthType


class TestEngineConfig:

    def test_env_defaults(self, monkeypatch):
        monkeypatch.setenv("AGENTLOOP_MODEL", "gemini-test")
        monkeypatch.setenv("AGENTLOOP_APPROVAL_MODE", "yolo")
        config = EngineConfig()
        assert config.model == "gemini-test"
        assert config.approval_mode == ApprovalMode.YOLO

    def test_defaults_without_env(self, monkeypatch):
        monkeypatch.delenv("AGENTLOOP_MODEL", raising=False)
        monkeypatch.delenv("AGENTLOOP_MAX_TURNS", raising=False)
        config = EngineConfig()
        assert config.model == DEFAULT_MODEL
        assert config.max_session_turns == MAX_TURNS
        assert config.compression_threshold == 0.7

    def test_turn_budget_is_capped(self):
        assert EngineConfig(max_session_turns=500).max_session_turns == MAX_TURNS

    def test_set_model_records_switch(self):
        config = EngineConfig(model="a")
        config.set_model("b")
        assert config.model == "b"
        assert config.model_switched_during_session

    def test_from_dict(self):
        config = EngineConfig.from_dict({
            "model": "gemini-x",
            "approval_mode": "autoEdit",
            "auth_type": "vertex-ai",
            "mcp_servers": {"github": {"command": "gh-mcp", "args": ["--stdio"], "trust": True}},
            "retry": {"max_attempts": 2},
            "not_a_key": 1,
        })
        assert config.model == "gemini-x"
        assert config.approval_mode == ApprovalMode.AUTO_EDIT
        assert config.auth_type == AuthType.USE_VERTEX_AI
        assert config.mcp_servers["github"].command == "gh-mcp"
        assert config.mcp_servers["github"].trust is True
        assert config.retry.max_attempts == 2


class TestLoadConfig:

    @patch("dotenv.load_dotenv")
    def test_yaml_file(self, mock_dotenv, tmp_path):
        path = tmp_path / "agentloop.yaml"
        path.write_text("model: gemini-yaml\nmax_session_turns: 7\n", encoding="utf-8")
        config = load_config(path)
        assert config.model == "gemini-yaml"
        assert config.max_session_turns == 7
        mock_dotenv.assert_called_once()

    @patch("dotenv.load_dotenv")
    def test_json_file(self, mock_dotenv, tmp_path):
        path = tmp_path / "agentloop.json"
        path.write_text(json.dumps({"tool_call_command": "./call"}), encoding="utf-8")
        assert load_config(path).tool_call_command == "./call"

    @patch("dotenv.load_dotenv")
    def test_empty_yaml_uses_defaults(self, mock_dotenv, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("", encoding="utf-8")
        assert isinstance(load_config(path), EngineConfig)


class TestModelFallbackPolicy:

    def _config(self, handler=None):
        return EngineConfig(model="gemini-2.5-pro", fallback_model="gemini-2.5-flash",
                            fallback_handler=handler)

    def test_switches_on_accept(self):
        handler = MagicMock(return_value=True)
        config = self._config(handler)
        assert ModelFallbackPolicy(config)(AuthType.LOGIN_WITH_GOOGLE) == "gemini-2.5-flash"
        assert config.model == "gemini-2.5-flash"
        handler.assert_called_once_with("gemini-2.5-pro", "gemini-2.5-flash")

    def test_never_offered_for_api_key(self):
        handler = MagicMock(return_value=True)
        assert ModelFallbackPolicy(self._config(handler))(AuthType.USE_GEMINI) is None
        handler.assert_not_called()

    def test_declined(self):
        config = self._config(MagicMock(return_value=False))
        assert ModelFallbackPolicy(config)(AuthType.LOGIN_WITH_GOOGLE) is None
        assert config.model == "gemini-2.5-pro"

    def test_offered_once_per_session(self):
        handler = MagicMock(return_value=True)
        policy = ModelFallbackPolicy(self._config(handler))
        policy(AuthType.LOGIN_WITH_GOOGLE)
        assert policy(AuthType.LOGIN_WITH_GOOGLE) is None
        handler.assert_called_once()

    def test_handler_failure_keeps_model(self):
        config = self._config(MagicMock(side_effect=RuntimeError("no tty")))
        assert ModelFallbackPolicy(config)(AuthType.LOGIN_WITH_GOOGLE) is None
        assert config.model == "gemini-2.5-pro"
