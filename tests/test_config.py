import logging

import pytest
from pydantic import ValidationError

from expense_bot.config import Settings
from expense_bot.logging_config import JSONFormatter


def _settings(**overrides) -> Settings:
    values = {
        "webhook_verify_token": None,
        "meta_app_secret": None,
        "meta_access_token": None,
        "meta_phone_number_id": None,
        "text_ai_api_key": None,
        "vision_ai_api_key": None,
    }
    values.update(overrides)
    return Settings(**values)


def test_missing_required_settings_lists_env_names():
    assert _settings().missing_required_settings() == [
        "WEBHOOK_VERIFY_TOKEN",
        "META_ACCESS_TOKEN",
        "META_PHONE_NUMBER_ID",
    ]


def test_app_secret_required_only_in_production():
    configured = {"webhook_verify_token": "t", "meta_access_token": "a", "meta_phone_number_id": "1"}

    assert _settings(environment="development", **configured).missing_required_settings() == []
    assert _settings(environment=" Production ", **configured).missing_required_settings() == ["META_APP_SECRET"]


def test_settings_read_aliased_environment_variables(monkeypatch):
    monkeypatch.setenv("WEBHOOK_VERIFY_TOKEN", "from-env")
    monkeypatch.setenv("GROQ_API_KEY", "gsk-test")
    monkeypatch.setenv("GRAPH_BASE_URL", "https://graph.example/")

    settings = Settings()

    assert settings.webhook_verify_token == "from-env"
    assert settings.text_ai_api_key == "gsk-test"
    assert settings.graph_base_url == "https://graph.example"


def test_log_level_is_validated():
    assert _settings(log_level="debug").log_level == "DEBUG"
    with pytest.raises(ValidationError):
        _settings(log_level="chatty")


def test_json_formatter_includes_context_fields():
    record = logging.LogRecord("expense_bot.dispatcher", logging.INFO, __file__, 1, "handled %s", ("x",), None)
    record.message_id = "wamid.1"
    record.intent = "help"

    import json

    payload = json.loads(JSONFormatter().format(record))

    assert payload["message"] == "handled x"
    assert payload["message_id"] == "wamid.1"
    assert payload["intent"] == "help"
    assert "sender" not in payload
