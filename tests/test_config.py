import pytest

from personaliz.config import load_settings


def test_defaults_fall_back_to_mock_providers(monkeypatch):
    for name in ("SYNCLABS_API_KEY", "WHATSAPP_API_KEY", "USE_MOCK_PROVIDERS", "SUPABASE_URL", "GENERATION_RESOLUTION"):
        monkeypatch.delenv(name, raising=False)

    settings = load_settings()

    assert settings.mock_generation
    assert settings.mock_delivery
    assert not settings.use_supabase
    assert settings.synthesis_policy.max_attempts == 30
    assert settings.combine_policy.budget_seconds == 600
    assert settings.generation_resolution == "poll"


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("SYNCLABS_API_KEY", "sk-live")
    monkeypatch.setenv("USE_MOCK_PROVIDERS", "false")
    monkeypatch.setenv("BACKEND_URL", "https://api.personaliz.test/")
    monkeypatch.setenv("COMBINE_MAX_ATTEMPTS", "12")
    monkeypatch.setenv("GENERATION_RESOLUTION", "Callback")

    settings = load_settings()

    assert not settings.mock_generation
    assert settings.combine_policy.max_attempts == 12
    assert settings.generation_resolution == "callback"
    assert settings.synclabs_webhook_url == "https://api.personaliz.test/api/synclabs/webhook"


def test_invalid_resolution_is_rejected(monkeypatch):
    monkeypatch.setenv("GENERATION_RESOLUTION", "telepathy")

    with pytest.raises(ValueError):
        load_settings()
