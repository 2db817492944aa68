import pytest

from llm_core.config.settings import load_settings
from llm_core.domain.exceptions import InvalidConfigError
from llm_core.providers import configured_providers, create_provider
from llm_core.providers.google_client import GoogleAdapter
from llm_core.providers.openai_client import OpenAIAdapter
from llm_core.providers.replicate_client import ReplicateAdapter


@pytest.fixture
def settings(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    return load_settings(
        kimi_api_key="kimi-key-123",
        glm_api_key="glm-key-1234",
        replicate_api_token="r8_token_123",
        google_api_key=None,
        openai_api_key=None,
        http_timeout=5.0,
    )


def test_create_openai_compatible_presets(settings):
    kimi = create_provider("kimi", settings)
    assert isinstance(kimi, OpenAIAdapter)
    assert kimi.name == "kimi"
    kimi.validate_model("kimi-k2-turbo-preview")

    glm = create_provider("GLM", settings)
    assert glm.name == "glm"


def test_create_replicate_uses_poll_settings(settings):
    adapter = create_provider("replicate", settings)
    assert isinstance(adapter, ReplicateAdapter)
    assert adapter._config.poll_interval == settings.replicate_poll_interval
    assert adapter._config.timeout == 5.0


def test_missing_credentials_fail_initialize(settings):
    with pytest.raises(InvalidConfigError):
        create_provider("google", settings)


def test_unknown_provider(settings):
    with pytest.raises(InvalidConfigError):
        create_provider("nope", settings)


def test_configured_providers(settings):
    assert configured_providers(settings) == ["kimi", "glm", "replicate"]


def test_google_adapter_created_when_configured(settings):
    adapter = create_provider("google", settings.model_copy(update={"google_api_key": "gkey-123456"}))
    assert isinstance(adapter, GoogleAdapter)
