import pytest

_AI_ENV_VARS = (
    "AI_PRIMARY_PROVIDER",
    "AI_FALLBACK_PROVIDERS",
    "GEMINI_API_KEYS",
    "GOOGLE_API_KEY",
    "GEMINI_API_KEY",
    "OPENAI_API_KEYS",
    "OPENAI_API_KEY",
    "AI_SHUFFLE_CREDENTIALS",
    "AI_DEFAULT_TEMPERATURE",
    "AI_DEFAULT_MAX_TOKENS",
    "AI_REQUEST_TIMEOUT",
    "LOG_LEVEL",
    "LOG_JSON",
)


@pytest.fixture
def clean_env(monkeypatch):
    """Remove gateway-related variables so Settings() only sees explicit values."""
    for name in _AI_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch
