"""
Unit test conftest — isolate Basma Voice environment variables so that
settings tests are not affected by a developer's or CI machine's config.
"""
import pytest

_VOICE_ENV_VARS = [
    "BASMA_BACKEND_URL",
    "BASMA_VOICE_CONFIG",
    "VOICE__LANGUAGE",
    "VOICE__BACKEND_URL",
    "VOICE__ENABLE_VAD",
    "BACKEND__TIMEOUT_S",
    "LOGGING__LEVEL",
]


@pytest.fixture(autouse=True)
def _clear_voice_env(monkeypatch):
    """Remove voice env vars for every unit test so Settings() behaves as if
    nothing is set unless the test explicitly provides it. Also disables .env
    file loading so a local developer .env doesn't leak into tests."""
    for var in _VOICE_ENV_VARS:
        monkeypatch.delenv(var, raising=False)

    import config.settings as settings_module
    from pydantic_settings import SettingsConfigDict
    patched_config = SettingsConfigDict(
        env_file=None,
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
        case_sensitive=False,
    )
    monkeypatch.setattr(settings_module.Settings, "model_config", patched_config)
