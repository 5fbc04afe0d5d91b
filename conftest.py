"""
Root conftest — isolate AUTOCYCLE_* environment variables so that Settings
tests are not affected by a developer's shell or CI environment.
"""
import os

import pytest


@pytest.fixture(autouse=True)
def _clear_autocycle_env(monkeypatch):
    """Remove AUTOCYCLE_* env vars for every test so Settings() only sees
    what the test provides. Also disables .env file loading so a local
    developer .env does not leak overrides into tests."""
    for var in list(os.environ):
        if var.upper().startswith("AUTOCYCLE_"):
            monkeypatch.delenv(var, raising=False)

    import autocycle.config.settings as settings_module
    from pydantic_settings import SettingsConfigDict
    patched_config = SettingsConfigDict(
        env_prefix="AUTOCYCLE_",
        env_file=None,
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
        case_sensitive=False,
    )
    monkeypatch.setattr(settings_module.Settings, "model_config", patched_config)
    monkeypatch.setattr(settings_module, "_singleton", None)
