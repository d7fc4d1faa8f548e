from __future__ import annotations

import pytest

from azdo import config

TEST_ENV = {
    "VSUrl": "https://dev.azure.com/contoso/",
    "VSKey": "secret-pat",
    "VSProject": "Fabrikam Web",
    "VSBuildDefinition": "42",
}


@pytest.fixture(autouse=True)
def azdo_env(monkeypatch, tmp_path):
    """Valid configuration for every test; no settings file, fresh cache."""
    for key in ("BasePath", "GoodBranch", "BadBranch", "AZDO_PAT"):
        monkeypatch.delenv(key, raising=False)
    for key, value in TEST_ENV.items():
        monkeypatch.setenv(key, value)
    monkeypatch.setenv(config.SETTINGS_FILE_ENV, str(tmp_path / "missing-appsettings.json"))
    config.get_settings.cache_clear()
    yield monkeypatch
    config.get_settings.cache_clear()
