"""
Configuration for the Azure DevOps connection.

Values come from an optional JSON settings file, then a .env file, then the
process environment (highest precedence).  Key names match the settings file
so the same names work in either place:

    VSUrl, VSKey, VSProject, VSBuildDefinition, BasePath, GoodBranch, BadBranch

VSKey falls back to AZDO_PAT so the token can live outside the settings file.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from functools import lru_cache

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

SETTINGS_FILE_ENV = "AZDO_SETTINGS_FILE"
DEFAULT_SETTINGS_FILE = "appsettings.json"

DEFAULT_GOOD_BRANCH = "refs/heads/main"
DEFAULT_BAD_BRANCH = "refs/heads/make-main-fail"

_KEYS = (
    "VSUrl",
    "VSKey",
    "VSProject",
    "VSBuildDefinition",
    "BasePath",
    "GoodBranch",
    "BadBranch",
)
_SECRET_KEYS = {"VSKey"}


class ConfigurationError(EnvironmentError):
    """Required configuration is missing or malformed."""


@dataclass(frozen=True)
class Settings:
    url: str
    key: str
    project: str
    build_definition_id: int
    base_path: str | None = None
    good_branch: str = DEFAULT_GOOD_BRANCH
    bad_branch: str = DEFAULT_BAD_BRANCH


def _read_settings_file(path: str) -> dict:
    if not os.path.isfile(path):
        logger.debug("Settings file %s not found; using environment only", path)
        return {}
    try:
        with open(path, encoding="utf-8") as fh:
            data = json.load(fh)
    except (OSError, json.JSONDecodeError) as exc:
        raise ConfigurationError(f"Cannot read settings file {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigurationError(f"Settings file {path} must contain a JSON object")
    return {k: str(v) for k, v in data.items() if v is not None}


def _mask(key: str, value: str) -> str:
    if key in _SECRET_KEYS and value:
        return value[:4] + "****"
    return value


def load_settings(environ=None, settings_file: str | None = None) -> Settings:
    """Merge the settings file with the environment and validate the result.

    Raises ConfigurationError naming the first missing or invalid key.
    """
    if environ is None:
        load_dotenv()
        environ = os.environ

    path = settings_file or environ.get(SETTINGS_FILE_ENV) or DEFAULT_SETTINGS_FILE
    merged = _read_settings_file(path)
    for key in _KEYS:
        if environ.get(key):
            merged[key] = environ[key]

    for key in _KEYS:
        logger.debug("Configuration: %s = %s", key, _mask(key, merged.get(key, "")))

    url = merged.get("VSUrl")
    if not url:
        raise ConfigurationError("VSUrl must be set in configuration")

    key = merged.get("VSKey") or environ.get("AZDO_PAT")
    if not key:
        raise ConfigurationError("VSKey must be set in configuration")

    project = merged.get("VSProject")
    if not project:
        raise ConfigurationError("VSProject must be set in configuration")

    try:
        definition_id = int(merged.get("VSBuildDefinition", ""))
    except ValueError:
        raise ConfigurationError("VSBuildDefinition must be a valid integer") from None

    return Settings(
        url=url.rstrip("/"),
        key=key,
        project=project,
        build_definition_id=definition_id,
        base_path=merged.get("BasePath") or None,
        good_branch=merged.get("GoodBranch") or DEFAULT_GOOD_BRANCH,
        bad_branch=merged.get("BadBranch") or DEFAULT_BAD_BRANCH,
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Process-wide settings, loaded on first use."""
    return load_settings()
