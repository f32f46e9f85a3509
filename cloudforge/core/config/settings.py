"""
Settings loader — reads cloudforge.yml, then applies CF_* overrides.

Resolution order (later wins):
    model defaults  <  cloudforge.yml  <  CF_* environment variables

The credential store passphrase is only ever read from the environment
(``CF_CREDENTIAL_PASSPHRASE``); it is rejected if it appears in the
YAML file.
"""

from __future__ import annotations

import logging
import os
import shlex
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "cloudforge.yml"
ENV_PREFIX = "CF_"


class ConfigError(Exception):
    """Raised when settings are invalid or unreadable."""


class Settings(BaseModel):
    """Runtime settings for the orchestrator and its front ends."""

    model_config = ConfigDict(extra="forbid")

    # Terraform
    terraform_binary: list[str] = Field(default_factory=lambda: ["terraform"])
    plugin_cache_dir: Path | None = None
    deploy_timeout_s: float | None = None

    # Storage
    workspace_root: Path | None = None      # None → system temp dir
    data_dir: Path | None = None            # None → nothing persisted
    credential_backend: Literal["memory", "encrypted-file"] = "memory"
    credential_passphrase: SecretStr | None = Field(default=None, exclude=True)

    # Streaming / concurrency
    event_queue_size: int = Field(default=10_000, ge=1)
    max_concurrent_deployments: int = Field(default=4, ge=1)

    # Web server
    host: str = "127.0.0.1"
    port: int = Field(default=8000, ge=1, le=65535)

    @field_validator("terraform_binary", mode="before")
    @classmethod
    def _split_binary(cls, value: Any) -> Any:
        if isinstance(value, str):
            return shlex.split(value)
        return value

    @field_validator("terraform_binary")
    @classmethod
    def _non_empty_binary(cls, value: list[str]) -> list[str]:
        if not value:
            raise ValueError("terraform_binary must not be empty")
        return value

    @field_validator("deploy_timeout_s")
    @classmethod
    def _positive_timeout(cls, value: float | None) -> float | None:
        if value is not None and value <= 0:
            return None
        return value


def find_config_file(start_dir: Path | None = None) -> Path | None:
    """Search for cloudforge.yml starting from the given directory, walking up.

    Args:
        start_dir: Directory to start searching from (default: cwd).

    Returns:
        Path to cloudforge.yml, or None if not found.
    """
    current = (start_dir or Path.cwd()).resolve()

    for _ in range(20):  # safety limit
        candidate = current / CONFIG_FILENAME
        if candidate.is_file():
            return candidate
        parent = current.parent
        if parent == current:
            break  # filesystem root
        current = parent

    return None


def _env_overrides(environ: Mapping[str, str]) -> dict[str, Any]:
    """Collect CF_<FIELD> variables for known settings fields."""
    overrides: dict[str, Any] = {}
    for name in Settings.model_fields:
        value = environ.get(ENV_PREFIX + name.upper())
        if value is None or value == "":
            continue
        overrides[name] = value
    return overrides


def load_settings(
    path: Path | None = None,
    *,
    environ: Mapping[str, str] | None = None,
    search: bool = True,
) -> Settings:
    """Load and validate settings.

    Args:
        path: Explicit path to cloudforge.yml.  If None and ``search``
            is set, searches upward from the cwd; a missing file is fine.
        environ: Environment mapping (default: ``os.environ``).
        search: Whether to look for a config file when ``path`` is None.

    Returns:
        Validated Settings model.

    Raises:
        ConfigError: If an explicit file is missing, or anything is invalid.
    """
    env = os.environ if environ is None else environ
    data: dict[str, Any] = {}

    if path is None and search:
        path = find_config_file()
    elif path is not None and not path.is_file():
        raise ConfigError(f"Config file not found: {path}")

    if path is not None:
        logger.debug("Loading settings from %s", path)
        try:
            raw = path.read_text(encoding="utf-8")
        except OSError as e:
            raise ConfigError(f"Cannot read {path}: {e}") from e

        try:
            loaded = yaml.safe_load(raw)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {path}: {e}") from e

        if loaded is None:
            loaded = {}
        if not isinstance(loaded, dict):
            raise ConfigError(f"Expected a YAML mapping in {path}, got {type(loaded).__name__}")

        # The YAML may wrap everything under a "cloudforge" key or be flat
        section = loaded.get("cloudforge", loaded)
        if section is None:
            section = {}
        if not isinstance(section, dict):
            raise ConfigError(
                f"Expected a mapping under 'cloudforge' in {path}, got {type(section).__name__}"
            )
        data = dict(section)
        if "credential_passphrase" in data:
            raise ConfigError(
                f"credential_passphrase may not be stored in {path}; "
                f"set {ENV_PREFIX}CREDENTIAL_PASSPHRASE instead"
            )

        # Relative paths in the file are relative to the file
        base = path.parent.resolve()
        for key in ("workspace_root", "data_dir", "plugin_cache_dir"):
            if isinstance(data.get(key), str) and not Path(data[key]).is_absolute():
                data[key] = str(base / data[key])

    data.update(_env_overrides(env))

    try:
        settings = Settings.model_validate(data)
    except Exception as e:
        raise ConfigError(f"Invalid settings: {e}") from e

    if settings.credential_backend == "encrypted-file":
        if settings.data_dir is None:
            raise ConfigError("credential_backend 'encrypted-file' requires data_dir")
        if settings.credential_passphrase is None:
            raise ConfigError(
                f"credential_backend 'encrypted-file' requires {ENV_PREFIX}CREDENTIAL_PASSPHRASE"
            )

    logger.info(
        "Settings loaded (terraform=%s, data_dir=%s, credentials=%s)",
        " ".join(settings.terraform_binary), settings.data_dir, settings.credential_backend,
    )
    return settings
