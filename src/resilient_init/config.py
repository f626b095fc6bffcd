"""
Configuration for resilient-init.

RecoveryConfig is an explicit, validated model passed into components at
construction. Core logic never reads the process environment; the
``load_config()`` adapter does that once, at the boundary, merging (lowest
to highest precedence):

  1. Model defaults
  2. YAML file (``resilient-init.yaml`` in the working directory, or the
     path in ``RESILIENT_INIT_CONFIG``)
  3. ``RESILIENT_INIT_*`` environment variables (``.env`` is loaded first)
  4. Explicit keyword overrides (CLI flags)
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, field_validator

from resilient_init.exceptions import ConfigurationError

logger = logging.getLogger("resilient-init.config")

ENV_PREFIX = "RESILIENT_INIT_"
DEFAULT_CONFIG_FILENAME = "resilient-init.yaml"

# Environment variable suffix -> field name
_ENV_FIELDS: dict[str, str] = {
    "MAX_ATTEMPTS": "max_attempts",
    "FORCE_MAX_ATTEMPTS": "force_max_attempts",
    "INITIAL_DELAY": "initial_delay",
    "FALLBACK_MAX_ATTEMPTS": "fallback_max_attempts",
    "DATA_DIR": "data_dir",
    "PRIMARY_FILENAME": "primary_filename",
    "FALLBACK_FILENAME": "fallback_filename",
    "CACHE_ROOT": "cache_root",
    "CACHE_SUBDIRS": "cache_subdirs",
    "CACHE_CLEAN_COMMAND": "cache_clean_command",
    "NATIVE_PACKAGES": "native_packages",
    "FORCE": "force",
    "FORCE_FALLBACK": "force_fallback",
}

_LIST_FIELDS = {"cache_subdirs", "cache_clean_command", "native_packages"}


class RecoveryConfig(BaseModel):
    """Settings for the recovery runner, remediation and storage selection."""

    max_attempts: int = Field(default=3, ge=1, description="Attempts per guarded run")
    force_max_attempts: int = Field(default=5, ge=1, description="Attempts in force mode")
    initial_delay: float = Field(default=1.0, ge=0.0, description="Seconds before the first retry")
    fallback_max_attempts: int = Field(default=3, ge=1, description="Attempts for fallback store init")

    data_dir: Path = Field(default=Path(".resilient-init"), description="Directory holding the stores")
    primary_filename: str = Field(default="database.sqlite")
    fallback_filename: str = Field(default="database.json")

    cache_root: Path = Field(default=Path("~/.npm"), validate_default=True, description="Installer cache root")
    cache_subdirs: list[str] = Field(default_factory=lambda: ["_npx"])
    cache_clean_command: Optional[list[str]] = Field(
        default=None,
        description="Installer command run before removing cache subtrees",
    )
    native_packages: list[str] = Field(
        default_factory=lambda: ["better-sqlite3", "sqlite3", "_sqlite3"]
    )
    permission_mode: int = Field(default=0o755, ge=0, le=0o7777)

    force: bool = Field(default=False, description="Use force_max_attempts for guarded runs")
    force_fallback: bool = Field(
        default=False,
        description="Skip the primary store and open the fallback directly",
    )

    @field_validator("cache_root", "data_dir", mode="after")
    @classmethod
    def _expand_user(cls, value: Path) -> Path:
        return value.expanduser()

    @field_validator("primary_filename", "fallback_filename")
    @classmethod
    def _plain_filename(cls, value: str) -> str:
        if not value or Path(value).name != value:
            raise ValueError(f"must be a plain file name, got {value!r}")
        return value

    @property
    def effective_max_attempts(self) -> int:
        """Attempts per guarded run, honoring force mode."""
        return self.force_max_attempts if self.force else self.max_attempts

    @property
    def primary_path(self) -> Path:
        return self.data_dir / self.primary_filename

    @property
    def fallback_path(self) -> Path:
        return self.data_dir / self.fallback_filename

    @property
    def cache_lock_path(self) -> Path:
        """Lock file guarding the cache root; lives beside it, not inside."""
        return self.cache_root.parent / f"{self.cache_root.name}.resilient-init.lock"


def _split_list(raw: str) -> list[str]:
    return [part.strip() for part in raw.split(",") if part.strip()]


def _from_environment(environ: Mapping[str, str]) -> dict[str, Any]:
    values: dict[str, Any] = {}
    for suffix, field_name in _ENV_FIELDS.items():
        raw = environ.get(ENV_PREFIX + suffix)
        if raw is None or raw == "":
            continue
        if field_name in _LIST_FIELDS:
            values[field_name] = raw.split() if field_name == "cache_clean_command" else _split_list(raw)
        else:
            values[field_name] = raw
    return values


def _from_yaml(path: Path) -> dict[str, Any]:
    with open(path, encoding="utf-8") as fh:
        data = yaml.safe_load(fh)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(
            f"Config file {path} must contain a mapping",
            details={"path": str(path)},
        )
    return data


def load_config(
    config_file: Optional[Path] = None,
    *,
    environ: Optional[Mapping[str, str]] = None,
    use_dotenv: bool = True,
    **overrides: Any,
) -> RecoveryConfig:
    """Build a RecoveryConfig from file, environment and explicit overrides.

    Args:
        config_file: YAML file to read. Defaults to ``RESILIENT_INIT_CONFIG``
            or ``resilient-init.yaml`` in the working directory, if present.
        environ: Environment mapping. Defaults to ``os.environ``.
        use_dotenv: Load a ``.env`` file into the process environment first.
        **overrides: Field values that take precedence over everything else.
            ``None`` values are ignored.

    Returns:
        Validated RecoveryConfig.

    Raises:
        ConfigurationError: If the file is malformed or a value is invalid.
    """
    if use_dotenv and environ is None:
        if load_dotenv():
            logger.debug("Loaded .env file")
    env = os.environ if environ is None else environ

    values: dict[str, Any] = {}

    path = config_file
    if path is None:
        env_path = env.get(ENV_PREFIX + "CONFIG")
        if env_path:
            path = Path(env_path)
        elif Path(DEFAULT_CONFIG_FILENAME).is_file():
            path = Path(DEFAULT_CONFIG_FILENAME)
    if path is not None:
        try:
            values.update(_from_yaml(Path(path)))
        except (OSError, yaml.YAMLError) as exc:
            raise ConfigurationError(
                f"Could not read config file {path}: {exc}",
                details={"path": str(path)},
            ) from exc
        logger.debug("Loaded config file %s", path)

    values.update(_from_environment(env))
    values.update({k: v for k, v in overrides.items() if v is not None})

    try:
        return RecoveryConfig.model_validate(values)
    except ValidationError as exc:
        raise ConfigurationError(
            f"Invalid configuration: {exc}",
            details={"errors": exc.errors(include_url=False)},
        ) from exc


__all__ = ["RecoveryConfig", "load_config"]
