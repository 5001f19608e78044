"""Client defaults loaded from the environment or a TOML file."""

from __future__ import annotations

import tomllib
from pathlib import Path
from typing import Any

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from hyperfetch.errors import HyperFetchError

CONFIG_TABLE = "hyperfetch"


def _read_toml(path: Path) -> dict[str, Any]:
    try:
        payload = tomllib.loads(path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise HyperFetchError(f"failed reading config: {path}") from exc
    except tomllib.TOMLDecodeError as exc:
        raise HyperFetchError(f"invalid config TOML: {path}") from exc
    return payload


def _as_table(payload: dict[str, Any], key: str) -> dict[str, Any]:
    value = payload.get(key, {})
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise HyperFetchError(f"config section [{key}] must be a table")
    return value


class Settings(BaseSettings):
    """Default request policy applied by ``Client.create_request``."""

    model_config = SettingsConfigDict(
        env_prefix="HYPERFETCH_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    base_url: str = Field(
        default="",
        validation_alias=AliasChoices("HYPERFETCH_BASE_URL", "HYPERFETCH_URL"),
    )
    retry: int = 0
    retry_time_ms: int = 500
    cache: bool = True
    cache_time_ms: int = 300_000
    concurrent: bool = True
    deep_equal: bool = True
    cancelable: bool = False
    timeout_ms: int | None = None
    http_timeout_s: float = 10.0
    persist_dir: str = ""
    log_level: str = "WARNING"

    @classmethod
    def from_toml(cls, path: Path | str, **overrides: Any) -> Settings:
        """Read the ``[hyperfetch]`` table; keyword overrides win over file values."""
        table = _as_table(_read_toml(Path(path)), CONFIG_TABLE)
        values = {**table, **{k: v for k, v in overrides.items() if v is not None}}
        return cls(**values)

    def command_defaults(self) -> dict[str, Any]:
        """Policy fields in the shape ``Command.create`` accepts."""
        return {
            "retry": self.retry,
            "retry_time": self.retry_time_ms,
            "cache": self.cache,
            "cache_time": self.cache_time_ms,
            "concurrent": self.concurrent,
            "deep_equal": self.deep_equal,
            "cancelable": self.cancelable,
            "timeout": self.timeout_ms,
        }
