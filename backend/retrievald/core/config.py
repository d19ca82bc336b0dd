"""Daemon configuration handling."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any, Literal, Mapping

import yaml
from pydantic import BaseModel, Field, field_validator

from retrievald.core.errors import ConfigurationError

ENV_PREFIX = "RETRIEVALD_"
DEFAULT_CONFIG_PATH = Path("~/.config/retrievald/config.yaml")

_YAML_KEY_MAP: Mapping[tuple[str, ...], str] = {
    ("daemon", "dir"): "daemon_dir",
    ("daemon", "host"): "host",
    ("daemon", "port"): "port",
    ("indexing", "profile"): "indexing_profile",
    ("indexing", "roots"): "allowlist_roots",
    ("indexing", "batch_size"): "queue_batch_size",
    ("indexing", "workers"): "ingestion_workers",
    ("indexing", "startup_backfill"): "startup_backfill",
    ("indexing", "live_watch"): "live_watch",
    ("indexing", "backfill_limit"): "backfill_limit",
    ("embeddings", "model"): "embedding_model",
    ("embeddings", "dim"): "embedding_dim",
    ("retrieval", "suggest_cache_seconds"): "suggest_cache_seconds",
    ("maintenance", "compaction_interval_hours"): "compaction_interval_hours",
    ("logging", "level"): "log_level",
    ("logging", "json"): "log_json",
    ("logging", "file"): "log_to_file",
}


@dataclass(slots=True, frozen=True)
class DaemonPaths:
    """Directory layout rooted under the daemon directory."""

    root: Path
    index_dir: Path
    cache_dir: Path
    logs_dir: Path
    sockets_dir: Path
    metadata_db_path: Path

    @classmethod
    def from_root(cls, root: Path) -> "DaemonPaths":
        root = root.expanduser()
        index_dir = root / "index"
        return cls(
            root=root,
            index_dir=index_dir,
            cache_dir=root / "cache",
            logs_dir=root / "logs",
            sockets_dir=root / "sockets",
            metadata_db_path=index_dir / "metadata.db",
        )

    def ensure(self) -> None:
        for directory in (self.root, self.index_dir, self.cache_dir, self.logs_dir, self.sockets_dir):
            directory.mkdir(parents=True, exist_ok=True)


class Settings(BaseModel):
    """Runtime configuration loaded from YAML file and environment variables."""

    daemon_dir: Path = Field(default=Path.home() / ".retrievald")
    host: str = "127.0.0.1"
    port: int = Field(default=46299, ge=1, le=65535)
    indexing_profile: Literal["balanced", "developer", "personal"] = "balanced"
    allowlist_roots: list[Path] = Field(default_factory=list)
    queue_batch_size: int = Field(default=24, ge=1)
    ingestion_workers: int = Field(default=0, ge=0)
    startup_backfill: bool = True
    live_watch: bool = True
    backfill_limit: int = Field(default=50_000, ge=1)
    embedding_model: str = "hashed-v1"
    embedding_dim: int = Field(default=256, ge=8)
    suggest_cache_seconds: float = Field(default=1.5, ge=0)
    compaction_interval_hours: float = Field(default=8.0, gt=0)
    log_level: str = "INFO"
    log_json: bool = True
    log_to_file: bool = True

    model_config = {
        "validate_assignment": True,
        "extra": "ignore",
    }

    @field_validator("daemon_dir", mode="before")
    @classmethod
    def _expand_daemon_dir(cls, value: Any) -> Path:
        if isinstance(value, Path):
            return value.expanduser()
        if isinstance(value, str):
            return Path(value).expanduser()
        raise TypeError("daemon_dir must be a path or string")

    @field_validator("allowlist_roots", mode="before")
    @classmethod
    def _split_roots(cls, value: Any) -> list[Path]:
        if value is None:
            return []
        if isinstance(value, (str, Path)):
            value = [part for part in str(value).split(os.pathsep) if part.strip()]
        return [Path(str(item)).expanduser() for item in value]

    @property
    def paths(self) -> DaemonPaths:
        return DaemonPaths.from_root(self.daemon_dir)

    @property
    def worker_count(self) -> int:
        if self.ingestion_workers:
            return self.ingestion_workers
        return max(1, min(4, os.cpu_count() or 1))

    @classmethod
    def from_yaml(cls, path: Path | None = None) -> "Settings":
        """Load YAML config and overlay env vars; fall back to defaults."""
        config_path = cls._resolve_config_path(path)
        data: dict[str, Any] = {}
        if config_path and config_path.exists():
            with config_path.open("r", encoding="utf-8") as fh:
                try:
                    raw = yaml.safe_load(fh) or {}
                except yaml.YAMLError as exc:
                    raise ConfigurationError(f"Malformed configuration at {config_path}: {exc}") from exc
            if not isinstance(raw, Mapping):
                raise ConfigurationError(f"Configuration at {config_path} must be a mapping")
            data.update(_flatten_yaml(raw))
        data.update(_load_env_overrides())
        return cls(**data)

    @staticmethod
    def _resolve_config_path(path: Path | None) -> Path | None:
        if path is not None:
            return path.expanduser()
        env_path = os.environ.get(f"{ENV_PREFIX}CONFIG")
        if env_path:
            return Path(env_path).expanduser()
        resolved_default = DEFAULT_CONFIG_PATH.expanduser()
        return resolved_default if resolved_default.exists() else None


def _flatten_yaml(raw: Mapping[str, Any], prefix: tuple[str, ...] = ()) -> dict[str, Any]:
    """Flatten nested YAML configuration to Settings field names."""
    flat: dict[str, Any] = {}
    for key, value in raw.items():
        next_prefix = prefix + (key,)
        if isinstance(value, Mapping):
            flat.update(_flatten_yaml(value, prefix=next_prefix))
        else:
            mapped_key = _YAML_KEY_MAP.get(next_prefix)
            if mapped_key:
                flat[mapped_key] = value
            elif key in Settings.model_fields:
                flat[key] = value
    return flat


def _load_env_overrides() -> dict[str, Any]:
    """Map environment variables with RETRIEVALD_ prefix into Settings fields."""
    overrides: dict[str, Any] = {}
    for key, value in os.environ.items():
        if not key.startswith(ENV_PREFIX):
            continue
        field_name = key[len(ENV_PREFIX) :].lower()
        if field_name in Settings.model_fields:
            overrides[field_name] = value
    return overrides


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Cached settings accessor for dependency injection."""
    return Settings.from_yaml()


__all__ = ["DaemonPaths", "Settings", "get_settings"]
