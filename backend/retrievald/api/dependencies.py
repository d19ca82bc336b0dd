"""Shared FastAPI dependencies."""

from __future__ import annotations

from functools import lru_cache

from retrievald.core.config import Settings, get_settings
from retrievald.service import RetrievalService

_SERVICE: RetrievalService | None = None


@lru_cache(maxsize=1)
def get_app_settings() -> Settings:
    return get_settings()


def get_service() -> RetrievalService:
    global _SERVICE
    if _SERVICE is None:
        _SERVICE = RetrievalService(get_app_settings())
    return _SERVICE


def reset_service() -> None:
    """Forget the singleton; the caller is responsible for stopping it first."""
    global _SERVICE
    _SERVICE = None


__all__ = ["get_app_settings", "get_service", "reset_service"]
