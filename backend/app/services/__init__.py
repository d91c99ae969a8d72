"""Application service helpers."""

from .cache import get_cache
from .interactions import InteractionStore

__all__ = ["get_cache", "InteractionStore"]
