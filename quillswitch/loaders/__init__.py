"""Destination connectors that write transformed records."""

from .base import BaseLoader, LoadResult
from .api_loader import APILoader
from .memory_loader import MemoryLoader

__all__ = [
    "BaseLoader",
    "LoadResult",
    "APILoader",
    "MemoryLoader",
]
