"""Source connectors that read records in batches."""

from .base import BaseExtractor, ExtractedBatch
from .api_extractor import APIExtractor, END_CURSOR
from .memory_extractor import MemoryExtractor

__all__ = [
    "BaseExtractor",
    "ExtractedBatch",
    "APIExtractor",
    "END_CURSOR",
    "MemoryExtractor",
]
