"""
Document ingestion into the delivery path.
"""

from .pipeline import IngestionPipeline, IngestionResult, PayloadEncoder

__all__ = [
    "IngestionPipeline",
    "IngestionResult",
    "PayloadEncoder",
]
