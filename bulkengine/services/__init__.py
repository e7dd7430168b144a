"""
Services

Domain ingestion with duplicate resolution, and bulk maintenance
operations over a client's domains.
"""

from .bulk_analysis import BulkAnalysisService
from .duplicates import (
    BulkAnalysisInput,
    DuplicateCheckResult,
    DuplicateInfo,
    DuplicateResolver,
    ResolutionOutcome,
)

__all__ = [
    "BulkAnalysisService",
    "BulkAnalysisInput",
    "DuplicateCheckResult",
    "DuplicateInfo",
    "DuplicateResolver",
    "ResolutionOutcome",
]
