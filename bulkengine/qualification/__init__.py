"""
Qualification

State machine for domain qualification and the evidence aggregation
that feeds it.
"""

from .evidence import (
    EvidenceAggregator,
    aggregate_evidence,
    best_target_url,
    derive_overlap_status,
    keyword_lists,
    select_primary_analysis,
)
from .state_machine import (
    ALL_STATUSES,
    REVIEWED_STATUSES,
    TRANSITIONS,
    BulkOperationResult,
    QualificationStateMachine,
    can_transition,
    coerce_status,
)

__all__ = [
    # Evidence
    "EvidenceAggregator",
    "aggregate_evidence",
    "best_target_url",
    "derive_overlap_status",
    "keyword_lists",
    "select_primary_analysis",
    # State machine
    "ALL_STATUSES",
    "REVIEWED_STATUSES",
    "TRANSITIONS",
    "BulkOperationResult",
    "QualificationStateMachine",
    "can_transition",
    "coerce_status",
]
