"""
Qualification State Machine

Owns the qualification states of a domain-within-a-project and the rules
for AI-driven vs. human transitions.

States:
    pending -> high_quality | good_quality | marginal_quality | disqualified
    any reviewed state -> any other state (human re-set)

When a human acts on a record the AI already qualified:
- choosing a different status is an override (was_manually_qualified)
- choosing the same status is a verification (was_human_verified)
Never both for one action.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Union
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError

from bulkengine.database.models import (
    AuthorityLevel,
    DomainRecord,
    OverlapStatus,
    QualificationStatus,
    utcnow,
)
from bulkengine.database.repository import DomainRepository
from bulkengine.database.schemas import DomainEvidence, parse_payload
from bulkengine.errors import BulkEngineError, ValidationError
from bulkengine.utils.ids import to_optional_uuid, to_uuid

logger = logging.getLogger(__name__)

StatusLike = Union[QualificationStatus, str]

REVIEWED_STATUSES: FrozenSet[QualificationStatus] = frozenset({
    QualificationStatus.HIGH_QUALITY,
    QualificationStatus.GOOD_QUALITY,
    QualificationStatus.MARGINAL_QUALITY,
    QualificationStatus.DISQUALIFIED,
})

ALL_STATUSES: FrozenSet[QualificationStatus] = frozenset(QualificationStatus)

# Allowed targets per source state
TRANSITIONS: Dict[QualificationStatus, FrozenSet[QualificationStatus]] = {
    QualificationStatus.PENDING: ALL_STATUSES,
    **{status: ALL_STATUSES for status in REVIEWED_STATUSES},
}


def coerce_status(value: StatusLike) -> QualificationStatus:
    """Parse a status value, raising ValidationError for unknown ones."""
    if isinstance(value, QualificationStatus):
        return value
    try:
        return QualificationStatus(value)
    except ValueError as e:
        raise ValidationError(f"Unknown qualification status: {value!r}", {"status": value}) from e


def can_transition(current: QualificationStatus, new: QualificationStatus) -> bool:
    return new in TRANSITIONS.get(current, frozenset())


@dataclass
class BulkOperationResult:
    """Outcome of a per-record bulk operation"""
    requested: int = 0
    succeeded: List[UUID] = field(default_factory=list)
    failures: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def success_count(self) -> int:
        return len(self.succeeded)

    @property
    def failure_count(self) -> int:
        return len(self.failures)

    @property
    def is_partial(self) -> bool:
        return bool(self.failures) and bool(self.succeeded)

    def add_failure(self, item_id: Any, error: Exception, **context) -> None:
        self.failures.append({
            "id": str(item_id),
            "error": type(error).__name__,
            "message": str(error),
            **context,
        })

    def to_dict(self) -> dict:
        return {
            "requested": self.requested,
            "succeeded": self.success_count,
            "failed": self.failure_count,
            "failures": self.failures,
        }


class QualificationStateMachine:
    """Applies qualification transitions to domain records."""

    def __init__(self, domains: Optional[DomainRepository] = None):
        self.domains = domains or DomainRepository()

    def set_status(
        self,
        domain_id: Any,
        new_status: StatusLike,
        reviewer_id: Any,
        notes: Optional[str] = None,
        is_manual_override: bool = False,
        selected_target_page_id: Any = None,
    ) -> DomainRecord:
        """
        Set the qualification status of one record.

        Always stamps checked_by/checked_at and overwrites notes. All field
        changes commit together.

        Raises:
            ValidationError: unknown status or malformed IDs
            NotFoundError: the record does not exist
        """
        domain_id = to_uuid(domain_id, "domain_id")
        status = coerce_status(new_status)
        reviewer = to_optional_uuid(reviewer_id, "reviewer_id")
        target_page = to_optional_uuid(selected_target_page_id, "selected_target_page_id")

        def apply(record: DomainRecord) -> None:
            current = record.qualification_status or QualificationStatus.PENDING
            if not can_transition(current, status):
                raise ValidationError(
                    f"Transition {current.value} -> {status.value} not allowed",
                    {"domain_id": str(domain_id)},
                )

            now = utcnow()
            if is_manual_override and record.ai_qualified:
                if status != current:
                    # Human overrode the AI's call
                    record.was_manually_qualified = True
                    record.manually_qualified_by = reviewer
                    record.manually_qualified_at = now
                else:
                    # Human confirmed the AI's call
                    record.was_human_verified = True
                    record.human_verified_by = reviewer
                    record.human_verified_at = now

            record.qualification_status = status
            record.checked_by = reviewer
            record.checked_at = now
            record.notes = notes
            if target_page is not None:
                record.selected_target_page_id = target_page

        record = self.domains.modify(domain_id, apply)
        logger.info(
            f"Qualification of {record.domain} set to {status.value} "
            f"(manual_override={is_manual_override}, reviewer={reviewer})"
        )
        return record

    def bulk_set_status(
        self,
        domain_ids: Iterable[Any],
        new_status: StatusLike,
        reviewer_id: Any = None,
        is_manual_override: bool = False,
    ) -> BulkOperationResult:
        """
        Apply one status to many records.

        Each record is its own transaction; a failing record is logged and
        reported without affecting the others. checked_by/checked_at are
        only stamped when a reviewer is given.
        """
        status = coerce_status(new_status)
        ids = list(domain_ids)
        result = BulkOperationResult(requested=len(ids))

        for raw_id in ids:
            try:
                domain_id = to_uuid(raw_id, "domain_id")
                if reviewer_id is not None:
                    self.set_status(domain_id, status, reviewer_id, is_manual_override=is_manual_override)
                else:
                    self.domains.update(domain_id, qualification_status=status)
                result.succeeded.append(domain_id)
            except (BulkEngineError, SQLAlchemyError) as e:
                logger.error(f"Bulk status update failed for domain {raw_id} -> {status.value}: {e}")
                result.add_failure(raw_id, e, operation="bulk_set_status", status=status.value)

        logger.info(
            f"Bulk status {status.value}: {result.success_count}/{result.requested} updated, "
            f"{result.failure_count} failed"
        )
        return result

    def attach_ai_qualification(
        self,
        domain_id: Any,
        status: StatusLike,
        reasoning: str,
        overlap_status: Union[OverlapStatus, str, None] = None,
        authority_direct: Union[AuthorityLevel, str, None] = None,
        authority_related: Union[AuthorityLevel, str, None] = None,
        evidence: Any = None,
    ) -> DomainRecord:
        """
        Store the AI producer's qualification for one record.

        Marks the record as AI-qualified; that flag is what later turns a
        human action into an override or a verification.
        """
        domain_id = to_uuid(domain_id, "domain_id")
        status = coerce_status(status)
        if not reasoning or not reasoning.strip():
            raise ValidationError("AI qualification requires reasoning", {"domain_id": str(domain_id)})
        try:
            overlap = OverlapStatus(overlap_status) if overlap_status else None
            direct = AuthorityLevel(authority_direct) if authority_direct else None
            related = AuthorityLevel(authority_related) if authority_related else None
        except ValueError as e:
            raise ValidationError(str(e), {"domain_id": str(domain_id)}) from e
        parsed_evidence = parse_payload(DomainEvidence, evidence, "evidence") if evidence is not None else None

        def apply(record: DomainRecord) -> None:
            record.qualification_status = status
            record.ai_qualification_reasoning = reasoning
            if not record.ai_qualified:
                record.ai_qualified = True
                record.ai_qualified_at = utcnow()
            if overlap is not None:
                record.overlap_status = overlap
            if direct is not None:
                record.authority_direct = direct
            if related is not None:
                record.authority_related = related
            if parsed_evidence is not None:
                record.evidence = parsed_evidence.to_json()

        record = self.domains.modify(domain_id, apply)
        logger.info(f"AI qualification attached to {record.domain}: {status.value}")
        return record
