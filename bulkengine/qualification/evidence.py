"""
Evidence Aggregation

Rolls per-target-URL keyword overlap evidence up to one domain-level
summary used for qualification and display.

Counts are the flattened totals across all target analyses: a keyword
that shows up for two target pages counts twice. Median positions come
from the primary analysis only (the one for the suggested target URL,
otherwise the first).
"""

import logging
from typing import Any, List, Optional, Sequence
from uuid import UUID

from bulkengine.database.models import DomainRecord, OverlapStatus, utcnow
from bulkengine.database.repository import DomainRepository
from bulkengine.database.schemas import (
    DomainEvidence,
    MATCH_QUALITY_RANK,
    TargetAnalysis,
    TargetMatchData,
    parse_payload,
)
from bulkengine.utils.ids import to_uuid

logger = logging.getLogger(__name__)


def select_primary_analysis(
    analyses: Sequence[TargetAnalysis],
    suggested_target_url: Optional[str] = None,
) -> Optional[TargetAnalysis]:
    """The analysis for the suggested target URL, falling back to the first."""
    if not analyses:
        return None
    if suggested_target_url:
        for analysis in analyses:
            if analysis.target_url == suggested_target_url:
                return analysis
    return analyses[0]


def aggregate_evidence(
    analyses: Sequence[TargetAnalysis],
    suggested_target_url: Optional[str] = None,
) -> DomainEvidence:
    """
    Combine per-target evidence into domain-level evidence.

    Args:
        analyses: Target analyses in producer order
        suggested_target_url: Picks the analysis supplying median positions

    Returns:
        DomainEvidence with raw (non-deduplicated) keyword counts
    """
    direct_count = sum(len(a.evidence.direct_keywords) for a in analyses)
    related_count = sum(len(a.evidence.related_keywords) for a in analyses)

    primary = select_primary_analysis(analyses, suggested_target_url)

    return DomainEvidence(
        direct_count=direct_count,
        related_count=related_count,
        direct_median_position=primary.evidence.direct_median_position if primary else None,
        related_median_position=primary.evidence.related_median_position if primary else None,
    )


def derive_overlap_status(evidence: DomainEvidence) -> OverlapStatus:
    """Map evidence counts to an overlap status."""
    if evidence.direct_count and evidence.related_count:
        return OverlapStatus.BOTH
    if evidence.direct_count:
        return OverlapStatus.DIRECT
    if evidence.related_count:
        return OverlapStatus.RELATED
    return OverlapStatus.NONE


def best_target_url(analyses: Sequence[TargetAnalysis]) -> Optional[str]:
    """
    Target URL with the best match quality.

    Ties keep producer order; analyses without a quality rank last.
    """
    best = None
    best_rank = -1
    for analysis in analyses:
        rank = MATCH_QUALITY_RANK.get(analysis.match_quality, 0)
        if rank > best_rank:
            best, best_rank = analysis, rank
    return best.target_url if best else None


def keyword_lists(analyses: Sequence[TargetAnalysis]) -> dict:
    """Flattened direct and related keyword lists, for display."""
    return {
        "direct": [k for a in analyses for k in a.evidence.direct_keywords],
        "related": [k for a in analyses for k in a.evidence.related_keywords],
    }


class EvidenceAggregator:
    """Attaches target-match output to domain records."""

    def __init__(self, domains: Optional[DomainRepository] = None):
        self.domains = domains or DomainRepository()

    def record_target_match(self, domain_id: Any, payload: Any) -> DomainRecord:
        """
        Validate and store target-match output for one domain.

        Sets suggested_target_url (keeps an existing one), target_matched_at
        and the aggregated evidence, in one transaction.

        Raises:
            ValidationError: if the payload is malformed
            NotFoundError: if the domain does not exist
        """
        domain_id = to_uuid(domain_id, "domain_id")
        match_data: TargetMatchData = parse_payload(TargetMatchData, payload, "targetMatchData")
        analyses: List[TargetAnalysis] = match_data.target_analysis

        def apply(record: DomainRecord) -> None:
            if not record.suggested_target_url:
                record.suggested_target_url = best_target_url(analyses)
            evidence = aggregate_evidence(analyses, record.suggested_target_url)
            record.target_match_data = match_data.model_dump(mode="json")
            record.target_matched_at = utcnow()
            record.evidence = evidence.to_json()

        record = self.domains.modify(domain_id, apply)
        logger.info(
            f"Recorded target match for {record.domain}: {len(analyses)} targets, "
            f"suggested {record.suggested_target_url}"
        )
        return record

    def evidence_for(self, record: DomainRecord) -> DomainEvidence:
        """Evidence of a stored record, recomputed from its target-match data when present."""
        if record.target_match_data:
            match_data = parse_payload(TargetMatchData, record.target_match_data, "targetMatchData")
            return aggregate_evidence(match_data.target_analysis, record.suggested_target_url)
        return parse_payload(DomainEvidence, record.evidence, "evidence")
