"""
Boundary Schemas for JSON Columns

Typed shapes for the JSON blobs stored alongside the relational data:
- targetMatchData (written by the upstream AI target matcher)
- evidence (domain-level summary)
- benchmarkData (order snapshot)
- comparisonData (benchmark vs live order report)

Raw blobs are validated here, once, when they enter the engine.
Benchmark and comparison payloads are stored with camelCase keys.
"""

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from bulkengine.errors import ValidationError
from .models import DuplicateResolution


class CamelModel(BaseModel):
    """Base for payloads persisted with camelCase keys."""

    class Config:
        alias_generator = to_camel
        populate_by_name = True
        extra = "ignore"

    def to_json(self) -> Dict[str, Any]:
        """Dump for storage in a JSON column."""
        return self.model_dump(by_alias=True, mode="json")


def parse_payload(model, raw: Any, what: str):
    """
    Validate a raw payload into `model`.

    Raises:
        ValidationError: if the payload does not match the shape
    """
    if isinstance(raw, model):
        return raw
    try:
        return model.model_validate(raw or {})
    except PydanticValidationError as e:
        raise ValidationError(f"Malformed {what}: {e.error_count()} error(s)", {"errors": e.errors()}) from e


# =============================================================================
# TARGET MATCHING
# =============================================================================

class MatchQuality(str, Enum):
    """How well a domain fits a candidate target URL"""
    EXCELLENT = "excellent"
    GOOD = "good"
    FAIR = "fair"
    POOR = "poor"


MATCH_QUALITY_RANK = {
    MatchQuality.EXCELLENT: 4,
    MatchQuality.GOOD: 3,
    MatchQuality.FAIR: 2,
    MatchQuality.POOR: 1,
}


class TargetEvidence(BaseModel):
    """Keyword overlap evidence for one target URL"""
    direct_keywords: List[str] = Field(default_factory=list)
    related_keywords: List[str] = Field(default_factory=list)
    direct_count: Optional[int] = None
    related_count: Optional[int] = None
    direct_median_position: Optional[float] = None
    related_median_position: Optional[float] = None

    class Config:
        extra = "ignore"


class TargetAnalysis(BaseModel):
    """AI analysis of the domain against one target URL"""
    target_url: str
    match_quality: Optional[MatchQuality] = None
    reasoning: Optional[str] = None
    evidence: TargetEvidence = Field(default_factory=TargetEvidence)

    class Config:
        extra = "ignore"


class TargetMatchData(BaseModel):
    """Stored in DomainRecord.target_match_data (snake_case, as produced)"""
    target_analysis: List[TargetAnalysis] = Field(default_factory=list)

    class Config:
        extra = "ignore"


class DomainEvidence(CamelModel):
    """Domain-level evidence summary, stored in DomainRecord.evidence"""
    direct_count: int = 0
    direct_median_position: Optional[float] = None
    related_count: int = 0
    related_median_position: Optional[float] = None


# =============================================================================
# DUPLICATE RESOLUTION INPUT
# =============================================================================

class DuplicateResolutionChoice(BaseModel):
    """Caller's decision for one cross-project duplicate"""
    domain: str
    existing_domain_id: str
    resolution: DuplicateResolution
    existing_project_id: Optional[str] = None
    existing_project_name: Optional[str] = None


# =============================================================================
# BENCHMARK
# =============================================================================

class DomainMetricsSnapshot(CamelModel):
    dr: Optional[int] = None
    traffic: Optional[int] = None
    quality_score: Optional[float] = None


class RequestedDomain(CamelModel):
    """A domain the client asked for, with prices in cents"""
    domain_id: Optional[str] = None
    domain: str
    wholesale_price: int = 0
    retail_price: int = 0
    anchor_text: Optional[str] = None
    special_instructions: Optional[str] = None
    metrics: DomainMetricsSnapshot = Field(default_factory=DomainMetricsSnapshot)


class BenchmarkTargetPage(CamelModel):
    url: str
    page_id: Optional[str] = None
    requested_links: int = 0
    requested_domains: List[RequestedDomain] = Field(default_factory=list)


class BenchmarkClientGroup(CamelModel):
    client_id: str
    client_name: str = ""
    link_count: int = 0
    target_pages: List[BenchmarkTargetPage] = Field(default_factory=list)
    original_request: bool = False  # No domains selected yet at capture time


class OriginalConstraints(CamelModel):
    budget_range: List[int] = Field(default_factory=list)
    dr_range: List[int] = Field(default_factory=list)
    min_traffic: Optional[int] = None
    estimated_links: Optional[int] = None
    estimated_price_per_link: Optional[int] = None
    categories: List[str] = Field(default_factory=list)
    types: List[str] = Field(default_factory=list)
    niches: List[str] = Field(default_factory=list)


class BenchmarkData(CamelModel):
    """Stored in OrderBenchmark.benchmark_data"""
    order_total: int = 0
    service_fee: int = 0
    client_groups: List[BenchmarkClientGroup] = Field(default_factory=list)
    total_requested_links: int = 0
    total_clients: int = 0
    total_target_pages: int = 0
    total_unique_domains: int = 0
    original_constraints: OriginalConstraints = Field(default_factory=OriginalConstraints)


# =============================================================================
# COMPARISON
# =============================================================================

class MissingReason(str, Enum):
    UNAVAILABLE = "unavailable"
    QUALITY_ISSUE = "quality_issue"
    PRICE_CHANGE = "price_change"


class IssueType(str, Enum):
    MISSING = "missing"
    SUBSTITUTION = "substitution"
    EXTRA = "extra"
    PRICE_CHANGE = "price_change"


class Substitution(CamelModel):
    requested_domain: str
    delivered_domain: str
    reason: MissingReason
    requested_price: int = 0
    delivered_price: int = 0


class MissingDomain(CamelModel):
    domain: str
    reason: MissingReason
    detail: Optional[str] = None


class ExtraDomain(CamelModel):
    domain: str
    retail_price: int = 0
    reason: str = "added_after_confirmation"


class PriceChange(CamelModel):
    domain: str
    benchmark_price: int
    current_price: int
    difference: int
    percent_change: Optional[float] = None
    price_changed: bool = False


class TargetPageAnalysis(CamelModel):
    url: str
    requested: int = 0
    delivered: int = 0
    completion_percentage: float = 0.0
    expected_revenue: int = 0
    actual_revenue: int = 0
    substitutions: List[Substitution] = Field(default_factory=list)
    missing: List[MissingDomain] = Field(default_factory=list)
    extras: List[ExtraDomain] = Field(default_factory=list)
    price_changes: List[PriceChange] = Field(default_factory=list)


class ClientAnalysis(CamelModel):
    client_id: str
    client_name: str = ""
    requested: int = 0
    delivered: int = 0
    in_progress: int = 0
    expected_revenue: int = 0
    actual_revenue: int = 0
    target_page_analysis: List[TargetPageAnalysis] = Field(default_factory=list)


class ComparisonIssue(CamelModel):
    type: IssueType
    description: str
    affected_items: List[str] = Field(default_factory=list)
    client_id: Optional[str] = None
    target_page_url: Optional[str] = None


class ComparisonData(CamelModel):
    """Stored in BenchmarkComparison.comparison_data"""
    benchmark_version: int = 1
    requested_links: int = 0
    delivered_links: int = 0
    completion_percentage: float = 0.0
    expected_revenue: int = 0
    actual_revenue: int = 0
    revenue_difference: int = 0
    client_analysis: List[ClientAnalysis] = Field(default_factory=list)
    issues: List[ComparisonIssue] = Field(default_factory=list)
    dr_range: List[int] = Field(default_factory=list)
    traffic_range: List[int] = Field(default_factory=list)
