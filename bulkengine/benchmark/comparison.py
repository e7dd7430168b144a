"""
Benchmark Comparator

Reconciles an order's live state against one benchmark version.

For every client group and target page:
- a domain both requested and delivered is fine (only its price is checked)
- requested but not delivered -> missing, with a best-effort reason
- delivered but not requested -> extra
- when the missing and extra counts line up one to one, they pair up in
  order as substitutions instead

Page results roll up to clients, and clients to order totals. The report
is computed completely before anything is written.
"""

import logging
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from bulkengine.database.models import (
    BenchmarkComparison,
    InclusionStatus,
    Order,
    OrderGroup,
    OrderSiteSubmission,
    QualificationStatus,
    SubmissionStatus,
)
from bulkengine.database.repository import BenchmarkRepository, OrderRepository
from bulkengine.database.schemas import (
    BenchmarkClientGroup,
    BenchmarkData,
    BenchmarkTargetPage,
    ClientAnalysis,
    ComparisonData,
    ComparisonIssue,
    ExtraDomain,
    IssueType,
    MissingDomain,
    MissingReason,
    PriceChange,
    RequestedDomain,
    Substitution,
    TargetPageAnalysis,
    parse_payload,
)
from bulkengine.errors import NotFoundError
from bulkengine.utils.config import get_settings
from bulkengine.utils.domain import normalize_domain
from bulkengine.utils.ids import to_optional_uuid, to_uuid
from .snapshot import page_key

logger = logging.getLogger(__name__)

# Sites not yet marked included count as delivered only once the client has them
DELIVERED_STATUSES = frozenset({SubmissionStatus.COMPLETED, SubmissionStatus.CLIENT_APPROVED})
IN_PROGRESS_STATUSES = frozenset({SubmissionStatus.SUBMITTED, SubmissionStatus.IN_PROGRESS})


# =============================================================================
# CLASSIFIERS
# =============================================================================

def is_delivered(submission: OrderSiteSubmission) -> bool:
    if submission.inclusion_status == InclusionStatus.EXCLUDED:
        return False
    return (
        submission.inclusion_status == InclusionStatus.INCLUDED
        or submission.submission_status in DELIVERED_STATUSES
    )


def is_in_progress(submission: OrderSiteSubmission) -> bool:
    return (
        submission.inclusion_status != InclusionStatus.EXCLUDED
        and submission.submission_status in IN_PROGRESS_STATUSES
    )


def price_change(domain: str, benchmark_price: int, current_price: int, threshold: Any) -> PriceChange:
    """
    Relative price drift of one domain.

    price_changed is set when |benchmark - current| / benchmark is strictly
    greater than the threshold. A zero benchmark price counts as changed
    as soon as the current price is positive.
    """
    difference = current_price - benchmark_price
    if benchmark_price:
        ratio = Decimal(abs(difference)) / Decimal(benchmark_price)
        changed = ratio > Decimal(str(threshold))
        percent = float(round(ratio * 100, 2))
    else:
        changed = current_price > 0
        percent = None
    return PriceChange(
        domain=domain,
        benchmark_price=benchmark_price,
        current_price=current_price,
        difference=difference,
        percent_change=percent,
        price_changed=changed,
    )


def classify_missing(
    requested: RequestedDomain,
    submission: Optional[OrderSiteSubmission],
    threshold: Any,
) -> MissingReason:
    """Best-effort reason a requested domain is not delivered."""
    if submission is None:
        return MissingReason.UNAVAILABLE

    reason_text = (submission.exclusion_reason or "").lower()
    if "price" in reason_text:
        return MissingReason.PRICE_CHANGE
    if "quality" in reason_text:
        return MissingReason.QUALITY_ISSUE

    record = submission.domain_record
    if record is not None and record.qualification_status == QualificationStatus.DISQUALIFIED:
        return MissingReason.QUALITY_ISSUE

    drift = price_change(requested.domain, requested.retail_price, submission.retail_price or 0, threshold)
    if drift.price_changed:
        return MissingReason.PRICE_CHANGE
    return MissingReason.UNAVAILABLE


def completion(delivered: int, requested: int) -> float:
    """Percentage, not clamped: over-delivery reads above 100."""
    return round(delivered / requested * 100, 2) if requested else 0.0


def value_range(values: Iterable[Optional[float]]) -> List[int]:
    present = [v for v in values if v]
    return [min(present), max(present)] if present else []


# =============================================================================
# PAGE / CLIENT ANALYSIS
# =============================================================================

def analyze_page(
    page: BenchmarkTargetPage,
    submissions: List[OrderSiteSubmission],
    threshold: Any,
    expect_domains: bool = True,
) -> TargetPageAnalysis:
    """
    Compare one benchmark target page with the live submissions for it.

    Only included sites can be extras or substitutes; a proposal still
    awaiting inclusion is neither. With expect_domains False
    (original-request snapshots, which name no domains) delivered sites
    are counted but never reported as extras.
    """
    delivered = [s for s in submissions if is_delivered(s)]
    delivered_by_domain: Dict[str, OrderSiteSubmission] = {}
    for s in delivered:
        delivered_by_domain.setdefault(normalize_domain(s.domain), s)
    live_by_domain: Dict[str, OrderSiteSubmission] = {}
    for s in submissions:
        live_by_domain.setdefault(normalize_domain(s.domain), s)

    requested = {normalize_domain(d.domain): d for d in page.requested_domains}

    analysis = TargetPageAnalysis(
        url=page.url,
        requested=page.requested_links,
        delivered=len(delivered),
        completion_percentage=completion(len(delivered), page.requested_links),
        expected_revenue=sum(d.retail_price for d in page.requested_domains),
        actual_revenue=sum(s.retail_price or 0 for s in delivered),
    )

    missing = []
    for domain, wanted in requested.items():
        if domain in delivered_by_domain:
            drift = price_change(domain, wanted.retail_price, delivered_by_domain[domain].retail_price or 0, threshold)
            if drift.difference:
                analysis.price_changes.append(drift)
        else:
            missing.append((domain, wanted))

    extras = []
    if expect_domains:
        extras = [
            (domain, s) for domain, s in delivered_by_domain.items()
            if domain not in requested and s.inclusion_status == InclusionStatus.INCLUDED
        ]

    if missing and len(missing) == len(extras):
        for (domain, wanted), (extra_domain, sub) in zip(missing, extras):
            analysis.substitutions.append(
                Substitution(
                    requested_domain=domain,
                    delivered_domain=extra_domain,
                    reason=classify_missing(wanted, live_by_domain.get(domain), threshold),
                    requested_price=wanted.retail_price,
                    delivered_price=sub.retail_price or 0,
                )
            )
        return analysis

    for domain, wanted in missing:
        live = live_by_domain.get(domain)
        analysis.missing.append(
            MissingDomain(
                domain=domain,
                reason=classify_missing(wanted, live, threshold),
                detail=live.exclusion_reason if live is not None else None,
            )
        )
    for domain, sub in extras:
        analysis.extras.append(ExtraDomain(domain=domain, retail_price=sub.retail_price or 0))
    return analysis


def analyze_client(
    benchmark_group: Optional[BenchmarkClientGroup],
    live_group: Optional[OrderGroup],
    threshold: Any,
) -> ClientAnalysis:
    """One client's benchmark group against its live group; either may be absent."""
    submissions = list(live_group.submissions) if live_group is not None else []
    by_page: Dict[str, List[OrderSiteSubmission]] = {}
    for s in submissions:
        by_page.setdefault(page_key(s.target_page_url), []).append(s)

    if benchmark_group is not None:
        client_id = benchmark_group.client_id
        client_name = benchmark_group.client_name
        pages = list(benchmark_group.target_pages)
        expect_domains = not benchmark_group.original_request
        requested = benchmark_group.link_count
    else:
        client_id = str(live_group.client_id)
        client_name = live_group.client_name or ""
        pages = []
        expect_domains = True
        requested = 0

    page_analyses = [analyze_page(p, by_page.pop(page_key(p.url), []), threshold, expect_domains) for p in pages]
    # Live pages the benchmark never mentioned
    for url, page_submissions in by_page.items():
        page_analyses.append(
            analyze_page(BenchmarkTargetPage(url=url), page_submissions, threshold, expect_domains)
        )

    delivered = [s for s in submissions if is_delivered(s)]
    return ClientAnalysis(
        client_id=client_id,
        client_name=client_name,
        requested=requested,
        delivered=len(delivered),
        in_progress=sum(1 for s in submissions if is_in_progress(s)),
        expected_revenue=sum(p.expected_revenue for p in page_analyses),
        actual_revenue=sum(s.retail_price or 0 for s in delivered),
        target_page_analysis=page_analyses,
    )


def collect_issues(clients: List[ClientAnalysis]) -> List[ComparisonIssue]:
    issues = []
    for client in clients:
        for page in client.target_page_analysis:
            where = {"client_id": client.client_id, "target_page_url": page.url}
            if page.missing:
                issues.append(ComparisonIssue(
                    type=IssueType.MISSING,
                    description=f"{len(page.missing)} domains missing for {page.url}",
                    affected_items=[m.domain for m in page.missing],
                    **where,
                ))
            if page.substitutions:
                issues.append(ComparisonIssue(
                    type=IssueType.SUBSTITUTION,
                    description=f"{len(page.substitutions)} substitutions for {page.url}",
                    affected_items=[s.requested_domain for s in page.substitutions],
                    **where,
                ))
            if page.extras:
                issues.append(ComparisonIssue(
                    type=IssueType.EXTRA,
                    description=f"{len(page.extras)} domains added after confirmation for {page.url}",
                    affected_items=[e.domain for e in page.extras],
                    **where,
                ))
            flagged = [p for p in page.price_changes if p.price_changed]
            if flagged:
                issues.append(ComparisonIssue(
                    type=IssueType.PRICE_CHANGE,
                    description=f"{len(flagged)} price changes for {page.url}",
                    affected_items=[p.domain for p in flagged],
                    **where,
                ))
    return issues


def build_comparison(data: BenchmarkData, version: int, order: Order, threshold: Any) -> ComparisonData:
    """Full deviation report of a live order against benchmark data."""
    live_groups = {str(g.client_id): g for g in order.groups}
    clients = []
    for group in data.client_groups:
        clients.append(analyze_client(group, live_groups.pop(group.client_id, None), threshold))
    # Clients added after the benchmark was captured
    for live_group in live_groups.values():
        clients.append(analyze_client(None, live_group, threshold))

    delivered = [s for g in order.groups for s in g.submissions if is_delivered(s)]
    delivered_links = sum(c.delivered for c in clients)
    actual_revenue = sum(c.actual_revenue for c in clients)

    return ComparisonData(
        benchmark_version=version,
        requested_links=data.total_requested_links,
        delivered_links=delivered_links,
        completion_percentage=completion(delivered_links, data.total_requested_links),
        expected_revenue=data.order_total,
        actual_revenue=actual_revenue,
        revenue_difference=actual_revenue - data.order_total,
        client_analysis=clients,
        issues=collect_issues(clients),
        dr_range=value_range((s.metrics or {}).get("dr") for s in delivered),
        traffic_range=value_range((s.metrics or {}).get("traffic") for s in delivered),
    )


# =============================================================================
# SERVICE
# =============================================================================

class BenchmarkComparator:
    """Computes and stores benchmark comparisons."""

    def __init__(
        self,
        orders: Optional[OrderRepository] = None,
        benchmarks: Optional[BenchmarkRepository] = None,
        threshold: Optional[float] = None,
    ):
        self.orders = orders or OrderRepository()
        self.benchmarks = benchmarks or BenchmarkRepository()
        self.threshold = threshold if threshold is not None else get_settings().PRICE_CHANGE_THRESHOLD

    def compare(self, benchmark_id: Any, compared_by: Any = None) -> BenchmarkComparison:
        """
        Compare the live order against one benchmark version and store the report.

        Raises:
            NotFoundError: if the benchmark or its order does not exist
            ValidationError: if the stored benchmark data is malformed
        """
        benchmark = self.benchmarks.require(to_uuid(benchmark_id, "benchmark_id"))
        compared_by = to_optional_uuid(compared_by, "compared_by")

        order = self.orders.require(benchmark.order_id)
        data = parse_payload(BenchmarkData, benchmark.benchmark_data, "benchmarkData")
        report = build_comparison(data, benchmark.version, order, self.threshold)

        comparison = self.benchmarks.insert_comparison(benchmark, report.to_json(), compared_by)
        logger.info(
            f"Compared order {benchmark.order_id} to benchmark v{benchmark.version}: "
            f"{report.delivered_links}/{report.requested_links} links ({report.completion_percentage}%), "
            f"{len(report.issues)} issues"
        )
        return comparison

    def compare_latest(self, order_id: Any, compared_by: Any = None) -> BenchmarkComparison:
        """
        Raises:
            NotFoundError: if the order has no benchmark
        """
        order_id = to_uuid(order_id, "order_id")
        benchmark = self.benchmarks.latest(order_id)
        if benchmark is None:
            raise NotFoundError("Benchmark for order", order_id)
        return self.compare(benchmark.id, compared_by)

    def latest_comparison(self, order_id: Any) -> Optional[BenchmarkComparison]:
        return self.benchmarks.latest_comparison(to_uuid(order_id, "order_id"))
