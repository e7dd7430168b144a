"""
Benchmark Snapshotter

Freezes what an order asked for at confirmation time. The snapshot is a
nested tree (order -> client groups -> target pages -> requested domains)
stored as a new benchmark version; earlier versions are never mutated.

Groups that already have included submissions contribute those domains,
grouped by target page. Groups without any contribute the original
request: the group's link count split evenly (rounded up) over its
target pages, with no domains yet.
"""

import logging
import math
from typing import Any, Dict, List, Optional

from bulkengine.database.models import (
    CaptureReason,
    InclusionStatus,
    Order,
    OrderBenchmark,
    OrderGroup,
)
from bulkengine.database.repository import BenchmarkRepository, OrderRepository
from bulkengine.database.schemas import (
    BenchmarkClientGroup,
    BenchmarkData,
    BenchmarkTargetPage,
    DomainMetricsSnapshot,
    OriginalConstraints,
    RequestedDomain,
    parse_payload,
)
from bulkengine.errors import ValidationError
from bulkengine.utils.domain import normalize_domain
from bulkengine.utils.ids import to_optional_uuid, to_uuid

logger = logging.getLogger(__name__)

UNASSIGNED_PAGE = "unassigned"

CONFIRMATION_REASONS = (CaptureReason.ORDER_CONFIRMED, CaptureReason.ORDER_SUBMITTED)
CONFIRMATION_NOTE = "Initial benchmark created at order confirmation"


def page_key(url: Optional[str]) -> str:
    """Key under which a submission's target page is grouped."""
    return url or UNASSIGNED_PAGE


def coerce_reason(value: Any) -> CaptureReason:
    if isinstance(value, CaptureReason):
        return value
    try:
        return CaptureReason(value)
    except ValueError as e:
        raise ValidationError(f"Unknown capture reason: {value!r}", {"reason": value}) from e


def _page_ids(group: OrderGroup) -> Dict[str, Optional[str]]:
    return {tp.get("url"): tp.get("pageId") for tp in (group.target_pages or []) if tp.get("url")}


def _snapshot_selected(group: OrderGroup, included: list) -> BenchmarkClientGroup:
    page_ids = _page_ids(group)
    pages: Dict[str, List[RequestedDomain]] = {}
    for submission in included:
        pages.setdefault(page_key(submission.target_page_url), []).append(
            RequestedDomain(
                domain_id=str(submission.domain_id) if submission.domain_id else None,
                domain=normalize_domain(submission.domain),
                wholesale_price=submission.wholesale_price or 0,
                retail_price=submission.retail_price or 0,
                anchor_text=submission.anchor_text,
                special_instructions=submission.special_instructions,
                metrics=parse_payload(DomainMetricsSnapshot, submission.metrics, "submission metrics"),
            )
        )

    return BenchmarkClientGroup(
        client_id=str(group.client_id),
        client_name=group.client_name or "",
        link_count=len(included),
        target_pages=[
            BenchmarkTargetPage(
                url=url,
                page_id=page_ids.get(url),
                requested_links=len(domains),
                requested_domains=domains,
            )
            for url, domains in pages.items()
        ],
    )


def _snapshot_request(group: OrderGroup) -> BenchmarkClientGroup:
    target_pages = group.target_pages or []
    link_count = group.link_count or 0
    per_page = math.ceil(link_count / (len(target_pages) or 1))

    return BenchmarkClientGroup(
        client_id=str(group.client_id),
        client_name=group.client_name or "",
        link_count=link_count,
        target_pages=[
            BenchmarkTargetPage(url=tp.get("url") or "", page_id=tp.get("pageId"), requested_links=per_page)
            for tp in target_pages
        ],
        original_request=True,
    )


def _original_constraints(order: Order) -> OriginalConstraints:
    prefs = order.preferences or {}
    return OriginalConstraints(
        budget_range=[v for v in (order.estimated_budget_min, order.estimated_budget_max) if v is not None],
        dr_range=[v for v in (prefs.get("drMin"), prefs.get("drMax")) if v is not None],
        min_traffic=prefs.get("trafficMin"),
        estimated_links=order.estimated_links_count,
        estimated_price_per_link=order.estimated_price_per_link,
        categories=prefs.get("categories") or [],
        types=prefs.get("types") or [],
        niches=prefs.get("niches") or [],
    )


def build_benchmark_data(order: Order) -> BenchmarkData:
    """Serialize the live order into the benchmark tree."""
    client_groups = []
    for group in order.groups:
        included = [s for s in group.submissions if s.inclusion_status == InclusionStatus.INCLUDED]
        if included:
            client_groups.append(_snapshot_selected(group, included))
        else:
            client_groups.append(_snapshot_request(group))

    unique_domains = {
        domain.domain
        for group in client_groups
        for page in group.target_pages
        for domain in page.requested_domains
    }

    return BenchmarkData(
        order_total=order.total_retail or 0,
        service_fee=order.client_review_fee or 0,
        client_groups=client_groups,
        total_requested_links=sum(g.link_count for g in client_groups),
        total_clients=len(client_groups),
        total_target_pages=sum(len(g.target_pages) for g in client_groups),
        total_unique_domains=len(unique_domains),
        original_constraints=_original_constraints(order),
    )


class BenchmarkSnapshotter:
    """Captures and reads versioned order benchmarks."""

    def __init__(
        self,
        orders: Optional[OrderRepository] = None,
        benchmarks: Optional[BenchmarkRepository] = None,
    ):
        self.orders = orders or OrderRepository()
        self.benchmarks = benchmarks or BenchmarkRepository()

    def capture(
        self,
        order_id: Any,
        captured_by: Any = None,
        reason: Any = CaptureReason.ORDER_CONFIRMED,
        notes: Optional[str] = None,
    ) -> OrderBenchmark:
        """
        Capture a new latest benchmark version for an order.

        The previous latest version is demoted in the same transaction.

        Raises:
            NotFoundError: if the order does not exist
            ValidationError: unknown reason or malformed IDs
        """
        order_id = to_uuid(order_id, "order_id")
        captured_by = to_optional_uuid(captured_by, "captured_by")
        reason = coerce_reason(reason)

        order = self.orders.require(order_id)
        data = build_benchmark_data(order)
        if notes is None and reason in CONFIRMATION_REASONS:
            notes = CONFIRMATION_NOTE

        benchmark = self.benchmarks.insert_latest(
            order_id,
            data.to_json(),
            captured_by,
            reason,
            notes=notes,
        )
        logger.info(
            f"Benchmark v{benchmark.version} for order {order_id}: {data.total_clients} clients, "
            f"{data.total_requested_links} links, {data.total_unique_domains} domains"
        )
        return benchmark

    def latest(self, order_id: Any) -> Optional[OrderBenchmark]:
        return self.benchmarks.latest(to_uuid(order_id, "order_id"))

    def history(self, order_id: Any) -> List[OrderBenchmark]:
        """All versions of an order's benchmark, newest first."""
        return self.benchmarks.history(to_uuid(order_id, "order_id"))
