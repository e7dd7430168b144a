"""
Pytest Configuration and Shared Fixtures

Every test gets a fresh in-memory SQLite database and repositories bound
to it, plus small factories for domain records and orders.
"""

import pytest
from datetime import datetime, timedelta
from typing import Any, Dict, List
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.pool import StaticPool

from bulkengine.database import (
    Base,
    BenchmarkRepository,
    DomainRepository,
    InclusionStatus,
    Order,
    OrderGroup,
    OrderRepository,
    OrderSiteSubmission,
    QualificationStatus,
    SubmissionStatus,
    create_db_engine,
    get_db_context,
    make_session_factory,
)


# ============================================================================
# Database
# ============================================================================

@pytest.fixture
def engine():
    """In-memory SQLite shared by all connections of one test."""
    engine = create_db_engine("sqlite://", poolclass=StaticPool)
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def domain_repo(session_factory) -> DomainRepository:
    return DomainRepository(session_factory)


@pytest.fixture
def order_repo(session_factory) -> OrderRepository:
    return OrderRepository(session_factory)


@pytest.fixture
def benchmark_repo(session_factory) -> BenchmarkRepository:
    return BenchmarkRepository(session_factory)


# ============================================================================
# Domain Records
# ============================================================================

@pytest.fixture
def client_id():
    return uuid4()


@pytest.fixture
def project(domain_repo, client_id):
    return domain_repo.create_project(client_id, "Spring Campaign")


@pytest.fixture
def other_project(domain_repo, client_id):
    return domain_repo.create_project(client_id, "Winter Campaign")


@pytest.fixture
def make_domain(domain_repo, client_id, project):
    """Insert a domain record; defaults to the `project` fixture."""

    def _make(domain: str = "example.com", project_id=None, **values):
        values.setdefault("qualification_status", QualificationStatus.PENDING)
        values.setdefault("client_id", client_id)
        return domain_repo.insert(
            domain=domain,
            project_id=project_id or project.id,
            **values,
        )

    return _make


# ============================================================================
# Orders
# ============================================================================

def submission(
    domain: str,
    target_page_url: str = "https://client.com/page",
    retail_price: int = 10000,
    wholesale_price: int = 7000,
    inclusion_status: InclusionStatus = InclusionStatus.INCLUDED,
    submission_status: SubmissionStatus = SubmissionStatus.PENDING,
    **values,
) -> Dict[str, Any]:
    """Keyword arguments for one OrderSiteSubmission."""
    return {
        "domain": domain,
        "target_page_url": target_page_url,
        "retail_price": retail_price,
        "wholesale_price": wholesale_price,
        "inclusion_status": inclusion_status,
        "submission_status": submission_status,
        **values,
    }


@pytest.fixture
def make_order(session_factory):
    """
    Persist an order.

    groups: [{"client_id", "client_name", "link_count", "target_pages",
              "submissions": [submission(...), ...]}]
    """

    def _make(groups: List[Dict[str, Any]], total_retail: int = 0, **values):
        base = datetime(2024, 1, 15, 10, 0, 0)
        order = Order(id=uuid4(), total_retail=total_retail, **values)
        for i, group_spec in enumerate(groups):
            group = OrderGroup(
                id=uuid4(),
                client_id=group_spec.get("client_id") or uuid4(),
                client_name=group_spec.get("client_name", ""),
                link_count=group_spec.get("link_count", 0),
                target_pages=group_spec.get("target_pages", []),
                created_at=base + timedelta(minutes=i),
            )
            for j, sub in enumerate(group_spec.get("submissions", [])):
                group.submissions.append(
                    OrderSiteSubmission(id=uuid4(), created_at=base + timedelta(seconds=j), **sub)
                )
            order.groups.append(group)

        with get_db_context(session_factory) as db:
            db.add(order)
        return order.id

    return _make


@pytest.fixture
def update_submission(session_factory):
    """Change the live submission for `domain` in an order."""

    def _update(order_id, domain: str, **values):
        with get_db_context(session_factory) as db:
            stmt = (
                select(OrderSiteSubmission)
                .join(OrderGroup)
                .where(OrderGroup.order_id == order_id, OrderSiteSubmission.domain == domain)
            )
            for sub in db.scalars(stmt):
                for key, value in values.items():
                    setattr(sub, key, value)

    return _update


@pytest.fixture
def add_submission(session_factory):
    """Add a live submission to the group of `client_id` in an order."""

    def _add(order_id, client_id, **values):
        with get_db_context(session_factory) as db:
            group = db.scalars(
                select(OrderGroup).where(OrderGroup.order_id == order_id, OrderGroup.client_id == client_id)
            ).one()
            db.add(OrderSiteSubmission(id=uuid4(), order_group_id=group.id, created_at=datetime(2024, 2, 1), **values))

    return _add
