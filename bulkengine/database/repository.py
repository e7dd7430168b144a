"""
Repository Layer - Transactional Access per Aggregate

Each repository wraps one aggregate (domain records, orders, benchmarks)
and hides all SQLAlchemy details from the services. Repositories are
built from a session factory so callers never touch a global handle:

    repo = DomainRepository(session_factory)
    record = repo.require(domain_id)

Every public method is one unit of work: it commits on success and
rolls back on error.
"""

import logging
import math
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Generator, Iterable, List, Optional
from uuid import UUID, uuid4

from sqlalchemy import select, update, func, case, asc, desc
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker, selectinload

from bulkengine.errors import ConstraintViolation, NotFoundError, ValidationError
from .models import (
    Project, DomainRecord, Order, OrderGroup, OrderSiteSubmission,
    OrderBenchmark, BenchmarkComparison,
    QualificationStatus, CaptureReason, utcnow,
)
from .session import get_db_context, get_session_factory

logger = logging.getLogger(__name__)


QUALIFIED_STATUSES = (
    QualificationStatus.HIGH_QUALITY,
    QualificationStatus.GOOD_QUALITY,
    QualificationStatus.MARGINAL_QUALITY,
)

# Position of each status when sorting by status, ascending
STATUS_SORT_ORDER = {
    QualificationStatus.HIGH_QUALITY: 1,
    QualificationStatus.GOOD_QUALITY: 2,
    QualificationStatus.MARGINAL_QUALITY: 3,
    QualificationStatus.DISQUALIFIED: 4,
    QualificationStatus.PENDING: 5,
}


# =============================================================================
# RESULT TYPES
# =============================================================================

@dataclass
class DomainFilter:
    """Listing filters for a client's domains"""
    qualification_status: Optional[str] = None  # A status value, or "qualified_any"
    has_workflow: Optional[bool] = None
    search: Optional[str] = None
    project_id: Optional[UUID] = None


@dataclass
class PaginatedResult:
    """One page of a listing"""
    data: List[Any] = field(default_factory=list)
    total: int = 0
    page: int = 1
    page_size: int = 50

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.page_size) if self.page_size else 0


# =============================================================================
# BASE
# =============================================================================

class BaseRepository:
    """Shared session handling."""

    def __init__(
        self,
        session_factory: Optional[sessionmaker] = None,
        id_factory: Callable[[], UUID] = uuid4,
    ):
        self.session_factory = session_factory or get_session_factory()
        self.id_factory = id_factory

    @contextmanager
    def unit_of_work(self) -> Generator[Session, None, None]:
        """One transaction: commit on success, rollback on error."""
        with get_db_context(self.session_factory) as db:
            yield db


# =============================================================================
# DOMAIN RECORDS
# =============================================================================

class DomainRepository(BaseRepository):
    """Bulk analysis domain records and their projects."""

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get(self, domain_id: UUID) -> Optional[DomainRecord]:
        with self.unit_of_work() as db:
            return db.get(DomainRecord, domain_id)

    def require(self, domain_id: UUID) -> DomainRecord:
        """Get a record or raise NotFoundError."""
        record = self.get(domain_id)
        if record is None:
            raise NotFoundError("Domain", domain_id)
        return record

    def find_for_client(self, client_id: UUID, domains: Iterable[str]) -> List[DomainRecord]:
        """All records of a client for the given canonical domains, in any project."""
        domains = list(domains)
        if not domains:
            return []
        with self.unit_of_work() as db:
            stmt = (
                select(DomainRecord)
                .where(DomainRecord.client_id == client_id, DomainRecord.domain.in_(domains))
                .order_by(DomainRecord.created_at)
            )
            return list(db.scalars(stmt))

    def find_in_project(self, client_id: UUID, domain: str, project_id: UUID) -> Optional[DomainRecord]:
        """The client's record for a canonical domain in one project, if any."""
        with self.unit_of_work() as db:
            stmt = select(DomainRecord).where(
                DomainRecord.client_id == client_id,
                DomainRecord.domain == domain,
                DomainRecord.project_id == project_id,
            )
            return db.scalars(stmt).first()

    def list_for_client(self, client_id: UUID, project_id: Optional[UUID] = None) -> List[DomainRecord]:
        """A client's records, newest first, optionally limited to one project."""
        with self.unit_of_work() as db:
            stmt = select(DomainRecord).where(DomainRecord.client_id == client_id)
            if project_id is not None:
                stmt = stmt.where(DomainRecord.project_id == project_id)
            return list(db.scalars(stmt.order_by(desc(DomainRecord.created_at))))

    def list_qualified(self, client_id: UUID) -> List[DomainRecord]:
        """Records in any qualified (non-pending, non-disqualified) state."""
        with self.unit_of_work() as db:
            stmt = (
                select(DomainRecord)
                .where(
                    DomainRecord.client_id == client_id,
                    DomainRecord.qualification_status.in_(QUALIFIED_STATUSES),
                )
                .order_by(desc(DomainRecord.created_at))
            )
            return list(db.scalars(stmt))

    def list_pending(self, client_id: UUID) -> List[DomainRecord]:
        with self.unit_of_work() as db:
            stmt = select(DomainRecord).where(
                DomainRecord.client_id == client_id,
                DomainRecord.qualification_status == QualificationStatus.PENDING,
            )
            return list(db.scalars(stmt))

    def paginate(
        self,
        client_id: UUID,
        page: int = 1,
        page_size: int = 50,
        filters: Optional[DomainFilter] = None,
        sort_by: str = "created_at",
        sort_order: str = "desc",
    ) -> PaginatedResult:
        """
        Filtered, sorted page of a client's records.

        sort_by: created_at, domain, or qualification_status. Status sorting
        follows STATUS_SORT_ORDER (high quality first when ascending).
        """
        if page < 1 or page_size < 1:
            raise ValidationError("page and page_size must be positive")
        if sort_by not in ("created_at", "domain", "qualification_status"):
            raise ValidationError(f"Unsupported sort field: {sort_by}")
        if sort_order not in ("asc", "desc"):
            raise ValidationError(f"Unsupported sort order: {sort_order}")

        conditions = [DomainRecord.client_id == client_id]
        filters = filters or DomainFilter()

        if filters.project_id is not None:
            conditions.append(DomainRecord.project_id == filters.project_id)
        if filters.qualification_status:
            if filters.qualification_status == "qualified_any":
                conditions.append(DomainRecord.qualification_status.in_(QUALIFIED_STATUSES))
            else:
                try:
                    status = QualificationStatus(filters.qualification_status)
                except ValueError as e:
                    raise ValidationError(f"Unknown qualification status: {filters.qualification_status}") from e
                conditions.append(DomainRecord.qualification_status == status)
        if filters.has_workflow is not None:
            conditions.append(DomainRecord.has_workflow == filters.has_workflow)
        if filters.search:
            conditions.append(DomainRecord.domain.like(f"%{filters.search.strip().lower()}%"))

        if sort_by == "qualification_status":
            sort_column = case(
                {status: position for status, position in STATUS_SORT_ORDER.items()},
                value=DomainRecord.qualification_status,
                else_=6,
            )
        else:
            sort_column = getattr(DomainRecord, sort_by)
        order_clause = asc(sort_column) if sort_order == "asc" else desc(sort_column)

        with self.unit_of_work() as db:
            total = db.scalar(select(func.count()).select_from(DomainRecord).where(*conditions)) or 0
            stmt = (
                select(DomainRecord)
                .where(*conditions)
                .order_by(order_clause, DomainRecord.id)
                .limit(page_size)
                .offset((page - 1) * page_size)
            )
            data = list(db.scalars(stmt))

        return PaginatedResult(data=data, total=total, page=page, page_size=page_size)

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def insert(self, **values) -> DomainRecord:
        """
        Insert one record in its own transaction.

        Raises:
            ConstraintViolation: on a uniqueness violation
        """
        values.setdefault("id", self.id_factory())
        try:
            with self.unit_of_work() as db:
                record = DomainRecord(**values)
                db.add(record)
                db.flush()
                return record
        except IntegrityError as e:
            raise ConstraintViolation(
                f"Duplicate domain record for {values.get('domain')}",
                {
                    "client_id": str(values.get("client_id")),
                    "domain": values.get("domain"),
                    "project_id": str(values.get("project_id")),
                },
            ) from e

    def modify(self, domain_id: UUID, mutator: Callable[[DomainRecord], None]) -> DomainRecord:
        """
        Read-modify-write one record under a row lock.

        The mutator sees the current row and changes it in place; the
        whole change commits atomically.

        Raises:
            NotFoundError: if the record does not exist
            ConstraintViolation: if the change violates a uniqueness rule
        """
        try:
            with self.unit_of_work() as db:
                record = db.scalars(
                    select(DomainRecord).where(DomainRecord.id == domain_id).with_for_update()
                ).first()
                if record is None:
                    raise NotFoundError("Domain", domain_id)
                mutator(record)
                record.updated_at = utcnow()
                db.flush()
                return record
        except IntegrityError as e:
            raise ConstraintViolation(
                f"Update of domain record {domain_id} violates a constraint",
                {"domain_id": str(domain_id)},
            ) from e

    def update(self, domain_id: UUID, **values) -> DomainRecord:
        """Set fields on one record atomically."""
        def apply(record: DomainRecord) -> None:
            for key, value in values.items():
                setattr(record, key, value)
        return self.modify(domain_id, apply)

    def delete(self, domain_id: UUID) -> bool:
        """Hard-delete one record. Returns False if it did not exist."""
        with self.unit_of_work() as db:
            record = db.get(DomainRecord, domain_id)
            if record is None:
                return False
            db.delete(record)
            return True

    # -------------------------------------------------------------------------
    # Projects
    # -------------------------------------------------------------------------

    def create_project(self, client_id: UUID, name: str, description: Optional[str] = None) -> Project:
        with self.unit_of_work() as db:
            project = Project(id=self.id_factory(), client_id=client_id, name=name, description=description)
            db.add(project)
            db.flush()
            return project

    def get_projects(self, project_ids: Iterable[UUID]) -> Dict[UUID, Project]:
        ids = {pid for pid in project_ids if pid is not None}
        if not ids:
            return {}
        with self.unit_of_work() as db:
            return {p.id: p for p in db.scalars(select(Project).where(Project.id.in_(ids)))}


# =============================================================================
# ORDERS (read side)
# =============================================================================

class OrderRepository(BaseRepository):
    """Live order state, loaded with groups and submissions."""

    def get(self, order_id: UUID) -> Optional[Order]:
        with self.unit_of_work() as db:
            stmt = (
                select(Order)
                .where(Order.id == order_id)
                .options(
                    selectinload(Order.groups)
                    .selectinload(OrderGroup.submissions)
                    .selectinload(OrderSiteSubmission.domain_record)
                )
            )
            return db.scalars(stmt).first()

    def require(self, order_id: UUID) -> Order:
        order = self.get(order_id)
        if order is None:
            raise NotFoundError("Order", order_id)
        return order


# =============================================================================
# BENCHMARKS
# =============================================================================

class BenchmarkRepository(BaseRepository):
    """Versioned order benchmarks and their comparisons."""

    def insert_latest(
        self,
        order_id: UUID,
        benchmark_data: Dict[str, Any],
        captured_by: Optional[UUID],
        reason: CaptureReason,
        notes: Optional[str] = None,
        benchmark_type: str = "initial",
    ) -> OrderBenchmark:
        """
        Demote the current latest version and insert a new latest one.

        Both steps run in one transaction, serialized per order by a lock
        on the order row, so readers never see zero or two latest rows.

        Raises:
            NotFoundError: if the order does not exist
        """
        with self.unit_of_work() as db:
            order = db.scalars(select(Order).where(Order.id == order_id).with_for_update()).first()
            if order is None:
                raise NotFoundError("Order", order_id)

            db.execute(
                update(OrderBenchmark)
                .where(OrderBenchmark.order_id == order_id, OrderBenchmark.is_latest.is_(True))
                .values(is_latest=False)
            )
            current = db.scalar(
                select(func.max(OrderBenchmark.version)).where(OrderBenchmark.order_id == order_id)
            )

            benchmark = OrderBenchmark(
                id=self.id_factory(),
                order_id=order_id,
                version=(current or 0) + 1,
                is_latest=True,
                captured_at=utcnow(),
                captured_by=captured_by,
                capture_reason=reason,
                benchmark_type=benchmark_type,
                benchmark_data=benchmark_data,
                notes=notes,
            )
            db.add(benchmark)
            db.flush()
            logger.info(f"Captured benchmark v{benchmark.version} for order {order_id} ({reason.value})")
            return benchmark

    def get(self, benchmark_id: UUID) -> Optional[OrderBenchmark]:
        with self.unit_of_work() as db:
            return db.get(OrderBenchmark, benchmark_id)

    def require(self, benchmark_id: UUID) -> OrderBenchmark:
        benchmark = self.get(benchmark_id)
        if benchmark is None:
            raise NotFoundError("Benchmark", benchmark_id)
        return benchmark

    def latest(self, order_id: UUID) -> Optional[OrderBenchmark]:
        with self.unit_of_work() as db:
            stmt = select(OrderBenchmark).where(
                OrderBenchmark.order_id == order_id,
                OrderBenchmark.is_latest.is_(True),
            )
            return db.scalars(stmt).first()

    def history(self, order_id: UUID) -> List[OrderBenchmark]:
        """All versions, newest first."""
        with self.unit_of_work() as db:
            stmt = (
                select(OrderBenchmark)
                .where(OrderBenchmark.order_id == order_id)
                .order_by(desc(OrderBenchmark.version))
            )
            return list(db.scalars(stmt))

    def insert_comparison(
        self,
        benchmark: OrderBenchmark,
        comparison_data: Dict[str, Any],
        compared_by: Optional[UUID] = None,
    ) -> BenchmarkComparison:
        with self.unit_of_work() as db:
            comparison = BenchmarkComparison(
                id=self.id_factory(),
                benchmark_id=benchmark.id,
                order_id=benchmark.order_id,
                compared_at=utcnow(),
                compared_by=compared_by,
                comparison_data=comparison_data,
            )
            db.add(comparison)
            db.flush()
            return comparison

    def latest_comparison(self, order_id: UUID) -> Optional[BenchmarkComparison]:
        with self.unit_of_work() as db:
            stmt = (
                select(BenchmarkComparison)
                .where(BenchmarkComparison.order_id == order_id)
                .order_by(desc(BenchmarkComparison.compared_at))
                .limit(1)
            )
            return db.scalars(stmt).first()
