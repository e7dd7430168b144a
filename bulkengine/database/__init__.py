"""
Bulk Analysis Database Layer

Usage:
    from bulkengine.database import (
        # Session management
        init_db, get_db_context, make_session_factory,

        # Models
        DomainRecord, OrderBenchmark, BenchmarkComparison,

        # Repositories
        DomainRepository, BenchmarkRepository, OrderRepository,
    )

    # Initialize database
    init_db()

    # Read a domain record
    repo = DomainRepository()
    record = repo.require(domain_id)
"""

# Models
from .models import (
    Base,
    # Bulk analysis
    Project,
    DomainRecord,
    # Orders
    Order,
    OrderGroup,
    OrderSiteSubmission,
    # Benchmarks
    OrderBenchmark,
    BenchmarkComparison,
    # Enums
    QualificationStatus,
    OverlapStatus,
    AuthorityLevel,
    DuplicateResolution,
    CaptureReason,
    InclusionStatus,
    SubmissionStatus,
    utcnow,
)

# Session management
from .session import (
    get_database_url,
    create_db_engine,
    get_engine,
    make_session_factory,
    get_session_factory,
    get_db_context,
    transaction,
    init_db,
    check_db_connection,
    get_db_info,
)

# Repositories
from .repository import (
    QUALIFIED_STATUSES,
    DomainFilter,
    PaginatedResult,
    DomainRepository,
    OrderRepository,
    BenchmarkRepository,
)

__all__ = [
    # Models
    "Base",
    "Project",
    "DomainRecord",
    "Order",
    "OrderGroup",
    "OrderSiteSubmission",
    "OrderBenchmark",
    "BenchmarkComparison",
    # Enums
    "QualificationStatus",
    "OverlapStatus",
    "AuthorityLevel",
    "DuplicateResolution",
    "CaptureReason",
    "InclusionStatus",
    "SubmissionStatus",
    "utcnow",
    # Session
    "get_database_url",
    "create_db_engine",
    "get_engine",
    "make_session_factory",
    "get_session_factory",
    "get_db_context",
    "transaction",
    "init_db",
    "check_db_connection",
    "get_db_info",
    # Repositories
    "QUALIFIED_STATUSES",
    "DomainFilter",
    "PaginatedResult",
    "DomainRepository",
    "OrderRepository",
    "BenchmarkRepository",
]
