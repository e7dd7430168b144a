"""
SQLAlchemy Models for the Bulk Analysis Engine

Design Principles:
1. One row per domain-within-a-project (duplicates across projects are explicit)
2. Keep AI output and human review side by side (auditability)
3. Benchmarks are immutable, versioned snapshots
4. Comparisons are derived and can always be recomputed

Column types stay portable (PostgreSQL in production, SQLite in tests).
"""

import enum
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import (
    Column, String, Integer, Boolean, DateTime, Text,
    ForeignKey, Enum, Index, UniqueConstraint, JSON, Uuid, text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()

# JSONB on PostgreSQL, plain JSON elsewhere
JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    """Naive UTC timestamp (columns are timezone-less)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# =============================================================================
# ENUMS
# =============================================================================

class QualificationStatus(enum.Enum):
    """Fitness of a domain for guest-post placement"""
    PENDING = "pending"
    HIGH_QUALITY = "high_quality"
    GOOD_QUALITY = "good_quality"
    MARGINAL_QUALITY = "marginal_quality"
    DISQUALIFIED = "disqualified"


class OverlapStatus(enum.Enum):
    """Whether the domain ranks for the client's keywords"""
    DIRECT = "direct"      # Exact client keywords
    RELATED = "related"    # Broader related topics
    BOTH = "both"
    NONE = "none"


class AuthorityLevel(enum.Enum):
    """Strength of ranking authority for an overlap type"""
    STRONG = "strong"
    MODERATE = "moderate"
    WEAK = "weak"
    NOT_APPLICABLE = "n/a"


class DuplicateResolution(enum.Enum):
    """User-chosen policy for a domain already analyzed in another project"""
    KEEP_BOTH = "keep_both"
    MOVE_TO_NEW = "move_to_new"
    SKIP = "skip"
    UPDATE_ORIGINAL = "update_original"


class CaptureReason(enum.Enum):
    """Why a benchmark version was captured"""
    ORDER_CONFIRMED = "order_confirmed"
    ORDER_SUBMITTED = "order_submitted"
    MANUAL_UPDATE = "manual_update"
    CLIENT_REVISION = "client_revision"


class InclusionStatus(enum.Enum):
    """Whether a site submission is part of the client's selection"""
    INCLUDED = "included"
    EXCLUDED = "excluded"
    PENDING = "pending"


class SubmissionStatus(enum.Enum):
    """Fulfillment progress of a site submission"""
    PENDING = "pending"
    SUBMITTED = "submitted"
    IN_PROGRESS = "in_progress"
    CLIENT_APPROVED = "client_approved"
    CLIENT_REJECTED = "client_rejected"
    COMPLETED = "completed"


def _values(enum_cls):
    return [member.value for member in enum_cls]


# =============================================================================
# BULK ANALYSIS
# =============================================================================

class Project(Base):
    """A client's bulk analysis project (campaign)"""
    __tablename__ = "bulk_analysis_projects"

    id = Column(Uuid, primary_key=True, default=uuid4)
    client_id = Column(Uuid, nullable=False)
    name = Column(String(255), nullable=False)
    description = Column(Text)

    created_at = Column(DateTime, default=utcnow)

    domains = relationship("DomainRecord", back_populates="project", foreign_keys="DomainRecord.project_id")

    __table_args__ = (
        Index("idx_project_client", "client_id"),
    )


class DomainRecord(Base):
    """A candidate domain analyzed for a client within a project"""
    __tablename__ = "bulk_analysis_domains"

    id = Column(Uuid, primary_key=True, default=uuid4)
    client_id = Column(Uuid, nullable=False)
    domain = Column(String(255), nullable=False)  # Canonical, see utils.domain
    project_id = Column(Uuid, ForeignKey("bulk_analysis_projects.id"), nullable=True)
    project_added_at = Column(DateTime)

    # Analysis input
    target_page_ids = Column(JSONType, default=list)
    keyword_count = Column(Integer, default=0)

    # Qualification
    qualification_status = Column(
        Enum(QualificationStatus, values_callable=_values, name="qualificationstatus"),
        default=QualificationStatus.PENDING,
        nullable=False,
    )
    ai_qualified = Column(Boolean, default=False, nullable=False)  # Set once, when AI output is attached
    ai_qualification_reasoning = Column(Text)
    ai_qualified_at = Column(DateTime)

    was_manually_qualified = Column(Boolean, default=False, nullable=False)
    manually_qualified_by = Column(Uuid)
    manually_qualified_at = Column(DateTime)

    was_human_verified = Column(Boolean, default=False, nullable=False)
    human_verified_by = Column(Uuid)
    human_verified_at = Column(DateTime)

    checked_by = Column(Uuid)
    checked_at = Column(DateTime)
    notes = Column(Text)
    selected_target_page_id = Column(Uuid)

    # Evidence
    overlap_status = Column(Enum(OverlapStatus, values_callable=_values, name="overlapstatus"))
    authority_direct = Column(Enum(AuthorityLevel, values_callable=_values, name="authoritylevel"))
    authority_related = Column(Enum(AuthorityLevel, values_callable=_values, name="authoritylevel"))
    evidence = Column(JSONType)
    """
    {
        "directCount": 12,
        "directMedianPosition": 18.5,
        "relatedCount": 40,
        "relatedMedianPosition": 32.0
    }
    """

    # Target matching
    suggested_target_url = Column(String(2000))
    target_match_data = Column(JSONType)  # See schemas.TargetMatchData
    target_matched_at = Column(DateTime)

    # Workflow tracking
    has_workflow = Column(Boolean, default=False, nullable=False)
    workflow_id = Column(Uuid)
    workflow_created_at = Column(DateTime)

    # Duplicate lineage (duplicate_of is informational, never an ownership edge)
    duplicate_of = Column(Uuid)
    duplicate_resolution = Column(Enum(DuplicateResolution, values_callable=_values, name="duplicateresolution"))
    duplicate_resolved_by = Column(Uuid)
    duplicate_resolved_at = Column(DateTime)
    original_project_id = Column(Uuid)
    resolution_metadata = Column(JSONType)

    # Timestamps
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    project = relationship("Project", back_populates="domains", foreign_keys=[project_id])

    __table_args__ = (
        UniqueConstraint("client_id", "domain", "project_id", name="uq_client_domain_project"),
        Index("idx_bulk_domain_client_domain", "client_id", "domain"),
        Index("idx_bulk_domain_status", "client_id", "qualification_status"),
    )


# =============================================================================
# ORDERS (live state, read by the benchmark components)
# =============================================================================

class Order(Base):
    """A link-building order"""
    __tablename__ = "orders"

    id = Column(Uuid, primary_key=True, default=uuid4)
    account_id = Column(Uuid)
    status = Column(String(50), default="draft")

    # Money in cents
    total_retail = Column(Integer, default=0)
    total_wholesale = Column(Integer, default=0)
    client_review_fee = Column(Integer, default=0)

    # Original constraints from order creation
    estimated_links_count = Column(Integer)
    estimated_price_per_link = Column(Integer)
    estimated_budget_min = Column(Integer)
    estimated_budget_max = Column(Integer)
    preferences = Column(JSONType, default=dict)
    """
    {
        "drMin": 30, "drMax": 70, "trafficMin": 1000,
        "categories": [...], "types": [...], "niches": [...]
    }
    """

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    groups = relationship(
        "OrderGroup", back_populates="order", cascade="all, delete-orphan", order_by="OrderGroup.created_at"
    )
    benchmarks = relationship("OrderBenchmark", back_populates="order", cascade="all, delete-orphan")


class OrderGroup(Base):
    """The part of an order that belongs to one client"""
    __tablename__ = "order_groups"

    id = Column(Uuid, primary_key=True, default=uuid4)
    order_id = Column(Uuid, ForeignKey("orders.id"), nullable=False)
    client_id = Column(Uuid, nullable=False)
    client_name = Column(String(255))
    link_count = Column(Integer, default=0)
    target_pages = Column(JSONType, default=list)  # [{"url": ..., "pageId": ...}]

    created_at = Column(DateTime, default=utcnow)

    order = relationship("Order", back_populates="groups")
    submissions = relationship(
        "OrderSiteSubmission", back_populates="group", cascade="all, delete-orphan",
        order_by="OrderSiteSubmission.created_at",
    )

    __table_args__ = (
        Index("idx_order_group_order", "order_id"),
    )


class OrderSiteSubmission(Base):
    """A domain proposed or placed for an order group"""
    __tablename__ = "order_site_submissions"

    id = Column(Uuid, primary_key=True, default=uuid4)
    order_group_id = Column(Uuid, ForeignKey("order_groups.id"), nullable=False)
    domain_id = Column(Uuid, ForeignKey("bulk_analysis_domains.id"), nullable=True)
    domain = Column(String(255), nullable=False)
    target_page_url = Column(String(2000))

    inclusion_status = Column(
        Enum(InclusionStatus, values_callable=_values, name="inclusionstatus"),
        default=InclusionStatus.PENDING,
    )
    exclusion_reason = Column(Text)
    submission_status = Column(
        Enum(SubmissionStatus, values_callable=_values, name="submissionstatus"),
        default=SubmissionStatus.PENDING,
    )

    # Price snapshots in cents
    wholesale_price = Column(Integer, default=0)
    retail_price = Column(Integer, default=0)

    anchor_text = Column(String(500))
    special_instructions = Column(Text)
    metrics = Column(JSONType, default=dict)  # {"dr": 55, "traffic": 12000, "qualityScore": 7}

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    group = relationship("OrderGroup", back_populates="submissions")
    domain_record = relationship("DomainRecord")

    __table_args__ = (
        Index("idx_submission_group", "order_group_id"),
    )


# =============================================================================
# BENCHMARKS
# =============================================================================

class OrderBenchmark(Base):
    """Immutable snapshot of what an order originally requested"""
    __tablename__ = "order_benchmarks"

    id = Column(Uuid, primary_key=True, default=uuid4)
    order_id = Column(Uuid, ForeignKey("orders.id"), nullable=False)
    version = Column(Integer, nullable=False)
    is_latest = Column(Boolean, default=True, nullable=False)

    captured_at = Column(DateTime, default=utcnow)
    captured_by = Column(Uuid)
    capture_reason = Column(Enum(CaptureReason, values_callable=_values, name="capturereason"), nullable=False)
    benchmark_type = Column(String(50), default="initial")

    benchmark_data = Column(JSONType, nullable=False)  # See schemas.BenchmarkData
    notes = Column(Text)

    order = relationship("Order", back_populates="benchmarks")
    comparisons = relationship("BenchmarkComparison", back_populates="benchmark", cascade="all, delete-orphan")

    __table_args__ = (
        UniqueConstraint("order_id", "version", name="uq_benchmark_order_version"),
        # At most one latest version per order, enforced by the store
        Index(
            "uq_benchmark_order_latest",
            "order_id",
            unique=True,
            postgresql_where=text("is_latest"),
            sqlite_where=text("is_latest = 1"),
        ),
    )


class BenchmarkComparison(Base):
    """Derived report: live order vs one benchmark version"""
    __tablename__ = "benchmark_comparisons"

    id = Column(Uuid, primary_key=True, default=uuid4)
    benchmark_id = Column(Uuid, ForeignKey("order_benchmarks.id"), nullable=False)
    order_id = Column(Uuid, ForeignKey("orders.id"), nullable=False)

    compared_at = Column(DateTime, default=utcnow)
    compared_by = Column(Uuid)
    comparison_data = Column(JSONType, nullable=False)  # See schemas.ComparisonData

    benchmark = relationship("OrderBenchmark", back_populates="comparisons")

    __table_args__ = (
        Index("idx_comparison_order_time", "order_id", "compared_at"),
    )
