"""
Duplicate Resolution Service

Handles the ingestion of candidate domains for a client project:
1. Normalize candidates to canonical domains
2. Detect domains the client already analyzed in other projects
3. Apply the caller's explicit resolution for each duplicate
4. Insert the genuinely new domains

Cross-project duplicates are never merged silently: every duplicate needs a
resolution, and every resolution leaves an audit stamp on the records it
touches.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError

from bulkengine.database.models import (
    DomainRecord,
    DuplicateResolution,
    Project,
    QualificationStatus,
    utcnow,
)
from bulkengine.database.repository import DomainRepository
from bulkengine.database.schemas import DuplicateResolutionChoice, parse_payload
from bulkengine.errors import (
    BulkEngineError,
    ConstraintViolation,
    PartialBatchFailure,
    ValidationError,
)
from bulkengine.utils.config import get_settings
from bulkengine.utils.domain import normalize_domain, normalize_domains, parse_keywords
from bulkengine.utils.ids import to_optional_uuid, to_uuid

logger = logging.getLogger(__name__)


# =============================================================================
# INPUT / OUTPUT TYPES
# =============================================================================

@dataclass
class BulkAnalysisInput:
    """Candidate domains submitted for analysis in one project"""
    client_id: UUID
    project_id: UUID
    domains: List[str]
    user_id: Optional[UUID] = None
    target_page_ids: List[str] = field(default_factory=list)
    keywords: List[str] = field(default_factory=list)
    manual_keywords: Optional[str] = None  # Comma-separated, overrides keywords

    def __post_init__(self):
        self.client_id = to_uuid(self.client_id, "client_id")
        self.project_id = to_uuid(self.project_id, "project_id")
        self.user_id = to_optional_uuid(self.user_id, "user_id")
        self.target_page_ids = [str(pid) for pid in (self.target_page_ids or [])]

    @property
    def keyword_list(self) -> List[str]:
        if self.manual_keywords:
            return parse_keywords(self.manual_keywords)
        return list(dict.fromkeys(k.strip() for k in self.keywords if k and k.strip()))

    @property
    def keyword_count(self) -> int:
        return len(self.keyword_list)


@dataclass
class DuplicateInfo:
    """A candidate that already exists for the client in another project"""
    domain: str
    existing_domain_id: UUID
    existing_project_id: Optional[UUID]
    existing_project_name: Optional[str]
    qualification_status: str
    has_workflow: bool = False
    workflow_id: Optional[UUID] = None
    checked_at: Optional[datetime] = None
    checked_by: Optional[UUID] = None
    duplicate_type: str = "exact_match"  # exact_match | different_target
    existing_targets: List[str] = field(default_factory=list)
    new_targets: List[str] = field(default_factory=list)
    analysis_age_days: Optional[int] = None
    other_project_count: int = 0  # Further projects holding the same domain
    smart_default: DuplicateResolution = DuplicateResolution.SKIP
    reasoning: str = ""

    def to_dict(self) -> dict:
        return {
            "domain": self.domain,
            "existingDomainId": str(self.existing_domain_id),
            "existingProjectId": str(self.existing_project_id) if self.existing_project_id else None,
            "existingProjectName": self.existing_project_name,
            "qualificationStatus": self.qualification_status,
            "hasWorkflow": self.has_workflow,
            "workflowId": str(self.workflow_id) if self.workflow_id else None,
            "checkedAt": self.checked_at.isoformat() if self.checked_at else None,
            "checkedBy": str(self.checked_by) if self.checked_by else None,
            "duplicateType": self.duplicate_type,
            "existingTargets": self.existing_targets,
            "newTargets": self.new_targets,
            "analysisAge": self.analysis_age_days,
            "otherProjectCount": self.other_project_count,
            "smartDefault": self.smart_default.value,
            "reasoning": self.reasoning,
        }


@dataclass
class DuplicateCheckResult:
    """Exact partition of the normalized candidates"""
    duplicates: List[DuplicateInfo] = field(default_factory=list)
    new_domains: List[str] = field(default_factory=list)
    already_in_project: List[str] = field(default_factory=list)

    @property
    def has_duplicates(self) -> bool:
        return bool(self.duplicates)

    @property
    def duplicate_domains(self) -> List[str]:
        return [d.domain for d in self.duplicates]

    def to_dict(self) -> dict:
        return {
            "duplicates": [d.to_dict() for d in self.duplicates],
            "newDomains": self.new_domains,
            "alreadyInProject": self.already_in_project,
        }


@dataclass
class ResolutionOutcome:
    """Result of resolve_duplicates_and_create"""
    records: List[DomainRecord] = field(default_factory=list)   # Created or updated, ready for analysis
    skipped: List[str] = field(default_factory=list)            # Audit stamp only
    already_in_project: List[str] = field(default_factory=list)  # Refreshed in place, also in records
    actions: Dict[str, str] = field(default_factory=dict)       # domain -> action taken
    failures: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def failure_count(self) -> int:
        return len(self.failures)

    def raise_for_failures(self) -> None:
        """Raise PartialBatchFailure if any domain failed."""
        if self.failures:
            raise PartialBatchFailure(
                "resolve_duplicates_and_create",
                self.failures,
                succeeded=len(self.records) + len(self.skipped),
            )

    def to_dict(self) -> dict:
        return {
            "domains": [r.domain for r in self.records],
            "domainIds": [str(r.id) for r in self.records],
            "skipped": self.skipped,
            "alreadyInProject": self.already_in_project,
            "actions": self.actions,
            "failed": self.failure_count,
            "failures": self.failures,
        }


# =============================================================================
# SERVICE
# =============================================================================

class DuplicateResolver:
    """Detects and resolves cross-project duplicate domains."""

    def __init__(self, domains: Optional[DomainRepository] = None, stale_days: Optional[int] = None):
        self.domains = domains or DomainRepository()
        self.stale_days = stale_days if stale_days is not None else get_settings().DUPLICATE_STALE_DAYS

    # -------------------------------------------------------------------------
    # Detection
    # -------------------------------------------------------------------------

    def check_duplicates(
        self,
        client_id: Any,
        candidate_domains: Iterable[str],
        current_project_id: Any,
        target_page_ids: Optional[Iterable[Any]] = None,
    ) -> DuplicateCheckResult:
        """
        Partition candidates into duplicates, new domains and domains
        already in the current project.

        Every normalized candidate lands in exactly one bucket. A domain
        present in the current project is never a conflict, even if other
        projects hold it too.

        Raises:
            ValidationError: no usable candidate domains
        """
        client_id = to_uuid(client_id, "client_id")
        current_project_id = to_uuid(current_project_id, "project_id")
        candidates = normalize_domains(candidate_domains)
        if not candidates:
            raise ValidationError("No valid domains provided", {"client_id": str(client_id)})

        new_targets = [str(t) for t in (target_page_ids or [])]

        existing = self.domains.find_for_client(client_id, candidates)
        by_domain: Dict[str, List[DomainRecord]] = {}
        for record in existing:
            by_domain.setdefault(record.domain, []).append(record)

        projects = self.domains.get_projects(r.project_id for r in existing)
        now = utcnow()
        result = DuplicateCheckResult()

        for domain in candidates:
            records = by_domain.get(domain, [])
            if not records:
                result.new_domains.append(domain)
            elif any(r.project_id == current_project_id for r in records):
                result.already_in_project.append(domain)
            else:
                result.duplicates.append(self._describe(domain, records, projects, new_targets, now))

        logger.info(
            f"Duplicate check for client {client_id}: {len(candidates)} candidates, "
            f"{len(result.new_domains)} new, {len(result.duplicates)} duplicates, "
            f"{len(result.already_in_project)} already in project"
        )
        return result

    def _describe(
        self,
        domain: str,
        records: List[DomainRecord],
        projects: Dict[UUID, Project],
        new_targets: List[str],
        now: datetime,
    ) -> DuplicateInfo:
        # The most recently reviewed (else touched) record represents the domain
        primary = max(records, key=lambda r: r.checked_at or r.updated_at or r.created_at or now)
        project = projects.get(primary.project_id)

        existing_targets = [str(t) for t in (primary.target_page_ids or [])]
        duplicate_type = "exact_match" if set(existing_targets) == set(new_targets) else "different_target"

        reference = primary.checked_at or primary.created_at
        age = (now - reference).days if reference else None
        smart_default, reasoning = self._smart_default(primary, age)

        return DuplicateInfo(
            domain=domain,
            existing_domain_id=primary.id,
            existing_project_id=primary.project_id,
            existing_project_name=project.name if project else None,
            qualification_status=primary.qualification_status.value,
            has_workflow=bool(primary.has_workflow),
            workflow_id=primary.workflow_id,
            checked_at=primary.checked_at,
            checked_by=primary.checked_by,
            duplicate_type=duplicate_type,
            existing_targets=existing_targets,
            new_targets=new_targets,
            analysis_age_days=age,
            other_project_count=len(records) - 1,
            smart_default=smart_default,
            reasoning=reasoning,
        )

    def _smart_default(self, record: DomainRecord, age: Optional[int]) -> Tuple[DuplicateResolution, str]:
        """Suggested resolution shown to the user before they choose."""
        if record.has_workflow:
            return DuplicateResolution.SKIP, "Existing analysis already has a workflow"
        if record.qualification_status != QualificationStatus.PENDING and age is not None and age < self.stale_days:
            return DuplicateResolution.SKIP, f"Reviewed {age} days ago"
        if record.qualification_status == QualificationStatus.PENDING:
            return DuplicateResolution.MOVE_TO_NEW, "Existing analysis was never reviewed"
        return DuplicateResolution.MOVE_TO_NEW, f"Existing review is older than {self.stale_days} days"

    # -------------------------------------------------------------------------
    # Resolution
    # -------------------------------------------------------------------------

    def resolve_duplicates_and_create(
        self,
        request: BulkAnalysisInput,
        resolutions: Iterable[Any] = (),
    ) -> ResolutionOutcome:
        """
        Apply resolutions and insert new domains.

        Candidates with a resolution get exactly one of keep_both,
        move_to_new, update_original or skip. Candidates without one are
        inserted as new, unless the project already holds them; those get
        their target-page and keyword linkage refreshed. Each domain is its own transaction: a failure is
        logged, reported in `failures`, and left out of `records`.

        Raises:
            ValidationError: empty candidates, unknown resolution type, or a
                resolution for a domain that is not a candidate (before any write)
        """
        candidates = normalize_domains(request.domains)
        if not candidates:
            raise ValidationError("No valid domains provided", {"client_id": str(request.client_id)})
        choices = self._parse_resolutions(resolutions, candidates)

        outcome = ResolutionOutcome()
        for domain in candidates:
            choice = choices.get(domain)
            operation = choice.resolution.value if choice else "create"
            try:
                if choice is None:
                    current = self.domains.find_in_project(request.client_id, domain, request.project_id)
                    if current is not None:
                        operation = "refresh"
                        record, action = self._refresh(request, current), "refreshed"
                        outcome.already_in_project.append(domain)
                    else:
                        record, action = self._create(request, domain), "created"
                else:
                    record, action = self._apply(request, domain, choice)

                outcome.actions[domain] = action
                if record is None:
                    outcome.skipped.append(domain)
                else:
                    outcome.records.append(record)
            except (BulkEngineError, SQLAlchemyError) as e:
                logger.error(
                    f"Domain resolution failed: client={request.client_id} domain={domain} "
                    f"operation={operation} project={request.project_id}: {e}"
                )
                outcome.failures.append({
                    "domain": domain,
                    "operation": operation,
                    "error": type(e).__name__,
                    "message": str(e),
                })

        logger.info(
            f"Resolved {len(candidates)} domains for client {request.client_id} into project "
            f"{request.project_id}: {len(outcome.records)} ready, {len(outcome.skipped)} skipped, "
            f"{outcome.failure_count} failed"
        )
        return outcome

    def _parse_resolutions(self, resolutions: Iterable[Any], candidates: List[str]) -> Dict[str, DuplicateResolutionChoice]:
        candidate_set = set(candidates)
        choices: Dict[str, DuplicateResolutionChoice] = {}
        for raw in resolutions or ():
            choice = parse_payload(DuplicateResolutionChoice, raw, "duplicate resolution")
            domain = normalize_domain(choice.domain)
            if domain not in candidate_set:
                raise ValidationError(f"Resolution for unknown domain: {choice.domain}", {"domain": choice.domain})
            if domain in choices:
                raise ValidationError(f"Multiple resolutions for {domain}", {"domain": domain})
            to_uuid(choice.existing_domain_id, "existing_domain_id")
            choices[domain] = choice
        return choices

    def _apply(
        self,
        request: BulkAnalysisInput,
        domain: str,
        choice: DuplicateResolutionChoice,
    ) -> Tuple[Optional[DomainRecord], str]:
        existing = self.domains.require(to_uuid(choice.existing_domain_id, "existing_domain_id"))
        if existing.client_id != request.client_id or existing.domain != domain:
            raise ValidationError(
                f"Existing record {existing.id} does not belong to {domain} for this client",
                {"domain": domain},
            )

        if choice.resolution == DuplicateResolution.KEEP_BOTH:
            return self._keep_both(request, domain, existing, choice)
        if choice.resolution == DuplicateResolution.MOVE_TO_NEW:
            return self._move_to_new(request, existing, choice), "move_to_new"
        if choice.resolution == DuplicateResolution.UPDATE_ORIGINAL:
            return self._update_original(request, existing, choice), "update_original"
        self._skip(request, existing, choice)
        return None, "skip"

    def _new_values(self, request: BulkAnalysisInput, domain: str) -> Dict[str, Any]:
        return {
            "client_id": request.client_id,
            "domain": domain,
            "project_id": request.project_id,
            "project_added_at": utcnow(),
            "target_page_ids": list(request.target_page_ids),
            "keyword_count": request.keyword_count,
            "qualification_status": QualificationStatus.PENDING,
        }

    def _audit(self, request: BulkAnalysisInput, existing: DomainRecord, choice: DuplicateResolutionChoice, **extra) -> dict:
        return {
            "resolution": choice.resolution.value,
            "resolvedBy": str(request.user_id) if request.user_id else None,
            "resolvedAt": utcnow().isoformat(),
            "existingDomainId": str(existing.id),
            "existingProjectId": str(existing.project_id) if existing.project_id else None,
            "existingProjectName": choice.existing_project_name,
            "targetProjectId": str(request.project_id),
            **extra,
        }

    def _stamp(self, record: DomainRecord, request: BulkAnalysisInput, resolution: DuplicateResolution, metadata: dict) -> None:
        record.duplicate_resolution = resolution
        record.duplicate_resolved_by = request.user_id
        record.duplicate_resolved_at = utcnow()
        record.resolution_metadata = metadata

    def _create(self, request: BulkAnalysisInput, domain: str) -> DomainRecord:
        return self.domains.insert(**self._new_values(request, domain))

    def _refresh(self, request: BulkAnalysisInput, current: DomainRecord) -> DomainRecord:
        """Re-link a domain the project already holds; review state is kept."""

        def apply(record: DomainRecord) -> None:
            record.target_page_ids = list(request.target_page_ids)
            record.keyword_count = request.keyword_count

        return self.domains.modify(current.id, apply)

    def _keep_both(
        self,
        request: BulkAnalysisInput,
        domain: str,
        existing: DomainRecord,
        choice: DuplicateResolutionChoice,
    ) -> Tuple[DomainRecord, str]:
        """
        Insert a second record that points back at the existing one.

        If the store refuses the insert, the row blocking it (the same
        domain already in the target project) takes the new linkage and the
        back-pointer instead. Only a store keyed on (client, domain) alone
        leaves no such row; then the existing row is re-linked to the
        target project. Either way the domain ends up available for
        analysis in the new project.
        """
        try:
            record = self.domains.insert(
                **self._new_values(request, domain),
                duplicate_of=existing.id,
                duplicate_resolution=DuplicateResolution.KEEP_BOTH,
                duplicate_resolved_by=request.user_id,
                duplicate_resolved_at=utcnow(),
                original_project_id=existing.project_id,
                resolution_metadata=self._audit(request, existing, choice),
            )
            return record, "keep_both"
        except ConstraintViolation as e:
            blocking = self.domains.find_in_project(request.client_id, domain, request.project_id)
            target_id = blocking.id if blocking is not None else existing.id
            logger.warning(
                f"keep_both insert refused for client={request.client_id} domain={domain}, "
                f"updating record {target_id} instead: {e}"
            )

        if blocking is not None:
            metadata = self._audit(request, existing, choice, fallback="update_blocking")

            def apply(record: DomainRecord) -> None:
                if record.id != existing.id:
                    record.duplicate_of = existing.id
                record.target_page_ids = list(request.target_page_ids)
                record.keyword_count = request.keyword_count
                self._stamp(record, request, DuplicateResolution.KEEP_BOTH, metadata)
        else:
            metadata = self._audit(request, existing, choice, fallback="update_existing")

            def apply(record: DomainRecord) -> None:
                if record.project_id != request.project_id:
                    record.original_project_id = record.project_id
                record.project_id = request.project_id
                record.project_added_at = utcnow()
                record.target_page_ids = list(request.target_page_ids)
                record.keyword_count = request.keyword_count
                self._stamp(record, request, DuplicateResolution.KEEP_BOTH, metadata)

        return self.domains.modify(target_id, apply), "keep_both_fallback"

    def _move_to_new(self, request: BulkAnalysisInput, existing: DomainRecord, choice: DuplicateResolutionChoice) -> DomainRecord:
        """Re-home the existing record; one record, original project remembered."""
        metadata = self._audit(request, existing, choice)

        def apply(record: DomainRecord) -> None:
            record.original_project_id = record.project_id
            record.project_id = request.project_id
            record.project_added_at = utcnow()
            record.target_page_ids = list(request.target_page_ids)
            record.keyword_count = request.keyword_count
            self._stamp(record, request, DuplicateResolution.MOVE_TO_NEW, metadata)

        record = self.domains.modify(existing.id, apply)
        logger.info(f"Moved {record.domain} from project {record.original_project_id} to {record.project_id}")
        return record

    def _update_original(self, request: BulkAnalysisInput, existing: DomainRecord, choice: DuplicateResolutionChoice) -> DomainRecord:
        """Refresh keyword/target linkage in place; the project stays."""
        metadata = self._audit(request, existing, choice)

        def apply(record: DomainRecord) -> None:
            record.target_page_ids = list(request.target_page_ids)
            record.keyword_count = request.keyword_count
            self._stamp(record, request, DuplicateResolution.UPDATE_ORIGINAL, metadata)

        return self.domains.modify(existing.id, apply)

    def _skip(self, request: BulkAnalysisInput, existing: DomainRecord, choice: DuplicateResolutionChoice) -> None:
        metadata = self._audit(request, existing, choice)
        self.domains.modify(
            existing.id,
            lambda record: self._stamp(record, request, DuplicateResolution.SKIP, metadata),
        )
