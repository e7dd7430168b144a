"""
Bulk Analysis Service

Day-to-day operations on a client's analyzed domains: listing, bulk
deletes, workflow tracking and refreshing pending domains after the
client's target pages change.
"""

import logging
from typing import Any, Iterable, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from bulkengine.database.models import DomainRecord, utcnow
from bulkengine.database.repository import DomainFilter, DomainRepository, PaginatedResult
from bulkengine.errors import BulkEngineError, NotFoundError
from bulkengine.qualification.state_machine import BulkOperationResult
from bulkengine.utils.config import Settings, get_settings
from bulkengine.utils.domain import parse_keywords
from bulkengine.utils.ids import to_optional_uuid, to_uuid

logger = logging.getLogger(__name__)


class BulkAnalysisService:
    """Listing and maintenance operations over domain records."""

    def __init__(self, domains: Optional[DomainRepository] = None, settings: Optional[Settings] = None):
        self.domains = domains or DomainRepository()
        self.settings = settings or get_settings()

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get_client_domains(self, client_id: Any, project_id: Any = None) -> List[DomainRecord]:
        return self.domains.list_for_client(
            to_uuid(client_id, "client_id"),
            to_optional_uuid(project_id, "project_id"),
        )

    def get_domain(self, domain_id: Any) -> DomainRecord:
        return self.domains.require(to_uuid(domain_id, "domain_id"))

    def list_qualified(self, client_id: Any) -> List[DomainRecord]:
        """Domains in high, good or marginal quality, newest first."""
        return self.domains.list_qualified(to_uuid(client_id, "client_id"))

    def paginate(
        self,
        client_id: Any,
        page: int = 1,
        page_size: Optional[int] = None,
        qualification_status: Optional[str] = None,
        has_workflow: Optional[bool] = None,
        search: Optional[str] = None,
        project_id: Any = None,
        sort_by: str = "created_at",
        sort_order: str = "desc",
    ) -> PaginatedResult:
        """
        One page of a client's domains.

        page_size defaults to DEFAULT_PAGE_SIZE and is capped at
        MAX_PAGE_SIZE. qualification_status accepts any status value or
        "qualified_any".
        """
        size = min(page_size or self.settings.DEFAULT_PAGE_SIZE, self.settings.MAX_PAGE_SIZE)
        filters = DomainFilter(
            qualification_status=qualification_status,
            has_workflow=has_workflow,
            search=search,
            project_id=to_optional_uuid(project_id, "project_id"),
        )
        return self.domains.paginate(
            to_uuid(client_id, "client_id"),
            page=page,
            page_size=size,
            filters=filters,
            sort_by=sort_by,
            sort_order=sort_order,
        )

    # -------------------------------------------------------------------------
    # Deletes
    # -------------------------------------------------------------------------

    def delete_domain(self, domain_id: Any) -> None:
        """
        Raises:
            NotFoundError: if the record does not exist
        """
        domain_id = to_uuid(domain_id, "domain_id")
        if not self.domains.delete(domain_id):
            raise NotFoundError("Domain", domain_id)
        logger.info(f"Deleted domain record {domain_id}")

    def bulk_delete(self, domain_ids: Iterable[Any]) -> BulkOperationResult:
        """Delete many records, one transaction each; failures are reported, not raised."""
        ids = list(domain_ids)
        result = BulkOperationResult(requested=len(ids))
        for raw_id in ids:
            try:
                self.delete_domain(raw_id)
                result.succeeded.append(to_uuid(raw_id, "domain_id"))
            except (BulkEngineError, SQLAlchemyError) as e:
                logger.error(f"Bulk delete failed for domain {raw_id}: {e}")
                result.add_failure(raw_id, e, operation="bulk_delete")

        logger.info(f"Bulk delete: {result.success_count}/{result.requested} deleted")
        return result

    # -------------------------------------------------------------------------
    # Workflow tracking
    # -------------------------------------------------------------------------

    def update_workflow_tracking(self, domain_id: Any, workflow_id: Any) -> DomainRecord:
        """Mark a domain as having a workflow."""
        workflow_id = to_uuid(workflow_id, "workflow_id")

        def apply(record: DomainRecord) -> None:
            record.has_workflow = True
            record.workflow_id = workflow_id
            record.workflow_created_at = utcnow()

        record = self.domains.modify(to_uuid(domain_id, "domain_id"), apply)
        logger.info(f"Workflow {workflow_id} attached to {record.domain}")
        return record

    # -------------------------------------------------------------------------
    # Refresh
    # -------------------------------------------------------------------------

    def refresh_pending_domains(
        self,
        client_id: Any,
        target_page_ids: Iterable[Any],
        keywords: Iterable[str] = (),
        manual_keywords: Optional[str] = None,
    ) -> List[DomainRecord]:
        """
        Point every pending domain of a client at new target pages.

        Manual keywords, when given, take precedence over the keywords of
        the target pages. Reviewed domains are left alone.
        """
        client_id = to_uuid(client_id, "client_id")
        page_ids = [str(pid) for pid in target_page_ids]
        if manual_keywords:
            keyword_set = parse_keywords(manual_keywords)
        else:
            keyword_set = list(dict.fromkeys(k.strip() for k in keywords if k and k.strip()))

        pending = self.domains.list_pending(client_id)
        refreshed = []
        for record in pending:
            refreshed.append(
                self.domains.update(record.id, target_page_ids=page_ids, keyword_count=len(keyword_set))
            )

        logger.info(
            f"Refreshed {len(refreshed)} pending domains for client {client_id} "
            f"({len(page_ids)} target pages, {len(keyword_set)} keywords)"
        )
        return refreshed
