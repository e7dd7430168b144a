"""
Tests for duplicate detection and resolution.

These tests verify:
- Exact partition of candidates into duplicates / new / already-in-project
- Smart defaults shown for duplicates
- Each resolution's effect on records and lineage
- Refresh of domains the project already holds
- Validation before any write, and per-domain failure isolation
"""

import pytest
from datetime import timedelta
from uuid import uuid4

from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from bulkengine.database import DomainRecord, DuplicateResolution, QualificationStatus, get_db_context, utcnow
from bulkengine.errors import ConstraintViolation, PartialBatchFailure, ValidationError
from bulkengine.services import BulkAnalysisInput, DuplicateResolver


@pytest.fixture
def resolver(domain_repo):
    return DuplicateResolver(domain_repo, stale_days=90)


@pytest.fixture
def count_records(session_factory):
    def _count():
        with get_db_context(session_factory) as db:
            return db.scalar(select(func.count()).select_from(DomainRecord))
    return _count


@pytest.fixture
def request_for(client_id, project):
    def _request(*domains, **values):
        values.setdefault("target_page_ids", ["page-1"])
        return BulkAnalysisInput(client_id=client_id, project_id=project.id, domains=list(domains), **values)
    return _request


def choice(record, resolution):
    return {"domain": record.domain, "existing_domain_id": str(record.id), "resolution": resolution}


class TestCheckDuplicates:
    """Test candidate partitioning."""

    def test_exact_partition(self, resolver, make_domain, client_id, project, other_project):
        make_domain("example.com", project_id=other_project.id)
        make_domain("inproject.com", project_id=other_project.id)
        make_domain("inproject.com", project_id=project.id)

        candidates = ["Example.com", "www.example.com/", "new.com", "INPROJECT.com", "  "]
        result = resolver.check_duplicates(client_id, candidates, project.id)

        assert result.duplicate_domains == ["example.com"]
        assert result.new_domains == ["new.com"]
        assert result.already_in_project == ["inproject.com"]

        # Every normalized candidate lands in exactly one bucket
        buckets = result.duplicate_domains + result.new_domains + result.already_in_project
        assert sorted(buckets) == ["example.com", "inproject.com", "new.com"]

    def test_duplicate_details(self, resolver, make_domain, client_id, project, other_project):
        existing = make_domain(
            "example.com",
            project_id=other_project.id,
            qualification_status=QualificationStatus.HIGH_QUALITY,
            target_page_ids=["page-1"],
            checked_at=utcnow() - timedelta(days=10),
        )

        result = resolver.check_duplicates(client_id, ["example.com"], project.id, target_page_ids=["page-2"])

        info = result.duplicates[0]
        assert info.existing_domain_id == existing.id
        assert info.existing_project_id == other_project.id
        assert info.existing_project_name == "Winter Campaign"
        assert info.qualification_status == "high_quality"
        assert info.duplicate_type == "different_target"
        assert info.analysis_age_days == 10
        assert info.to_dict()["existingProjectName"] == "Winter Campaign"

    def test_other_clients_are_ignored(self, resolver, make_domain, client_id, project, other_project):
        make_domain("example.com", project_id=other_project.id, client_id=uuid4())

        result = resolver.check_duplicates(client_id, ["example.com"], project.id)

        assert result.new_domains == ["example.com"]
        assert not result.has_duplicates

    @pytest.mark.parametrize("values,expected", [
        ({"has_workflow": True}, DuplicateResolution.SKIP),
        ({"qualification_status": QualificationStatus.GOOD_QUALITY, "checked_at_days": 5}, DuplicateResolution.SKIP),
        ({"qualification_status": QualificationStatus.GOOD_QUALITY, "checked_at_days": 200}, DuplicateResolution.MOVE_TO_NEW),
        ({}, DuplicateResolution.MOVE_TO_NEW),
    ])
    def test_smart_default(self, resolver, make_domain, client_id, project, other_project, values, expected):
        values = dict(values)
        days = values.pop("checked_at_days", None)
        if days is not None:
            values["checked_at"] = utcnow() - timedelta(days=days)
        make_domain("example.com", project_id=other_project.id, **values)

        result = resolver.check_duplicates(client_id, ["example.com"], project.id)

        assert result.duplicates[0].smart_default == expected
        assert result.duplicates[0].reasoning

    def test_empty_candidates(self, resolver, client_id, project):
        with pytest.raises(ValidationError):
            resolver.check_duplicates(client_id, ["", "  ", None], project.id)


class TestResolveDuplicates:
    """Test applying resolutions."""

    def test_new_domains_are_inserted(self, resolver, request_for, domain_repo, project):
        outcome = resolver.resolve_duplicates_and_create(
            request_for("New.com", "www.fresh.com/", manual_keywords="seo, links, seo")
        )

        assert [r.domain for r in outcome.records] == ["new.com", "fresh.com"]
        assert outcome.actions == {"new.com": "created", "fresh.com": "created"}
        stored = domain_repo.require(outcome.records[0].id)
        assert stored.project_id == project.id
        assert stored.keyword_count == 2
        assert stored.target_page_ids == ["page-1"]
        assert stored.qualification_status == QualificationStatus.PENDING

    def test_move_to_new(self, resolver, request_for, make_domain, domain_repo, count_records, project, other_project):
        existing = make_domain("example.com", project_id=other_project.id, target_page_ids=["old"])
        user = uuid4()

        outcome = resolver.resolve_duplicates_and_create(
            request_for("www.Example.com", user_id=user),
            [choice(existing, "move_to_new")],
        )

        moved = domain_repo.require(existing.id)
        assert outcome.records[0].id == existing.id
        assert moved.project_id == project.id
        assert moved.original_project_id == other_project.id
        assert moved.target_page_ids == ["page-1"]
        assert moved.duplicate_resolution == DuplicateResolution.MOVE_TO_NEW
        assert moved.duplicate_resolved_by == user
        assert moved.resolution_metadata["existingProjectId"] == str(other_project.id)
        assert count_records() == 1

    def test_keep_both(self, resolver, request_for, make_domain, domain_repo, count_records, project, other_project):
        existing = make_domain("example.com", project_id=other_project.id)

        outcome = resolver.resolve_duplicates_and_create(
            request_for("example.com"),
            [choice(existing, "keep_both")],
        )

        created = outcome.records[0]
        assert outcome.actions["example.com"] == "keep_both"
        assert created.id != existing.id
        assert created.project_id == project.id
        assert created.duplicate_of == existing.id
        assert created.duplicate_resolution == DuplicateResolution.KEEP_BOTH
        assert domain_repo.require(existing.id).project_id == other_project.id
        assert count_records() == 2

    def test_keep_both_falls_back_to_update(
        self, resolver, request_for, make_domain, domain_repo, count_records, monkeypatch, project, other_project
    ):
        """A store keyed on (client, domain) alone leaves no blocking row; the existing one is re-linked."""
        existing = make_domain("example.com", project_id=other_project.id)
        real_insert = domain_repo.insert

        def legacy_insert(**values):
            if values.get("duplicate_of"):
                raise ConstraintViolation("Duplicate domain record for example.com")
            return real_insert(**values)

        monkeypatch.setattr(domain_repo, "insert", legacy_insert)

        outcome = resolver.resolve_duplicates_and_create(
            request_for("example.com"),
            [choice(existing, "keep_both")],
        )

        updated = domain_repo.require(existing.id)
        assert outcome.actions["example.com"] == "keep_both_fallback"
        assert outcome.records[0].id == existing.id
        assert not outcome.failures
        assert updated.project_id == project.id
        assert updated.original_project_id == other_project.id
        assert updated.duplicate_resolution == DuplicateResolution.KEEP_BOTH
        assert updated.resolution_metadata["fallback"] == "update_existing"
        assert count_records() == 1

    def test_keep_both_when_project_already_holds_domain(
        self, resolver, request_for, make_domain, domain_repo, count_records, project, other_project
    ):
        """The row in the target project takes the linkage when the unique key refuses a second one."""
        existing = make_domain("example.com", project_id=other_project.id)
        blocking = make_domain("example.com", project_id=project.id, target_page_ids=["old"], keyword_count=0)

        outcome = resolver.resolve_duplicates_and_create(
            request_for("example.com", keywords=["a", "b"]),
            [choice(existing, "keep_both")],
        )

        updated = domain_repo.require(blocking.id)
        assert not outcome.failures
        assert outcome.actions["example.com"] == "keep_both_fallback"
        assert outcome.records[0].id == blocking.id
        assert updated.duplicate_of == existing.id
        assert updated.target_page_ids == ["page-1"]
        assert updated.keyword_count == 2
        assert updated.duplicate_resolution == DuplicateResolution.KEEP_BOTH
        assert updated.resolution_metadata["fallback"] == "update_blocking"
        assert domain_repo.require(existing.id).project_id == other_project.id
        assert count_records() == 2

    def test_domain_already_in_project_is_refreshed(
        self, resolver, request_for, make_domain, domain_repo, count_records, project
    ):
        """Re-submitting a domain the project holds refreshes its linkage and keeps its review."""
        current = make_domain(
            "taken.com",
            project_id=project.id,
            qualification_status=QualificationStatus.GOOD_QUALITY,
            target_page_ids=["old"],
            keyword_count=1,
        )

        outcome = resolver.resolve_duplicates_and_create(
            request_for("www.taken.com", "new.com", target_page_ids=["page-2"], keywords=["a", "b", "c"])
        )

        refreshed = domain_repo.require(current.id)
        assert not outcome.failures
        assert outcome.actions == {"taken.com": "refreshed", "new.com": "created"}
        assert outcome.already_in_project == ["taken.com"]
        assert outcome.to_dict()["alreadyInProject"] == ["taken.com"]
        assert [r.domain for r in outcome.records] == ["taken.com", "new.com"]
        assert refreshed.target_page_ids == ["page-2"]
        assert refreshed.keyword_count == 3
        assert refreshed.qualification_status == QualificationStatus.GOOD_QUALITY
        assert count_records() == 2

    def test_update_original(self, resolver, request_for, make_domain, domain_repo, other_project):
        existing = make_domain("example.com", project_id=other_project.id, target_page_ids=["old"], keyword_count=1)

        outcome = resolver.resolve_duplicates_and_create(
            request_for("example.com", target_page_ids=["page-9"], keywords=["a", "b", "c"]),
            [choice(existing, "update_original")],
        )

        updated = domain_repo.require(existing.id)
        assert outcome.records[0].id == existing.id
        assert updated.project_id == other_project.id
        assert updated.target_page_ids == ["page-9"]
        assert updated.keyword_count == 3
        assert updated.duplicate_resolution == DuplicateResolution.UPDATE_ORIGINAL

    def test_skip(self, resolver, request_for, make_domain, domain_repo, count_records, other_project):
        existing = make_domain("example.com", project_id=other_project.id)

        outcome = resolver.resolve_duplicates_and_create(
            request_for("example.com", "new.com"),
            [choice(existing, "skip")],
        )

        skipped = domain_repo.require(existing.id)
        assert outcome.skipped == ["example.com"]
        assert [r.domain for r in outcome.records] == ["new.com"]
        assert skipped.duplicate_resolution == DuplicateResolution.SKIP
        assert skipped.duplicate_resolved_at is not None
        assert skipped.project_id == other_project.id
        assert count_records() == 2


class TestResolutionValidation:
    """Test rejection before any write and per-domain isolation."""

    def test_unknown_resolution_type(self, resolver, request_for, make_domain, count_records, other_project):
        existing = make_domain("example.com", project_id=other_project.id)

        with pytest.raises(ValidationError):
            resolver.resolve_duplicates_and_create(
                request_for("example.com", "new.com"),
                [choice(existing, "merge")],
            )
        assert count_records() == 1

    def test_resolution_for_unknown_domain(self, resolver, request_for, make_domain, count_records, other_project):
        existing = make_domain("other.com", project_id=other_project.id)

        with pytest.raises(ValidationError):
            resolver.resolve_duplicates_and_create(request_for("new.com"), [choice(existing, "skip")])
        assert count_records() == 1

    def test_empty_candidates(self, resolver, request_for):
        with pytest.raises(ValidationError):
            resolver.resolve_duplicates_and_create(request_for(" ", ""))

    def test_failure_does_not_abort_batch(self, resolver, request_for, make_domain, other_project):
        foreign = make_domain("foreign.com", project_id=other_project.id, client_id=uuid4())
        ghost = {"domain": "ghost.com", "existing_domain_id": str(uuid4()), "resolution": "move_to_new"}

        outcome = resolver.resolve_duplicates_and_create(
            request_for("first.com", "foreign.com", "ghost.com", "last.com"),
            [choice(foreign, "keep_both"), ghost],
        )

        assert [r.domain for r in outcome.records] == ["first.com", "last.com"]
        assert {f["domain"]: f["error"] for f in outcome.failures} == {
            "foreign.com": "ValidationError",
            "ghost.com": "NotFoundError",
        }
        assert [f["operation"] for f in outcome.failures] == ["keep_both", "move_to_new"]

        with pytest.raises(PartialBatchFailure) as exc:
            outcome.raise_for_failures()
        assert exc.value.failed_count == 2
        assert exc.value.succeeded == 2

    def test_store_error_does_not_abort_batch(self, resolver, request_for, domain_repo, monkeypatch):
        """A database error on one insert is reported for that domain only."""
        real_insert = domain_repo.insert

        def flaky_insert(**values):
            if values["domain"] == "locked.com":
                raise OperationalError("INSERT", {}, Exception("database is locked"))
            return real_insert(**values)

        monkeypatch.setattr(domain_repo, "insert", flaky_insert)

        outcome = resolver.resolve_duplicates_and_create(request_for("first.com", "locked.com", "last.com"))

        assert [r.domain for r in outcome.records] == ["first.com", "last.com"]
        assert outcome.failures[0]["domain"] == "locked.com"
        assert outcome.failures[0]["error"] == "OperationalError"

    def test_existing_record_of_other_client(self, resolver, request_for, make_domain, other_project):
        foreign = make_domain("example.com", project_id=other_project.id, client_id=uuid4())

        outcome = resolver.resolve_duplicates_and_create(
            request_for("example.com"),
            [choice(foreign, "move_to_new")],
        )

        assert outcome.failures[0]["error"] == "ValidationError"
        assert not outcome.records
