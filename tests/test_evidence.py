"""
Tests for evidence aggregation.

These tests verify:
- Flattened keyword counts across target analyses
- Median positions from the primary analysis
- Overlap status derivation and best target selection
- Storing target-match output on a record
"""

import pytest
from uuid import uuid4

from bulkengine.database import OverlapStatus
from bulkengine.database.schemas import DomainEvidence, TargetAnalysis, TargetMatchData
from bulkengine.errors import NotFoundError, ValidationError
from bulkengine.qualification import (
    EvidenceAggregator,
    aggregate_evidence,
    best_target_url,
    derive_overlap_status,
    keyword_lists,
    select_primary_analysis,
)


def analysis(url, direct=(), related=(), direct_median=None, related_median=None, quality=None):
    return TargetAnalysis(
        target_url=url,
        match_quality=quality,
        evidence={
            "direct_keywords": list(direct),
            "related_keywords": list(related),
            "direct_median_position": direct_median,
            "related_median_position": related_median,
        },
    )


@pytest.fixture
def two_targets():
    return [
        analysis("https://client.com/a", direct=["seo", "links"], related=["marketing"],
                 direct_median=12.0, related_median=30.0, quality="good"),
        analysis("https://client.com/b", direct=["seo"], related=["ads", "ppc"],
                 direct_median=4.0, related_median=21.5, quality="excellent"),
    ]


class TestAggregateEvidence:
    """Test domain-level rollup."""

    def test_counts_are_flattened(self, two_targets):
        """A keyword seen for two targets counts twice."""
        evidence = aggregate_evidence(two_targets)
        assert evidence.direct_count == 3
        assert evidence.related_count == 3

    def test_medians_from_suggested_target(self, two_targets):
        evidence = aggregate_evidence(two_targets, "https://client.com/b")
        assert evidence.direct_median_position == 4.0
        assert evidence.related_median_position == 21.5

    def test_medians_fall_back_to_first(self, two_targets):
        evidence = aggregate_evidence(two_targets, "https://client.com/unknown")
        assert evidence.direct_median_position == 12.0

    def test_empty_input(self):
        evidence = aggregate_evidence([])
        assert evidence == DomainEvidence()
        assert select_primary_analysis([]) is None

    def test_stored_shape_is_camel_case(self, two_targets):
        stored = aggregate_evidence(two_targets).to_json()
        assert set(stored) == {"directCount", "directMedianPosition", "relatedCount", "relatedMedianPosition"}


class TestDerivedValues:
    """Test overlap status and target selection."""

    @pytest.mark.parametrize("direct,related,expected", [
        (3, 5, OverlapStatus.BOTH),
        (3, 0, OverlapStatus.DIRECT),
        (0, 5, OverlapStatus.RELATED),
        (0, 0, OverlapStatus.NONE),
    ])
    def test_overlap_status(self, direct, related, expected):
        evidence = DomainEvidence(direct_count=direct, related_count=related)
        assert derive_overlap_status(evidence) == expected

    def test_best_target_url(self, two_targets):
        assert best_target_url(two_targets) == "https://client.com/b"

    def test_best_target_ties_keep_order(self):
        analyses = [analysis("first", quality="good"), analysis("second", quality="good")]
        assert best_target_url(analyses) == "first"

    def test_best_target_without_quality(self):
        assert best_target_url([analysis("only")]) == "only"
        assert best_target_url([]) is None

    def test_keyword_lists(self, two_targets):
        lists = keyword_lists(two_targets)
        assert lists["direct"] == ["seo", "links", "seo"]
        assert lists["related"] == ["marketing", "ads", "ppc"]


class TestEvidenceAggregator:
    """Test storing target-match output."""

    @pytest.fixture
    def aggregator(self, domain_repo):
        return EvidenceAggregator(domain_repo)

    @pytest.fixture
    def payload(self, two_targets):
        return TargetMatchData(target_analysis=two_targets).model_dump(mode="json")

    def test_record_target_match(self, aggregator, make_domain, domain_repo, payload):
        record = make_domain("site.com")

        aggregator.record_target_match(record.id, payload)

        stored = domain_repo.require(record.id)
        assert stored.suggested_target_url == "https://client.com/b"
        assert stored.target_matched_at is not None
        assert stored.evidence["directCount"] == 3
        assert stored.evidence["directMedianPosition"] == 4.0
        assert len(stored.target_match_data["target_analysis"]) == 2

    def test_existing_suggestion_is_kept(self, aggregator, make_domain, domain_repo, payload):
        record = make_domain("site.com", suggested_target_url="https://client.com/a")

        aggregator.record_target_match(record.id, payload)

        stored = domain_repo.require(record.id)
        assert stored.suggested_target_url == "https://client.com/a"
        assert stored.evidence["directMedianPosition"] == 12.0

    def test_malformed_payload(self, aggregator, make_domain):
        record = make_domain("site.com")
        with pytest.raises(ValidationError):
            aggregator.record_target_match(record.id, {"target_analysis": [{"match_quality": "good"}]})

    def test_missing_record(self, aggregator, payload):
        with pytest.raises(NotFoundError):
            aggregator.record_target_match(uuid4(), payload)

    def test_evidence_for(self, aggregator, make_domain, domain_repo, payload):
        record = make_domain("site.com")
        aggregator.record_target_match(record.id, payload)

        evidence = aggregator.evidence_for(domain_repo.require(record.id))
        assert evidence.direct_count == 3

        plain = make_domain("plain.com", evidence={"directCount": 2, "relatedCount": 1})
        assert aggregator.evidence_for(plain).related_count == 1
