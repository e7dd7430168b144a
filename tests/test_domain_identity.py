"""
Tests for domain normalization and input helpers.

These tests verify:
- Canonical domain form
- Idempotence of normalization
- Batch normalization and keyword parsing
- ID coercion errors
"""

import pytest
from uuid import UUID, uuid4

from bulkengine.errors import ValidationError
from bulkengine.utils.domain import normalize_domain, normalize_domains, parse_keywords
from bulkengine.utils.ids import to_optional_uuid, to_uuid


class TestNormalizeDomain:
    """Test canonical domain form."""

    @pytest.mark.parametrize("raw,expected", [
        ("HTTPS://WWW.Example.com/", "example.com"),
        ("http://example.com", "example.com"),
        ("www.example.com", "example.com"),
        ("  blog.example.com  ", "blog.example.com"),
        ("Example.COM/", "example.com"),
        ("example.com/guides", "example.com/guides"),
    ])
    def test_canonical_form(self, raw, expected):
        assert normalize_domain(raw) == expected

    def test_subdomains_are_kept(self):
        """Only a leading www. is stripped."""
        assert normalize_domain("www.shop.example.com") == "shop.example.com"
        assert normalize_domain("shop.www.example.com") == "shop.www.example.com"

    @pytest.mark.parametrize("raw", [None, "", "   ", "/", "https://"])
    def test_empty_inputs(self, raw):
        assert normalize_domain(raw) == ""

    @pytest.mark.parametrize("raw", [
        "HTTPS://WWW.Example.com/",
        " www.http://x.com",
        "x.com/ /",
        "https://www.www.example.com//",
        "ftp://example.com",
    ])
    def test_idempotent(self, raw):
        once = normalize_domain(raw)
        assert normalize_domain(once) == once

    def test_variants_collide(self):
        variants = ["Example.com", "www.example.com/", "https://example.com", "HTTP://WWW.EXAMPLE.COM"]
        assert {normalize_domain(v) for v in variants} == {"example.com"}


class TestNormalizeDomains:
    """Test batch normalization."""

    def test_dedup_keeps_first_seen_order(self):
        raws = ["b.com", "Example.com", "a.com", "www.example.com/", "B.com"]
        assert normalize_domains(raws) == ["b.com", "example.com", "a.com"]

    def test_drops_empties(self):
        assert normalize_domains(["", None, "  ", "a.com"]) == ["a.com"]


class TestParseKeywords:
    """Test comma-separated keyword parsing."""

    def test_split_and_trim(self):
        assert parse_keywords(" seo tools, link building ,seo tools,, ") == ["seo tools", "link building"]

    def test_empty(self):
        assert parse_keywords(None) == []
        assert parse_keywords("") == []


class TestIds:
    """Test UUID coercion."""

    def test_accepts_uuid_and_string(self):
        value = uuid4()
        assert to_uuid(value, "id") == value
        assert to_uuid(str(value), "id") == value
        assert isinstance(to_uuid(str(value), "id"), UUID)

    def test_rejects_garbage(self):
        with pytest.raises(ValidationError) as exc:
            to_uuid("not-a-uuid", "domain_id")
        assert "domain_id" in str(exc.value)

    def test_optional(self):
        assert to_optional_uuid(None, "id") is None
