"""
Domain Identity

Canonical form of a domain string. Every component keys domains by
this form, so two spellings of the same site always collide.

Purely syntactic: no DNS lookups, no TLD validation.
"""

import re
from typing import Iterable, List, Optional

_PROTOCOL = re.compile(r"^https?://")
_WWW = re.compile(r"^www\.")


def normalize_domain(raw: Optional[str]) -> str:
    """
    Normalize a raw domain into its canonical key.

    Lowercases, strips a leading http:// or https://, a leading www.
    and one trailing slash, then trims whitespace.

    Examples:
        "HTTPS://WWW.Example.com/" -> "example.com"
        "  blog.example.com  "     -> "blog.example.com"

    Idempotent: normalize_domain(normalize_domain(x)) == normalize_domain(x)
    """
    if not raw:
        return ""

    domain = raw.strip().lower()

    # Repeat until stable so stripping one prefix cannot expose another
    # (e.g. " www.http://x" or "x/ /") on a second call.
    while True:
        previous = domain
        domain = _PROTOCOL.sub("", domain)
        domain = _WWW.sub("", domain)
        if domain.endswith("/"):
            domain = domain[:-1]
        domain = domain.strip()
        if domain == previous:
            return domain


def normalize_domains(raws: Iterable[Optional[str]]) -> List[str]:
    """
    Normalize a batch of domains.

    Drops empties and duplicates, keeping first-seen order.
    """
    seen = set()
    result = []
    for raw in raws:
        domain = normalize_domain(raw)
        if domain and domain not in seen:
            seen.add(domain)
            result.append(domain)
    return result


def parse_keywords(raw: Optional[str]) -> List[str]:
    """Split a comma-separated keyword string, trimming and de-duplicating."""
    if not raw:
        return []
    seen = set()
    keywords = []
    for part in raw.split(","):
        keyword = part.strip()
        if keyword and keyword not in seen:
            seen.add(keyword)
            keywords.append(keyword)
    return keywords
