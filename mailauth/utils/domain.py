"""Shared domain name helpers."""
from __future__ import annotations

import idna

# Selectors published by common mail providers.  fetch_dkim_records tries
# these when the caller has no selector list for a domain.
DEFAULT_SELECTORS = [
    "google",
    "selector1",
    "selector2",
    "everlytickey1",
    "everlytickey2",
    "eversrv",
    "k1",
    "mxvault",
    "dkim",
    "s1",
    "s2",
    "default",
    "mail",
    "fm1",
    "fm2",
    "fm3",
    "amazonses",
    "protonmail",
]


def normalize_domain(domain: str) -> str:
    """Return the lowercase ASCII (punycode) form of *domain*.

    UTS #46 mapping folds case and Unicode normalization differences, so
    ``Bücher.Example`` and its decomposed spelling share one key.  Labels
    that are already ASCII are only lowercased, so DNS names that are not
    valid host names (``mail_out.example.com``) are kept.

    Args:
        domain: A domain name in Unicode or ASCII form.

    Returns:
        The ASCII form without a trailing dot.

    Raises:
        ValueError: If *domain* is empty, has an empty label, or has a
            non-ASCII label that is not a valid IDNA label.
            ``idna.IDNAError`` is a ValueError subclass.
    """
    cleaned = domain.strip().rstrip(".")
    if not cleaned:
        raise ValueError("empty domain name")
    if not cleaned.isascii():
        # Maps case, width and dot variants (e.g. U+3002) before splitting
        cleaned = idna.uts46_remap(cleaned, std3_rules=False, transitional=False).rstrip(".")

    labels = []
    for label in cleaned.split("."):
        if not label:
            raise ValueError(f"empty label in domain name {domain!r}")
        if label.isascii():
            labels.append(label.lower())
        else:
            labels.append(idna.alabel(label).decode("ascii"))
    return ".".join(labels)


def is_same_or_subdomain(candidate: str, domain: str) -> bool:
    """Return True when *candidate* equals *domain* or sits beneath it."""
    candidate = candidate.lower().rstrip(".")
    domain = domain.lower().rstrip(".")
    return candidate == domain or candidate.endswith(f".{domain}")
