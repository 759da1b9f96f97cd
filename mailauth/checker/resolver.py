"""
DNS resolver collaborator.

Provides TXT resolution with configurable nameservers, timeouts and
retries, DKIM selector lookup, and the DMARC external report destination
check (RFC 7489 section 7.1).  The evaluators never import this
module; callers resolve records here and hand the answers to them.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

import dns.exception
import dns.resolver

from mailauth.checker.tags import RawRecordSet
from mailauth.config import Config
from mailauth.utils.domain import DEFAULT_SELECTORS

logger = logging.getLogger(__name__)


class ResolverError(Exception):
    """A DNS failure other than the name or record being absent.

    Attributes:
        error_type: One of TIMEOUT or DNS_ERROR.
    """

    def __init__(self, message: str, error_type: str = "DNS_ERROR") -> None:
        super().__init__(message)
        self.error_type = error_type


def create_resolver(config: object = Config) -> dns.resolver.Resolver:
    """Create a fresh dns.resolver.Resolver configured from *config*.

    A new instance is created every time to ensure thread safety.
    """
    resolver = dns.resolver.Resolver(configure=False)

    nameservers = list(config.DNS_NAMESERVERS)
    resolver.nameservers = nameservers or ["8.8.8.8", "1.1.1.1"]

    resolver.timeout = float(config.DNS_TIMEOUT_SECONDS)
    resolver.lifetime = float(config.DNS_TIMEOUT_SECONDS * config.DNS_RETRIES)
    resolver.retry_servfail = True

    return resolver


def query_txt(name: str, config: object = Config) -> list[RawRecordSet]:
    """Resolve the TXT records for *name*, keeping each record's strings.

    Args:
        name: The DNS name to query.
        config: Configuration class or object with resolver settings.

    Returns:
        One RawRecordSet per TXT record.  An absent name or record type
        yields an empty list.

    Raises:
        ResolverError: On timeouts, SERVFAIL and other DNS failures.
    """
    resolver = create_resolver(config)

    try:
        answer = resolver.resolve(name, "TXT")
    except dns.resolver.NXDOMAIN:
        logger.info("NXDOMAIN for %s/TXT", name)
        return []
    except dns.resolver.NoAnswer:
        logger.info("NoAnswer for %s/TXT", name)
        return []
    except dns.resolver.NoNameservers as exc:
        logger.warning("NoNameservers for %s/TXT", name)
        raise ResolverError(
            f"No nameservers available for {name} (SERVFAIL or all failed)"
        ) from exc
    except dns.resolver.Timeout as exc:
        logger.warning("Timeout for %s/TXT", name)
        raise ResolverError(f"DNS query timed out for {name}/TXT", "TIMEOUT") from exc
    except dns.exception.DNSException as exc:
        logger.error("DNSException for %s/TXT: %s", name, exc)
        raise ResolverError(f"DNS error for {name}/TXT: {exc}") from exc

    records: list[RawRecordSet] = []
    for rdata in answer:
        segments = tuple(
            chunk.decode("utf-8", errors="replace") for chunk in rdata.strings
        )
        records.append(RawRecordSet(segments=segments))

    logger.debug("DNS query %s/TXT returned %d records", name, len(records))
    return records


def fetch_dkim_records(
    domain: str,
    selectors: Iterable[str] | None = None,
    config: object = Config,
) -> dict[str, RawRecordSet]:
    """Look up the DKIM key record of each selector under *domain*.

    Args:
        domain: The signing domain.
        selectors: Selectors to try.  Defaults to DEFAULT_SELECTORS, the
            selectors published by common mail providers.
        config: Configuration class or object with resolver settings.

    Returns:
        selector -> RawRecordSet for the selectors that publish a record,
        in lookup order.  The result can be passed to
        :func:`mailauth.checker.dkim.evaluate_selectors`.

    Raises:
        ResolverError: On timeouts, SERVFAIL and other DNS failures.
    """
    if selectors is None:
        selectors = DEFAULT_SELECTORS

    found: dict[str, RawRecordSet] = {}
    for selector in selectors:
        name = f"{selector}._domainkey.{domain.rstrip('.')}"
        records = query_txt(name, config)
        if not records:
            # Selector just does not exist
            continue
        if len(records) > 1:
            logger.warning("%s has %d TXT records; using the first", name, len(records))
        found[selector] = records[0]

    logger.debug("Found %d DKIM selectors for %s", len(found), domain)
    return found


def authorize_report_destination(
    own_domain: str,
    external_domain: str,
    config: object = Config,
) -> bool:
    """Check that *external_domain* accepts DMARC reports for *own_domain*.

    Queries ``<own_domain>._report._dmarc.<external_domain>`` and accepts
    authorization when any TXT answer begins with ``v=DMARC1``.  DNS
    failures count as not authorized.
    """
    name = f"{own_domain.rstrip('.')}._report._dmarc.{external_domain.rstrip('.')}"
    try:
        records = query_txt(name, config)
    except ResolverError as exc:
        logger.warning("Report authorization lookup failed for %s: %s", name, exc)
        return False
    return any(record.joined.startswith("v=DMARC1") for record in records)
