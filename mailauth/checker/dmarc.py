"""
DMARC policy record validation.

Validates a DMARC (Domain-based Message Authentication, Reporting and
Conformance, RFC 7489) record published at _dmarc.{domain}:
- Parses all tag=value pairs (p, sp, pct, adkim, aspf, rua, ruf, fo, ri)
- Validates policy, percentage and alignment values
- Splits report URIs by scheme and report kind, keeping size limits
- Checks that external report destinations authorized the domain
  (section 7.1) through a caller-supplied authorizer
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from urllib.parse import urlsplit

from mailauth.checker.tags import RecordInput, Tag, duplicate_tag_keys, parse_tags, record_text, tags_to_dict
from mailauth.config import Config
from mailauth.utils.domain import is_same_or_subdomain

logger = logging.getLogger(__name__)

Authorizer = Callable[[str, str], bool]

_POLICIES = frozenset({"none", "quarantine", "reject"})
_ALIGNMENTS = frozenset({"r", "s"})
_FAILURE_OPTIONS = frozenset({"0", "1", "d", "s"})

_DEFAULT_REPORTING_INTERVAL = 86400

# Size limit suffix on a report URI, e.g. "!10m"
_SIZE_LIMIT_RE = re.compile(r"^(\d+)([kmgt]?)$", re.IGNORECASE)
_PCT_RE = re.compile(r"-?[0-9]+")
_INTERVAL_RE = re.compile(r"[0-9]+")
_SIZE_UNITS = {"": 1, "k": 1024, "m": 1024 ** 2, "g": 1024 ** 3, "t": 1024 ** 4}


@dataclass(frozen=True)
class ReportUri:
    """One parsed rua/ruf destination."""

    uri: str
    kind: str  # "aggregate" or "forensic"
    scheme: str = ""
    address: str = ""
    domain: str | None = None
    size_limit: int | None = None
    valid: bool = False


@dataclass(frozen=True)
class DmarcPolicyRecord:
    """Immutable outcome of validating one DMARC record."""

    dmarc_record: str | None = None
    dmarc_record_exists: bool = False
    domain: str | None = None
    tags: tuple[Tag, ...] = ()
    starts_correctly: bool = False
    exceeds_character_limit: bool = False
    has_mandatory_tags: bool = False
    policy: str | None = None
    sub_policy: str | None = None
    is_policy_valid: bool = False
    pct: int = 100
    is_pct_valid: bool = True
    dkim_alignment: str = "r"
    spf_alignment: str = "r"
    is_alignment_valid: bool = True
    failure_reporting_options: tuple[str, ...] = ("0",)
    is_failure_reporting_valid: bool = True
    reporting_interval: int = _DEFAULT_REPORTING_INTERVAL
    is_reporting_interval_valid: bool = True
    rua: str | None = None
    ruf: str | None = None
    mailto_rua: tuple[str, ...] = ()
    http_rua: tuple[str, ...] = ()
    mailto_ruf: tuple[str, ...] = ()
    http_ruf: tuple[str, ...] = ()
    report_uris: tuple[ReportUri, ...] = ()
    external_report_authorization: Mapping[str, bool] = field(
        default_factory=lambda: MappingProxyType({})
    )
    invalid_report_uri: bool = False
    warnings: tuple[str, ...] = ()
    status: str = "critical"


def evaluate_dmarc(
    record: RecordInput,
    domain: str | None = None,
    authorizer: Authorizer | None = None,
    config: object = Config,
) -> DmarcPolicyRecord:
    """Validate a DMARC record.

    Args:
        record: The joined TXT record, a RawRecordSet, the record's
            character-strings, or None when nothing was published.
        domain: The domain the record was published for.  Needed to tell
            external report destinations apart.
        authorizer: Called as ``authorizer(domain, external_domain)`` once
            per external destination.  When omitted no authorization
            lookups are made.
        config: Configuration class or object supplying the length limit.

    Returns:
        A fresh DmarcPolicyRecord.  Malformed records never raise.
    """
    text = record_text(record)
    if text is None or not text.strip():
        logger.debug("No DMARC record for %s", domain)
        return DmarcPolicyRecord(domain=domain, warnings=("No DMARC record found",))

    warnings: list[str] = []
    tags = parse_tags(text)
    tag_map = tags_to_dict(tags)
    for key in duplicate_tag_keys(tags):
        warnings.append(f"Tag {key}= appears more than once; the last value is used")

    exceeds_limit = len(text) > config.DMARC_MAX_RECORD_LENGTH
    if exceeds_limit:
        warnings.append(f"DMARC record exceeds {config.DMARC_MAX_RECORD_LENGTH} characters")

    starts_correctly = text.startswith("v=DMARC1")
    if not starts_correctly:
        warnings.append("DMARC record does not start with v=DMARC1")

    # Policy (p is required, sp inherits p)
    policy = tag_map.get("p")
    policy = policy.lower() if policy is not None else None
    sub_policy_raw = tag_map.get("sp")
    sub_policy = sub_policy_raw.lower() if sub_policy_raw is not None else policy
    is_policy_valid = policy in _POLICIES and sub_policy in _POLICIES
    if policy is None:
        warnings.append("DMARC policy (p=) is missing; this is a required tag")
    elif policy not in _POLICIES:
        warnings.append(f"Unknown DMARC policy value: p={policy}")
    elif policy == "none":
        warnings.append("DMARC policy is p=none (monitoring only); consider p=quarantine or p=reject")
    if sub_policy_raw is not None and sub_policy not in _POLICIES:
        warnings.append(f"Unknown DMARC subdomain policy value: sp={sub_policy}")
    elif sub_policy_raw is not None and sub_policy == "none" and policy != "none":
        warnings.append("Subdomain policy is sp=none; subdomains are not protected")

    pct, is_pct_valid = _parse_pct(tag_map.get("pct"))
    if not is_pct_valid:
        warnings.append(f"Invalid pct={tag_map.get('pct')}; must be an integer between 0 and 100")
    elif pct < 100:
        warnings.append(f"pct={pct} means only {pct}% of messages are subject to the DMARC policy")

    dkim_alignment = (tag_map.get("adkim") or "r").lower()
    spf_alignment = (tag_map.get("aspf") or "r").lower()
    is_alignment_valid = dkim_alignment in _ALIGNMENTS and spf_alignment in _ALIGNMENTS
    if not is_alignment_valid:
        warnings.append("DMARC alignment modes (adkim/aspf) must be 'r' or 's'")

    fo_options = tuple(
        option.strip().lower() for option in (tag_map.get("fo") or "0").split(":") if option.strip()
    )
    is_fo_valid = bool(fo_options) and all(option in _FAILURE_OPTIONS for option in fo_options)
    if not is_fo_valid:
        warnings.append(f"Invalid failure reporting options fo={tag_map.get('fo')}")

    reporting_interval, is_ri_valid = _parse_interval(tag_map.get("ri"))
    if not is_ri_valid:
        warnings.append(f"Invalid reporting interval ri={tag_map.get('ri')}")

    rua = tag_map.get("rua")
    ruf = tag_map.get("ruf")
    report_uris = _parse_uris(rua, "aggregate") + _parse_uris(ruf, "forensic")
    invalid_report_uri = False
    for report_uri in report_uris:
        if not report_uri.valid:
            invalid_report_uri = True
            warnings.append(f"Invalid report URI: {report_uri.uri}")
    if not rua:
        warnings.append("No rua= aggregate report URI specified; you will not receive DMARC reports")
    if ruf and not rua:
        warnings.append("ruf= (forensic reports) is set but rua= (aggregate reports) is missing")

    authorization = _authorize_destinations(domain, report_uris, authorizer)
    for external_domain, authorized in authorization.items():
        if not authorized:
            invalid_report_uri = True
            warnings.append(
                f"{external_domain} has not authorized DMARC reports for {domain}"
            )

    has_mandatory_tags = starts_correctly and policy is not None
    if not has_mandatory_tags or not is_policy_valid:
        status = "critical"
    elif warnings:
        status = "warning"
    else:
        status = "ok"

    return DmarcPolicyRecord(
        dmarc_record=text,
        dmarc_record_exists=True,
        domain=domain,
        tags=tags,
        starts_correctly=starts_correctly,
        exceeds_character_limit=exceeds_limit,
        has_mandatory_tags=has_mandatory_tags,
        policy=policy,
        sub_policy=sub_policy,
        is_policy_valid=is_policy_valid,
        pct=pct,
        is_pct_valid=is_pct_valid,
        dkim_alignment=dkim_alignment,
        spf_alignment=spf_alignment,
        is_alignment_valid=is_alignment_valid,
        failure_reporting_options=fo_options,
        is_failure_reporting_valid=is_fo_valid,
        reporting_interval=reporting_interval,
        is_reporting_interval_valid=is_ri_valid,
        rua=rua,
        ruf=ruf,
        mailto_rua=_addresses(report_uris, "aggregate", "mailto"),
        http_rua=_addresses(report_uris, "aggregate", "http"),
        mailto_ruf=_addresses(report_uris, "forensic", "mailto"),
        http_ruf=_addresses(report_uris, "forensic", "http"),
        report_uris=report_uris,
        external_report_authorization=MappingProxyType(authorization),
        invalid_report_uri=invalid_report_uri,
        warnings=tuple(warnings),
        status=status,
    )


def _parse_pct(pct_str: str | None) -> tuple[int, bool]:
    """Parse the pct= tag value, clamping out-of-range values into 0-100."""
    if pct_str is None:
        return 100, True
    if not _PCT_RE.fullmatch(pct_str):
        return 100, False
    value = int(pct_str)
    if 0 <= value <= 100:
        return value, True
    return min(max(value, 0), 100), False


def _parse_interval(ri_str: str | None) -> tuple[int, bool]:
    """Parse the ri= tag value as a non-negative number of seconds."""
    if ri_str is None:
        return _DEFAULT_REPORTING_INTERVAL, True
    if not _INTERVAL_RE.fullmatch(ri_str):
        return _DEFAULT_REPORTING_INTERVAL, False
    return int(ri_str), True


def _parse_uris(value: str | None, kind: str) -> tuple[ReportUri, ...]:
    """Split a comma-separated rua/ruf value into ReportUri entries."""
    if not value:
        return ()
    return tuple(_parse_uri(item.strip(), kind) for item in value.split(",") if item.strip())


def _parse_uri(item: str, kind: str) -> ReportUri:
    """Parse one report URI with its optional "!size" suffix."""
    uri, bang, size_text = item.partition("!")
    size_limit: int | None = None
    if bang:
        match = _SIZE_LIMIT_RE.match(size_text)
        if match is None:
            return ReportUri(uri=item, kind=kind)
        size_limit = int(match.group(1)) * _SIZE_UNITS[match.group(2).lower()]

    scheme, colon, rest = uri.partition(":")
    scheme = scheme.lower()
    if not colon:
        return ReportUri(uri=item, kind=kind, size_limit=size_limit)

    if scheme == "mailto":
        local, at, host = rest.rpartition("@")
        valid = bool(at and local and host and "." in host)
        return ReportUri(
            uri=item,
            kind=kind,
            scheme="mailto",
            address=rest,
            domain=host.lower().rstrip(".") if valid else None,
            size_limit=size_limit,
            valid=valid,
        )

    if scheme in ("http", "https"):
        try:
            host = urlsplit(uri).hostname
        except ValueError:
            host = None
        return ReportUri(
            uri=item,
            kind=kind,
            scheme="http",
            address=uri,
            domain=host.rstrip(".") if host else None,
            size_limit=size_limit,
            valid=bool(host),
        )

    return ReportUri(uri=item, kind=kind, scheme=scheme, address=rest, size_limit=size_limit)


def _addresses(report_uris: tuple[ReportUri, ...], kind: str, scheme: str) -> tuple[str, ...]:
    return tuple(
        report_uri.address
        for report_uri in report_uris
        if report_uri.kind == kind and report_uri.scheme == scheme and report_uri.valid
    )


def _authorize_destinations(
    domain: str | None,
    report_uris: tuple[ReportUri, ...],
    authorizer: Authorizer | None,
) -> dict[str, bool]:
    """Ask *authorizer* about each distinct external destination domain."""
    if not domain or authorizer is None:
        return {}
    own_domain = domain.lower().rstrip(".")
    result: dict[str, bool] = {}
    for report_uri in report_uris:
        target = report_uri.domain
        if not target or target in result or is_same_or_subdomain(target, own_domain):
            continue
        try:
            result[target] = bool(authorizer(own_domain, target))
        except Exception as exc:
            logger.warning("Authorization check for %s failed: %s", target, exc)
            result[target] = False
    return result
