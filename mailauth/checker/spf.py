"""
SPF record evaluation.

Evaluates one already-resolved SPF answer (RFC 7208):
- Presence and uniqueness of the record
- Per-string and total length limits
- Term classification (qualifier, mechanism, modifier, unknown)
- DNS lookup budget for the top-level record (max 10 per section 4.6.4)
- Placement and multiplicity of the "all" mechanism
- ip4/ip6 syntax and macro syntax checks

Recursive include expansion is left to the resolver; only the terms of the
record handed in are counted.
"""

from __future__ import annotations

import ipaddress
import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass

from mailauth.checker.tags import RawRecordSet, to_record_sets
from mailauth.config import Config

logger = logging.getLogger(__name__)

# Mechanisms that require DNS lookups per RFC 7208 Section 4.6.4
_DNS_LOOKUP_MECHANISMS = frozenset({"include", "a", "mx", "ptr", "exists"})

_MECHANISMS = frozenset({"all", "include", "a", "mx", "ptr", "ip4", "ip6", "exists"})
_MODIFIERS = frozenset({"redirect", "exp"})

# Mechanisms that may be written with a ":" target
_TARGET_MECHANISMS = frozenset({"include", "a", "mx", "ptr", "ip4", "ip6", "exists"})

_QUALIFIERS = "+-~?"

_MACRO_RE = re.compile(r"^%\{[slodipvhcrt](\d{1,2})?r?[.\-+,/_=]*\}$", re.IGNORECASE)

# Qualifier mapping for the "all" mechanism
_ALL_POLICIES: dict[str, str] = {
    "-": "hard_fail",
    "~": "soft_fail",
    "?": "neutral",
    "+": "pass_all",
}

_POLICY_STATUS: dict[str, str] = {
    "hard_fail": "ok",
    "soft_fail": "warning",
    "neutral": "warning",
    "pass_all": "critical",
    "missing": "critical",
}


@dataclass(frozen=True)
class SpfTerm:
    """A single classified SPF token."""

    raw: str
    kind: str  # "mechanism", "modifier" or "unknown"
    name: str = ""
    value: str = ""
    qualifier: str = "+"


@dataclass(frozen=True)
class SpfAnalysisResult:
    """Immutable outcome of evaluating one SPF answer."""

    spf_record: str | None = None
    spf_records: tuple[str, ...] = ()
    spf_segments: tuple[str, ...] = ()
    spf_record_exists: bool = False
    multiple_spf_records: bool = False
    starts_correctly: bool = False
    exceeds_character_limit: bool = False
    exceeds_total_character_limit: bool = False
    terms: tuple[SpfTerm, ...] = ()
    dns_lookups: tuple[str, ...] = ()
    dns_lookups_count: int = 0
    exceeds_dns_lookups: bool = False
    all_mechanism: str | None = None
    multiple_all_mechanisms: bool = False
    contains_characters_after_all: bool = False
    has_ptr_type: bool = False
    has_null_lookups: bool = False
    has_redirect: bool = False
    has_exp: bool = False
    invalid_ip_syntax: bool = False
    a_records: tuple[str, ...] = ()
    mx_records: tuple[str, ...] = ()
    ptr_records: tuple[str, ...] = ()
    ipv4_records: tuple[str, ...] = ()
    ipv6_records: tuple[str, ...] = ()
    include_records: tuple[str, ...] = ()
    exists_records: tuple[str, ...] = ()
    redirect_value: str | None = None
    exp_value: str | None = None
    unknown_mechanisms: tuple[str, ...] = ()
    policy: str | None = None
    warnings: tuple[str, ...] = ()
    status: str = "critical"

    @property
    def has_null_dns_lookups(self) -> bool:
        return self.has_null_lookups


def evaluate_spf(
    records: Iterable[RawRecordSet | str] | RawRecordSet | str | None,
    config: object = Config,
) -> SpfAnalysisResult:
    """Evaluate the SPF TXT answer for one query name.

    Args:
        records: The TXT records returned for the name, each either a
            RawRecordSet (segments preserved) or a plain string.
        config: Configuration class or object supplying the limits.

    Returns:
        A fresh SpfAnalysisResult.  Malformed input never raises; it is
        reported through the flags and warnings.
    """
    record_sets = to_record_sets(records)
    if not record_sets:
        logger.debug("No SPF record supplied")
        return SpfAnalysisResult(warnings=("No SPF record found",))

    max_string = config.SPF_MAX_STRING_LENGTH
    max_total = config.SPF_MAX_TOTAL_LENGTH
    max_lookups = config.SPF_MAX_DNS_LOOKUPS

    warnings: list[str] = []

    distinct: list[str] = []
    for record_set in record_sets:
        if record_set.joined not in distinct:
            distinct.append(record_set.joined)
    multiple = len(distinct) > 1
    if multiple:
        warnings.append(
            f"Multiple SPF records found ({len(distinct)}); RFC 7208 requires exactly one"
        )

    # Length limits are checked on the raw character-strings
    segments = [segment for record_set in record_sets for segment in record_set.segments]
    exceeds_string = False
    for index, segment in enumerate(segments, start=1):
        if len(segment) > max_string:
            exceeds_string = True
            warnings.append(f"SPF record string {index} exceeds {max_string} characters")
    total_length = sum(len(segment) for segment in segments)
    exceeds_total = total_length > max_total
    if exceeds_total:
        warnings.append(f"SPF record length {total_length} exceeds {max_total} characters")

    spf_record = distinct[0] if len(distinct) == 1 else " ".join(distinct)
    starts_correctly = spf_record.lower().startswith("v=spf1")
    if not starts_correctly:
        warnings.append("SPF record does not start with v=spf1")

    terms = _tokenize(spf_record)

    lists: dict[str, list[str]] = {name: [] for name in _TARGET_MECHANISMS}
    dns_lookups: list[str] = []
    lookup_count = 0
    all_positions: list[int] = []
    has_null_lookups = False
    invalid_ip = False
    redirect_value: str | None = None
    exp_value: str | None = None
    unknown: list[str] = []

    for position, term in enumerate(terms):
        for problem in _macro_problems(term.raw):
            warnings.append(problem)

        if term.kind == "unknown":
            if term.raw not in unknown:
                unknown.append(term.raw)
            continue

        if term.kind == "modifier":
            if term.name == "redirect":
                redirect_value = term.value
            else:
                exp_value = term.value
            continue

        if term.name == "all":
            all_positions.append(position)
            continue

        lists[term.name].append(term.value)
        if term.name in _DNS_LOOKUP_MECHANISMS:
            lookup_count += 1
            if term.value and not term.value.startswith("/"):
                dns_lookups.append(term.value)
        if ":" in term.raw and not term.value:
            has_null_lookups = True
            warnings.append(f"SPF term {term.raw} has an empty target")
        if term.name in ("ip4", "ip6") and not _valid_network(term.value, term.name):
            invalid_ip = True
            warnings.append(f"Invalid {term.name} syntax: {term.value}")

    exceeds_lookups = lookup_count > max_lookups
    if exceeds_lookups:
        warnings.append(
            f"SPF record requires {lookup_count} DNS lookups which exceeds the limit of {max_lookups}"
        )

    all_mechanism = terms[all_positions[-1]].raw if all_positions else None
    multiple_all = len(all_positions) > 1
    if multiple_all:
        warnings.append("SPF record contains more than one 'all' mechanism")
    after_all = any(position != len(terms) - 1 for position in all_positions)
    if after_all:
        warnings.append("SPF record contains terms after the 'all' mechanism")

    if unknown:
        warnings.append(f"Unknown SPF terms: {', '.join(unknown)}")

    has_ptr = bool(lists["ptr"])
    if has_ptr:
        warnings.append("SPF uses the ptr mechanism, which RFC 7208 discourages")

    policy = _policy_for(terms[all_positions[-1]] if all_positions else None)
    if policy == "missing" and redirect_value is None:
        warnings.append("No 'all' mechanism found in SPF record")
    elif policy == "pass_all":
        warnings.append("SPF uses +all which allows any sender")
    elif policy == "soft_fail":
        warnings.append("SPF uses ~all (soft fail); consider upgrading to -all (hard fail)")
    elif policy == "neutral":
        warnings.append("SPF uses ?all (neutral); this provides no protection")

    status = _status_for(
        policy=policy,
        fatal=multiple or exceeds_lookups or not starts_correctly,
        has_warnings=bool(warnings),
        has_redirect=redirect_value is not None,
    )

    return SpfAnalysisResult(
        spf_record=spf_record,
        spf_records=tuple(record_set.joined for record_set in record_sets),
        spf_segments=tuple(segments),
        spf_record_exists=True,
        multiple_spf_records=multiple,
        starts_correctly=starts_correctly,
        exceeds_character_limit=exceeds_string,
        exceeds_total_character_limit=exceeds_total,
        terms=terms,
        dns_lookups=tuple(dns_lookups),
        dns_lookups_count=lookup_count,
        exceeds_dns_lookups=exceeds_lookups,
        all_mechanism=all_mechanism,
        multiple_all_mechanisms=multiple_all,
        contains_characters_after_all=after_all,
        has_ptr_type=has_ptr,
        has_null_lookups=has_null_lookups,
        has_redirect=redirect_value is not None,
        has_exp=exp_value is not None,
        invalid_ip_syntax=invalid_ip,
        a_records=tuple(lists["a"]),
        mx_records=tuple(lists["mx"]),
        ptr_records=tuple(lists["ptr"]),
        ipv4_records=tuple(lists["ip4"]),
        ipv6_records=tuple(lists["ip6"]),
        include_records=tuple(lists["include"]),
        exists_records=tuple(lists["exists"]),
        redirect_value=redirect_value,
        exp_value=exp_value,
        unknown_mechanisms=tuple(unknown),
        policy=policy,
        warnings=tuple(warnings),
        status=status,
    )


def _tokenize(spf_record: str) -> tuple[SpfTerm, ...]:
    """Split an SPF record on spaces and classify each token.

    The leading version token is not returned.
    """
    parts = [part for part in spf_record.split(" ") if part]
    if parts and parts[0].lower() == "v=spf1":
        parts = parts[1:]
    return tuple(_classify(part) for part in parts)


def _classify(token: str) -> SpfTerm:
    """Classify a single SPF token.

    Each term has a qualifier, a lowercase name and a value, which is the
    target after ":" or "=", or the "/cidr" suffix of a bare a/mx term.
    """
    # Modifiers never carry a qualifier and name the "=" before any ":"
    name, eq, value = token.partition("=")
    if eq and ":" not in name and "/" not in name and token[0] not in _QUALIFIERS:
        name = name.lower()
        kind = "modifier" if name in _MODIFIERS else "unknown"
        return SpfTerm(raw=token, kind=kind, name=name, value=value)

    qualifier = "+"
    body = token
    if body[0] in _QUALIFIERS:
        qualifier = body[0]
        body = body[1:]

    if ":" in body:
        name, _, value = body.partition(":")
    elif "/" in body:
        name, _, cidr = body.partition("/")
        value = f"/{cidr}"
    else:
        name, value = body, ""

    name = name.lower()
    if name in _MECHANISMS and not (name == "all" and value):
        return SpfTerm(raw=token, kind="mechanism", name=name, value=value, qualifier=qualifier)
    return SpfTerm(raw=token, kind="unknown", name=name, value=value, qualifier=qualifier)


def _valid_network(value: str, kind: str) -> bool:
    """Return True when *value* is an address with an optional prefix length."""
    address, sep, prefix = value.partition("/")
    # Zone indexes such as "fe80::1%eth0" are not SPF syntax
    if "%" in address:
        return False
    max_prefix = 32 if kind == "ip4" else 128
    try:
        parsed = ipaddress.ip_address(address)
    except ValueError:
        return False
    if parsed.max_prefixlen != max_prefix:
        return False
    if sep:
        if not (prefix.isascii() and prefix.isdigit()):
            return False
        return int(prefix) <= max_prefix
    return True


def _macro_problems(token: str) -> list[str]:
    """Return warnings for malformed macro expressions in *token*."""
    problems: list[str] = []
    index = token.find("%")
    while index != -1:
        following = token[index + 1:index + 2]
        if following in ("%", "_", "-"):
            index = token.find("%", index + 2)
            continue
        if following == "{":
            end = token.find("}", index + 2)
            if end == -1:
                problems.append(f"Invalid SPF macro syntax in token '{token}'")
                break
            macro = token[index:end + 1]
            if not _MACRO_RE.match(macro):
                problems.append(f"Invalid SPF macro syntax: {macro}")
            index = token.find("%", end + 1)
            continue
        problems.append(f"Invalid percent escape in token '{token}'")
        index = token.find("%", index + 1)
    return problems


def _policy_for(all_term: SpfTerm | None) -> str:
    """Determine the SPF policy from the 'all' mechanism qualifier.

    Returns one of: hard_fail, soft_fail, neutral, pass_all, missing.
    """
    if all_term is None:
        return "missing"
    return _ALL_POLICIES[all_term.qualifier]


def _status_for(policy: str, fatal: bool, has_warnings: bool, has_redirect: bool) -> str:
    """Map the evaluated flags to ok, warning or critical."""
    if fatal:
        return "critical"
    if policy == "missing" and has_redirect:
        status = "ok"
    else:
        status = _POLICY_STATUS[policy]
    if has_warnings:
        status = _worst_status(status, "warning")
    return status


def _worst_status(status_a: str, status_b: str) -> str:
    """Return the worse of two status values.

    Severity order: ok < warning < critical.
    """
    severity = {"ok": 0, "warning": 1, "critical": 2}
    if severity.get(status_a, 0) >= severity.get(status_b, 0):
        return status_a
    return status_b
