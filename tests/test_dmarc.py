"""
Unit tests for mailauth/checker/dmarc.py

Records are passed in directly and external report authorization uses a
fake authorizer, so no DNS resolution occurs.
"""

from __future__ import annotations

import pytest

from mailauth.checker.dmarc import evaluate_dmarc
from mailauth.checker.tags import RawRecordSet
from mailauth.config import Config


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class FakeAuthorizer:
    """Records calls and authorizes only the configured domains."""

    def __init__(self, *authorized: str) -> None:
        self.authorized = set(authorized)
        self.calls: list[tuple[str, str]] = []

    def __call__(self, own_domain: str, external_domain: str) -> bool:
        self.calls.append((own_domain, external_domain))
        return external_domain in self.authorized


# ---------------------------------------------------------------------------
# Tests - policy tags
# ---------------------------------------------------------------------------


def test_dmarc_reject_with_strict_alignment():
    result = evaluate_dmarc("v=DMARC1; p=reject; rua=mailto:a@x.com,mailto:b@y.com; adkim=s; aspf=s;")

    assert result.dmarc_record_exists is True
    assert result.starts_correctly is True
    assert result.policy == "reject"
    assert result.mailto_rua == ("a@x.com", "b@y.com")
    assert result.dkim_alignment == "s"
    assert result.spf_alignment == "s"
    assert result.pct == 100
    assert result.is_pct_valid is True
    assert result.status == "ok"


def test_dmarc_policy_none_is_warning():
    result = evaluate_dmarc("v=DMARC1; p=none; rua=mailto:dmarc@example.com")

    assert result.is_policy_valid is True
    assert result.status == "warning"
    assert any("p=none" in w for w in result.warnings)


def test_dmarc_missing_policy_is_critical():
    result = evaluate_dmarc("v=DMARC1; rua=mailto:dmarc@example.com")

    assert result.policy is None
    assert result.has_mandatory_tags is False
    assert result.is_policy_valid is False
    assert result.status == "critical"


def test_dmarc_unknown_policy_value():
    result = evaluate_dmarc("v=DMARC1; p=block")

    assert result.is_policy_valid is False
    assert result.status == "critical"


def test_dmarc_policy_values_are_case_insensitive():
    result = evaluate_dmarc("v=DMARC1; p=REJECT")

    assert result.policy == "reject"
    assert result.is_policy_valid is True


def test_dmarc_subdomain_policy_inherits_policy():
    result = evaluate_dmarc("v=DMARC1; p=quarantine")

    assert result.sub_policy == "quarantine"


def test_dmarc_explicit_subdomain_policy():
    result = evaluate_dmarc("v=DMARC1; p=reject; sp=none")

    assert result.sub_policy == "none"
    assert result.is_policy_valid is True
    assert any("sp=none" in w for w in result.warnings)


def test_dmarc_invalid_subdomain_policy():
    result = evaluate_dmarc("v=DMARC1; p=reject; sp=maybe")

    assert result.is_policy_valid is False


def test_dmarc_duplicate_tags_last_wins():
    result = evaluate_dmarc("v=DMARC1; p=none; p=reject")

    assert result.policy == "reject"
    assert any("appears more than once" in w for w in result.warnings)


# ---------------------------------------------------------------------------
# Tests - pct, alignment, fo and ri
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    ("value", "expected_pct", "expected_valid"),
    [
        ("50", 50, True),
        ("0", 0, True),
        ("100", 100, True),
        ("150", 100, False),
        ("-5", 0, False),
        ("abc", 100, False),
        ("", 100, False),
        ("5_0", 100, False),
        ("+50", 100, False),
    ],
)
def test_dmarc_pct(value, expected_pct, expected_valid):
    result = evaluate_dmarc(f"v=DMARC1; p=reject; pct={value}")

    assert result.pct == expected_pct
    assert result.is_pct_valid is expected_valid


def test_dmarc_invalid_pct_is_not_fatal():
    result = evaluate_dmarc("v=DMARC1; p=reject; pct=150; rua=mailto:d@example.com")

    assert result.status == "warning"


def test_dmarc_alignment_defaults_to_relaxed():
    result = evaluate_dmarc("v=DMARC1; p=reject")

    assert result.dkim_alignment == "r"
    assert result.spf_alignment == "r"
    assert result.is_alignment_valid is True


def test_dmarc_invalid_alignment():
    result = evaluate_dmarc("v=DMARC1; p=reject; adkim=x")

    assert result.dkim_alignment == "x"
    assert result.is_alignment_valid is False


def test_dmarc_failure_reporting_options():
    valid = evaluate_dmarc("v=DMARC1; p=reject; fo=1:d")
    invalid = evaluate_dmarc("v=DMARC1; p=reject; fo=2")

    assert valid.failure_reporting_options == ("1", "d")
    assert valid.is_failure_reporting_valid is True
    assert invalid.is_failure_reporting_valid is False


def test_dmarc_reporting_interval():
    default = evaluate_dmarc("v=DMARC1; p=reject")
    hourly = evaluate_dmarc("v=DMARC1; p=reject; ri=3600")
    invalid = evaluate_dmarc("v=DMARC1; p=reject; ri=daily")

    assert default.reporting_interval == 86400
    assert hourly.reporting_interval == 3600
    assert invalid.is_reporting_interval_valid is False


@pytest.mark.parametrize("value", ["+3600", "3_600", "\u00b2", "-1"])
def test_dmarc_reporting_interval_requires_plain_digits(value):
    result = evaluate_dmarc(f"v=DMARC1; p=reject; ri={value}")

    assert result.reporting_interval == 86400
    assert result.is_reporting_interval_valid is False


# ---------------------------------------------------------------------------
# Tests - report URIs
# ---------------------------------------------------------------------------


def test_dmarc_report_uri_size_limits():
    result = evaluate_dmarc(
        "v=DMARC1; p=reject; rua=mailto:agg@example.com!10m,mailto:small@example.com!500"
    )

    assert result.mailto_rua == ("agg@example.com", "small@example.com")
    assert [uri.size_limit for uri in result.report_uris] == [10 * 1024 * 1024, 500]
    assert result.invalid_report_uri is False


def test_dmarc_http_report_uris():
    result = evaluate_dmarc(
        "v=DMARC1; p=reject; rua=https://reports.example.net/dmarc!1g; ruf=mailto:forensic@example.com"
    )

    assert result.http_rua == ("https://reports.example.net/dmarc",)
    assert result.mailto_rua == ()
    assert result.mailto_ruf == ("forensic@example.com",)
    assert result.report_uris[0].domain == "reports.example.net"
    assert result.report_uris[0].size_limit == 1024 ** 3


def test_dmarc_report_uris_keep_order_and_kind():
    result = evaluate_dmarc(
        "v=DMARC1; p=reject; rua=mailto:a@example.com; ruf=mailto:b@example.com,https://f.example.com/r"
    )

    assert [(uri.kind, uri.scheme) for uri in result.report_uris] == [
        ("aggregate", "mailto"),
        ("forensic", "mailto"),
        ("forensic", "http"),
    ]
    assert result.http_ruf == ("https://f.example.com/r",)


@pytest.mark.parametrize(
    "uri",
    ["ftp://reports.example.com", "mailto:no-at-sign", "mailto:@example.com", "justtext", "mailto:a@example.com!10x"],
)
def test_dmarc_invalid_report_uri(uri):
    result = evaluate_dmarc(f"v=DMARC1; p=reject; rua={uri}")

    assert result.invalid_report_uri is True
    assert result.mailto_rua == ()
    assert result.status == "warning"


def test_dmarc_forensic_without_aggregate_warns():
    result = evaluate_dmarc("v=DMARC1; p=reject; ruf=mailto:f@example.com")

    assert any("rua= (aggregate reports) is missing" in w for w in result.warnings)


# ---------------------------------------------------------------------------
# Tests - external report authorization
# ---------------------------------------------------------------------------


def test_dmarc_external_destinations_are_checked_once_each():
    authorizer = FakeAuthorizer("vendor.net")
    record = (
        "v=DMARC1; p=reject; "
        "rua=mailto:a@example.com,mailto:b@sub.example.com,mailto:c@vendor.net,mailto:d@Vendor.net; "
        "ruf=mailto:e@other.org"
    )

    result = evaluate_dmarc(record, domain="example.com", authorizer=authorizer)

    assert authorizer.calls == [("example.com", "vendor.net"), ("example.com", "other.org")]
    assert dict(result.external_report_authorization) == {"vendor.net": True, "other.org": False}
    assert result.invalid_report_uri is True
    assert any("other.org has not authorized" in w for w in result.warnings)


def test_dmarc_all_external_destinations_authorized():
    authorizer = FakeAuthorizer("vendor.net")

    result = evaluate_dmarc(
        "v=DMARC1; p=reject; rua=mailto:dmarc@vendor.net",
        domain="example.com",
        authorizer=authorizer,
    )

    assert dict(result.external_report_authorization) == {"vendor.net": True}
    assert result.invalid_report_uri is False
    assert result.status == "ok"


def test_dmarc_failing_authorizer_counts_as_unauthorized():
    def authorizer(own_domain, external_domain):
        raise RuntimeError("resolver unavailable")

    result = evaluate_dmarc(
        "v=DMARC1; p=reject; rua=mailto:dmarc@vendor.net",
        domain="example.com",
        authorizer=authorizer,
    )

    assert dict(result.external_report_authorization) == {"vendor.net": False}
    assert result.invalid_report_uri is True


def test_dmarc_without_authorizer_makes_no_checks():
    result = evaluate_dmarc("v=DMARC1; p=reject; rua=mailto:dmarc@vendor.net", domain="example.com")

    assert dict(result.external_report_authorization) == {}
    assert result.invalid_report_uri is False


def test_dmarc_without_domain_makes_no_checks():
    authorizer = FakeAuthorizer()

    result = evaluate_dmarc("v=DMARC1; p=reject; rua=mailto:dmarc@vendor.net", authorizer=authorizer)

    assert authorizer.calls == []
    assert dict(result.external_report_authorization) == {}


def test_dmarc_authorization_map_is_read_only():
    result = evaluate_dmarc(
        "v=DMARC1; p=reject; rua=mailto:dmarc@vendor.net",
        domain="example.com",
        authorizer=FakeAuthorizer("vendor.net"),
    )

    with pytest.raises(TypeError):
        result.external_report_authorization["vendor.net"] = False  # type: ignore[index]


# ---------------------------------------------------------------------------
# Tests - record shape
# ---------------------------------------------------------------------------


def test_dmarc_record_over_255_characters():
    addresses = ",".join(f"mailto:dmarc-reports-{n}@example.com" for n in range(10))
    result = evaluate_dmarc(f"v=DMARC1; p=reject; rua={addresses}")

    assert result.exceeds_character_limit is True


def test_dmarc_length_limit_is_configurable():
    class TinyConfig(Config):
        DMARC_MAX_RECORD_LENGTH = 10

    result = evaluate_dmarc("v=DMARC1; p=reject", config=TinyConfig)

    assert result.exceeds_character_limit is True


def test_dmarc_segmented_record_is_joined():
    result = evaluate_dmarc(RawRecordSet(segments=("v=DMARC1; p=rej", "ect")))

    assert result.policy == "reject"


def test_dmarc_version_not_first():
    result = evaluate_dmarc("p=reject; v=DMARC1")

    assert result.starts_correctly is False
    assert result.has_mandatory_tags is False
    assert result.status == "critical"


@pytest.mark.parametrize("record", [None, "", "  "])
def test_dmarc_absent_record(record):
    result = evaluate_dmarc(record, domain="example.com")

    assert result.dmarc_record_exists is False
    assert result.domain == "example.com"
    assert result.invalid_report_uri is False


@pytest.mark.parametrize("record", ["garbage", ";;=;", "v=DMARC1; rua=,,,; ruf=!; pct=; ri=-1", "v=DMARC1; rua=https://[::1"])
def test_dmarc_malformed_record_never_raises(record):
    result = evaluate_dmarc(record, domain="example.com", authorizer=FakeAuthorizer())

    assert result.dmarc_record_exists is True
