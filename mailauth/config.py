"""
Configuration module for the mail authentication analyzer.

Loads thresholds and resolver settings from environment variables with
sensible defaults.  The numeric limits are operational policy rather than
protocol mandates, so every evaluator takes a ``config`` argument and tests
override values by subclassing :class:`Config`.
"""

import os


def _int_list(value: str) -> tuple[int, ...]:
    return tuple(int(item) for item in value.split(",") if item.strip())


def _str_list(value: str) -> tuple[str, ...]:
    return tuple(item.strip() for item in value.split(",") if item.strip())


class Config:
    """Base configuration shared by all evaluators."""

    # SPF (RFC 7208 section 4.6.4 caps lookups at 10)
    SPF_MAX_DNS_LOOKUPS: int = int(os.environ.get("MAILAUTH_SPF_MAX_DNS_LOOKUPS", "10"))
    SPF_MAX_STRING_LENGTH: int = int(os.environ.get("MAILAUTH_SPF_MAX_STRING_LENGTH", "255"))
    SPF_MAX_TOTAL_LENGTH: int = int(os.environ.get("MAILAUTH_SPF_MAX_TOTAL_LENGTH", "2048"))

    # DKIM
    DKIM_WEAK_KEY_BITS: int = int(os.environ.get("MAILAUTH_DKIM_WEAK_KEY_BITS", "2048"))
    DKIM_ACCEPTED_RSA_KEY_LENGTHS: tuple[int, ...] = _int_list(
        os.environ.get("MAILAUTH_DKIM_ACCEPTED_RSA_KEY_LENGTHS", "1024,2048,3072,4096")
    )
    DKIM_MAX_KEY_AGE_MONTHS: int = int(os.environ.get("MAILAUTH_DKIM_MAX_KEY_AGE_MONTHS", "12"))
    # Non-standard tags some operators publish to record when a key was rotated
    DKIM_CREATION_DATE_TAGS: tuple[str, ...] = _str_list(
        os.environ.get("MAILAUTH_DKIM_CREATION_DATE_TAGS", "ts")
    )

    # DMARC
    DMARC_MAX_RECORD_LENGTH: int = int(os.environ.get("MAILAUTH_DMARC_MAX_RECORD_LENGTH", "255"))

    # Resolver collaborator
    DNS_NAMESERVERS: tuple[str, ...] = _str_list(
        os.environ.get("MAILAUTH_DNS_NAMESERVERS", "8.8.8.8,1.1.1.1")
    )
    DNS_TIMEOUT_SECONDS: float = float(os.environ.get("MAILAUTH_DNS_TIMEOUT_SECONDS", "5.0"))
    DNS_RETRIES: int = int(os.environ.get("MAILAUTH_DNS_RETRIES", "2"))

    # Logging
    LOG_LEVEL: str = os.environ.get("MAILAUTH_LOG_LEVEL", "INFO").upper()
