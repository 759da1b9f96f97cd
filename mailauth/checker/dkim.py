"""
DKIM key record validation.

Validates a DKIM public key record (RFC 6376 section 3.6.1) published at
{selector}._domainkey.{domain}:
- Parses record tags (v=, k=, p=, h=, s=, t=, c=)
- Decodes the public key and measures RSA key size using the cryptography
  library; Ed25519 keys (RFC 8463) are loaded from their raw 32 bytes
- Detects revoked keys (empty p=) and testing mode (t=y)
- Flags weak or unusual key sizes and keys older than the configured age

Each call returns one immutable DkimKeyRecord.  A view over several selectors
is a plain dict built by :func:`evaluate_selectors`.
"""

from __future__ import annotations

import base64
import binascii
import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType

from cryptography.hazmat.primitives.asymmetric import ed25519, rsa
from cryptography.hazmat.primitives.serialization import load_der_public_key

from mailauth.checker.tags import RecordInput, Tag, duplicate_tag_keys, parse_tags, record_text, tags_to_dict
from mailauth.config import Config

logger = logging.getLogger(__name__)

_VALID_CANONICALIZATIONS = frozenset({
    "simple",
    "relaxed",
    "simple/relaxed",
    "relaxed/simple",
    "simple/simple",
    "relaxed/relaxed",
})

_FLAG_LETTERS = frozenset({"y", "s"})
_HASH_ALGORITHMS = frozenset({"sha1", "sha256"})
_SERVICE_TYPES = frozenset({"*", "email"})

# Dates embedded in selectors such as "s20230115", "google2023-01" or "202301"
_SELECTOR_DATE_RE = re.compile(
    r"(?<!\d)(19[9]\d|20\d\d)-?(0[1-9]|1[0-2])(?:-?(0[1-9]|[12]\d|3[01]))?(?!\d)"
)


@dataclass(frozen=True)
class DkimKeyRecord:
    """Immutable outcome of validating one DKIM selector record."""

    selector: str
    dkim_record: str | None = None
    dkim_record_exists: bool = False
    tags: tuple[Tag, ...] = ()
    starts_correctly: bool = False
    public_key: str | None = None
    public_key_exists: bool = False
    key_revoked: bool = False
    key_type: str = "rsa"
    key_type_exists: bool = False
    key_bytes: bytes | None = None
    valid_public_key: bool = False
    key_length: int | None = None
    weak_key: bool = False
    valid_rsa_key_length: bool = False
    hash_algorithms: tuple[str, ...] = ()
    valid_hash_algorithms: bool = True
    service_types: tuple[str, ...] = ("*",)
    valid_service_type: bool = True
    flags: str | None = None
    valid_flags: bool = True
    unknown_flag_characters: tuple[str, ...] = ()
    test_mode: bool = False
    canonicalization: str | None = None
    valid_canonicalization: bool = True
    creation_date: datetime | None = None
    old_key: bool = False
    warnings: tuple[str, ...] = ()
    status: str = "critical"
    tag_map: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))


def evaluate_dkim(
    selector: str,
    record: RecordInput,
    config: object = Config,
    now: datetime | None = None,
) -> DkimKeyRecord:
    """Validate the DKIM key record published for *selector*.

    Args:
        selector: The DKIM selector the record was fetched for.
        record: The joined TXT record, a RawRecordSet, the record's
            character-strings, or None when nothing was published.
        config: Configuration class or object supplying key thresholds.
        now: Reference time for the key age check; defaults to the current
            UTC time.

    Returns:
        A fresh DkimKeyRecord.  Malformed records never raise.
    """
    text = record_text(record)
    if text is None or not text.strip():
        logger.debug("No DKIM record for selector %s", selector)
        return DkimKeyRecord(selector=selector, warnings=(f"Selector {selector} has no DKIM record",))

    warnings: list[str] = []
    tags = parse_tags(text)
    tag_map = tags_to_dict(tags)
    for key in duplicate_tag_keys(tags):
        warnings.append(f"Tag {key}= appears more than once; the last value is used")

    starts_correctly = text.startswith("v=DKIM1")
    v_tag = tag_map.get("v")
    if v_tag is None:
        warnings.append("DKIM record has no v=DKIM1 version tag")
    elif v_tag != "DKIM1":
        warnings.append(f"Unexpected DKIM version: v={v_tag}")

    key_type_exists = "k" in tag_map
    key_type = (tag_map.get("k") or "rsa").lower()

    t_tag = tag_map.get("t")
    flag_chars = [char for char in (t_tag or "").lower() if char not in ": \t"]
    unknown_flags = tuple(dict.fromkeys(char for char in flag_chars if char not in _FLAG_LETTERS))
    test_mode = "y" in flag_chars
    if unknown_flags:
        warnings.append(f"Unknown DKIM flag characters: {''.join(unknown_flags)}")
    if test_mode:
        warnings.append("DKIM key is in testing mode (t=y)")

    hash_algorithms = _split_list(tag_map.get("h"))
    valid_hashes = all(algorithm in _HASH_ALGORITHMS for algorithm in hash_algorithms)
    if not valid_hashes:
        warnings.append(f"Unknown DKIM hash algorithm in h={tag_map.get('h')}")

    service_types = _split_list(tag_map.get("s")) or ("*",)
    valid_service = all(service in _SERVICE_TYPES for service in service_types)
    if not valid_service:
        warnings.append(f"Unknown DKIM service type in s={tag_map.get('s')}")

    canonicalization = tag_map.get("c")
    valid_canonicalization = canonicalization is None or canonicalization.lower() in _VALID_CANONICALIZATIONS
    if not valid_canonicalization:
        warnings.append(f"Invalid canonicalization c={canonicalization}")

    public_key = tag_map.get("p")
    public_key_exists = bool(public_key)
    key_revoked = public_key == ""
    if public_key is None:
        warnings.append("DKIM record has no p= public key tag")
    elif key_revoked:
        warnings.append("DKIM key has been revoked (empty p= value)")

    key_bytes: bytes | None = None
    key_length: int | None = None
    if public_key_exists:
        key_bytes = _decode_key(public_key)
        if key_bytes is None:
            warnings.append("DKIM public key is not valid base64")
        else:
            key_length = _measure_key_size(key_bytes, key_type)
            if key_length is None:
                warnings.append(f"DKIM public key could not be parsed as a {key_type} key")

    valid_public_key = key_length is not None
    is_rsa = key_type == "rsa"
    weak_key = valid_public_key and is_rsa and key_length < config.DKIM_WEAK_KEY_BITS
    valid_rsa_length = valid_public_key and is_rsa and key_length in config.DKIM_ACCEPTED_RSA_KEY_LENGTHS
    if weak_key:
        warnings.append(
            f"DKIM key size is {key_length} bits; consider upgrading to "
            f"{config.DKIM_WEAK_KEY_BITS}+ bits"
        )
    if valid_public_key and is_rsa and not valid_rsa_length:
        warnings.append(f"DKIM key size {key_length} is not a standard RSA key length")

    creation_date = _creation_date(selector, tag_map, config)
    old_key = False
    if creation_date is not None:
        reference = now or datetime.now(timezone.utc)
        old_key = _add_months(creation_date, config.DKIM_MAX_KEY_AGE_MONTHS) < reference
        if old_key:
            warnings.append(
                f"DKIM key dates from {creation_date.date().isoformat()}; "
                f"rotate keys at least every {config.DKIM_MAX_KEY_AGE_MONTHS} months"
            )

    if not valid_public_key:
        status = "critical"
    elif weak_key and key_length < 1024:
        status = "critical"
    elif warnings or not starts_correctly:
        status = "warning"
    else:
        status = "ok"

    return DkimKeyRecord(
        selector=selector,
        dkim_record=text,
        dkim_record_exists=True,
        tags=tags,
        starts_correctly=starts_correctly,
        public_key=public_key,
        public_key_exists=public_key_exists,
        key_revoked=key_revoked,
        key_type=key_type,
        key_type_exists=key_type_exists,
        key_bytes=key_bytes,
        valid_public_key=valid_public_key,
        key_length=key_length,
        weak_key=weak_key,
        valid_rsa_key_length=valid_rsa_length,
        hash_algorithms=hash_algorithms,
        valid_hash_algorithms=valid_hashes,
        service_types=service_types,
        valid_service_type=valid_service,
        flags=t_tag,
        valid_flags=not unknown_flags,
        unknown_flag_characters=unknown_flags,
        test_mode=test_mode,
        canonicalization=canonicalization,
        valid_canonicalization=valid_canonicalization,
        creation_date=creation_date,
        old_key=old_key,
        warnings=tuple(warnings),
        status=status,
        tag_map=MappingProxyType(tag_map),
    )


def evaluate_selectors(
    records: Mapping[str, RecordInput],
    config: object = Config,
    now: datetime | None = None,
) -> dict[str, DkimKeyRecord]:
    """Validate several selectors, returning selector -> DkimKeyRecord."""
    return {
        selector: evaluate_dkim(selector, record, config=config, now=now)
        for selector, record in records.items()
    }


def _split_list(value: str | None) -> tuple[str, ...]:
    """Split a colon-separated DKIM tag list into lowercase items."""
    if not value:
        return ()
    return tuple(item.strip().lower() for item in value.split(":") if item.strip())


def _decode_key(p_value: str) -> bytes | None:
    """Decode the base64 p= value, ignoring embedded whitespace."""
    clean_b64 = "".join(p_value.split())
    try:
        return base64.b64decode(clean_b64, validate=True)
    except (binascii.Error, ValueError) as exc:
        logger.debug("Failed to decode DKIM p= base64: %s", exc)
        return None


def _measure_key_size(der_bytes: bytes, key_type: str) -> int | None:
    """Load the decoded public key and return its size in bits.

    Args:
        der_bytes: The decoded p= value.
        key_type: The key algorithm from k= (rsa, ed25519).

    Returns:
        Key size in bits, or None if the bytes are not a key of that type.
    """
    if key_type == "ed25519":
        try:
            ed25519.Ed25519PublicKey.from_public_bytes(der_bytes)
        except ValueError as exc:
            logger.debug("Failed to load Ed25519 public key: %s", exc)
            return None
        return 256

    if key_type != "rsa":
        logger.debug("Unsupported DKIM key type %s", key_type)
        return None

    try:
        public_key = load_der_public_key(der_bytes)
    except (ValueError, TypeError) as exc:
        logger.debug("Failed to load DER public key: %s", exc)
        return None
    if not isinstance(public_key, rsa.RSAPublicKey):
        logger.debug("DKIM k=rsa record holds a %s key", type(public_key).__name__)
        return None
    return public_key.key_size


def _creation_date(selector: str, tag_map: Mapping[str, str], config: object) -> datetime | None:
    """Derive when the key was published, if the operator left a hint.

    Extension tags named in DKIM_CREATION_DATE_TAGS are tried first (unix
    timestamp or ISO date), then a date embedded in the selector name.
    """
    for tag_name in config.DKIM_CREATION_DATE_TAGS:
        value = tag_map.get(tag_name.lower())
        if not value:
            continue
        parsed = _parse_date_value(value)
        if parsed is not None:
            return parsed

    match = _SELECTOR_DATE_RE.search(selector)
    if match is None:
        return None
    year, month, day = match.group(1), match.group(2), match.group(3) or "01"
    try:
        return datetime(int(year), int(month), int(day), tzinfo=timezone.utc)
    except ValueError:
        # e.g. "20230231"
        return None


def _parse_date_value(value: str) -> datetime | None:
    if value.isdigit():
        try:
            return datetime.fromtimestamp(int(value), tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _add_months(moment: datetime, months: int) -> datetime:
    """Shift *moment* forward by whole calendar months, clamping the day."""
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, _days_in_month(year, month))
    return moment.replace(year=year, month=month, day=day)


def _days_in_month(year: int, month: int) -> int:
    if month == 12:
        return 31
    return (datetime(year, month + 1, 1) - datetime(year, month, 1)).days
