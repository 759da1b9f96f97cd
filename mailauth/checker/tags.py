"""
Shared record text handling for SPF, DKIM and DMARC.

DNS TXT answers arrive as one or more character-strings per record.  They
are kept as a :class:`RawRecordSet` so length limits can be checked per
string, and joined verbatim (no separator) before any tag parsing.

DKIM and DMARC records are ``tag=value`` lists separated by semicolons.
:func:`parse_tags` is the single tokenizer for that grammar.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import NamedTuple, Union


@dataclass(frozen=True)
class RawRecordSet:
    """The character-strings of a single TXT record, in wire order."""

    segments: tuple[str, ...] = ()

    @classmethod
    def from_text(cls, text: str) -> RawRecordSet:
        return cls(segments=(text,))

    @property
    def joined(self) -> str:
        return "".join(self.segments)


RecordInput = Union[str, RawRecordSet, Sequence[str], None]


class Tag(NamedTuple):
    key: str
    value: str


def to_record_sets(records: Iterable[RawRecordSet | str] | RawRecordSet | str | None) -> tuple[RawRecordSet, ...]:
    """Normalise a resolver answer into a tuple of RawRecordSet.

    Plain strings become single-segment records.  ``None`` means no answer.
    """
    if records is None:
        return ()
    if isinstance(records, (str, RawRecordSet)):
        records = [records]
    result: list[RawRecordSet] = []
    for record in records:
        if isinstance(record, RawRecordSet):
            result.append(record)
        elif isinstance(record, str):
            result.append(RawRecordSet.from_text(record))
    return tuple(result)


def record_text(record: RecordInput) -> str | None:
    """Return the joined text of a single record, or None when absent.

    Accepts a string, a RawRecordSet, or a sequence of character-strings
    belonging to one TXT record.
    """
    if record is None:
        return None
    if isinstance(record, str):
        return record
    if isinstance(record, RawRecordSet):
        return record.joined
    return "".join(record)


def parse_tags(record: str | None) -> tuple[Tag, ...]:
    """Split a joined record into an ordered sequence of tags.

    Segments are separated by ``;`` and split on the first ``=`` only, so
    values may themselves contain ``=`` (base64 padding).  Empty segments
    and segments without ``=`` are dropped.  Duplicate keys are kept.
    """
    if not record:
        return ()
    tags: list[Tag] = []
    for part in record.split(";"):
        part = part.strip()
        if not part or "=" not in part:
            continue
        key, _, value = part.partition("=")
        tags.append(Tag(key.strip(), value.strip()))
    return tuple(tags)


def tags_to_dict(tags: Iterable[Tag]) -> dict[str, str]:
    """Collapse tags into a dict keyed by lowercase tag name.

    When a key repeats, the last occurrence wins.
    """
    result: dict[str, str] = {}
    for key, value in tags:
        result[key.lower()] = value
    return result


def duplicate_tag_keys(tags: Iterable[Tag]) -> list[str]:
    """Return lowercase keys that occur more than once, in first-seen order."""
    seen: set[str] = set()
    duplicates: list[str] = []
    for key, _ in tags:
        lowered = key.lower()
        if lowered in seen and lowered not in duplicates:
            duplicates.append(lowered)
        seen.add(lowered)
    return duplicates
