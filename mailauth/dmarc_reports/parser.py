"""
DMARC aggregate report aggregation (RFC 7489 Appendix C).

Reads a ZIP-compressed aggregate report, streams the first XML document in
it and rolls the records up into per-domain pass/fail counters keyed by the
ASCII form of ``identifiers/header_from``.
"""

from __future__ import annotations

import io
import logging
import os
import zipfile
import xml.etree.ElementTree as ET
from collections.abc import Iterator
from dataclasses import dataclass
from typing import IO

from mailauth.utils.domain import normalize_domain

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DmarcFeedbackSummary:
    """Summarized DMARC feedback statistics for one domain."""

    domain: str
    pass_count: int = 0
    fail_count: int = 0

    @property
    def total_count(self) -> int:
        return self.pass_count + self.fail_count


def parse(path: str | os.PathLike[str]) -> Iterator[DmarcFeedbackSummary]:
    """Aggregate the DMARC report archive at *path* per header_from domain.

    The archive and its entry stream are closed before this function
    returns or raises, so the file can be reopened immediately.

    Args:
        path: Filesystem path of the ZIP archive.

    Returns:
        An iterator over DmarcFeedbackSummary ordered by domain.  An archive
        without an ``.xml`` entry yields nothing.

    Raises:
        OSError: If the file cannot be opened.
        zipfile.BadZipFile: If the file is not a readable ZIP archive.
        xml.etree.ElementTree.ParseError: If the report XML is malformed.
    """
    with zipfile.ZipFile(path) as archive:
        counters = _aggregate_archive(archive, str(path))
    return iter(_summaries(counters))


def parse_bytes(data: bytes) -> Iterator[DmarcFeedbackSummary]:
    """Aggregate an in-memory report archive, e.g. a mail attachment."""
    with zipfile.ZipFile(io.BytesIO(data)) as archive:
        counters = _aggregate_archive(archive, "<bytes>")
    return iter(_summaries(counters))


# ---------------------------------------------------------------------------
# Archive handling
# ---------------------------------------------------------------------------


def _aggregate_archive(archive: zipfile.ZipFile, label: str) -> dict[str, list[int]]:
    """Locate the report document in *archive* and aggregate it."""
    entry = _find_report_entry(archive)
    if entry is None:
        logger.info("No .xml entry in DMARC report archive %s", label)
        return {}

    logger.debug("Reading %s from DMARC report archive %s", entry.filename, label)
    with archive.open(entry) as stream:
        return _aggregate_stream(stream)


def _find_report_entry(archive: zipfile.ZipFile) -> zipfile.ZipInfo | None:
    """Return the first entry whose name ends in .xml (case-insensitive)."""
    for info in archive.infolist():
        if info.filename.lower().endswith(".xml"):
            return info
    return None


# ---------------------------------------------------------------------------
# XML parsing
# ---------------------------------------------------------------------------


def _aggregate_stream(stream: IO[bytes]) -> dict[str, list[int]]:
    """Stream <record> elements and count pass/fail per normalized domain.

    Counters are ``[pass_count, fail_count]`` lists keyed by domain.
    """
    counters: dict[str, list[int]] = {}
    skipped = 0

    for _, element in ET.iterparse(stream, events=("end",)):
        # Some reporters declare a default namespace; match on local names
        if "}" in element.tag:
            element.tag = element.tag.split("}", 1)[1]
        if element.tag != "record":
            continue

        header_from = _text(element.find("identifiers"), "header_from")
        if not header_from:
            skipped += 1
            element.clear()
            continue

        try:
            domain = normalize_domain(header_from)
        except ValueError as exc:
            logger.debug("Skipping record with unusable header_from %r: %s", header_from, exc)
            skipped += 1
            element.clear()
            continue

        policy_eval = element.find("row/policy_evaluated")
        dkim_eval = _text(policy_eval, "dkim") or ""
        spf_eval = _text(policy_eval, "spf") or ""
        passed = dkim_eval.lower() == "pass" or spf_eval.lower() == "pass"

        counter = counters.setdefault(domain, [0, 0])
        counter[0 if passed else 1] += 1
        element.clear()

    if skipped:
        logger.info("Skipped %d DMARC report records without a usable header_from", skipped)
    return counters


def _summaries(counters: dict[str, list[int]]) -> list[DmarcFeedbackSummary]:
    return [
        DmarcFeedbackSummary(domain=domain, pass_count=counts[0], fail_count=counts[1])
        for domain, counts in sorted(counters.items())
    ]


def _text(element: ET.Element | None, tag: str) -> str | None:
    """Return stripped text of a child element, or None."""
    if element is None:
        return None
    child = element.find(tag)
    if child is None or child.text is None:
        return None
    return child.text.strip()
