"""
Shared pytest fixtures for the mail authentication analyzer test suite.

Fixtures build real key material with the cryptography library and write
report archives under pytest's tmp_path, so no network access or checked-in
binary fixtures are needed.
"""

from __future__ import annotations

import base64
import zipfile
from pathlib import Path

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ed25519, rsa


# ---------------------------------------------------------------------------
# Key material
# ---------------------------------------------------------------------------


def _rsa_spki_b64(bits: int) -> str:
    """Return a base64 SubjectPublicKeyInfo for a fresh RSA key of *bits*."""
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=bits)
    der = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return base64.b64encode(der).decode("ascii")


@pytest.fixture(scope="session")
def rsa_1024_b64() -> str:
    return _rsa_spki_b64(1024)


@pytest.fixture(scope="session")
def rsa_1536_b64() -> str:
    return _rsa_spki_b64(1536)


@pytest.fixture(scope="session")
def rsa_2048_b64() -> str:
    return _rsa_spki_b64(2048)


@pytest.fixture(scope="session")
def ed25519_raw_b64() -> str:
    """Base64 of a raw 32-byte Ed25519 public key (RFC 8463 form)."""
    public_key = ed25519.Ed25519PrivateKey.generate().public_key()
    raw = public_key.public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )
    return base64.b64encode(raw).decode("ascii")


@pytest.fixture(scope="session")
def ed25519_spki_b64() -> str:
    """Base64 SubjectPublicKeyInfo of an Ed25519 key (not an RSA key)."""
    public_key = ed25519.Ed25519PrivateKey.generate().public_key()
    der = public_key.public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return base64.b64encode(der).decode("ascii")


# ---------------------------------------------------------------------------
# Report archives
# ---------------------------------------------------------------------------


@pytest.fixture
def make_report_zip(tmp_path: Path):
    """Return a factory writing a ZIP archive with the given entries.

    Usage: ``make_report_zip({"report.xml": b"<feedback/>"})`` returns the
    archive path.
    """
    counter = {"n": 0}

    def _make(entries: dict[str, bytes], name: str | None = None) -> Path:
        counter["n"] += 1
        path = tmp_path / (name or f"report{counter['n']}.zip")
        with zipfile.ZipFile(path, "w", compression=zipfile.ZIP_DEFLATED) as archive:
            for entry_name, data in entries.items():
                archive.writestr(entry_name, data)
        return path

    return _make
