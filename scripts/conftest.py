# @file
#
# Copyright (c) Microsoft Corporation.
# SPDX-License-Identifier: BSD-2-Clause-Patent
##
"""Shared fixtures: in-memory certificate directories and signing services."""

import struct
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

import pytest
from certificate_resolver import SigningCertificate, normalize_thumbprint
from file_selector import FileTarget
from signing_errors import CertificateLookupError
from signing_service import SignatureStatus, SigningResult


def make_certificate(fingerprint: str = "AA" * 20, days: int = 365, subject: str = "CN=Test Signer") -> SigningCertificate:
    """Create a SigningCertificate without touching a real store."""
    return SigningCertificate(
        fingerprint=fingerprint,
        not_valid_after=datetime.now(timezone.utc) + timedelta(days=days),
        subject=subject,
        issuer="CN=Test CA",
        location=f"memory://{fingerprint}",
    )


class FakeCertificateDirectory:
    """Certificate directory holding certificates in memory."""

    def __init__(
        self,
        certificates: Optional[List[SigningCertificate]] = None,
        fail_fingerprint_lookup: bool = False,
    ) -> None:
        self.certificates = list(certificates or [])
        self.fail_fingerprint_lookup = fail_fingerprint_lookup
        self.queries = []

    def find_by_fingerprint(self, fingerprint: str) -> List[SigningCertificate]:
        self.queries.append(("fingerprint", fingerprint))
        if self.fail_fingerprint_lookup:
            raise CertificateLookupError("store unreadable")
        wanted = normalize_thumbprint(fingerprint)
        return [c for c in self.certificates if c.fingerprint == wanted]

    def find_code_signing_capable(self) -> List[SigningCertificate]:
        self.queries.append(("code_signing", None))
        return list(self.certificates)


class FakeSigningService:
    """Signing service that records calls and tracks which files are signed.

    Attributes:
        statuses: Signature status per resolved path; missing paths are NOT_SIGNED.
        failing_authorities: Authorities whose sign calls fail.
        fail_untimestamped: When True, signing without an authority fails.
        failing_files: Files whose sign calls always fail.
        calls: (path, authority) for every sign call, in order.
    """

    def __init__(self) -> None:
        self.statuses: Dict[str, SignatureStatus] = {}
        self.failing_authorities = set()
        self.failing_files = set()
        self.fail_untimestamped = False
        self.calls = []
        self.inspected = []

    def mark_signed(self, file: FileTarget) -> None:
        self.statuses[str(file.resolved)] = SignatureStatus.VALID

    def sign(
        self, file: FileTarget, cert: SigningCertificate, timestamp_authority: Optional[str] = None
    ) -> SigningResult:
        self.calls.append((str(file.resolved), timestamp_authority))
        if str(file.resolved) in self.failing_files:
            return SigningResult.failed("file is locked", timestamp_authority)
        if timestamp_authority is None and self.fail_untimestamped:
            return SigningResult.failed("signing failed")
        if timestamp_authority in self.failing_authorities:
            return SigningResult.failed("timestamp server unavailable", timestamp_authority)
        self.mark_signed(file)
        return SigningResult.ok(timestamp_authority)

    def inspect_signature_status(self, file: FileTarget) -> SignatureStatus:
        self.inspected.append(str(file.resolved))
        return self.statuses.get(str(file.resolved), SignatureStatus.NOT_SIGNED)


@pytest.fixture
def certificate() -> SigningCertificate:
    """A valid signing certificate."""
    return make_certificate()


@pytest.fixture
def service() -> FakeSigningService:
    """A fake signing service where every call succeeds."""
    return FakeSigningService()


@pytest.fixture
def cert_factory():
    """Factory for in-memory signing certificates."""
    return make_certificate


@pytest.fixture
def directory_factory():
    """Factory for in-memory certificate directories."""
    return FakeCertificateDirectory


def build_pe(certificate_table: Optional[bytes] = None) -> bytes:
    """Build a minimal PE32 image, optionally with a certificate table appended."""
    dos_header = b"MZ" + b"\x00" * 58 + struct.pack("<I", 0x40)
    file_header = struct.pack("<HHIIIHH", 0x14C, 0, 0, 0, 0, 224, 0x0102)
    optional_header = struct.pack(
        "<HBBIIIIIIIIIHHHHHHIIIIHHIIIIII",
        0x10B, 14, 0, 0, 0, 0, 0, 0, 0, 0x400000, 0x1000, 0x200,
        6, 0, 0, 0, 6, 0, 0, 0x1000, 0x200, 0, 3, 0,
        0x100000, 0x1000, 0x100000, 0x1000, 0, 16,
    )
    directories = [(0, 0)] * 16
    if certificate_table is not None:
        directories[4] = (0x200, len(certificate_table))
    optional_header += b"".join(struct.pack("<II", va, size) for va, size in directories)

    image = dos_header + b"PE\x00\x00" + file_header + optional_header
    image += b"\x00" * (0x200 - len(image))
    if certificate_table is not None:
        image += certificate_table
    return image


def win_certificate(pkcs7_data: bytes) -> bytes:
    """Wrap PKCS#7 data in an 8 byte aligned WIN_CERTIFICATE structure."""
    length = 8 + len(pkcs7_data)
    padding = (8 - length % 8) % 8
    return struct.pack("<IHH", length, 0x0200, 0x0002) + pkcs7_data + b"\x00" * padding


def _der(tag: int, content: bytes) -> bytes:
    length = len(content)
    if length < 0x80:
        return bytes([tag, length]) + content
    encoded = length.to_bytes((length.bit_length() + 7) // 8, "big")
    return bytes([tag, 0x80 | len(encoded)]) + encoded + content


def _oid(dotted: str) -> bytes:
    arcs = [int(a) for a in dotted.split(".")]
    body = bytearray([40 * arcs[0] + arcs[1]])
    for arc in arcs[2:]:
        chunk = [arc & 0x7F]
        arc >>= 7
        while arc:
            chunk.insert(0, 0x80 | (arc & 0x7F))
            arc >>= 7
        body += bytes(chunk)
    return _der(0x06, bytes(body))


def signed_pkcs7(unauthenticated_oid: Optional[str] = None) -> bytes:
    """Build a DER encoded PKCS#7 SignedData with one signer.

    When `unauthenticated_oid` is given the signer carries an unauthenticated attribute of that type.
    """
    version = _der(0x02, b"\x01")
    sha256 = _der(0x30, _oid("2.16.840.1.101.3.4.2.1") + _der(0x05, b""))
    rsa = _der(0x30, _oid("1.2.840.113549.1.1.1") + _der(0x05, b""))
    issuer_and_serial = _der(0x30, _der(0x30, b"") + _der(0x02, b"\x01"))

    signer = version + issuer_and_serial + sha256 + rsa + _der(0x04, b"\x00" * 8)
    if unauthenticated_oid:
        attribute = _der(0x30, _oid(unauthenticated_oid) + _der(0x31, _der(0x04, b"token")))
        signer += _der(0xA1, attribute)

    signed_data = _der(
        0x30,
        version
        + _der(0x31, sha256)
        + _der(0x30, _oid("1.2.840.113549.1.7.1"))
        + _der(0x31, _der(0x30, signer)),
    )
    return _der(0x30, _oid("1.2.840.113549.1.7.2") + _der(0xA0, signed_data))


@pytest.fixture
def pe_factory(tmp_path):
    """Write minimal PE files into a temporary directory."""
    def _write(name: str, certificate_table: Optional[bytes] = None):
        path = tmp_path / name
        path.write_bytes(build_pe(certificate_table))
        return path
    return _write
