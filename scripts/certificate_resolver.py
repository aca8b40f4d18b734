# @file
#
# Copyright (c) Microsoft Corporation.
# SPDX-License-Identifier: BSD-2-Clause-Patent
##
"""Resolve the code signing certificate used for a signing run.

The certificate directory is an injected dependency so that tests can substitute an in-memory
directory. CertificateFolder is the production implementation; it reads PKCS#12 and X.509 files
from a folder.
"""

import logging
import pathlib
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional, Protocol, runtime_checkable

from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import ExtendedKeyUsageOID

from signing_errors import CertificateLookupError, NoCertificateFound

logger = logging.getLogger(__name__)

PKCS12_SUFFIXES = (".pfx", ".p12")
X509_SUFFIXES = (".cer", ".crt", ".der", ".pem")


@dataclass(frozen=True)
class SigningCertificate:
    """A code signing credential.

    Attributes:
        fingerprint (str): SHA-1 thumbprint as upper case hex.
        not_valid_after (datetime): Expiration time (UTC).
        subject (str): RFC 4514 subject name.
        issuer (str): RFC 4514 issuer name.
        location (str): Where the certificate is stored (a file path for CertificateFolder).
    """

    fingerprint: str
    not_valid_after: datetime
    subject: str
    issuer: str
    location: str

    @property
    def is_pkcs12(self) -> bool:
        """True when the certificate (and its private key) live in a PFX file."""
        return self.location.lower().endswith(PKCS12_SUFFIXES)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        """Return True if the certificate has expired at `now` (default: the current time)."""
        return (now or datetime.now(timezone.utc)) > self.not_valid_after


@runtime_checkable
class CertificateDirectoryInterface(Protocol):
    """Protocol for certificate store queries to enable dependency injection for testing."""

    def find_by_fingerprint(self, fingerprint: str) -> List[SigningCertificate]:
        """Return every certificate whose thumbprint matches `fingerprint` exactly."""
        ...

    def find_code_signing_capable(self) -> List[SigningCertificate]:
        """Return every certificate usable for code signing, in enumeration order."""
        ...


def normalize_thumbprint(thumbprint: str) -> str:
    """Normalize a thumbprint for comparison.

    Thumbprints copied from certificate viewers often contain spaces or colons.

    Args:
        thumbprint: The thumbprint as typed by the user.

    Returns:
        str: Upper case hex with separators removed.
    """
    return "".join(c for c in thumbprint if c not in " :\u200e").upper()


def is_code_signing_capable(cert: x509.Certificate) -> bool:
    """Return True if the certificate's extended key usage allows code signing."""
    try:
        usage = cert.extensions.get_extension_for_class(x509.ExtendedKeyUsage).value
    except x509.ExtensionNotFound:
        return False
    return ExtendedKeyUsageOID.CODE_SIGNING in usage


def to_signing_certificate(cert: x509.Certificate, location: str) -> SigningCertificate:
    """Build a SigningCertificate from a parsed X.509 certificate."""
    return SigningCertificate(
        fingerprint=cert.fingerprint(hashes.SHA1()).hex().upper(),
        not_valid_after=cert.not_valid_after_utc,
        subject=cert.subject.rfc4514_string(),
        issuer=cert.issuer.rfc4514_string(),
        location=location,
    )


class CertificateFolder:
    """Certificate directory backed by a folder of certificate files.

    PFX/P12 files are opened with `pfx_password`, and X.509 files may be DER or PEM encoded.
    Files that cannot be parsed are logged and ignored. The folder is read once, on first query.
    """

    def __init__(self, path: pathlib.Path, pfx_password: Optional[bytes] = None) -> None:
        """Initialize the directory for `path`."""
        self.path = pathlib.Path(path)
        self.pfx_password = pfx_password
        self._entries = None

    def _load_file(self, cert_path: pathlib.Path) -> Optional[x509.Certificate]:
        data = cert_path.read_bytes()
        suffix = cert_path.suffix.lower()

        if suffix in PKCS12_SUFFIXES:
            _, cert, _ = pkcs12.load_key_and_certificates(data, self.pfx_password)
            return cert

        if data.lstrip().startswith(b"-----BEGIN"):
            return x509.load_pem_x509_certificate(data)
        return x509.load_der_x509_certificate(data)

    def _load(self) -> list:
        if self._entries is not None:
            return self._entries

        try:
            candidates = sorted(p for p in self.path.iterdir() if p.is_file())
        except OSError as e:
            raise CertificateLookupError(f"Unable to read certificate folder {self.path}: {e}") from e

        entries = []
        for cert_path in candidates:
            if cert_path.suffix.lower() not in PKCS12_SUFFIXES + X509_SUFFIXES:
                continue
            try:
                cert = self._load_file(cert_path)
            except (OSError, ValueError) as e:
                logger.warning(f"Failed to load certificate {cert_path}: {e}")
                continue
            if cert is None:
                logger.warning(f"No certificate found in {cert_path}")
                continue
            entries.append((cert, to_signing_certificate(cert, str(cert_path))))
            logger.debug(f"Loaded certificate {cert_path.name}: {cert.subject.rfc4514_string()}")

        self._entries = entries
        return entries

    def find_by_fingerprint(self, fingerprint: str) -> List[SigningCertificate]:
        """Return every certificate in the folder whose thumbprint matches `fingerprint`."""
        wanted = normalize_thumbprint(fingerprint)
        return [signing_cert for _, signing_cert in self._load() if signing_cert.fingerprint == wanted]

    def find_code_signing_capable(self) -> List[SigningCertificate]:
        """Return every certificate in the folder with the code signing extended key usage."""
        return [signing_cert for cert, signing_cert in self._load() if is_code_signing_capable(cert)]


def resolve_certificate(
    directory: CertificateDirectoryInterface, thumbprint: Optional[str] = None
) -> SigningCertificate:
    """Find the certificate to sign with.

    A thumbprint lookup that errors or finds nothing degrades to picking the first code signing
    capable certificate in the directory.

    Args:
        directory: The certificate directory to query.
        thumbprint: Optional thumbprint of the wanted certificate.

    Returns:
        SigningCertificate: The resolved certificate.

    Raises:
        NoCertificateFound: If neither lookup yields a certificate.
    """
    if thumbprint:
        try:
            matches = directory.find_by_fingerprint(thumbprint)
        except CertificateLookupError as e:
            logger.warning(f"Certificate lookup for thumbprint {thumbprint} failed: {e}")
            matches = []
        else:
            if not matches:
                logger.warning(f"No certificate with thumbprint {thumbprint}; using any code signing certificate")

        if matches:
            return _chosen(matches[0])

    try:
        candidates = directory.find_code_signing_capable()
    except CertificateLookupError as e:
        logger.error(f"Certificate lookup failed: {e}")
        candidates = []

    if not candidates:
        raise NoCertificateFound(thumbprint)

    return _chosen(candidates[0])


def _chosen(cert: SigningCertificate) -> SigningCertificate:
    logger.info(f"Using certificate {cert.subject} ({cert.fingerprint})")
    if cert.is_expired():
        logger.warning(f"Certificate {cert.fingerprint} expired on {cert.not_valid_after.isoformat()}")
    return cert
