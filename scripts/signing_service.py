# @file
#
# Copyright (c) Microsoft Corporation.
# SPDX-License-Identifier: BSD-2-Clause-Patent
##
"""The signing service used by the batch signer.

SigningServiceInterface is what the signer and the prober depend on. SignToolService implements it
on top of signtool.exe from the Windows SDK. Signing calls report failure through a SigningResult
value instead of raising, so callers can branch on the outcome.
"""

import enum
import logging
import subprocess
from dataclasses import dataclass
from typing import Callable, List, Optional, Protocol, Sequence, runtime_checkable

from certificate_resolver import SigningCertificate
from file_selector import FileTarget
from pe_signature import read_certificate_table

logger = logging.getLogger(__name__)


class SignatureStatus(enum.Enum):
    """Signature state of a file, as reported by the signing service."""

    VALID = "Valid"
    UNKNOWN_ERROR = "UnknownError"
    NOT_SIGNED = "NotSigned"
    HASH_MISMATCH = "HashMismatch"
    NOT_TRUSTED = "NotTrusted"
    NOT_SUPPORTED_FILE_FORMAT = "NotSupportedFileFormat"
    INCOMPATIBLE = "Incompatible"


@dataclass(frozen=True)
class SigningResult:
    """Outcome of one signing attempt.

    Attributes:
        success (bool): Whether the file was signed.
        authority (Optional[str]): The timestamp authority used, if any.
        message (str): Diagnostic output when the attempt failed.
    """

    success: bool
    authority: Optional[str] = None
    message: str = ""

    @classmethod
    def ok(cls, authority: Optional[str] = None) -> "SigningResult":
        """A successful attempt."""
        return cls(True, authority)

    @classmethod
    def failed(cls, message: str, authority: Optional[str] = None) -> "SigningResult":
        """A failed attempt."""
        return cls(False, authority, message)


@runtime_checkable
class SigningServiceInterface(Protocol):
    """Protocol for signing operations to enable dependency injection for testing."""

    def sign(
        self, file: FileTarget, cert: SigningCertificate, timestamp_authority: Optional[str] = None
    ) -> SigningResult:
        """Sign `file` with `cert`, timestamping through `timestamp_authority` when given."""
        ...

    def inspect_signature_status(self, file: FileTarget) -> SignatureStatus:
        """Report the signature status of `file`. Must not raise for unsigned files."""
        ...


# Ordered: the first matching fragment of signtool's verify output wins.
_VERIFY_OUTPUT_STATUS = (
    ("no signature found", SignatureStatus.NOT_SIGNED),
    ("not signed", SignatureStatus.NOT_SIGNED),
    ("hash of the file does not match", SignatureStatus.HASH_MISMATCH),
    ("not correct", SignatureStatus.HASH_MISMATCH),
    ("not trusted", SignatureStatus.NOT_TRUSTED),
    ("root certificate", SignatureStatus.NOT_TRUSTED),
    ("revoked", SignatureStatus.NOT_TRUSTED),
    ("not supported", SignatureStatus.NOT_SUPPORTED_FILE_FORMAT),
    ("format", SignatureStatus.NOT_SUPPORTED_FILE_FORMAT),
)


def classify_verify_output(output: str) -> SignatureStatus:
    """Map the output of a failed `signtool verify` to a SignatureStatus."""
    lowered = output.lower()
    for fragment, status in _VERIFY_OUTPUT_STATUS:
        if fragment in lowered:
            return status
    return SignatureStatus.UNKNOWN_ERROR


def format_command(cmd: Sequence[str]) -> str:
    """Render a command line for logging with the PFX password masked."""
    safe = []
    hide_next = False
    for part in cmd:
        safe.append("***" if hide_next else part)
        hide_next = part.lower() == "/p"
    return " ".join(f'"{c}"' if " " in c else c for c in safe)


class SignToolService:
    """Signing service backed by signtool.exe.

    Certificates stored in a PFX file are passed with /f (and /p when a password is configured);
    any other certificate is selected from the user's certificate store by thumbprint with /sha1.
    """

    def __init__(
        self,
        signtool: str = "signtool.exe",
        digest_algorithm: str = "sha256",
        description: Optional[str] = None,
        description_url: Optional[str] = None,
        timeout: float = 120.0,
        pfx_password: Optional[str] = None,
        runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
    ) -> None:
        """Initialize the service.

        Args:
            signtool: Path or name of signtool.exe.
            digest_algorithm: File and timestamp digest algorithm.
            description: Optional /d description.
            description_url: Optional /du URL.
            timeout: Seconds allowed for one signtool call; bounds a stalled timestamp authority.
            pfx_password: Password for PFX certificates.
            runner: Process runner, replaceable for testing.
        """
        self.signtool = signtool
        self.digest_algorithm = digest_algorithm
        self.description = description
        self.description_url = description_url
        self.timeout = timeout
        self.pfx_password = pfx_password
        self.runner = runner

    def sign_command(
        self, file: FileTarget, cert: SigningCertificate, timestamp_authority: Optional[str] = None
    ) -> List[str]:
        """Build the signtool command line for signing `file`."""
        cmd = [self.signtool, "sign", "/fd", self.digest_algorithm]

        if cert.is_pkcs12:
            cmd += ["/f", cert.location]
            if self.pfx_password:
                cmd += ["/p", self.pfx_password]
        else:
            cmd += ["/sha1", cert.fingerprint]

        if self.description:
            cmd += ["/d", self.description]
        if self.description_url:
            cmd += ["/du", self.description_url]

        if timestamp_authority:
            cmd += ["/tr", timestamp_authority, "/td", self.digest_algorithm]

        cmd.append(str(file.resolved))
        return cmd

    def _run(self, cmd: List[str]) -> subprocess.CompletedProcess:
        logger.debug(f"Running: {format_command(cmd)}")
        return self.runner(cmd, capture_output=True, text=True, timeout=self.timeout)

    def sign(
        self, file: FileTarget, cert: SigningCertificate, timestamp_authority: Optional[str] = None
    ) -> SigningResult:
        """Sign `file` with `cert`, timestamping through `timestamp_authority` when given."""
        cmd = self.sign_command(file, cert, timestamp_authority)
        try:
            result = self._run(cmd)
        except subprocess.TimeoutExpired:
            return SigningResult.failed(f"signtool timed out after {self.timeout}s", timestamp_authority)
        except OSError as e:
            return SigningResult.failed(f"Unable to run {self.signtool}: {e}", timestamp_authority)

        if result.returncode != 0:
            output = ((result.stdout or "") + (result.stderr or "")).strip()
            return SigningResult.failed(
                f"signtool exited with status {result.returncode}: {output}", timestamp_authority
            )

        return SigningResult.ok(timestamp_authority)

    def inspect_signature_status(self, file: FileTarget) -> SignatureStatus:
        """Report the signature status of `file`.

        PE files without a certificate table are reported as not signed without calling signtool.
        Everything else is checked with `signtool verify /pa`.
        """
        try:
            if read_certificate_table(str(file.resolved)) is None:
                return SignatureStatus.NOT_SIGNED
        except ValueError:
            # Not a PE file; signtool also handles MSI, CAB and script formats
            pass
        except OSError as e:
            logger.warning(f"Unable to read {file}: {e}")
            return SignatureStatus.UNKNOWN_ERROR

        cmd = [self.signtool, "verify", "/pa", str(file.resolved)]
        try:
            result = self._run(cmd)
        except (subprocess.TimeoutExpired, OSError) as e:
            logger.warning(f"Unable to verify {file}: {e}")
            return SignatureStatus.UNKNOWN_ERROR

        if result.returncode == 0:
            return SignatureStatus.VALID
        return classify_verify_output((result.stdout or "") + (result.stderr or ""))
