# @file
#
# Copyright (c) Microsoft Corporation.
# SPDX-License-Identifier: BSD-2-Clause-Patent
##
"""Batch sign executables and libraries with a code signing certificate.

For every selected file the tool:
1. Skips the file if it already carries a valid signature (unless --force is given)
2. Signs it with the resolved certificate
3. Timestamps the signature, trying each configured timestamp authority in order until one succeeds

Timestamped signatures stay valid after the signing certificate expires. --no-timestamp is faster,
but the resulting signatures expire with the certificate.

Examples:
    batch_sign.py build/output/app.exe --thumbprint 0123456789ABCDEF0123456789ABCDEF01234567
    batch_sign.py build/output --pattern "*.exe,*.dll" --cert-folder certs
"""

import argparse
import logging
import os
import pathlib
import sys
import time
from dataclasses import dataclass
from typing import List, Optional, Sequence

from certificate_resolver import (
    CertificateDirectoryInterface,
    CertificateFolder,
    SigningCertificate,
    resolve_certificate,
)
from file_selector import FileTarget, select_files
from signature_prober import has_valid_signature, timestamp_note
from signing_config import SigningConfig, load_config
from signing_errors import BatchSignError
from signing_service import SigningServiceInterface, SignToolService
from timestamp_signer import sign_with_timestamp, sign_without_timestamp

logger = logging.getLogger(__name__)


@dataclass
class RunOutcome:
    """Counters accumulated over one signing run.

    Attributes:
        files_signed (int): Files signed successfully.
        files_skipped (int): Files skipped because they were already validly signed.
        files_failed (int): Files whose signing failed without aborting the run.
        elapsed (float): Wall clock duration of the run in seconds.
    """

    files_signed: int = 0
    files_skipped: int = 0
    files_failed: int = 0
    elapsed: float = 0.0

    @property
    def total(self) -> int:
        """Number of files processed."""
        return self.files_signed + self.files_skipped + self.files_failed

    def summary(self) -> str:
        """Human readable summary line."""
        return (
            f"Signed {self.files_signed} file(s), skipped {self.files_skipped}, "
            f"failed {self.files_failed} in {self.elapsed:.2f}s"
        )


class BatchSigner:
    """Signs every selected file with one certificate.

    Files are processed sequentially in enumeration order. The certificate is resolved before the
    files are selected, so a missing certificate is reported before the target is validated.
    """

    def __init__(
        self,
        directory: CertificateDirectoryInterface,
        service: SigningServiceInterface,
        authorities: Sequence[str],
        attempts_per_authority: int = 1,
        retry_delay: float = 0.0,
    ) -> None:
        """Initialize the signer.

        Args:
            directory: Where to look up the signing certificate.
            service: The signing service.
            authorities: Timestamp authority URLs in order of preference.
            attempts_per_authority: Attempts against each authority before moving on.
            retry_delay: Seconds between attempts against the same authority.
        """
        self.directory = directory
        self.service = service
        self.authorities = tuple(authorities)
        self.attempts_per_authority = attempts_per_authority
        self.retry_delay = retry_delay

    def run(
        self,
        target: pathlib.Path,
        thumbprint: Optional[str] = None,
        pattern: Optional[str] = None,
        force: bool = False,
        no_timestamp: bool = False,
    ) -> RunOutcome:
        """Sign `target`, or the files under it matching `pattern`.

        The summary is logged even when the run aborts.

        Args:
            target: A file, or a directory to search recursively.
            thumbprint: Thumbprint of the certificate to use.
            pattern: Comma separated globs, required when `target` is a directory.
            force: Re-sign files that already carry a valid signature.
            no_timestamp: Sign without contacting a timestamp authority.

        Returns:
            RunOutcome: The counters of the completed run.

        Raises:
            NoCertificateFound: If no certificate could be resolved.
            InvalidPattern: If `target` is a directory and `pattern` lacks a wildcard.
            TargetNotFound: If `target` does not exist.
            TimestampingExhausted: If every timestamp authority failed for a file.
        """
        outcome = RunOutcome()
        start = time.perf_counter()

        try:
            cert = resolve_certificate(self.directory, thumbprint)
            for file in select_files(target, pattern):
                self._process(file, cert, outcome, force, no_timestamp)
        finally:
            outcome.elapsed = time.perf_counter() - start
            logger.info(outcome.summary())

        return outcome

    def _process(
        self, file: FileTarget, cert: SigningCertificate, outcome: RunOutcome, force: bool, no_timestamp: bool
    ) -> None:
        if not force and has_valid_signature(self.service, file):
            outcome.files_skipped += 1
            note = timestamp_note(file)
            logger.info(f"Skipped: {file} (already signed{', ' + note if note else ''})")
            return

        if no_timestamp:
            result = sign_without_timestamp(self.service, file, cert)
        else:
            result = sign_with_timestamp(
                self.service,
                file,
                cert,
                self.authorities,
                attempts_per_authority=self.attempts_per_authority,
                retry_delay=self.retry_delay,
            )

        if result.success:
            outcome.files_signed += 1
            if result.authority:
                logger.info(f"Signed: {file} (timestamp: {result.authority})")
            else:
                logger.info(f"Signed: {file}")
        else:
            outcome.files_failed += 1


def configure_logging(debug: bool = False) -> None:
    """Send progress to stdout, and warnings and errors to stderr."""
    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.setFormatter(logging.Formatter("%(message)s"))
    stdout_handler.addFilter(lambda record: record.levelno < logging.WARNING)

    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setLevel(logging.WARNING)
    stderr_handler.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))

    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        handlers=[stdout_handler, stderr_handler],
        force=True,
    )


def cli(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command-line arguments.

    Returns:
        argparse.Namespace: Parsed arguments containing:
            - file_or_path (pathlib.Path): File or directory to sign
            - thumbprint (str): Certificate thumbprint
            - pattern (str): Comma separated globs for directories
            - force (bool): Re-sign already signed files
            - no_timestamp (bool): Skip timestamping
            - config (pathlib.Path): TOML configuration file
            - cert_folder (pathlib.Path): Folder holding signing certificates
            - timestamp_server (List[str]): Timestamp authorities overriding the configuration
            - signtool (str): Path to signtool.exe
            - debug (bool): Enable debug logging
    """
    parser = argparse.ArgumentParser(
        description="Batch Authenticode signing with timestamp authority fallback",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("file_or_path", type=pathlib.Path, help="File or directory to sign")
    parser.add_argument("--thumbprint", help="SHA-1 thumbprint of the signing certificate")
    parser.add_argument(
        "--pattern",
        help='Comma separated file name globs, e.g. "*.exe,*.dll" (required for directories)',
    )
    parser.add_argument(
        "--force", action="store_true", default=False, help="Re-sign files that already carry a valid signature"
    )
    parser.add_argument(
        "--no-timestamp",
        action="store_true",
        default=False,
        help="Do not timestamp signatures (faster, but signatures expire with the certificate)",
    )
    parser.add_argument("--config", type=pathlib.Path, help="TOML configuration file")
    parser.add_argument("--cert-folder", type=pathlib.Path, help="Folder holding the signing certificates")
    parser.add_argument(
        "--timestamp-server",
        action="append",
        metavar="URL",
        help="Timestamp authority to use; repeat to build an ordered fallback list",
    )
    parser.add_argument("--signtool", help="Path to signtool.exe")
    parser.add_argument("--debug", action="store_true", default=False, help="Enable debug logging")

    return parser.parse_args(argv)


def build_signer(config: SigningConfig) -> BatchSigner:
    """Create a BatchSigner wired to signtool and the configured certificate folder."""
    password = os.environ.get(config.pfx_password_env)

    directory = CertificateFolder(config.cert_folder, password.encode() if password else None)
    service = SignToolService(
        signtool=config.signtool,
        digest_algorithm=config.digest_algorithm,
        description=config.description,
        description_url=config.description_url,
        timeout=config.timeout,
        pfx_password=password,
    )
    return BatchSigner(
        directory,
        service,
        config.timestamp_servers,
        attempts_per_authority=config.attempts_per_authority,
        retry_delay=config.retry_delay,
    )


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point.

    Returns:
        int: Exit code (0 for success, 1 for a fatal error)
    """
    args = cli(argv)
    configure_logging(args.debug)

    try:
        config = load_config(args.config).with_overrides(
            signtool=args.signtool,
            cert_folder=args.cert_folder,
            timestamp_servers=tuple(args.timestamp_server) if args.timestamp_server else None,
        )
        signer = build_signer(config)
        signer.run(
            args.file_or_path,
            thumbprint=args.thumbprint,
            pattern=args.pattern,
            force=args.force,
            no_timestamp=args.no_timestamp,
        )
    except BatchSignError as e:
        logger.error(str(e))
        if args.debug:
            raise
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
