# @file
#
# Copyright (c) Microsoft Corporation.
# SPDX-License-Identifier: BSD-2-Clause-Patent
##
"""Exceptions raised while batch signing files.

Fatal errors abort the run before any further file is touched. CertificateLookupError is the only
recoverable one, and the certificate resolver contains it.
"""


class BatchSignError(Exception):
    """Base class for all batch signing errors."""


class ConfigurationError(BatchSignError):
    """The signing configuration file is missing or malformed."""


class CertificateLookupError(BatchSignError):
    """The certificate directory could not be queried (e.g. the store is unreadable)."""


class NoCertificateFound(BatchSignError):
    """No code signing certificate could be resolved."""

    def __init__(self, thumbprint: str = None) -> None:
        """Initialize with the thumbprint that was requested, if any."""
        self.thumbprint = thumbprint
        if thumbprint:
            message = f"No certificate found for thumbprint {thumbprint} and no code signing certificate available"
        else:
            message = "No code signing certificate found"
        super().__init__(message)


class InvalidPattern(BatchSignError):
    """A directory target was given without a wildcarded pattern."""

    def __init__(self, pattern: str = None) -> None:
        """Initialize with the offending pattern."""
        self.pattern = pattern
        super().__init__(
            f"A pattern containing '*' or '?' is required when signing a directory (got {pattern!r})"
        )


class TargetNotFound(BatchSignError):
    """The file or directory to sign does not exist."""

    def __init__(self, target: str) -> None:
        """Initialize with the missing path."""
        self.target = target
        super().__init__(f"File or directory not found: {target}")


class TimestampingExhausted(BatchSignError):
    """Every configured timestamp authority failed for a file."""

    def __init__(self, file: str, attempted: int) -> None:
        """Initialize with the file being signed and how many authorities were tried."""
        self.file = file
        self.attempted = attempted
        super().__init__(f"Failed to sign {file}: all {attempted} timestamp authorities failed")
