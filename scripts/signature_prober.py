# @file
#
# Copyright (c) Microsoft Corporation.
# SPDX-License-Identifier: BSD-2-Clause-Patent
##
"""Decide whether a file already carries a valid signature."""

import logging

from file_selector import FileTarget
from pe_signature import describe_signature
from signing_service import SignatureStatus, SigningServiceInterface

logger = logging.getLogger(__name__)


def has_valid_signature(service: SigningServiceInterface, file: FileTarget) -> bool:
    """Return True only when the signing service reports the signature as valid.

    Unsigned, tampered, untrusted and unsupported files all return False, which makes them eligible
    for signing.
    """
    status = service.inspect_signature_status(file)
    logger.debug(f"Signature status of {file}: {status.value}")
    return status is SignatureStatus.VALID


def timestamp_note(file: FileTarget) -> str:
    """Describe whether an existing signature is timestamped, for progress output.

    Returns an empty string for files that are not PE files or that cannot be read.
    """
    try:
        info = describe_signature(str(file.resolved))
    except (OSError, ValueError):
        return ""

    if not info["signed"]:
        return ""
    return "timestamped" if info["timestamped"] else "not timestamped"
