# @file
#
# Copyright (c) Microsoft Corporation.
# SPDX-License-Identifier: BSD-2-Clause-Patent
##
"""Sign a file, falling back across timestamp authorities.

Authorities are tried one at a time in the configured order, and the first one that succeeds wins.
Any authority can stand in for any other, so the order only affects speed. Put the historically
fast and reliable authorities first.
"""

import logging
import time
from typing import Callable, Sequence

from certificate_resolver import SigningCertificate
from file_selector import FileTarget
from signing_errors import TimestampingExhausted
from signing_service import SigningResult, SigningServiceInterface

logger = logging.getLogger(__name__)


def sign_without_timestamp(
    service: SigningServiceInterface, file: FileTarget, cert: SigningCertificate
) -> SigningResult:
    """Sign `file` once without a timestamp.

    A failure is logged and returned; it is never raised.

    Args:
        service: The signing service.
        file: The file to sign.
        cert: The certificate to sign with.

    Returns:
        SigningResult: The outcome of the attempt.
    """
    result = service.sign(file, cert, None)
    if not result.success:
        logger.error(f"Failed to sign {file}: {result.message}")
    return result


def sign_with_timestamp(
    service: SigningServiceInterface,
    file: FileTarget,
    cert: SigningCertificate,
    authorities: Sequence[str],
    attempts_per_authority: int = 1,
    retry_delay: float = 0.0,
    sleep: Callable[[float], None] = time.sleep,
) -> SigningResult:
    """Sign `file`, timestamping through the first authority that succeeds.

    Args:
        service: The signing service.
        file: The file to sign.
        cert: The certificate to sign with.
        authorities: Timestamp authority URLs in order of preference.
        attempts_per_authority: Attempts against each authority before moving to the next one.
        retry_delay: Seconds to wait between attempts against the same authority.
        sleep: Sleep function, replaceable for testing.

    Returns:
        SigningResult: The successful attempt.

    Raises:
        TimestampingExhausted: If every authority failed.
    """
    for index, authority in enumerate(authorities, 1):
        for attempt in range(1, attempts_per_authority + 1):
            logger.debug(
                f"Signing {file} with timestamp authority {authority} "
                f"({index}/{len(authorities)}, attempt {attempt}/{attempts_per_authority})"
            )
            result = service.sign(file, cert, authority)
            if result.success:
                return result

            logger.warning(f"Timestamp authority {authority} failed for {file}: {result.message}")
            if attempt < attempts_per_authority and retry_delay > 0:
                sleep(retry_delay)

    raise TimestampingExhausted(str(file), len(authorities))
