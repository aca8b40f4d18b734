# @file
#
# Copyright (c) Microsoft Corporation.
# SPDX-License-Identifier: BSD-2-Clause-Patent
##
"""Read the Authenticode signature embedded in a PE file.

The certificate table (IMAGE_DIRECTORY_ENTRY_SECURITY) of a PE file holds one or more
WIN_CERTIFICATE structures, each wrapping a PKCS#7 SignedData blob:

    Offset  Size  Field
    ------  ----  ----------------
    0x00    4     dwLength         (header + certificate, excluding alignment padding)
    0x04    2     wRevision        0x0200
    0x06    2     wCertificateType 0x0002 (WIN_CERT_TYPE_PKCS_SIGNED_DATA)
    0x08    N     bCertificate

Entries are aligned to 8 bytes. A timestamped signature carries the timestamp as an unauthenticated
attribute of its SignerInfo.
"""

import logging
from typing import Dict, List, Optional

import pefile
from pyasn1.codec.der import decoder
from pyasn1.error import PyAsn1Error
from pyasn1_modules import rfc2315

logger = logging.getLogger(__name__)

IMAGE_DIRECTORY_ENTRY_SECURITY = pefile.DIRECTORY_ENTRY["IMAGE_DIRECTORY_ENTRY_SECURITY"]
WIN_CERT_TYPE_PKCS_SIGNED_DATA = 0x0002

SIGNED_DATA_OID = "1.2.840.113549.1.7.2"
# Legacy Authenticode countersignature (signtool /t)
COUNTERSIGNATURE_OID = "1.2.840.113549.1.9.6"
# RFC 3161 timestamp token (signtool /tr)
RFC3161_TIMESTAMP_OID = "1.3.6.1.4.1.311.3.3.1"


def read_certificate_table(pe_path: str) -> Optional[bytes]:
    """Return the raw certificate table of a PE file.

    Args:
        pe_path: Path to the PE file.

    Returns:
        Optional[bytes]: The certificate table, or None if the file carries no signature.

    Raises:
        ValueError: If the file is not a valid PE file.
    """
    try:
        pe = pefile.PE(pe_path, fast_load=True)
    except pefile.PEFormatError as e:
        raise ValueError(f"Invalid PE file {pe_path}: {e}") from e

    try:
        if len(pe.OPTIONAL_HEADER.DATA_DIRECTORY) <= IMAGE_DIRECTORY_ENTRY_SECURITY:
            return None

        security_dir = pe.OPTIONAL_HEADER.DATA_DIRECTORY[IMAGE_DIRECTORY_ENTRY_SECURITY]
        if security_dir.VirtualAddress == 0 or security_dir.Size == 0:
            return None

        # The security directory address is a file offset, not an RVA
        table = pe.__data__[security_dir.VirtualAddress : security_dir.VirtualAddress + security_dir.Size]
        if len(table) != security_dir.Size:
            logger.warning(f"Truncated certificate table in {pe_path}")
            return None

        logger.debug(
            f"Certificate table in {pe_path}: {security_dir.Size} bytes at offset 0x{security_dir.VirtualAddress:x}"
        )
        return bytes(table)
    finally:
        pe.close()


def parse_signature_blocks(table: bytes) -> List[Dict]:
    """Split a certificate table into its WIN_CERTIFICATE structures.

    Args:
        table: Raw certificate table data.

    Returns:
        List[Dict]: One entry per structure with its offset, length, revision, certificate type and
        raw certificate bytes.
    """
    blocks = []
    offset = 0

    while offset + 8 <= len(table):
        length = int.from_bytes(table[offset : offset + 4], "little")
        revision = int.from_bytes(table[offset + 4 : offset + 6], "little")
        certificate_type = int.from_bytes(table[offset + 6 : offset + 8], "little")

        if length < 8 or offset + length > len(table):
            logger.warning(f"Invalid certificate length: {length} at offset {offset}")
            break

        blocks.append(
            {
                "offset": offset,
                "length": length,
                "revision": revision,
                "certificate_type": certificate_type,
                "raw_data": table[offset + 8 : offset + length],
            }
        )

        offset = (offset + length + 7) & ~7

    return blocks


def is_timestamped(pkcs7_data: bytes) -> bool:
    """Return True if any signer of a PKCS#7 SignedData blob carries a timestamp.

    Undecodable data is reported as not timestamped.
    """
    try:
        content_info, _ = decoder.decode(pkcs7_data, asn1Spec=rfc2315.ContentInfo())
        if str(content_info["contentType"]) != SIGNED_DATA_OID:
            return False
        signed_data, _ = decoder.decode(bytes(content_info["content"]), asn1Spec=rfc2315.SignedData())
    except PyAsn1Error as e:
        logger.debug(f"Could not decode PKCS#7 signature: {e}")
        return False

    for signer in signed_data["signerInfos"]:
        if "unauthenticatedAttributes" not in signer or not signer["unauthenticatedAttributes"].isValue:
            continue
        for attribute in signer["unauthenticatedAttributes"]:
            if str(attribute["type"]) in (COUNTERSIGNATURE_OID, RFC3161_TIMESTAMP_OID):
                return True

    return False


def describe_signature(pe_path: str) -> Dict:
    """Summarize the embedded signature of a PE file.

    Args:
        pe_path: Path to the PE file.

    Returns:
        Dict: {"signed": bool, "signatures": int, "timestamped": bool}

    Raises:
        ValueError: If the file is not a valid PE file.
    """
    table = read_certificate_table(pe_path)
    if table is None:
        return {"signed": False, "signatures": 0, "timestamped": False}

    blocks = [b for b in parse_signature_blocks(table) if b["certificate_type"] == WIN_CERT_TYPE_PKCS_SIGNED_DATA]
    return {
        "signed": bool(blocks),
        "signatures": len(blocks),
        "timestamped": any(is_timestamped(b["raw_data"]) for b in blocks),
    }
