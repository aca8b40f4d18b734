# @file
#
# Copyright (c) Microsoft Corporation.
# SPDX-License-Identifier: BSD-2-Clause-Patent
##
"""Configuration for the batch signer, read from an optional TOML file.

Example:
    [signing]
    signtool = "C:/Program Files (x86)/Windows Kits/10/bin/10.0.22621.0/x64/signtool.exe"
    cert_folder = "certs"
    timeout = 120

    [timestamp]
    servers = ["http://timestamp.digicert.com", "http://timestamp.sectigo.com"]
"""

import logging
import pathlib
import tomllib
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Optional, Tuple

from signing_errors import ConfigurationError

logger = logging.getLogger(__name__)

# Ordered by observed response time and availability, fastest first.
DEFAULT_TIMESTAMP_SERVERS = (
    "http://timestamp.digicert.com",
    "http://timestamp.sectigo.com",
    "http://rfc3161timestamp.globalsign.com/advanced",
    "http://ts.ssl.com",
    "http://timestamp.entrust.net/TSS/RFC3161sha2TS",
)

DEFAULT_PFX_PASSWORD_ENV = "BATCH_SIGN_PFX_PASSWORD"


@dataclass(frozen=True)
class SigningConfig:
    """Settings shared by every file in a signing run.

    Attributes:
        signtool (str): Path or name of signtool.exe.
        digest_algorithm (str): File digest algorithm passed to /fd and /td.
        description (str): Optional /d description embedded in signatures.
        description_url (str): Optional /du URL embedded in signatures.
        timeout (float): Seconds allowed for a single signtool invocation.
        cert_folder (pathlib.Path): Folder holding the candidate signing certificates.
        pfx_password_env (str): Environment variable holding the PFX password.
        timestamp_servers (Tuple[str, ...]): Timestamp authorities in order of preference.
        attempts_per_authority (int): Attempts against one authority before moving on.
        retry_delay (float): Seconds to wait between attempts against the same authority.
    """

    signtool: str = "signtool.exe"
    digest_algorithm: str = "sha256"
    description: Optional[str] = None
    description_url: Optional[str] = None
    timeout: float = 120.0
    cert_folder: pathlib.Path = field(default_factory=lambda: pathlib.Path("certs"))
    pfx_password_env: str = DEFAULT_PFX_PASSWORD_ENV
    timestamp_servers: Tuple[str, ...] = DEFAULT_TIMESTAMP_SERVERS
    attempts_per_authority: int = 1
    retry_delay: float = 0.0

    def with_overrides(self, **overrides: Any) -> "SigningConfig":
        """Return a copy with every non-None override applied."""
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})


def _expect(table: Dict[str, Any], key: str, types: tuple, section: str) -> Any:
    value = table.get(key)
    if value is not None and (not isinstance(value, types) or (isinstance(value, bool) and bool not in types)):
        raise ConfigurationError(f"[{section}] {key} has an invalid type: {type(value).__name__}")
    return value


def config_from_dict(data: Dict[str, Any]) -> SigningConfig:
    """Build a SigningConfig from a parsed TOML document.

    Args:
        data: The parsed document. Unknown keys are ignored.

    Returns:
        SigningConfig: The configuration, with defaults for missing keys.

    Raises:
        ConfigurationError: If a value has the wrong type or is out of range.
    """
    signing = data.get("signing", {})
    timestamp = data.get("timestamp", {})
    if not isinstance(signing, dict) or not isinstance(timestamp, dict):
        raise ConfigurationError("[signing] and [timestamp] must be tables")

    overrides = {
        "signtool": _expect(signing, "signtool", (str,), "signing"),
        "digest_algorithm": _expect(signing, "digest_algorithm", (str,), "signing"),
        "description": _expect(signing, "description", (str,), "signing"),
        "description_url": _expect(signing, "description_url", (str,), "signing"),
        "timeout": _expect(signing, "timeout", (int, float), "signing"),
        "pfx_password_env": _expect(signing, "pfx_password_env", (str,), "signing"),
        "attempts_per_authority": _expect(timestamp, "attempts_per_authority", (int,), "timestamp"),
        "retry_delay": _expect(timestamp, "retry_delay", (int, float), "timestamp"),
    }

    cert_folder = _expect(signing, "cert_folder", (str,), "signing")
    if cert_folder is not None:
        overrides["cert_folder"] = pathlib.Path(cert_folder)

    servers = _expect(timestamp, "servers", (list,), "timestamp")
    if servers is not None:
        if not servers:
            raise ConfigurationError("[timestamp] servers must list at least one URL")
        if not all(isinstance(s, str) and s for s in servers):
            raise ConfigurationError("[timestamp] servers must be a list of URLs")
        overrides["timestamp_servers"] = tuple(servers)

    config = SigningConfig().with_overrides(**overrides)

    if config.timeout <= 0:
        raise ConfigurationError("[signing] timeout must be positive")
    if config.attempts_per_authority < 1:
        raise ConfigurationError("[timestamp] attempts_per_authority must be at least 1")
    if config.retry_delay < 0:
        raise ConfigurationError("[timestamp] retry_delay must not be negative")

    return config


def load_config(path: Optional[pathlib.Path] = None) -> SigningConfig:
    """Load the signing configuration.

    Args:
        path: TOML file to read. When None the defaults are returned.

    Returns:
        SigningConfig: The loaded configuration.

    Raises:
        ConfigurationError: If the file cannot be read or parsed.
    """
    if path is None:
        return SigningConfig()

    try:
        with open(path, "rb") as f:
            data = tomllib.load(f)
    except OSError as e:
        raise ConfigurationError(f"Unable to read configuration {path}: {e}") from e
    except tomllib.TOMLDecodeError as e:
        raise ConfigurationError(f"Invalid TOML in {path}: {e}") from e

    logger.debug(f"Loaded configuration from {path}")
    return config_from_dict(data)
