# @file
#
# Copyright (c) Microsoft Corporation.
# SPDX-License-Identifier: BSD-2-Clause-Patent
##
"""Expand a file or directory argument into the files to sign."""

import enum
import fnmatch
import logging
import os
import pathlib
from dataclasses import dataclass
from typing import Iterator, List, Optional, Union

from signing_errors import InvalidPattern, TargetNotFound

logger = logging.getLogger(__name__)

WILDCARDS = ("*", "?")


class PathKind(enum.Enum):
    """What a target path refers to on disk."""

    FILE = "file"
    DIRECTORY = "directory"
    NOT_FOUND = "not_found"


@dataclass(frozen=True)
class FileTarget:
    """A file selected for signing.

    Attributes:
        path (pathlib.Path): The path as it was found.
        resolved (pathlib.Path): The absolute path.
    """

    path: pathlib.Path
    resolved: pathlib.Path

    @classmethod
    def from_path(cls, path: Union[str, pathlib.Path]) -> "FileTarget":
        """Create a FileTarget, resolving `path` to an absolute path."""
        path = pathlib.Path(path)
        return cls(path=path, resolved=path.resolve())

    def __str__(self) -> str:
        """Return the absolute path."""
        return str(self.resolved)


def probe_path(target: Union[str, pathlib.Path]) -> PathKind:
    """Report whether `target` is a file, a directory, or missing."""
    target = pathlib.Path(target)
    if target.is_file():
        return PathKind.FILE
    if target.is_dir():
        return PathKind.DIRECTORY
    return PathKind.NOT_FOUND


def parse_pattern(pattern: Optional[str]) -> List[str]:
    """Split a comma separated glob list and check that it contains a wildcard.

    Args:
        pattern: e.g. "*.exe,*.dll". Whitespace around entries is ignored.

    Returns:
        List[str]: The non-empty, lower case glob entries.

    Raises:
        InvalidPattern: If no entry contains '*' or '?'.
    """
    entries = [p.strip().lower() for p in (pattern or "").split(",")]
    entries = [p for p in entries if p]

    if not any(w in entry for entry in entries for w in WILDCARDS):
        raise InvalidPattern(pattern)

    return entries


def _report_unreadable(error: OSError) -> None:
    logger.warning(f"Skipping unreadable directory {error.filename}: {error.strerror}")


def _walk(directory: pathlib.Path, globs: List[str]) -> Iterator[FileTarget]:
    for dirpath, _, filenames in os.walk(directory, onerror=_report_unreadable):
        for name in filenames:
            lowered = name.lower()
            if any(fnmatch.fnmatchcase(lowered, glob) for glob in globs):
                yield FileTarget.from_path(pathlib.Path(dirpath, name))


def select_files(target: Union[str, pathlib.Path], pattern: Optional[str] = None) -> Iterator[FileTarget]:
    """Select the files to process.

    A single file is returned as-is and `pattern` is ignored. A directory is walked recursively and
    only files whose name matches one of the pattern entries (case insensitive) are returned.

    The pattern is validated before this function returns, so an InvalidPattern error never
    follows a partial enumeration. The returned iterator is lazy and can be consumed once.

    Args:
        target: The file or directory to process.
        pattern: Comma separated globs; required for directories.

    Returns:
        Iterator[FileTarget]: The selected files, in directory enumeration order.

    Raises:
        InvalidPattern: If `target` is a directory and `pattern` has no wildcard.
        TargetNotFound: If `target` does not exist.
    """
    target = pathlib.Path(target)
    kind = probe_path(target)

    if kind is PathKind.FILE:
        return iter([FileTarget.from_path(target)])

    if kind is PathKind.DIRECTORY:
        globs = parse_pattern(pattern)
        logger.debug(f"Selecting files in {target} matching {', '.join(globs)}")
        return _walk(target, globs)

    raise TargetNotFound(str(target))
