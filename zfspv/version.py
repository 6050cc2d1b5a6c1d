"""Version information for the driver."""

from __future__ import annotations

import logging
import os
import subprocess
from pathlib import Path

logger = logging.getLogger(__name__)

# Filled in at build time; empty means "look it up".
GIT_COMMIT = ""
VERSION = ""
# Pre-release marker such as "dev" or "rc1"; empty for a final release.
VERSION_META = ""

HOME_ENV = "ZFSPV_HOME"
VERSION_FILE = "VERSION"
BUILD_META_FILE = "BUILDMETA"

_SHORT_COMMIT = 7


def _read_root_file(name: str) -> str:
    path = Path(os.environ.get(HOME_ENV, "/")) / name
    return path.read_text().strip()


def current() -> str:
    """Return the current version of the driver."""
    return get()


def get() -> str:
    """Return VERSION, or the VERSION file's content if it is unset; "" on failure."""
    if VERSION:
        return VERSION
    try:
        return _read_root_file(VERSION_FILE)
    except OSError as err:
        logger.error("failed to get version: %s", err)
        return ""


def get_build_meta() -> str:
    """Return the build metadata prefixed with "-"; "" if it cannot be read."""
    if VERSION_META:
        return "-" + VERSION_META
    try:
        return "-" + _read_root_file(BUILD_META_FILE)
    except OSError as err:
        logger.error("failed to get build version: %s", err)
        return ""


def get_git_commit() -> str:
    """Return GIT_COMMIT, or ask git for HEAD if it is unset; "" on failure."""
    if GIT_COMMIT:
        return GIT_COMMIT
    try:
        result = subprocess.run(
            ["git", "rev-parse", "--verify", "HEAD"],
            capture_output=True,
            text=True,
            check=True,
        )
    except (OSError, subprocess.CalledProcessError) as err:
        logger.error("failed to get git commit: %s", err)
        return ""
    return result.stdout.strip()


def _short_commit() -> str:
    commit = get_git_commit()
    if len(commit) < _SHORT_COMMIT:
        raise ValueError(f"git commit {commit!r} is shorter than {_SHORT_COMMIT} characters")
    return commit[:_SHORT_COMMIT]


def get_version_details() -> str:
    """Return "zfs-<version>-<short commit>"."""
    return "zfs-" + "-".join([get(), _short_commit()])


def verbose() -> str:
    """Return "<version>-<short commit>"."""
    return "-".join([get(), _short_commit()])