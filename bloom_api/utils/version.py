"""
Bloom client version checks

Uploads are refused from Bloom versions older than the minimum recorded in
the Parse Server config. Versions compare on major.minor only.
"""

from __future__ import annotations

import logging
import re

logger = logging.getLogger(__name__)

VERSION_PATTERN = re.compile(r"^\s*(\d+)\.(\d+)")


def parse_version(version: str | None) -> tuple[int, int] | None:
    """
    Parse the major and minor parts of a version string.

    Example:
        parse_version("5.4.102")  # (5, 4)
        parse_version("beta")     # None
    """
    if not isinstance(version, str):
        return None
    match = VERSION_PATTERN.match(version)
    if not match:
        return None
    return int(match.group(1)), int(match.group(2))


def is_client_version_sufficient(client_version: str | None, required_version: str | None) -> bool:
    """
    Compare a client version with the required minimum.

    Same major: the minor must be at least the required minor.
    Different major: the major must be greater than the required major.
    No required version means no minimum. A version on either side which
    can't be parsed is never sufficient.
    """
    if not required_version:
        return True
    required = parse_version(required_version)
    if required is None:
        logger.warning(f"Unparseable minimum upload client version {required_version!r}; refusing upload")
        return False
    client = parse_version(client_version)
    if client is None:
        return False

    client_major, client_minor = client
    required_major, required_minor = required
    if client_major == required_major:
        return client_minor >= required_minor
    return client_major > required_major


def can_client_upload(client_version: str | None, parse_server) -> bool:
    """
    Check a client version against the server's minimum upload version.

    Args:
        client_version: Version string the client sent, e.g. "5.4"
        parse_server: BloomParseServer for the request's environment

    Returns:
        bool: True if the client may upload
    """
    required_version = parse_server.get_minimum_upload_client_version()
    if not required_version:
        logger.warning("No minimum upload client version configured; allowing upload")
        return True

    allowed = is_client_version_sufficient(client_version, required_version)
    if not allowed:
        logger.info(f"Client version {client_version} is older than required {required_version}")
    return allowed
