"""
Authentication utilities for the Bloom Library API

Resolves the caller of an API Gateway request to a Parse Server user.
Clients send their Parse session token in the Authentication-Token header.
"""

from __future__ import annotations

import logging

# Support both Lambda deployment and local development
try:
    from config import Environment
    from utils.parse_server import BloomParseServer
    from utils.validation import get_header
except ImportError:
    from bloom_api.config import Environment
    from bloom_api.utils.parse_server import BloomParseServer
    from bloom_api.utils.validation import get_header

logger = logging.getLogger(__name__)

AUTHENTICATION_TOKEN_HEADER = "Authentication-Token"


def get_session_token(event: dict) -> str | None:
    """
    Extract the Parse session token from the request headers.

    Args:
        event: API Gateway event

    Returns:
        str: The session token, or None if the header is absent
    """
    return get_header(event, AUTHENTICATION_TOKEN_HEADER)


def get_user_from_session(parse_server: BloomParseServer, event: dict) -> dict | None:
    """
    Validate the request's session token and return the user it belongs to.

    In the unit-test environment the request is always made as the unit test user.

    Args:
        parse_server: Parse Server client for the request's environment
        event: API Gateway event

    Returns:
        dict: User info including objectId and sessionToken, or None if not authenticated
    """
    if parse_server.get_environment() == Environment.UNIT_TEST:
        session_token = parse_server.login_as_unit_test_user()
    else:
        session_token = get_session_token(event)

    if not session_token:
        logger.warning("Request has no Authentication-Token header")
        return None
    return parse_server.get_logged_in_user_info(session_token)
