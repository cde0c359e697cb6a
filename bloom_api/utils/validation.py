"""
Request validation utilities for the Bloom Library API

Provides functions to validate and extract data from API Gateway events.
"""

from __future__ import annotations

import json
import logging
import re
from urllib.parse import unquote

# Support both Lambda deployment and local development
try:
    import config
    from config import Environment
    from utils.parse_server import BloomParseServer
    from utils.response import error_response
except ImportError:
    import bloom_api.config as config
    from bloom_api.config import Environment
    from bloom_api.utils.parse_server import BloomParseServer
    from bloom_api.utils.response import error_response

logger = logging.getLogger()

ID_AND_ACTION_PATTERN = re.compile(r"^([^:]+)(?::([^:]+))?$")
NEW_BOOK_ID = "new"


def get_path_param(event: dict, param: str) -> tuple[str | None, dict | None]:
    """
    Extract and URL-decode a path parameter from API Gateway event.

    Args:
        event: API Gateway event
        param: Parameter name to extract

    Returns:
        tuple: (decoded_value, error_response) - If successful, error_response is None
    """
    path_params = event.get("pathParameters") or {}
    if not path_params.get(param):
        logger.warning(f"Missing {param} in path parameters")
        return None, error_response(
            400, "Bad Request", f"{param.capitalize()} is required in path"
        )
    return unquote(path_params[param]), None


def get_header(event: dict, name: str) -> str | None:
    """Case-insensitive header lookup (API Gateway preserves the client's casing)."""
    headers = event.get("headers") or {}
    name = name.lower()
    for key, value in headers.items():
        if key.lower() == name:
            return value
    return None


def get_environment(event: dict) -> tuple[Environment | None, dict | None]:
    """
    Get the deployment environment a request targets from the "env" query parameter.

    Returns:
        tuple: (environment, error_response) - defaults to production when absent
    """
    query = event.get("queryStringParameters") or {}
    value = query.get("env")
    if not value:
        return config.DEFAULT_ENVIRONMENT, None
    try:
        return config.parse_environment(value), None
    except ValueError as e:
        logger.warning(str(e))
        return None, error_response(400, "Bad Request", str(e))


def get_id_and_action(id_and_action: str | None) -> tuple[str | None, str | None]:
    """
    Split a "{id}" or "{id}:{action}" path segment.

    Example:
        get_id_and_action("abc1234567:upload-start")  # ("abc1234567", "upload-start")
        get_id_and_action("abc1234567")               # ("abc1234567", None)
    """
    if not id_and_action:
        return None, None
    match = ID_AND_ACTION_PATTERN.match(id_and_action)
    if not match:
        return None, None
    return match.group(1), match.group(2)


def is_valid_book_id(book_id: str, allow_new: bool = False) -> bool:
    """A Parse object id, or "new" where a book may be created."""
    if allow_new and book_id == NEW_BOOK_ID:
        return True
    return BloomParseServer.is_valid_database_id(book_id)


def parse_json_body(event: dict) -> tuple[dict, dict | None]:
    """
    Parse JSON body from API Gateway event.

    Args:
        event: API Gateway event

    Returns:
        tuple: (parsed_body, error_response) - If successful, error_response is None
               If error, parsed_body is empty dict (caller should check error first)
    """
    try:
        body = json.loads(event.get("body") or "{}")
    except json.JSONDecodeError:
        logger.warning("Invalid JSON in request body")
        return {}, error_response(400, "Bad Request", "Invalid JSON in request body")

    if not isinstance(body, dict):
        return {}, error_response(400, "Bad Request", "Request body must be a JSON object")
    return body, None


def validate_string_field(
    body: dict, field: str, max_length: int = 500, required: bool = False
) -> dict | None:
    """
    Validate a string field in request body.

    Args:
        body: Request body dictionary
        field: Field name to validate
        max_length: Maximum allowed length
        required: Whether the field is required

    Returns:
        dict: Error response if validation fails, None if valid
    """
    if field not in body:
        if required:
            return error_response(400, "Bad Request", f'Field "{field}" is required')
        return None

    value = body[field]
    if not isinstance(value, str):
        return error_response(400, "Bad Request", f'Field "{field}" must be a string')

    if len(value) > max_length:
        return error_response(
            400,
            "Bad Request",
            f'Field "{field}" exceeds maximum length of {max_length}',
        )

    if required and not value.strip():
        return error_response(400, "Bad Request", f'Field "{field}" cannot be empty')

    return None


def validate_boolean_field(body: dict, field: str) -> dict | None:
    """
    Validate a boolean field in request body.

    Args:
        body: Request body dictionary
        field: Field name to validate

    Returns:
        dict: Error response if validation fails, None if valid
    """
    if field in body and not isinstance(body[field], bool):
        return error_response(400, "Bad Request", f'Field "{field}" must be a boolean')
    return None
