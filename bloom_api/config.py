"""
Configuration and AWS client initialization for Bloom Library API Lambda handlers

This module provides:
- The deployment Environment (production, development, unit-test) and its settings
- AWS service clients (DynamoDB, Lambda) and per-environment S3/STS clients
- Constants used across handlers

Nothing here keeps a "current environment". Every core operation receives the
Environment it should act on and asks this module for the matching settings.
"""

from __future__ import annotations

import os
from enum import Enum
from typing import TYPE_CHECKING

import boto3
from botocore.config import Config

if TYPE_CHECKING:
    from mypy_boto3_dynamodb.service_resource import DynamoDBServiceResource, Table
    from mypy_boto3_lambda.client import LambdaClient
    from mypy_boto3_s3.client import S3Client
    from mypy_boto3_sts.client import STSClient


class Environment(str, Enum):
    PRODUCTION = "production"
    DEVELOPMENT = "development"
    UNIT_TEST = "unit-test"


# Constants
S3_REGION = "us-east-1"
S3_URL_BASE = "https://s3.amazonaws.com/"
S3_MAX_KEYS_PER_REQUEST = 1000
TEMPORARY_CREDENTIALS_DURATION_SECONDS = 24 * 60 * 60
PENDING_UPLOAD_MAX_AGE_MS = 24 * 60 * 60 * 1000  # cleanup timer cutoff
ACTION_STATE_TTL_SECONDS = 7 * 24 * 60 * 60
HTTP_TIMEOUT_SECONDS = 10
MAX_STRING_LENGTH = 500  # Maximum length for string fields
DEFAULT_ENVIRONMENT = Environment.PRODUCTION

BUCKET_NAMES = {
    Environment.PRODUCTION: "BloomLibraryBooks",
    Environment.DEVELOPMENT: "BloomLibraryBooks-Sandbox",
    Environment.UNIT_TEST: "BloomLibraryBooks-UnitTests",
}

DEFAULT_PARSE_SERVER_URLS = {
    Environment.PRODUCTION: "https://parse.bloomlibrary.org",
    Environment.DEVELOPMENT: "https://dev-parse.bloomlibrary.org",
    Environment.UNIT_TEST: "https://dev-parse.bloomlibrary.org",
}

# Suffix of the per-environment variables, e.g. PARSE_APP_ID_PROD
ENVIRONMENT_SUFFIXES = {
    Environment.PRODUCTION: "PROD",
    Environment.DEVELOPMENT: "DEV",
    Environment.UNIT_TEST: "UNITTEST",
}

# Per-environment settings that must be present before any action is started
REQUIRED_ENVIRONMENT_SETTINGS = (
    "PARSE_APP_ID",
    "BLOOM_S3_KEY",
    "BLOOM_S3_SECRET_KEY",
    "PARSE_API_SUPER_USER_PASSWORD",
)
# unit-test also logs in as the unit test user
UNIT_TEST_REQUIRED_SETTINGS = ("PARSE_UNIT_TEST_USER_PASSWORD",)

API_SUPER_USER_NAME = os.environ.get("PARSE_API_SUPER_USER", "api-super-user")
UNIT_TEST_USER_NAME = "unittest@example.com"
CONTENTFUL_SPACE_ID = "72i7e2mqidxz"
MIN_CLIENT_VERSION_CONFIG_KEY = "minDesktopVersionForUpload"

# Environment configuration
ACTIONS_TABLE_NAME = os.environ.get("ACTIONS_TABLE")
LONG_RUNNING_ACTIONS_FUNCTION = os.environ.get("LONG_RUNNING_ACTIONS_FUNCTION")
# Comma-separated environments the daily cleanup timer sweeps
BOOK_CLEANUP_ENVIRONMENTS = os.environ.get("BOOK_CLEANUP_ENVIRONMENTS", Environment.DEVELOPMENT.value)
AWS_REGION = os.environ.get("AWS_REGION", S3_REGION)

# Initialize AWS clients with type hints
dynamodb: "DynamoDBServiceResource" = boto3.resource("dynamodb", region_name=AWS_REGION)
lambda_client: "LambdaClient" = boto3.client("lambda", region_name=AWS_REGION)

# For type checking: treat as non-None (tests will mock this)
# For production: Lambda environment must have ACTIONS_TABLE set
if ACTIONS_TABLE_NAME:
    actions_table: "Table" = dynamodb.Table(ACTIONS_TABLE_NAME)
else:
    actions_table = None  # type: ignore[assignment]


def parse_environment(value: str | Environment | None) -> Environment:
    """
    Validate an environment name.

    Args:
        value: One of "production", "development", "unit-test" (or an Environment)

    Returns:
        Environment: The matching environment

    Raises:
        ValueError: If the value names no known environment
    """
    try:
        return Environment(value)
    except ValueError:
        valid = ", ".join(e.value for e in Environment)
        raise ValueError(f'Unknown environment "{value}"; expected one of: {valid}') from None


def get_environment_setting(name: str, env: Environment) -> str | None:
    """Read the per-environment variable NAME_<SUFFIX> (e.g. BLOOM_S3_KEY_DEV)."""
    return os.environ.get(f"{name}_{ENVIRONMENT_SUFFIXES[parse_environment(env)]}")


def get_missing_settings(env: Environment) -> list[str]:
    """
    List the required settings which are unset for an environment.

    Returns:
        list: Names of missing environment variables (empty when fully configured)
    """
    env = parse_environment(env)
    suffix = ENVIRONMENT_SUFFIXES[env]
    missing = [
        f"{name}_{suffix}"
        for name in REQUIRED_ENVIRONMENT_SETTINGS
        if not os.environ.get(f"{name}_{suffix}")
    ]
    if env == Environment.UNIT_TEST:
        missing.extend(
            f"{name}_{suffix}"
            for name in UNIT_TEST_REQUIRED_SETTINGS
            if not os.environ.get(f"{name}_{suffix}")
        )
    if not os.environ.get("CONTENTFUL_READ_ONLY_TOKEN"):
        missing.append("CONTENTFUL_READ_ONLY_TOKEN")
    if not ACTIONS_TABLE_NAME:
        missing.append("ACTIONS_TABLE")
    if not LONG_RUNNING_ACTIONS_FUNCTION:
        missing.append("LONG_RUNNING_ACTIONS_FUNCTION")
    return missing


def get_parse_server_url(env: Environment) -> str:
    env = parse_environment(env)
    return (get_environment_setting("PARSE_SERVER_URL", env) or DEFAULT_PARSE_SERVER_URLS[env]).rstrip("/")


def get_parse_app_id(env: Environment) -> str:
    app_id = get_environment_setting("PARSE_APP_ID", env)
    if not app_id:
        raise ValueError(f"PARSE_APP_ID_{ENVIRONMENT_SUFFIXES[parse_environment(env)]} is not set")
    return app_id


def _get_upload_manager_credentials(env: Environment) -> dict[str, str | None]:
    return {
        "aws_access_key_id": get_environment_setting("BLOOM_S3_KEY", env),
        "aws_secret_access_key": get_environment_setting("BLOOM_S3_SECRET_KEY", env),
    }


# One client per environment, reused across invocations of a warm container
_s3_clients: dict[Environment, "S3Client"] = {}
_sts_clients: dict[Environment, "STSClient"] = {}


def get_s3_client(env: Environment) -> "S3Client":
    env = parse_environment(env)
    if env not in _s3_clients:
        _s3_clients[env] = boto3.client(
            "s3",
            region_name=S3_REGION,
            config=Config(signature_version="s3v4"),
            **_get_upload_manager_credentials(env),
        )
    return _s3_clients[env]


def get_sts_client(env: Environment) -> "STSClient":
    env = parse_environment(env)
    if env not in _sts_clients:
        _sts_clients[env] = boto3.client(
            "sts",
            region_name=S3_REGION,
            **_get_upload_manager_credentials(env),
        )
    return _sts_clients[env]
