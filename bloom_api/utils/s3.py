"""
S3 utilities for book uploads

Provides the object store operations the upload workflow depends on:
- Bucket and URL helpers for each Environment
- Paginated listing, copying and deleting of everything under a key prefix
- Comparing a client's file manifest against a previous revision (file hashes)
- Temporary credentials limited to a single prefix

Book files live under {bookId}/{timestamp}/{title}/ in the environment's bucket.
Each upload gets a new {bookId}/{timestamp}/ prefix.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Iterator
from urllib.parse import unquote

# Support both Lambda deployment and local development
try:
    # Lambda deployment
    import config
    from config import Environment
except ImportError:
    # Local development
    import bloom_api.config as config
    from bloom_api.config import Environment

logger = logging.getLogger(__name__)


class ObjectStoreError(Exception):
    """Raised when S3 reports a non-success status for a request."""


def get_bucket_name(env: Environment) -> str:
    """
    Get the bucket holding book files for an environment.

    Raises:
        ValueError: If env is not production, development or unit-test
    """
    return config.BUCKET_NAMES[config.parse_environment(env)]


def is_array_of_book_file_info(value: Any) -> bool:
    """True if value is a non-empty list of {"path": str, "hash": str} objects."""
    return (
        isinstance(value, list)
        and len(value) > 0
        and all(
            isinstance(item, dict)
            and isinstance(item.get("path"), str)
            and isinstance(item.get("hash"), str)
            and item["path"] != ""
            and item["hash"] != ""
            for item in value
        )
    )


def get_s3_url_base(env: Environment) -> str:
    return f"{config.S3_URL_BASE}{get_bucket_name(env)}/"


def get_s3_url_from_prefix(prefix: str, env: Environment) -> str:
    """
    Build the public URL for a prefix.

    Example:
        get_s3_url_from_prefix("abc1234567/1700000000000/", Environment.PRODUCTION)
        # "https://s3.amazonaws.com/BloomLibraryBooks/abc1234567/1700000000000/"
    """
    return f"{get_s3_url_base(env)}{prefix}"


def get_s3_prefix_from_encoded_path(path: str, env: Environment) -> str:
    """
    Convert a book's (URL-encoded) baseUrl into an S3 key prefix.

    Args:
        path: URL such as https://s3.amazonaws.com/BloomLibraryBooks/abc%2f123/My+Book/
        env: Environment whose bucket the URL must point into

    Returns:
        str: Decoded prefix, e.g. "abc/123/My Book/"

    Raises:
        ValueError: If the URL belongs to another bucket or has an unexpected form
    """
    if get_bucket_name(env) not in path:
        raise ValueError("book path and environment do not match")
    url_base = get_s3_url_base(env)
    if not path.startswith(url_base):
        raise ValueError(f"book path should start with {url_base}")

    # Also replace + with space (form encoding)
    return unquote(path[len(url_base):]).replace("+", " ")


def _list_object_pages(prefix: str, env: Environment) -> Iterator[list[dict]]:
    """
    Yield the "Contents" of each ListObjectsV2 page under a prefix.

    S3 returns at most 1000 keys per request, so keep following
    NextContinuationToken until the listing is exhausted.
    """
    client = config.get_s3_client(env)
    params: dict[str, Any] = {
        "Bucket": get_bucket_name(env),
        "Prefix": prefix,
        "MaxKeys": config.S3_MAX_KEYS_PER_REQUEST,
    }

    while True:
        response = client.list_objects_v2(**params)
        yield response.get("Contents", [])

        continuation_token = response.get("NextContinuationToken")
        if not continuation_token:
            break
        params["ContinuationToken"] = continuation_token


def list_prefix_contents_keys(prefix: str, env: Environment) -> list[str]:
    """
    List every key under a prefix.

    Args:
        prefix: Key prefix, e.g. "abc1234567/1700000000000/"
        env: Environment selecting the bucket

    Returns:
        list: All keys, in listing order
    """
    keys: list[str] = []
    for contents in _list_object_pages(prefix, env):
        keys.extend(item["Key"] for item in contents)
    return keys


def _check_success(response: dict, operation: str, key: str) -> None:
    status_code = response.get("ResponseMetadata", {}).get("HTTPStatusCode")
    if status_code != 200:
        raise ObjectStoreError(f"{operation} failed for {key} (HTTP {status_code})")


def copy_book(
    src_prefix: str,
    dest_prefix: str,
    files_to_copy: list[str] | None,
    env: Environment,
) -> int:
    """
    Copy book files from one prefix to another.

    Each key src_prefix + path is copied to dest_prefix + path, keeping it
    publicly readable. S3 has no copy-by-prefix API, so files are copied one
    at a time. A failure stops the copy; files already copied are left in place.

    Args:
        src_prefix: Prefix to copy from
        dest_prefix: Prefix to copy to
        files_to_copy: Paths relative to src_prefix, or None to copy everything under it
        env: Environment selecting the bucket

    Returns:
        int: Number of files copied

    Raises:
        ObjectStoreError: If S3 reports a non-success status for any copy
        ClientError: If a copy request fails
    """
    client = config.get_s3_client(env)
    bucket = get_bucket_name(env)

    if files_to_copy is None:
        files_to_copy = [key[len(src_prefix):] for key in list_prefix_contents_keys(src_prefix, env)]

    for path in files_to_copy:
        key = f"{src_prefix}{path}"
        response = client.copy_object(
            Bucket=bucket,
            CopySource={"Bucket": bucket, "Key": key},
            Key=f"{dest_prefix}{path}",
            ACL="public-read",
        )
        _check_success(response, "CopyObject", key)

    logger.info(f"Copied {len(files_to_copy)} files from {src_prefix} to {dest_prefix}")
    return len(files_to_copy)


def _delete_files(keys: list[str], env: Environment) -> int:
    """
    Delete up to 1000 keys with a single DeleteObjects request.

    Returns:
        int: Number of keys S3 reported as failed
    """
    if not keys:
        return 0

    response = config.get_s3_client(env).delete_objects(
        Bucket=get_bucket_name(env),
        Delete={"Objects": [{"Key": key} for key in keys], "Quiet": True},
    )
    errors = response.get("Errors", [])
    for error in errors:
        logger.error(f"Error deleting {error.get('Key')}: {error.get('Code')} {error.get('Message')}")
    return len(errors)


def delete_files_by_prefix(
    prefix_to_delete: str,
    env: Environment,
    prefix_to_exclude: str | None = None,
) -> int:
    """
    Delete all keys under a prefix, optionally keeping those under another prefix.

    ListObjectsV2 has no exclusion filter, so excluded keys are filtered out of
    each page before it is deleted.

    Args:
        prefix_to_delete: Prefix to clear, e.g. "abc1234567/"
        env: Environment selecting the bucket
        prefix_to_exclude: Keys under this prefix are kept

    Returns:
        int: Number of keys deleted

    Raises:
        ValueError: If prefix_to_delete is empty (that would clear the bucket)
    """
    if not prefix_to_delete:
        raise ValueError("prefix_to_delete must not be empty")

    deleted = 0
    failed = 0
    for contents in _list_object_pages(prefix_to_delete, env):
        keys = [item["Key"] for item in contents]
        if prefix_to_exclude:
            keys = [key for key in keys if not key.startswith(prefix_to_exclude)]

        page_failures = _delete_files(keys, env)
        failed += page_failures
        deleted += len(keys) - page_failures

    if failed:
        # TODO: report orphaned files somewhere other than the log so they can be cleaned up
        logger.error(f"Failed to delete {failed} files under {prefix_to_delete}")
    else:
        logger.info(f"Deleted {deleted} files under {prefix_to_delete}")
    return deleted


def get_temporary_s3_credentials(
    prefix: str,
    env: Environment,
    duration_seconds: int = config.TEMPORARY_CREDENTIALS_DURATION_SECONDS,
) -> dict[str, str]:
    """
    Get federated credentials which can only list, read, write and delete under a prefix.

    Args:
        prefix: The only prefix the credentials may touch
        env: Environment selecting the bucket
        duration_seconds: Lifetime of the credentials (default 24 hours)

    Returns:
        dict: AccessKeyId, SecretAccessKey, SessionToken and Expiration (ISO-8601)
    """
    bucket = get_bucket_name(env)
    policy = {
        "Version": "2012-10-17",
        "Statement": [
            {
                "Effect": "Allow",
                "Action": ["s3:ListBucket"],
                "Resource": [f"arn:aws:s3:::{bucket}"],
            },
            {
                "Effect": "Allow",
                "Action": ["s3:GetObject", "s3:PutObject", "s3:DeleteObject"],
                "Resource": [f"arn:aws:s3:::{bucket}/{prefix}*"],
            },
            {
                "Effect": "Allow",
                "Action": ["s3:PutObjectAcl"],
                "Resource": [f"arn:aws:s3:::{bucket}/{prefix}*"],
                "Condition": {"StringEquals": {"s3:x-amz-acl": "public-read"}},
            },
        ],
    }

    response = config.get_sts_client(env).get_federation_token(
        Name="TemporaryBookUploadCredentials",
        Policy=json.dumps(policy),
        DurationSeconds=duration_seconds,
    )
    credentials = response["Credentials"]
    expiration = credentials["Expiration"]

    return {
        "AccessKeyId": credentials["AccessKeyId"],
        "SecretAccessKey": credentials["SecretAccessKey"],
        "SessionToken": credentials["SessionToken"],
        "Expiration": expiration.isoformat() if hasattr(expiration, "isoformat") else str(expiration),
    }


def _normalize_hash(value: str) -> str:
    # S3 returns ETags wrapped in double quotes
    return value.strip('"')


def process_file_hashes(
    client_files: list[dict[str, str]],
    prefix: str | None,
    env: Environment,
) -> tuple[list[str], list[str]]:
    """
    Decide which of the client's files already exist unchanged under a prefix.

    Each manifest entry is matched by path (relative to prefix) against the
    objects stored there and by hash against the object's ETag. Stored objects
    the client no longer lists are ignored here; they go away when the old
    prefix is deleted.

    Args:
        client_files: Manifest of {"path": ..., "hash": ...} entries
        prefix: Prefix of the previous revision, or None if there is none
        env: Environment selecting the bucket

    Returns:
        tuple: (files_to_upload, files_to_copy) - paths in manifest order.
               files_to_upload are new or modified; files_to_copy are unchanged.
    """
    stored_hashes: dict[str, str] = {}
    if prefix:
        for contents in _list_object_pages(prefix, env):
            for item in contents:
                stored_hashes[item["Key"][len(prefix):]] = _normalize_hash(item.get("ETag", ""))

    if not stored_hashes:
        return [entry["path"] for entry in client_files], []

    files_to_upload: list[str] = []
    files_to_copy: list[str] = []
    for entry in client_files:
        stored_hash = stored_hashes.get(entry["path"])
        if stored_hash is not None and stored_hash == _normalize_hash(entry["hash"]):
            files_to_copy.append(entry["path"])
        else:
            files_to_upload.append(entry["path"])

    return files_to_upload, files_to_copy
