"""
Lambda handler for the daily book cleanup timer

An upload that was started but never finished leaves files under
{bookId}/{uploadPendingTimestamp}/ and, for a new book, a placeholder record.
Once such an upload is more than a day old, the files are deleted and the
record is either deleted (it never got a baseUrl) or has its
uploadPendingTimestamp cleared.
"""

from __future__ import annotations

import logging
import time

# Support both Lambda deployment and local development
try:
    # Lambda deployment
    import config
    from config import Environment
    from utils.parse_server import BloomParseServer
    from utils.s3 import delete_files_by_prefix, get_s3_prefix_from_encoded_path
except ImportError:
    # Local development
    import bloom_api.config as config
    from bloom_api.config import Environment
    from bloom_api.utils.parse_server import BloomParseServer
    from bloom_api.utils.s3 import delete_files_by_prefix, get_s3_prefix_from_encoded_path

logger = logging.getLogger()
logger.setLevel(logging.INFO)


def get_cleanup_environments() -> list[Environment]:
    names = [name.strip() for name in config.BOOK_CLEANUP_ENVIRONMENTS.split(",") if name.strip()]
    return [config.parse_environment(name) for name in names]


def _cleanup_book(book: dict, env: Environment, parse_server: BloomParseServer, session_token: str) -> None:
    book_id = book["objectId"]
    prefix = f"{book_id}/{book['uploadPendingTimestamp']}/"

    base_url = book.get("baseUrl")
    if base_url and get_s3_prefix_from_encoded_path(base_url, env).startswith(prefix):
        # The pending upload was finished after all; its files are the current revision
        logger.warning(f"Book {book_id} points at pending prefix {prefix}; keeping its files")
    else:
        delete_files_by_prefix(prefix, env)

    if base_url:
        parse_server.modify_book_record(book_id, {"uploadPendingTimestamp": None}, session_token)
    else:
        parse_server.delete_book_record(book_id, session_token)


def book_cleanup(env: Environment, now_ms: int | None = None) -> int:
    """
    Clean up uploads in one environment which have been pending for over a day.

    Args:
        env: Environment to sweep
        now_ms: Current time in epoch milliseconds (defaults to now)

    Returns:
        int: Number of books cleaned up
    """
    env = config.parse_environment(env)
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    cutoff = now_ms - config.PENDING_UPLOAD_MAX_AGE_MS

    parse_server = BloomParseServer(env)
    session_token = parse_server.login_as_api_super_user()
    books = parse_server.get_books(
        {"uploadPendingTimestamp": {"$lt": cutoff}},
        keys=["objectId", "uploadPendingTimestamp", "baseUrl"],
    )
    logger.info(f"Found {len(books)} abandoned uploads in {env.value}")

    cleaned = 0
    for book in books:
        try:
            _cleanup_book(book, env, parse_server, session_token)
            cleaned += 1
        except Exception as e:
            logger.error(f"Error cleaning up book {book.get('objectId')}: {str(e)}", exc_info=True)
    return cleaned


def book_cleanup_handler(event, context):
    """
    Lambda handler for the daily cleanup schedule (EventBridge).

    Sweeps each environment in BOOK_CLEANUP_ENVIRONMENTS.
    """
    logger.info("book_cleanup_handler invoked")

    results = {}
    for env in get_cleanup_environments():
        try:
            results[env.value] = book_cleanup(env)
        except Exception as e:
            logger.error(f"Book cleanup failed for {env.value}: {str(e)}", exc_info=True)
            results[env.value] = None
    return {"cleaned": results}
