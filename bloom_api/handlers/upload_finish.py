"""
Book upload-finish (long-running action)

The client calls upload-finish once it has uploaded every file upload-start
asked for. It fills in the book record (creating language records as needed)
and points it at the new files. It runs as a long-running action because, for
an existing book, it then deletes the files of the previous revision.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from urllib.parse import unquote

# Support both Lambda deployment and local development
try:
    # Lambda deployment
    import config
    from utils.long_running import (
        LongRunningAction,
        create_response_with_accepted_status_and_status_url,
        start_long_running_action,
    )
    from utils.parse_server import BloomParseServer, make_pointer
    from utils.response import error_response
    from utils.s3 import delete_files_by_prefix, get_s3_prefix_from_encoded_path, get_s3_url_from_prefix
    from utils.upload_errors import BookUploadErrorCode, handle_book_upload_error
    from utils.validation import parse_json_body, validate_boolean_field
except ImportError:
    # Local development
    import bloom_api.config as config
    from bloom_api.utils.long_running import (
        LongRunningAction,
        create_response_with_accepted_status_and_status_url,
        start_long_running_action,
    )
    from bloom_api.utils.parse_server import BloomParseServer, make_pointer
    from bloom_api.utils.response import error_response
    from bloom_api.utils.s3 import (
        delete_files_by_prefix,
        get_s3_prefix_from_encoded_path,
        get_s3_url_from_prefix,
    )
    from bloom_api.utils.upload_errors import BookUploadErrorCode, handle_book_upload_error
    from bloom_api.utils.validation import parse_json_body, validate_boolean_field

logger = logging.getLogger()
logger.setLevel(logging.INFO)

NEW_BOOK_UPDATE_SOURCE_SUFFIX = " (new book)"


def handle_upload_finish(event: dict, user_info: dict, env: config.Environment, book_id: str) -> dict:
    """
    Validate an upload-finish request and start the long-running action.

    Expects JSON body with:
    - metadata: The book record fields, including the new baseUrl
    - transactionId: The value upload-start returned (the book id)
    - becomeUploader: Optional boolean; make the caller the book's uploader

    Returns 202 with an Operation-Location header for polling.
    """
    if event.get("httpMethod") != "POST":
        return error_response(400, "Bad Request", "Unhandled HTTP method")

    body, error = parse_json_body(event)
    if error:
        return error

    metadata = body.get("metadata")
    if not isinstance(metadata, dict):
        return error_response(400, "Bad Request", "Please provide a valid metadata object in the body")

    transaction_id = body.get("transactionId")
    if not transaction_id or transaction_id != book_id:
        return error_response(400, "Bad Request", "Please provide a valid transactionId in the body")

    error = validate_boolean_field(body, "becomeUploader")
    if error:
        return error

    instance_id = start_long_running_action(
        LongRunningAction.UPLOAD_FINISH,
        {
            "bookId": book_id,
            "bookRecord": metadata,
            "becomeUploader": body.get("becomeUploader") is True,
            "userInfo": user_info,
            "env": config.parse_environment(env).value,
        },
    )
    return create_response_with_accepted_status_and_status_url(instance_id, event)


def _get_parse_date_now() -> dict[str, str]:
    iso = datetime.now(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")
    return {"__type": "Date", "iso": iso}


def _transfer_acl(book_info: dict, new_uploader_id: str) -> dict:
    """Copy the book's ACL, giving write access to the new uploader instead of the old one."""
    acl = dict(book_info.get("ACL") or {})
    acl[new_uploader_id] = {"write": True}
    old_uploader_id = (book_info.get("uploader") or {}).get("objectId")
    if old_uploader_id and old_uploader_id != new_uploader_id:
        acl.pop(old_uploader_id, None)
    return acl


def long_running_upload_finish(params: dict) -> dict:
    """
    Complete the book record for an upload and remove the previous revision.

    Args:
        params: bookId, bookRecord, becomeUploader, userInfo, env

    Returns:
        dict: {} on success, or a typed error result
    """
    user_info = params["userInfo"]
    env = config.parse_environment(params["env"])
    book_id = params["bookId"]
    book_record = dict(params.get("bookRecord") or {})
    become_uploader = params.get("becomeUploader") is True
    parse_server = BloomParseServer(env)

    book_info = parse_server.get_book_by_database_id(book_id)
    if not book_info:
        logger.warning(f"upload-finish for unknown book {book_id}")
        return handle_book_upload_error(BookUploadErrorCode.UNABLE_TO_VALIDATE_PERMISSION)

    is_moderator = parse_server.is_moderator(user_info)
    if not is_moderator and not parse_server.is_uploader_or_collection_editor(user_info, book_info):
        return handle_book_upload_error(BookUploadErrorCode.UNABLE_TO_VALIDATE_PERMISSION)

    new_base_url = book_record.get("baseUrl")
    if not new_base_url:
        return handle_book_upload_error(BookUploadErrorCode.MISSING_BASE_URL)
    # baseUrl is URL-encoded; its path separators usually arrive as %2f
    if not isinstance(new_base_url, str) or not unquote(new_base_url).startswith(
        get_s3_url_from_prefix(f"{book_id}/", env)
    ):
        return handle_book_upload_error(BookUploadErrorCode.INVALID_BASE_URL)

    old_base_url = book_info.get("baseUrl")
    if not old_base_url:
        # upload-start created this record out of circulation; Parse cloud code
        # relies on the updateSource suffix to treat it as a new book
        book_record["updateSource"] = f"{book_record.get('updateSource') or ''}{NEW_BOOK_UPDATE_SOURCE_SUFFIX}"
        book_record["inCirculation"] = True

    # Ownership only changes through becomeUploader
    book_record.pop("uploader", None)

    if "languageDescriptors" in book_record:
        book_record["langPointers"] = [
            make_pointer("language", parse_server.get_or_create_language(descriptor))
            for descriptor in book_record.pop("languageDescriptors") or []
        ]

    book_record["uploadPendingTimestamp"] = None
    book_record["lastUploaded"] = _get_parse_date_now()

    if become_uploader:
        book_record["uploader"] = make_pointer("_User", user_info["objectId"])
        book_record["ACL"] = _transfer_acl(book_info, user_info["objectId"])

    try:
        super_user_session_token = None
        if not is_moderator:
            super_user_session_token = parse_server.login_as_api_super_user_if_needed(user_info, book_info)
        parse_server.modify_book_record(
            book_id,
            book_record,
            super_user_session_token or user_info["sessionToken"],
        )
    except Exception as e:
        return handle_book_upload_error(BookUploadErrorCode.ERROR_UPDATING_BOOK_RECORD, e)

    if old_base_url:
        try:
            old_prefix = get_s3_prefix_from_encoded_path(old_base_url, env)
            new_prefix = get_s3_prefix_from_encoded_path(new_base_url, env)
            if old_prefix == new_prefix:
                # Repeated upload-finish for the same revision
                logger.info(f"Book {book_id} already points at {old_prefix}; nothing to delete")
            else:
                delete_files_by_prefix(old_prefix, env)
        except Exception as e:
            # The record is already updated; the old files are orphaned
            logger.error(f"Error deleting previous files of book {book_id}: {str(e)}", exc_info=True)

    logger.info(f"upload-finish completed for book {book_id}")
    return {}
