"""
Book upload-start (long-running action)

The client calls upload-start to begin uploading a new or existing book.
It creates or modifies the book record in Parse and returns an S3 URL and
credentials for uploading files. It runs as a long-running action because,
for an existing book, it copies the unchanged files of the current revision
into the new prefix first, so the client only uploads new or modified files.
"""

from __future__ import annotations

import json
import logging
import time

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
    from utils.s3 import (
        copy_book,
        delete_files_by_prefix,
        get_s3_prefix_from_encoded_path,
        get_s3_url_from_prefix,
        get_temporary_s3_credentials,
        is_array_of_book_file_info,
        process_file_hashes,
    )
    from utils.upload_errors import BookUploadErrorCode, handle_book_upload_error
    from utils.validation import NEW_BOOK_ID, parse_json_body, validate_string_field
    from utils.version import can_client_upload
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
        copy_book,
        delete_files_by_prefix,
        get_s3_prefix_from_encoded_path,
        get_s3_url_from_prefix,
        get_temporary_s3_credentials,
        is_array_of_book_file_info,
        process_file_hashes,
    )
    from bloom_api.utils.upload_errors import BookUploadErrorCode, handle_book_upload_error
    from bloom_api.utils.validation import NEW_BOOK_ID, parse_json_body, validate_string_field
    from bloom_api.utils.version import can_client_upload

logger = logging.getLogger()
logger.setLevel(logging.INFO)

PENDING_STRING = "pending"
UPDATE_SOURCE = "BloomDesktop via API"


def _parse_book_files(value) -> list[dict] | None:
    """The "files" field is a JSON-encoded manifest; None if it isn't a valid one."""
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError:
            return None
    return value if is_array_of_book_file_info(value) else None


def handle_upload_start(event: dict, user_info: dict, env: config.Environment, book_id_or_new: str) -> dict:
    """
    Validate an upload-start request and start the long-running action.

    Expects JSON body with:
    - name (or title): The book's title, used as the folder holding its files
    - files: JSON-encoded array of {"path": ..., "hash": ...}
    - clientVersion: Version of Bloom making the request

    Returns 202 with an Operation-Location header for polling.
    """
    if event.get("httpMethod") != "POST":
        return error_response(400, "Bad Request", "Unhandled HTTP method")

    body, error = parse_json_body(event)
    if error:
        return error

    for field in ("name", "title"):
        error = validate_string_field(body, field, max_length=config.MAX_STRING_LENGTH)
        if error:
            return error
    book_title = body.get("name") or body.get("title") or ""

    book_files = _parse_book_files(body.get("files"))
    if book_files is None:
        logger.warning("Invalid files manifest in upload-start request")
        return error_response(
            400,
            "Bad Request",
            '"files" must be an array of objects, each with a path and hash property',
        )

    instance_id = start_long_running_action(
        LongRunningAction.UPLOAD_START,
        {
            "bookIdOrNew": book_id_or_new,
            "bookTitle": book_title,
            "bookFiles": book_files,
            "bloomClientVersion": body.get("clientVersion"),
            "userInfo": user_info,
            "env": config.parse_environment(env).value,
        },
    )
    return create_response_with_accepted_status_and_status_url(instance_id, event)


def long_running_upload_start(params: dict) -> dict:
    """
    Prepare the object store and book record for an upload.

    Args:
        params: bookIdOrNew, bookTitle, bookFiles, bloomClientVersion, userInfo, env

    Returns:
        dict: {transactionId, credentials, url, filesToUpload}, or a typed error result
    """
    user_info = params["userInfo"]
    env = config.parse_environment(params["env"])
    book_id_or_new = params["bookIdOrNew"]
    book_files = params.get("bookFiles") or []
    parse_server = BloomParseServer(env)

    current_time = int(time.time() * 1000)

    if not can_client_upload(params.get("bloomClientVersion"), parse_server):
        return handle_book_upload_error(BookUploadErrorCode.CLIENT_OUT_OF_DATE)

    is_new_book = book_id_or_new == NEW_BOOK_ID
    if is_new_book:
        new_book_record = {
            "title": PENDING_STRING,
            "bookInstanceId": PENDING_STRING,
            "updateSource": UPDATE_SOURCE,
            "uploadPendingTimestamp": current_time,
            # Keep the book out of listings until upload-finish completes the record
            "inCirculation": False,
            "uploader": make_pointer("_User", user_info["objectId"]),
        }
        try:
            book_id = parse_server.create_book_record(new_book_record, user_info["sessionToken"])
        except Exception as e:
            return handle_book_upload_error(BookUploadErrorCode.ERROR_CREATING_BOOK_RECORD, e)
    else:
        book_id = book_id_or_new

    # The client sends the title; it may have changed since the last upload
    book_files_parent_directory = params.get("bookTitle") or ""
    if book_files_parent_directory and not book_files_parent_directory.endswith("/"):
        book_files_parent_directory += "/"

    new_s3_prefix = f"{book_id}/{current_time}/"

    if is_new_book:
        files_to_upload = [entry["path"] for entry in book_files]
    else:
        existing_book_info = parse_server.get_book_by_database_id(book_id)
        if not existing_book_info:
            logger.warning(f"upload-start for unknown book {book_id}")
            return handle_book_upload_error(BookUploadErrorCode.UNABLE_TO_VALIDATE_PERMISSION)

        is_moderator = parse_server.is_moderator(user_info)
        if not is_moderator and not parse_server.is_uploader_or_collection_editor(
            user_info, existing_book_info
        ):
            return handle_book_upload_error(BookUploadErrorCode.UNABLE_TO_VALIDATE_PERMISSION)

        # bookId/timestamp/title/ of the current revision; None if no upload ever finished
        existing_s3_prefix = None
        if existing_book_info.get("baseUrl"):
            existing_s3_prefix = get_s3_prefix_from_encoded_path(existing_book_info["baseUrl"], env)

        # Delete the files of any earlier upload that was started but never finished,
        # i.e. everything under the book id except the current revision
        if existing_book_info.get("uploadPendingTimestamp"):
            try:
                delete_files_by_prefix(f"{book_id}/", env, prefix_to_exclude=existing_s3_prefix)
            except Exception as e:
                return handle_book_upload_error(BookUploadErrorCode.ERROR_DELETING_PREVIOUS_FILES, e)

        try:
            super_user_session_token = None
            if not is_moderator:
                super_user_session_token = parse_server.login_as_api_super_user_if_needed(
                    user_info, existing_book_info
                )
            parse_server.modify_book_record(
                book_id,
                {"uploadPendingTimestamp": current_time},
                super_user_session_token or user_info["sessionToken"],
            )
        except Exception as e:
            return handle_book_upload_error(BookUploadErrorCode.ERROR_UPDATING_BOOK_RECORD, e)

        try:
            files_to_upload, files_to_copy = process_file_hashes(book_files, existing_s3_prefix, env)
        except Exception as e:
            return handle_book_upload_error(BookUploadErrorCode.ERROR_PROCESSING_FILE_HASHES, e)

        if files_to_copy:
            try:
                copy_book(
                    existing_s3_prefix,
                    new_s3_prefix + book_files_parent_directory,
                    files_to_copy,
                    env,
                )
            except Exception as e:
                return handle_book_upload_error(BookUploadErrorCode.ERROR_COPYING_BOOK_FILES, e)

    try:
        temp_credentials = get_temporary_s3_credentials(
            new_s3_prefix, env, config.TEMPORARY_CREDENTIALS_DURATION_SECONDS
        )
    except Exception as e:
        return handle_book_upload_error(BookUploadErrorCode.ERROR_GENERATING_TEMPORARY_CREDENTIALS, e)

    logger.info(
        f"upload-start for book {book_id}: {len(files_to_upload)} of {len(book_files)} files to upload"
    )
    return {
        "transactionId": book_id,
        "credentials": temp_credentials,
        "url": get_s3_url_from_prefix(new_s3_prefix, env) + book_files_parent_directory,
        "filesToUpload": files_to_upload,
    }
