"""
Lambda handler for /v1/books/{id}:{action}

Routes book actions to their handlers:
- upload-start (POST, id may be "new"): begin uploading a book
- upload-finish (POST): complete an upload
- permissions (GET): what the caller may do with a book
"""

from __future__ import annotations

import logging

# Support both Lambda deployment and local development
try:
    # Lambda deployment
    import config
    from handlers.upload_finish import handle_upload_finish
    from handlers.upload_start import handle_upload_start
    from utils.auth import get_user_from_session
    from utils.parse_server import BloomParseServer
    from utils.response import api_response, error_response
    from utils.validation import get_environment, get_id_and_action, get_path_param, is_valid_book_id
except ImportError:
    # Local development
    import bloom_api.config as config
    from bloom_api.handlers.upload_finish import handle_upload_finish
    from bloom_api.handlers.upload_start import handle_upload_start
    from bloom_api.utils.auth import get_user_from_session
    from bloom_api.utils.parse_server import BloomParseServer
    from bloom_api.utils.response import api_response, error_response
    from bloom_api.utils.validation import (
        get_environment,
        get_id_and_action,
        get_path_param,
        is_valid_book_id,
    )

logger = logging.getLogger()
logger.setLevel(logging.INFO)

UPLOAD_START_ACTION = "upload-start"
UPLOAD_FINISH_ACTION = "upload-finish"
PERMISSIONS_ACTION = "permissions"

# Actions which start a long-running action and so need the full server configuration
UPLOAD_ACTIONS = {UPLOAD_START_ACTION, UPLOAD_FINISH_ACTION}

UNAUTHENTICATED_MESSAGE = "Unable to validate user. Did you include a valid Authentication-Token header?"


def handle_permissions(user_info: dict, book_id: str, parse_server: BloomParseServer) -> dict:
    """
    Report what the caller may do with a book.

    Moderators may do everything. Uploaders and collection editors may do
    everything except edit all of the metadata.
    """
    book_info = parse_server.get_book_by_database_id(book_id)
    if not book_info:
        return error_response(400, "Bad Request", "Invalid book ID")

    if parse_server.is_moderator(user_info):
        return api_response(200, {
            "reupload": True,
            "becomeUploader": True,
            "delete": True,
            "editSurfaceMetadata": True,
            "editAllMetadata": True,
        })

    allowed = parse_server.is_uploader_or_collection_editor(user_info, book_info)
    return api_response(200, {
        "reupload": allowed,
        "becomeUploader": allowed,
        "delete": allowed,
        "editSurfaceMetadata": allowed,
        "editAllMetadata": False,
    })


def books_handler(event, context):
    """
    Lambda handler for book actions.

    Path parameter "id" holds "{bookId}:{action}". The "env" query parameter
    selects production (default), development or unit-test.
    """
    logger.info("books_handler invoked")

    try:
        env, error = get_environment(event)
        if error:
            return error

        id_and_action, error = get_path_param(event, "id")
        if error:
            return error
        book_id, action = get_id_and_action(id_and_action)

        if not book_id or not is_valid_book_id(book_id, allow_new=action == UPLOAD_START_ACTION):
            return error_response(400, "Bad Request", "Invalid book ID")

        if action not in UPLOAD_ACTIONS and action != PERMISSIONS_ACTION:
            return error_response(400, "Bad Request", "Invalid action type")

        if action in UPLOAD_ACTIONS:
            missing = config.get_missing_settings(env)
            if missing:
                logger.error(f"Missing configuration for {env.value}: {', '.join(missing)}")
                return error_response(500, "Internal Server Error", "Server configuration error")

        parse_server = BloomParseServer(env)
        user_info = get_user_from_session(parse_server, event)
        if not user_info:
            return error_response(400, "Bad Request", UNAUTHENTICATED_MESSAGE)

        if action == UPLOAD_START_ACTION:
            return handle_upload_start(event, user_info, env, book_id)
        if action == UPLOAD_FINISH_ACTION:
            return handle_upload_finish(event, user_info, env, book_id)
        return handle_permissions(user_info, book_id, parse_server)

    except Exception as e:
        logger.error(f"Error handling book request: {str(e)}", exc_info=True)
        return error_response(500, "Internal Server Error", "Failed to process book request")
