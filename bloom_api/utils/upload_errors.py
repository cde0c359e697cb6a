"""
Errors reported by the book upload steps

Each code has a fixed, user-facing message and is reported to the client as
the error's "code" so it can tell failures apart. The exception that caused an
error is logged here and never returned to the client.
"""

from __future__ import annotations

import logging
from enum import Enum

# Support both Lambda deployment and local development
try:
    from utils.long_running import handle_error
except ImportError:
    from bloom_api.utils.long_running import handle_error

logger = logging.getLogger(__name__)


class BookUploadErrorCode(str, Enum):
    CLIENT_OUT_OF_DATE = "ClientOutOfDate"
    UNABLE_TO_VALIDATE_PERMISSION = "UnableToValidatePermission"
    ERROR_CREATING_BOOK_RECORD = "ErrorCreatingBookRecord"
    ERROR_UPDATING_BOOK_RECORD = "ErrorUpdatingBookRecord"
    ERROR_DELETING_PREVIOUS_FILES = "ErrorDeletingPreviousFiles"
    ERROR_COPYING_BOOK_FILES = "ErrorCopyingBookFiles"
    ERROR_PROCESSING_FILE_HASHES = "ErrorProcessingFileHashes"
    ERROR_GENERATING_TEMPORARY_CREDENTIALS = "ErrorGeneratingTemporaryCredentials"
    MISSING_BASE_URL = "MissingBaseUrl"
    INVALID_BASE_URL = "InvalidBaseUrl"


BOOK_UPLOAD_ERROR_MESSAGES: dict[BookUploadErrorCode, str] = {
    BookUploadErrorCode.CLIENT_OUT_OF_DATE: "Your version of Bloom is too old to upload books. Please upgrade to the latest version of Bloom.",
    BookUploadErrorCode.UNABLE_TO_VALIDATE_PERMISSION: "Please provide a valid Authentication-Token and book ID, and make sure you have permission to modify this book",
    BookUploadErrorCode.ERROR_CREATING_BOOK_RECORD: "Unable to create book record",
    BookUploadErrorCode.ERROR_UPDATING_BOOK_RECORD: "Unable to update book record",
    BookUploadErrorCode.ERROR_DELETING_PREVIOUS_FILES: "Unable to delete files from a previous incomplete upload",
    BookUploadErrorCode.ERROR_COPYING_BOOK_FILES: "Unable to copy book files",
    BookUploadErrorCode.ERROR_PROCESSING_FILE_HASHES: "Unable to process book file hashes",
    BookUploadErrorCode.ERROR_GENERATING_TEMPORARY_CREDENTIALS: "Unable to generate temporary credentials for uploading book files",
    BookUploadErrorCode.MISSING_BASE_URL: "Please provide a baseUrl in the book metadata",
    BookUploadErrorCode.INVALID_BASE_URL: "The baseUrl does not match the location provided by upload-start",
}


def handle_book_upload_error(code: BookUploadErrorCode, error: Exception | None = None) -> dict:
    """
    Log an upload failure and build the step result reporting it.

    Args:
        code: Which failure occurred
        error: The underlying exception, if any (logged only)

    Returns:
        dict: {"failed": True, "error": {"code": ..., "message": ...}}
    """
    message = BOOK_UPLOAD_ERROR_MESSAGES[code]
    if error is not None:
        logger.error(f"{code.value}: {error}", exc_info=error)
    else:
        logger.warning(f"{code.value}: {message}")
    return handle_error(code.value, message)
