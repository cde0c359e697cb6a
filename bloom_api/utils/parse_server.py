"""
Parse Server REST client for Bloom Library

Provides the book, language, user and role operations the upload workflow
needs. Each BloomParseServer is bound to one Environment; nothing here reads
or sets a process-wide "current server".
"""

from __future__ import annotations

import json
import logging
import re
import urllib.error
import urllib.parse
import urllib.request
from typing import Any

# Support both Lambda deployment and local development
try:
    # Lambda deployment
    import config
    from config import Environment
    from utils import contentful
except ImportError:
    # Local development
    import bloom_api.config as config
    from bloom_api.config import Environment
    from bloom_api.utils import contentful

logger = logging.getLogger(__name__)

DATABASE_ID_PATTERN = re.compile(r"^[A-Za-z0-9]{10}$")


class ParseServerError(Exception):
    """A request to Parse Server returned an HTTP error."""

    def __init__(self, status_code: int, message: str, parse_code: int | None = None):
        super().__init__(f"Parse Server error {status_code}: {message}")
        self.status_code = status_code
        self.message = message
        self.parse_code = parse_code


def make_pointer(class_name: str, object_id: str) -> dict[str, str]:
    return {"__type": "Pointer", "className": class_name, "objectId": object_id}


class BloomParseServer:
    """Client for the Parse Server of one Environment."""

    def __init__(self, env: Environment):
        self.env = config.parse_environment(env)
        self.base_url = config.get_parse_server_url(self.env)

    def get_environment(self) -> Environment:
        return self.env

    @staticmethod
    def is_valid_database_id(object_id: str | None) -> bool:
        """Parse object ids are 10 alphanumeric characters."""
        return bool(object_id) and DATABASE_ID_PATTERN.match(object_id) is not None

    def _request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        body: Any = None,
        session_token: str | None = None,
    ) -> dict:
        """
        Send a request to Parse Server and decode the JSON response.

        Args:
            method: HTTP method
            path: Path below the server URL, e.g. "classes/books"
            params: Query string parameters (dict values are JSON encoded)
            body: JSON request body
            session_token: Parse session token to act as

        Returns:
            dict: Decoded response body (empty dict for empty responses)

        Raises:
            ParseServerError: If Parse Server responds with an HTTP error
        """
        url = f"{self.base_url}/{path}"
        if params:
            encoded = {
                key: json.dumps(value) if isinstance(value, (dict, list)) else value
                for key, value in params.items()
            }
            url = f"{url}?{urllib.parse.urlencode(encoded)}"

        headers = {
            "X-Parse-Application-Id": config.get_parse_app_id(self.env),
            "Content-Type": "application/json",
        }
        if session_token:
            headers["X-Parse-Session-Token"] = session_token

        data = json.dumps(body).encode("utf-8") if body is not None else None
        request = urllib.request.Request(url, data=data, headers=headers, method=method)

        try:
            with urllib.request.urlopen(request, timeout=config.HTTP_TIMEOUT_SECONDS) as response:
                payload = response.read()
        except urllib.error.HTTPError as e:
            try:
                error_body = json.loads(e.read() or b"{}")
            except ValueError:
                error_body = {}
            raise ParseServerError(
                e.code, error_body.get("error", str(e.reason)), error_body.get("code")
            ) from e

        return json.loads(payload) if payload else {}

    # ------------------------------------------------------------------
    # Sessions and users
    # ------------------------------------------------------------------

    def login_as_user(self, username: str, password: str) -> str:
        """Log in and return the new session token."""
        result = self._request("POST", "login", body={"username": username, "password": password})
        return result["sessionToken"]

    def login_as_unit_test_user(self) -> str:
        password = config.get_environment_setting("PARSE_UNIT_TEST_USER_PASSWORD", self.env) or ""
        return self.login_as_user(config.UNIT_TEST_USER_NAME, password)

    def login_as_api_super_user(self) -> str:
        password = config.get_environment_setting("PARSE_API_SUPER_USER_PASSWORD", self.env)
        if not password:
            raise ValueError("API super user password is not configured for this environment")
        return self.login_as_user(config.API_SUPER_USER_NAME, password)

    def login_as_api_super_user_if_needed(self, user_info: dict, book_info: dict) -> str | None:
        """
        Get a session which may write the book record, if the user's own may not.

        The uploader (and moderators) have row-level write access to a book.
        Collection editors do not, so they act through the API super user.

        Returns:
            str: Super user session token, or None if the user's own session suffices
        """
        if _get_uploader_id(book_info) == user_info.get("objectId"):
            return None
        logger.info(f"Using API super user to modify book {book_info.get('objectId')}")
        return self.login_as_api_super_user()

    def get_logged_in_user_info(self, session_token: str | None) -> dict | None:
        """
        Resolve a session token to a user.

        Returns:
            dict: User record (objectId, username, email, sessionToken), or None if the token is invalid
        """
        if not session_token:
            return None
        try:
            user = self._request("GET", "users/me", session_token=session_token)
        except ParseServerError as e:
            if e.status_code in (400, 401, 403, 404):
                logger.warning(f"Invalid session token: {e.message}")
                return None
            raise

        if not user.get("objectId"):
            return None
        user["sessionToken"] = session_token
        return user

    def is_moderator(self, user_info: dict) -> bool:
        result = self._request(
            "GET",
            "roles",
            params={
                "where": {
                    "name": "moderator",
                    "users": make_pointer("_User", user_info["objectId"]),
                },
                "limit": 1,
            },
            session_token=user_info.get("sessionToken"),
        )
        return len(result.get("results", [])) > 0

    def is_uploader_or_collection_editor(self, user_info: dict, book_info: dict) -> bool:
        """
        Check whether a user uploaded a book or edits a collection containing it.

        Collection editors are listed in Contentful; each of their collections has
        a filter which is turned into a Parse query restricted to this book.
        """
        if not book_info:
            return False
        if _get_uploader_id(book_info) == user_info.get("objectId"):
            return True

        email = user_info.get("email") or user_info.get("username")
        if not email:
            return False

        for collection_filter in contentful.get_all_contentful_collection_filters_for_user(email):
            where = contentful.convert_filter_to_parse_where(collection_filter)
            if where is None:
                continue
            where["objectId"] = book_info["objectId"]
            if self.get_book_count(where) > 0:
                return True
        return False

    # ------------------------------------------------------------------
    # Books
    # ------------------------------------------------------------------

    def get_book_by_database_id(self, book_id: str) -> dict | None:
        params = {"where": {"objectId": book_id}}
        results = self._request("GET", "classes/books", params=params).get("results", [])
        return results[0] if results else None

    def get_books(self, where: dict, keys: list[str] | None = None, limit: int = 10000) -> list[dict]:
        params: dict[str, Any] = {"where": where, "limit": limit}
        if keys:
            params["keys"] = ",".join(keys)
        return self._request("GET", "classes/books", params=params).get("results", [])

    def get_book_count(self, where: dict) -> int:
        result = self._request("GET", "classes/books", params={"where": where, "count": 1, "limit": 0})
        return result.get("count", 0)

    def create_book_record(self, book_record: dict, session_token: str) -> str:
        """Create a book and return its objectId."""
        result = self._request("POST", "classes/books", body=book_record, session_token=session_token)
        logger.info(f"Created book record {result['objectId']}")
        return result["objectId"]

    def modify_book_record(self, book_id: str, changes: dict, session_token: str) -> None:
        self._request("PUT", f"classes/books/{book_id}", body=changes, session_token=session_token)
        logger.info(f"Modified book record {book_id} fields: {list(changes.keys())}")

    def delete_book_record(self, book_id: str, session_token: str) -> None:
        self._request("DELETE", f"classes/books/{book_id}", session_token=session_token)
        logger.info(f"Deleted book record {book_id}")

    # ------------------------------------------------------------------
    # Languages
    # ------------------------------------------------------------------

    def get_language(self, language_descriptor: dict | str) -> dict | None:
        """Find the language record matching a descriptor's isoCode, name and ethnologueCode."""
        where = _language_where(language_descriptor)
        results = self._request("GET", "classes/language", params={"where": where, "limit": 1}).get("results", [])
        return results[0] if results else None

    def get_or_create_language(self, language_descriptor: dict | str) -> str:
        """Return the objectId of the matching language record, creating it if needed."""
        existing = self.get_language(language_descriptor)
        if existing:
            return existing["objectId"]

        result = self._request("POST", "classes/language", body=_language_where(language_descriptor))
        logger.info(f"Created language record {result['objectId']}")
        return result["objectId"]

    # ------------------------------------------------------------------
    # Server configuration
    # ------------------------------------------------------------------

    def get_minimum_upload_client_version(self) -> str | None:
        """The oldest Bloom version (e.g. "5.4") allowed to upload, from Parse config."""
        params = self._request("GET", "config").get("params", {})
        return params.get(config.MIN_CLIENT_VERSION_CONFIG_KEY)


def _get_uploader_id(book_info: dict) -> str | None:
    uploader = book_info.get("uploader") or {}
    return uploader.get("objectId")


def _language_where(language_descriptor: dict | str) -> dict:
    if isinstance(language_descriptor, str):
        language_descriptor = json.loads(language_descriptor)
    return {
        key: language_descriptor[key]
        for key in ("isoCode", "name", "ethnologueCode")
        if key in language_descriptor
    }
