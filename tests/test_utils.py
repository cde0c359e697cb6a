"""
Unit tests for utility modules
"""

import io
import json
import urllib.error
import urllib.request
from unittest.mock import Mock, patch

import pytest

from bloom_api import config
from bloom_api.config import Environment
from bloom_api.utils import contentful
from bloom_api.utils.auth import get_user_from_session
from bloom_api.utils.dynamodb import build_update_expression, build_update_params
from bloom_api.utils.parse_server import BloomParseServer, ParseServerError
from bloom_api.utils.upload_errors import BookUploadErrorCode, handle_book_upload_error
from bloom_api.utils.validation import (
    get_environment,
    get_header,
    get_id_and_action,
    is_valid_book_id,
    parse_json_body,
    validate_boolean_field,
    validate_string_field,
)
from bloom_api.utils.version import can_client_upload, is_client_version_sufficient, parse_version
from conftest import create_mock_event


def mock_urlopen_response(data):
    mock_response = Mock()
    mock_response.read.return_value = json.dumps(data).encode()
    mock_response.__enter__ = Mock(return_value=mock_response)
    mock_response.__exit__ = Mock(return_value=False)
    return mock_response


def http_error(code, body):
    return urllib.error.HTTPError(
        "https://dev-parse.bloomlibrary.org/x", code, "error", {}, io.BytesIO(json.dumps(body).encode())
    )


# ============================================================================
# Config Tests
# ============================================================================


def test_parse_environment_accepts_names():
    assert config.parse_environment("unit-test") == Environment.UNIT_TEST
    assert config.parse_environment(Environment.PRODUCTION) == Environment.PRODUCTION


def test_parse_environment_rejects_unknown():
    with pytest.raises(ValueError, match="production, development, unit-test"):
        config.parse_environment("prod")


def test_get_missing_settings(monkeypatch):
    monkeypatch.setenv("PARSE_APP_ID_DEV", "app")
    monkeypatch.setenv("BLOOM_S3_KEY_DEV", "key")
    monkeypatch.delenv("BLOOM_S3_SECRET_KEY_DEV", raising=False)
    monkeypatch.delenv("PARSE_API_SUPER_USER_PASSWORD_DEV", raising=False)
    monkeypatch.delenv("CONTENTFUL_READ_ONLY_TOKEN", raising=False)

    with patch.object(config, "ACTIONS_TABLE_NAME", "actions"), \
         patch.object(config, "LONG_RUNNING_ACTIONS_FUNCTION", None):
        missing = config.get_missing_settings(Environment.DEVELOPMENT)

    assert missing == [
        "BLOOM_S3_SECRET_KEY_DEV",
        "PARSE_API_SUPER_USER_PASSWORD_DEV",
        "CONTENTFUL_READ_ONLY_TOKEN",
        "LONG_RUNNING_ACTIONS_FUNCTION",
    ]


def test_get_missing_settings_unit_test_needs_test_user_password(monkeypatch):
    for name in ("PARSE_APP_ID", "BLOOM_S3_KEY", "BLOOM_S3_SECRET_KEY", "PARSE_API_SUPER_USER_PASSWORD"):
        monkeypatch.setenv(f"{name}_UNITTEST", "value")
    monkeypatch.setenv("CONTENTFUL_READ_ONLY_TOKEN", "token")
    monkeypatch.delenv("PARSE_UNIT_TEST_USER_PASSWORD_UNITTEST", raising=False)

    with patch.object(config, "ACTIONS_TABLE_NAME", "actions"), \
         patch.object(config, "LONG_RUNNING_ACTIONS_FUNCTION", "worker"):
        assert config.get_missing_settings(Environment.UNIT_TEST) == ["PARSE_UNIT_TEST_USER_PASSWORD_UNITTEST"]
        monkeypatch.setenv("PARSE_UNIT_TEST_USER_PASSWORD_UNITTEST", "secret")
        assert config.get_missing_settings(Environment.UNIT_TEST) == []


def test_get_missing_settings_fully_configured_development(monkeypatch):
    for name in ("PARSE_APP_ID", "BLOOM_S3_KEY", "BLOOM_S3_SECRET_KEY", "PARSE_API_SUPER_USER_PASSWORD"):
        monkeypatch.setenv(f"{name}_DEV", "value")
    monkeypatch.setenv("CONTENTFUL_READ_ONLY_TOKEN", "token")
    monkeypatch.delenv("PARSE_UNIT_TEST_USER_PASSWORD_UNITTEST", raising=False)

    with patch.object(config, "ACTIONS_TABLE_NAME", "actions"), \
         patch.object(config, "LONG_RUNNING_ACTIONS_FUNCTION", "worker"):
        assert config.get_missing_settings(Environment.DEVELOPMENT) == []


def test_get_parse_server_url_prefers_environment_variable(monkeypatch):
    monkeypatch.setenv("PARSE_SERVER_URL_PROD", "https://parse.example.org/")

    assert config.get_parse_server_url(Environment.PRODUCTION) == "https://parse.example.org"


# ============================================================================
# Validation Utility Tests
# ============================================================================


@pytest.mark.parametrize(
    "value,expected",
    [
        ("abc1234567:upload-start", ("abc1234567", "upload-start")),
        ("new:upload-start", ("new", "upload-start")),
        ("abc1234567", ("abc1234567", None)),
        ("a:b:c", (None, None)),
        ("", (None, None)),
        (None, (None, None)),
    ],
)
def test_get_id_and_action(value, expected):
    assert get_id_and_action(value) == expected


def test_is_valid_book_id():
    assert is_valid_book_id("abc1234567")
    assert not is_valid_book_id("abc123456")
    assert not is_valid_book_id("abc-234567")
    assert not is_valid_book_id("new")
    assert is_valid_book_id("new", allow_new=True)


def test_get_header_is_case_insensitive():
    event = create_mock_event(headers={"authentication-token": "r:lower"})
    event["headers"].pop("Authentication-Token")

    assert get_header(event, "Authentication-Token") == "r:lower"
    assert get_header(event, "X-Missing") is None


def test_get_environment():
    assert get_environment(create_mock_event()) == (Environment.PRODUCTION, None)
    assert get_environment(create_mock_event(query={"env": "development"})) == (Environment.DEVELOPMENT, None)

    env, error = get_environment(create_mock_event(query={"env": "bogus"}))
    assert env is None
    assert error["statusCode"] == 400


def test_parse_json_body():
    body, error = parse_json_body({"body": '{"name": "x"}'})
    assert body == {"name": "x"} and error is None

    body, error = parse_json_body({"body": None})
    assert body == {} and error is None

    _, error = parse_json_body({"body": "{not json"})
    assert error["statusCode"] == 400

    _, error = parse_json_body({"body": "[1, 2]"})
    assert error["statusCode"] == 400


def test_validate_string_field():
    assert validate_string_field({"name": "Book"}, "name") is None
    assert validate_string_field({}, "name") is None
    assert validate_string_field({}, "name", required=True)["statusCode"] == 400
    assert validate_string_field({"name": 5}, "name")["statusCode"] == 400
    assert validate_string_field({"name": "x" * 501}, "name")["statusCode"] == 400


def test_validate_boolean_field():
    assert validate_boolean_field({"becomeUploader": True}, "becomeUploader") is None
    assert validate_boolean_field({}, "becomeUploader") is None
    assert validate_boolean_field({"becomeUploader": "true"}, "becomeUploader")["statusCode"] == 400


# ============================================================================
# Version Utility Tests
# ============================================================================


def test_parse_version():
    assert parse_version("5.4.102") == (5, 4)
    assert parse_version("6.0") == (6, 0)
    assert parse_version("beta") is None
    assert parse_version(None) is None


@pytest.mark.parametrize(
    "client,required,expected",
    [
        ("5.3", "5.4", False),
        ("5.4", "5.4", True),
        ("5.5", "5.4", True),
        ("6.0", "5.9", True),
        ("4.9", "5.4", False),
        ("garbage", "5.4", False),
        ("5.0", None, True),
        ("5.0", "unparseable", False),
        ("5.0", "", True),
    ],
)
def test_is_client_version_sufficient(client, required, expected):
    assert is_client_version_sufficient(client, required) is expected


def test_can_client_upload_without_configured_minimum():
    parse_server = Mock()
    parse_server.get_minimum_upload_client_version.return_value = None

    assert can_client_upload(None, parse_server) is True


# ============================================================================
# DynamoDB Utility Tests
# ============================================================================


def test_build_update_expression_set_and_remove():
    expr, values, names = build_update_expression({"status": "Completed", "output": None}, allow_remove=True)

    assert expr == "SET #status = :status REMOVE #output"
    assert values == {":status": "Completed"}
    assert names == {"#status": "status", "#output": "output"}


def test_build_update_expression_none_is_set_without_allow_remove():
    expr, values, _ = build_update_expression({"output": None})

    assert expr == "SET #output = :output"
    assert values == {":output": None}


def test_build_update_params_merges_condition_placeholders():
    params = build_update_params(
        key={"id": "op1"},
        fields={"status": "Running"},
        condition_expression="#status IN (:pending, :running)",
        condition_values={":pending": "Pending", ":running": "Running"},
        condition_names={"#status": "status"},
    )

    assert params == {
        "Key": {"id": "op1"},
        "UpdateExpression": "SET #status = :status",
        "ExpressionAttributeNames": {"#status": "status"},
        "ExpressionAttributeValues": {":status": "Running", ":pending": "Pending", ":running": "Running"},
        "ConditionExpression": "#status IN (:pending, :running)",
        "ReturnValues": "NONE",
    }


def test_build_update_params_remove_only_has_no_values():
    params = build_update_params(key={"id": "op1"}, fields={"output": None}, allow_remove=True)

    assert "ExpressionAttributeValues" not in params
    assert "ConditionExpression" not in params


# ============================================================================
# Upload Error Tests
# ============================================================================


def test_handle_book_upload_error_hides_exception():
    result = handle_book_upload_error(
        BookUploadErrorCode.ERROR_COPYING_BOOK_FILES, RuntimeError("AccessDenied on arn:aws:s3:::secret")
    )

    assert result == {
        "failed": True,
        "error": {"code": "ErrorCopyingBookFiles", "message": "Unable to copy book files"},
    }


def test_every_upload_error_has_a_message():
    for code in BookUploadErrorCode:
        assert handle_book_upload_error(code)["error"]["message"]


# ============================================================================
# Contentful Utility Tests
# ============================================================================


def test_convert_filter_to_parse_where():
    assert contentful.convert_filter_to_parse_where({"tag": "bookshelf:foo"}) == {"tags": "bookshelf:foo"}
    assert contentful.convert_filter_to_parse_where({"publisher": "SIL", "language": ""}) == {"publisher": "SIL"}
    assert contentful.convert_filter_to_parse_where({"language": "tpi"}) == {
        "langPointers": {"$inQuery": {"where": {"isoCode": "tpi"}, "className": "language"}}
    }
    assert contentful.convert_filter_to_parse_where({"search": "dogs"}) is None
    assert contentful.convert_filter_to_parse_where({}) is None


def test_get_all_contentful_collection_filters_for_user():
    response = {
        "items": [{
            "sys": {"id": "user1"},
            "fields": {"editorCollections": [
                {"sys": {"type": "Link", "linkType": "Entry", "id": "col1"}},
                {"sys": {"type": "Link", "linkType": "Entry", "id": "draft"}},
            ]},
        }],
        "includes": {"Entry": [
            {
                "sys": {"id": "col1"},
                "fields": {
                    "urlKey": "parent",
                    "childCollections": [{"sys": {"type": "Link", "linkType": "Entry", "id": "col2"}}],
                },
            },
            {"sys": {"id": "col2"}, "fields": {"urlKey": "child", "filter": {"publisher": "SIL"}}},
        ]},
    }

    with patch.object(contentful, "_get_entries", return_value=response):
        filters = contentful.get_all_contentful_collection_filters_for_user("editor@example.com")

    assert filters == [{"publisher": "SIL"}, {"tag": "bookshelf:parent"}]


def test_get_all_contentful_collection_filters_for_unknown_user():
    with patch.object(contentful, "_get_entries", return_value={"items": []}):
        assert contentful.get_all_contentful_collection_filters_for_user("nobody@example.com") == []


def test_contentful_request_uses_read_only_token(monkeypatch):
    monkeypatch.setenv("CONTENTFUL_READ_ONLY_TOKEN", "cf-token")

    with patch.object(urllib.request, "urlopen", return_value=mock_urlopen_response({"items": []})) as mock_open:
        contentful.get_user_entry("editor@example.com")

    request = mock_open.call_args.args[0]
    assert request.get_header("Authorization") == "Bearer cf-token"
    assert "fields.emailAddress=editor%40example.com" in request.full_url


# ============================================================================
# Parse Server Client Tests
# ============================================================================


@pytest.fixture
def parse_client(monkeypatch):
    monkeypatch.setenv("PARSE_APP_ID_UNITTEST", "unit-test-app")
    monkeypatch.delenv("PARSE_SERVER_URL_UNITTEST", raising=False)
    return BloomParseServer(Environment.UNIT_TEST)


def test_parse_request_sends_app_id_and_session(parse_client):
    response = mock_urlopen_response({"results": [{"objectId": "abc1234567"}]})

    with patch.object(urllib.request, "urlopen", return_value=response) as mock_open:
        book = parse_client.get_book_by_database_id("abc1234567")

    assert book == {"objectId": "abc1234567"}
    request = mock_open.call_args.args[0]
    assert request.get_header("X-parse-application-id") == "unit-test-app"
    assert request.full_url.startswith("https://dev-parse.bloomlibrary.org/classes/books?where=")
    assert "include=" not in request.full_url


def test_parse_get_book_returns_none_when_missing(parse_client):
    with patch.object(urllib.request, "urlopen", return_value=mock_urlopen_response({"results": []})):
        assert parse_client.get_book_by_database_id("abc1234567") is None


def test_parse_http_error_is_raised_as_parse_server_error(parse_client):
    error = http_error(400, {"code": 101, "error": "Object not found."})

    with patch.object(urllib.request, "urlopen", side_effect=error):
        with pytest.raises(ParseServerError) as exc_info:
            parse_client.modify_book_record("abc1234567", {"title": "x"}, "r:token")

    assert exc_info.value.status_code == 400
    assert exc_info.value.parse_code == 101
    assert exc_info.value.message == "Object not found."


def test_get_logged_in_user_info_with_invalid_token(parse_client):
    error = http_error(400, {"code": 209, "error": "Invalid session token"})

    with patch.object(urllib.request, "urlopen", side_effect=error):
        assert parse_client.get_logged_in_user_info("r:stale") is None


def test_get_logged_in_user_info_adds_session_token(parse_client):
    response = mock_urlopen_response({"objectId": "user000001", "email": "a@example.com"})

    with patch.object(urllib.request, "urlopen", return_value=response):
        user = parse_client.get_logged_in_user_info("r:token")

    assert user == {"objectId": "user000001", "email": "a@example.com", "sessionToken": "r:token"}


def test_is_uploader_or_collection_editor_for_uploader(parse_client):
    book = {"objectId": "abc1234567", "uploader": {"objectId": "user000001"}}

    with patch.object(contentful, "get_all_contentful_collection_filters_for_user") as mock_filters:
        assert parse_client.is_uploader_or_collection_editor({"objectId": "user000001"}, book) is True
    mock_filters.assert_not_called()


def test_is_uploader_or_collection_editor_via_collection_filter(parse_client):
    book = {"objectId": "abc1234567", "uploader": {"objectId": "someone999"}}
    user = {"objectId": "user000001", "email": "editor@example.com"}

    with patch.object(contentful, "get_all_contentful_collection_filters_for_user",
                      return_value=[{"search": "x"}, {"tag": "bookshelf:foo"}]), \
         patch.object(BloomParseServer, "get_book_count", return_value=1) as mock_count:
        assert parse_client.is_uploader_or_collection_editor(user, book) is True

    mock_count.assert_called_once_with({"tags": "bookshelf:foo", "objectId": "abc1234567"})


def test_login_as_api_super_user_if_needed(parse_client):
    book = {"objectId": "abc1234567", "uploader": {"objectId": "user000001"}}

    assert parse_client.login_as_api_super_user_if_needed({"objectId": "user000001"}, book) is None
    with patch.object(BloomParseServer, "login_as_api_super_user", return_value="r:super") as mock_login:
        assert parse_client.login_as_api_super_user_if_needed({"objectId": "editor0001"}, book) == "r:super"
    mock_login.assert_called_once()


def test_get_or_create_language_creates_missing_language(parse_client):
    responses = [mock_urlopen_response({"results": []}), mock_urlopen_response({"objectId": "lang000001"})]

    with patch.object(urllib.request, "urlopen", side_effect=responses) as mock_open:
        language_id = parse_client.get_or_create_language('{"isoCode": "tpi", "name": "Tok Pisin"}')

    assert language_id == "lang000001"
    create_request = mock_open.call_args_list[1].args[0]
    assert create_request.get_method() == "POST"
    assert json.loads(create_request.data) == {"isoCode": "tpi", "name": "Tok Pisin"}


# ============================================================================
# Auth Utility Tests
# ============================================================================


def test_get_user_from_session_uses_header():
    parse_server = Mock()
    parse_server.get_environment.return_value = Environment.PRODUCTION
    parse_server.get_logged_in_user_info.return_value = {"objectId": "user000001"}

    user = get_user_from_session(parse_server, create_mock_event())

    assert user == {"objectId": "user000001"}
    parse_server.get_logged_in_user_info.assert_called_once_with("r:user-session")


def test_get_user_from_session_without_header():
    parse_server = Mock()
    parse_server.get_environment.return_value = Environment.PRODUCTION
    event = create_mock_event()
    event["headers"].pop("Authentication-Token")

    assert get_user_from_session(parse_server, event) is None
    parse_server.get_logged_in_user_info.assert_not_called()


def test_get_user_from_session_in_unit_test_environment_logs_in():
    parse_server = Mock()
    parse_server.get_environment.return_value = Environment.UNIT_TEST
    parse_server.login_as_unit_test_user.return_value = "r:unit-test"

    get_user_from_session(parse_server, create_mock_event())

    parse_server.get_logged_in_user_info.assert_called_once_with("r:unit-test")
