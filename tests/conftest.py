"""
Pytest configuration and shared fakes for the unit tests.

No test touches AWS, Parse Server or Contentful: S3 and STS clients are
replaced with in-memory fakes and the Parse Server client with a Mock.
"""

import json
from datetime import UTC, datetime
from unittest.mock import Mock, patch

import pytest

from bloom_api import config
from bloom_api.utils.parse_server import BloomParseServer

UNIT_TEST_BUCKET_URL = "https://s3.amazonaws.com/BloomLibraryBooks-UnitTests/"


class FakeS3Client:
    """
    In-memory stand-in for the boto3 S3 client calls the upload workflow makes.

    Objects are stored as key -> ETag (quoted, as S3 returns it).
    Listing is paginated like ListObjectsV2: sorted keys, at most page_size per
    call, continuing after the last key of the previous page.
    """

    def __init__(self, objects=None, page_size=1000):
        self.objects = dict(objects or {})
        self.page_size = page_size
        self.list_calls = []
        self.copy_calls = []
        self.delete_calls = []
        self.copy_status_code = 200

    def add(self, key, file_hash):
        self.objects[key] = f'"{file_hash}"'

    def list_objects_v2(self, Bucket, Prefix, MaxKeys=1000, ContinuationToken=None):
        keys = sorted(key for key in self.objects if key.startswith(Prefix))
        if ContinuationToken:
            keys = [key for key in keys if key > ContinuationToken]
        page_size = min(self.page_size, MaxKeys)
        page = keys[:page_size]
        self.list_calls.append(len(page))

        response = {
            "KeyCount": len(page),
            "Contents": [{"Key": key, "ETag": self.objects[key]} for key in page],
            "IsTruncated": len(keys) > page_size,
        }
        if response["IsTruncated"]:
            response["NextContinuationToken"] = page[-1]
        if not page:
            del response["Contents"]
        return response

    def copy_object(self, Bucket, CopySource, Key, ACL=None):
        self.copy_calls.append((CopySource["Key"], Key))
        if self.copy_status_code == 200:
            self.objects[Key] = self.objects[CopySource["Key"]]
        return {"ResponseMetadata": {"HTTPStatusCode": self.copy_status_code}}

    def delete_objects(self, Bucket, Delete):
        keys = [item["Key"] for item in Delete["Objects"]]
        assert len(keys) <= 1000
        self.delete_calls.append(keys)
        for key in keys:
            self.objects.pop(key, None)
        return {"ResponseMetadata": {"HTTPStatusCode": 200}}

    def keys_under(self, prefix):
        return sorted(key for key in self.objects if key.startswith(prefix))


@pytest.fixture
def fake_s3():
    """Route every per-environment S3 client to one FakeS3Client."""
    client = FakeS3Client()
    with patch.object(config, "get_s3_client", return_value=client):
        yield client


@pytest.fixture
def fake_sts():
    client = Mock()
    client.get_federation_token.return_value = {
        "Credentials": {
            "AccessKeyId": "ASIATEST",
            "SecretAccessKey": "secret",
            "SessionToken": "session",
            "Expiration": datetime(2030, 1, 2, 3, 4, 5, tzinfo=UTC),
        }
    }
    with patch.object(config, "get_sts_client", return_value=client):
        yield client


@pytest.fixture
def parse_server():
    """A Mock Parse Server for a caller who uploaded the book in question."""
    server = Mock(spec=BloomParseServer)
    server.get_environment.return_value = config.Environment.UNIT_TEST
    server.get_minimum_upload_client_version.return_value = "5.4"
    server.is_moderator.return_value = False
    server.is_uploader_or_collection_editor.return_value = True
    server.login_as_api_super_user_if_needed.return_value = None
    return server


@pytest.fixture
def user_info():
    return {
        "objectId": "user000001",
        "username": "uploader@example.com",
        "email": "uploader@example.com",
        "sessionToken": "r:user-session",
    }


def create_mock_event(path_params=None, body=None, method="POST", query=None, headers=None):
    """Create a mock API Gateway proxy event

    Args:
        path_params: Path parameters dict
        body: Request body (dict or JSON string)
        method: HTTP method
        query: Query string parameters dict
        headers: Request headers (defaults include Host and Authentication-Token)

    Returns:
        dict: Mock API Gateway event
    """
    event = {
        "httpMethod": method,
        "headers": {
            "Host": "api.bloomlibrary.org",
            "Authentication-Token": "r:user-session",
            **(headers or {}),
        },
        "requestContext": {"path": "/v1/books/abc1234567:upload-start", "stage": "v1"},
        "queryStringParameters": query,
    }

    if path_params:
        event["pathParameters"] = path_params

    if body is not None:
        event["body"] = json.dumps(body) if isinstance(body, dict) else body

    return event
