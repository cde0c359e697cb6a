"""
Contentful utilities for Books API

Looks up the collections a user may edit and the book filters they define.
Uses the Contentful Content Delivery (CDN) REST API.
"""

from __future__ import annotations

import json
import logging
import os
import urllib.parse
import urllib.request
from typing import Any

# Support both Lambda deployment and local development
try:
    import config
except ImportError:
    import bloom_api.config as config

logger = logging.getLogger(__name__)

CONTENTFUL_CDN_URL = "https://cdn.contentful.com"


def _get_entries(params: dict[str, Any]) -> dict:
    token = os.environ.get("CONTENTFUL_READ_ONLY_TOKEN")
    if not token:
        raise ValueError("CONTENTFUL_READ_ONLY_TOKEN is not set")

    url = (
        f"{CONTENTFUL_CDN_URL}/spaces/{config.CONTENTFUL_SPACE_ID}/environments/master/entries"
        f"?{urllib.parse.urlencode(params)}"
    )
    request = urllib.request.Request(url, headers={"Authorization": f"Bearer {token}"})
    with urllib.request.urlopen(request, timeout=config.HTTP_TIMEOUT_SECONDS) as response:
        return json.loads(response.read())


def _resolve_links(value: Any, entries_by_id: dict[str, dict], seen: frozenset = frozenset()) -> Any:
    """
    Replace Contentful entry links with the included entries they point to.

    Links to entries that were not included (e.g. drafts) are left as bare links,
    which have no "fields".
    """
    if isinstance(value, list):
        return [_resolve_links(item, entries_by_id, seen) for item in value]
    if not isinstance(value, dict):
        return value

    sys_info = value.get("sys", {})
    if sys_info.get("type") == "Link" and sys_info.get("linkType") == "Entry":
        entry_id = sys_info.get("id")
        if entry_id in entries_by_id and entry_id not in seen:
            entry = entries_by_id[entry_id]
            return {
                "sys": entry.get("sys", {}),
                "fields": _resolve_links(entry.get("fields", {}), entries_by_id, seen | {entry_id}),
            }
        return value

    return {key: _resolve_links(item, entries_by_id, seen) for key, item in value.items()}


def get_user_entry(email_address: str) -> dict | None:
    """Get the Contentful "user" entry for an email address, with its collections resolved."""
    response = _get_entries({
        "content_type": "user",
        "fields.emailAddress": email_address,
        "select": "fields.editorCollections",
        "include": 10,  # depth
    })
    items = response.get("items", [])
    if not items:
        return None

    entries_by_id = {
        entry["sys"]["id"]: entry for entry in response.get("includes", {}).get("Entry", [])
    }
    return _resolve_links(items[0], entries_by_id)


def _process_collection(collection: dict, filters: list[dict]) -> None:
    fields = collection.get("fields")
    if not fields:
        # A draft child collection comes back without fields
        return

    for child in fields.get("childCollections") or []:
        _process_collection(child, filters)

    if fields.get("filter"):
        collection_filter = fields["filter"]
    elif fields.get("useSimpleBookshelfFilter") is not False:
        collection_filter = {"tag": f"bookshelf:{fields.get('urlKey')}"}
    else:
        return

    if collection_filter not in filters:
        filters.append(collection_filter)


def get_all_contentful_collection_filters_for_user(email_address: str) -> list[dict]:
    """
    Get the book filters of every collection (and child collection) a user edits.

    Returns:
        list: Distinct filter objects, e.g. [{"tag": "bookshelf:foo"}]
    """
    user = get_user_entry(email_address)
    if not user:
        return []

    filters: list[dict] = []
    for collection in user.get("fields", {}).get("editorCollections") or []:
        _process_collection(collection, filters)
    return filters


def convert_filter_to_parse_where(collection_filter: dict) -> dict | None:
    """
    Convert a collection filter to a Parse "where" query on the books class.

    Only tag, language, publisher and originalPublisher filters are understood.
    A filter with anything else grants nothing and returns None.
    """
    where: dict[str, Any] = {}
    for key, value in collection_filter.items():
        if value in (None, ""):
            continue
        if key == "tag":
            where["tags"] = value
        elif key == "language":
            where["langPointers"] = {
                "$inQuery": {"where": {"isoCode": value}, "className": "language"}
            }
        elif key in ("publisher", "originalPublisher"):
            where[key] = value
        else:
            logger.warning(f"Unsupported collection filter field: {key}")
            return None

    return where or None
