"""Tests for the Audiobookshelf sync client against a mocked server."""

from __future__ import annotations

import json
from pathlib import Path

import httpx

from tome_tagger.models import Metadata, SyncItem, SyncOutcome
from tome_tagger.sync import AudiobookshelfClient, SyncClient

BASE = "http://abs.local"


def _item(item_id: str, path: str, title: str = "", author: str = "") -> dict:
    return {
        "id": item_id,
        "path": path,
        "media": {"metadata": {"title": title, "authorName": author}},
    }


class FakeServer:
    """Minimal in-memory Audiobookshelf library."""

    def __init__(self, items: list[dict], fail_updates: dict[str, int] | None = None):
        self.items = items
        self.fail_updates = fail_updates or {}
        self.patches: list[tuple[str, dict]] = []
        self.list_status = 200
        self.seen_auth: set[str] = set()

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.seen_auth.add(request.headers.get("Authorization", ""))
        path = request.url.path
        if request.method == "GET" and path.endswith("/items"):
            if self.list_status != 200:
                return httpx.Response(self.list_status)
            limit = int(request.url.params["limit"])
            page = int(request.url.params["page"])
            results = self.items[page * limit : (page + 1) * limit]
            return httpx.Response(200, json={"results": results, "total": len(self.items)})
        if request.method == "PATCH" and path.startswith("/api/items/"):
            item_id = path.split("/")[3]
            if item_id in self.fail_updates:
                return httpx.Response(self.fail_updates[item_id])
            self.patches.append((item_id, json.loads(request.content)))
            return httpx.Response(200, json={"updated": True})
        if request.method == "POST" and path.endswith("/scan"):
            return httpx.Response(200)
        if request.method == "GET" and path == "/api/libraries/lib1":
            return httpx.Response(200, json={"id": "lib1"})
        return httpx.Response(404)


def _client(server: FakeServer, page_size: int = 2, token: str = "secret") -> AudiobookshelfClient:
    return AudiobookshelfClient(
        BASE,
        token,
        "lib1",
        page_size=page_size,
        client=httpx.Client(transport=httpx.MockTransport(server.handler)),
    )


def test_push_matches_by_ancestor_and_pages_through_library():
    server = FakeServer(
        [
            _item("li_1", "/audiobooks/Jane Doe/BookA"),
            _item("li_2", "/audiobooks/Jane Doe/BookB"),
            _item("li_3", "/audiobooks/John Roe/BookC"),
        ]
    )
    items = [
        SyncItem(Path("/audiobooks/John Roe/BookC/BookC.m4b"), Metadata(title="BookC")),
    ]

    result = SyncClient(_client(server)).push_updates(items)

    assert result.updated == 1
    assert server.patches[0][0] == "li_3"
    assert server.patches[0][1] == {"metadata": {"title": "BookC"}}
    assert server.seen_auth == {"Bearer secret"}


def test_files_of_one_book_update_remote_item_once():
    server = FakeServer([_item("li_1", "/audiobooks/Jane Doe/BookA")])
    metadata = Metadata(title="BookA", author="Jane Doe", narrator="John Smith")
    items = [
        SyncItem(Path(f"/audiobooks/Jane Doe/BookA/BookA - Part{n}.m4b"), metadata)
        for n in (1, 2)
    ]

    result = SyncClient(_client(server)).push_updates(items)

    assert len(server.patches) == 1
    assert result.updated == 1
    assert [i.outcome for i in result.items] == [SyncOutcome.UPDATED, SyncOutcome.UPDATED]
    payload = server.patches[0][1]["metadata"]
    assert payload["narrators"] == ["John Smith"]
    assert payload["authors"] == [{"id": "new-1", "name": "Jane Doe"}]


def test_unmatched_and_failed_are_reported_separately():
    server = FakeServer(
        [_item("li_1", "/audiobooks/BookA"), _item("li_2", "/audiobooks/BookB")],
        fail_updates={"li_2": 500},
    )
    items = [
        SyncItem(Path("/audiobooks/BookA/a.m4b"), Metadata(title="BookA")),
        SyncItem(Path("/audiobooks/BookB/b.m4b"), Metadata(title="BookB")),
        SyncItem(Path("/elsewhere/c.m4b"), Metadata(title="Unknown Story")),
    ]

    result = SyncClient(_client(server)).push_updates(items).to_dict()

    assert result["updated"] == 1
    assert result["unmatched"] == ["/elsewhere/c.m4b"]
    assert result["failed"] == [
        {
            "path": "/audiobooks/BookB/b.m4b",
            "reason": "Audiobookshelf responded with 500",
            "status": 500,
        }
    ]


def test_fuzzy_metadata_match_when_paths_differ():
    server = FakeServer([_item("li_9", "/mnt/abs/whatever", "BookA", "Jane Doe")])
    items = [SyncItem(Path("/local/x.m4b"), Metadata(title="BookA", author="Jane Doe"))]

    result = SyncClient(_client(server)).push_updates(items)

    assert result.updated == 1
    assert result.items[0].item_id == "li_9"


def test_not_configured_fails_every_item():
    server = FakeServer([])
    client = _client(server, token="")
    items = [SyncItem(Path("/a.m4b"), Metadata(title="A"))]

    result = SyncClient(client).push_updates(items)

    assert result.updated == 0
    assert result.failed[0].reason is not None
    assert "not configured" in result.failed[0].reason
    assert server.seen_auth == set()


def test_listing_failure_fails_every_item():
    server = FakeServer([])
    server.list_status = 401
    items = [SyncItem(Path("/a.m4b"), Metadata(title="A")), SyncItem(Path("/b.m4b"), Metadata())]

    result = SyncClient(_client(server)).push_updates(items)

    assert len(result.failed) == 2
    assert {i.status_code for i in result.failed} == {401}


def test_connection_check_and_rescan():
    server = FakeServer([])
    client = _client(server)

    assert client.test_connection() == (True, f"Connected to {BASE}")
    client.trigger_scan()
