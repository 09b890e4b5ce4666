import datetime as dt
from typing import Any, Dict, List, Optional

import pytest
import requests

from tm_stats import blob_store
from tm_stats.blob_store import (
    BlobNotFoundError,
    HttpBlobStore,
    LocalBlobStore,
    blob_path,
    parse_blob_path,
)


def test_blob_path_layout():
    assert blob_path(1, 12345) == "1/game_12345_1.json"


@pytest.mark.parametrize(
    "path, expected",
    [
        ("1/game_12345_1.json", (12345, 1)),
        ("/84/game_7_84.json", (7, 84)),
        ("1/game_12345_2.json", None),
        ("1/game_12345_1.txt", None),
        ("notes/readme.json", None),
    ],
)
def test_parse_blob_path(path, expected):
    assert parse_blob_path(path) == expected


def test_local_store_round_trip(tmp_path):
    store = LocalBlobStore(tmp_path)

    path = store.put(1, 12345, b'{"replay_id": "12345"}')

    assert path == "1/game_12345_1.json"
    assert (tmp_path / "games" / "1" / "game_12345_1.json").is_file()
    assert store.exists(1, 12345)
    assert not store.exists(2, 12345)
    assert store.get(1, 12345) == b'{"replay_id": "12345"}'
    assert store.last_modified(path).tzinfo is not None
    assert list(tmp_path.joinpath("games", "1").glob("*.tmp")) == []


def test_local_store_overwrites_existing_blob(tmp_path):
    store = LocalBlobStore(tmp_path)
    store.put(1, 12345, b"old")

    store.put(1, 12345, b"new")

    assert store.get(1, 12345) == b"new"


def test_local_store_missing_blob(tmp_path):
    store = LocalBlobStore(tmp_path)

    with pytest.raises(BlobNotFoundError):
        store.get_path("1/game_5_1.json")
    with pytest.raises(BlobNotFoundError):
        store.last_modified("1/game_5_1.json")


def test_local_store_rejects_paths_outside_container(tmp_path):
    store = LocalBlobStore(tmp_path)
    (tmp_path / "secret.json").write_text("{}")

    with pytest.raises(ValueError):
        store.get_path("../secret.json")


def test_local_store_lists_json_blobs_sorted(tmp_path):
    store = LocalBlobStore(tmp_path)
    assert list(store.iter_paths()) == []
    store.put(2, 20, b"{}")
    store.put(1, 10, b"{}")
    (tmp_path / "games" / "1" / "notes.txt").write_text("x")

    assert list(store.iter_paths()) == ["1/game_10_1.json", "2/game_20_2.json"]


class _Resp:
    def __init__(
        self,
        status_code: int = 200,
        content: bytes = b"",
        headers: Optional[Dict[str, str]] = None,
    ):
        self.status_code = status_code
        self.content = content
        self.headers = headers or {}

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")


class _Session:
    def __init__(self, responses: List[_Resp]):
        self.responses = list(responses)
        self.calls: List[Dict[str, Any]] = []

    def request(self, method, url, data=None, headers=None, timeout=None):
        self.calls.append(
            {"method": method, "url": url, "data": data, "headers": headers, "timeout": timeout}
        )
        return self.responses.pop(0)

    def close(self) -> None:
        return None


def _client(session, **kwargs):
    return HttpBlobStore(
        base_url="https://blobs.invalid/api/",
        api_key="key",
        session=session,
        **kwargs,
    )


def test_http_get_sends_api_key():
    session = _Session([_Resp(200, b"{}")])

    assert _client(session).get(1, 12345) == b"{}"

    (call,) = session.calls
    assert call["method"] == "GET"
    assert call["url"] == "https://blobs.invalid/api/games/1/game_12345_1.json"
    assert call["headers"]["x-api-key"] == "key"


def test_http_missing_blob():
    client = _client(_Session([_Resp(404), _Resp(404)]))

    assert client.exists(1, 12345) is False
    with pytest.raises(BlobNotFoundError):
        client.get(1, 12345)


def test_http_errors_propagate():
    client = _client(_Session([_Resp(500)]))

    with pytest.raises(requests.HTTPError):
        client.get(1, 12345)


def test_http_retries_throttled_requests(monkeypatch):
    sleeps = []
    monkeypatch.setattr(blob_store.time, "sleep", sleeps.append)
    session = _Session([_Resp(429, headers={"Retry-After": "2"}), _Resp(200, b"{}")])

    assert _client(session).get_path("1/game_12345_1.json") == b"{}"

    assert len(session.calls) == 2
    assert sleeps == [2.0]


def test_http_gives_up_after_max_retries(monkeypatch):
    monkeypatch.setattr(blob_store.time, "sleep", lambda _: None)
    session = _Session([_Resp(503)] * 3)

    with pytest.raises(requests.HTTPError):
        _client(session, max_retries=2).get(1, 12345)

    assert len(session.calls) == 3


def test_http_last_modified_parses_header():
    session = _Session([_Resp(200, headers={"Last-Modified": "Fri, 14 Mar 2025 12:00:00 GMT"})])

    stamp = _client(session).last_modified("1/game_12345_1.json")

    assert stamp == dt.datetime(2025, 3, 14, 12, 0, tzinfo=dt.timezone.utc)
    assert session.calls[0]["method"] == "HEAD"


def test_http_put_uploads_json():
    session = _Session([_Resp(201)])

    path = _client(session).put(1, 12345, b'{"a": 1}')

    assert path == "1/game_12345_1.json"
    call = session.calls[0]
    assert call["method"] == "PUT"
    assert call["data"] == b'{"a": 1}'
    assert call["headers"]["Content-Type"] == "application/json"


def test_http_store_cannot_be_listed():
    with pytest.raises(NotImplementedError):
        list(_client(_Session([])).iter_paths())
