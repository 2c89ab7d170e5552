from __future__ import annotations

import io
from pathlib import Path
from typing import Any

import pytest
import requests

from project_lock_engine.internal.http import (
    CachingHttpClient,
    HttpFetchError,
    ResponseCache,
    _parse_content_range_total,
)
from unit.helpers.http_helper import FakeSession, make_client, ranged, response

URL = "https://index.example/simple/foo/"

###############################################################################
# BRANCH LEDGER
###############################################################################
"""
## CachingHttpClient._request
B01: connection error / timeout -> retried with exponential backoff
B02: 429 / 5xx -> retried
B03: retries exhausted -> HttpFetchError
B04: other status -> returned to caller (404 is not retried)

## CachingHttpClient.get
B05: fresh cache entry -> no request
B06: stale entry -> conditional request; 304 -> cached body, timestamp refreshed
B07: stale entry -> 200 -> replaced
B08: >= 400 -> HttpFetchError with status_code

## CachingHttpClient.get_range
B09: suffix / start-end / open-ended Range headers
B10: 206 -> partial with total size from Content-Range
B11: 200 -> full body, partial False
B12: 416 -> HttpFetchError
B13: neither start nor suffix -> ValueError

## CachingHttpClient.download_to
B14: streams all chunks and reports them
B15: mid-stream failure -> HttpFetchError

## CachingHttpClient.status
B16: live status returned; response cache bypassed
"""

RETRY_CASES = [
    {
        "id": "B01-connection-error-then-ok",
        "items": [requests.ConnectionError("boom"), response(200, b"ok")],
        "content": b"ok",
        "sleeps": [0.5],
    },
    {
        "id": "B01-timeout-twice-then-ok",
        "items": [requests.Timeout("slow"), requests.Timeout("slow"), response(200, b"ok")],
        "content": b"ok",
        "sleeps": [0.5, 1.0],
    },
    {
        "id": "B02-503-then-ok",
        "items": [response(503), response(200, b"ok")],
        "content": b"ok",
        "sleeps": [0.5],
    },
    {
        "id": "B03-exhausted",
        "items": [response(502)],
        "raises": "HTTP 502",
        "sleeps": [0.5, 1.0],
    },
]


@pytest.mark.parametrize("row", RETRY_CASES, ids=lambda r: r["id"])
def test_get_retries_transient_failures(row: dict[str, Any]) -> None:
    session = FakeSession().add(URL, *row["items"])
    client = make_client(session, retries=3)
    if "raises" in row:
        with pytest.raises(HttpFetchError, match=row["raises"]):
            client.get(URL)
        assert session.count(URL) == 3
    else:
        assert client.get(URL).content == row["content"]
    assert client.sleeps == row["sleeps"]


def test_get_404_is_not_retried() -> None:
    # B04, B08
    session = FakeSession().add(URL, response(404))
    client = make_client(session)
    with pytest.raises(HttpFetchError) as ei:
        client.get(URL)
    assert ei.value.status_code == 404
    assert session.count(URL) == 1
    assert client.sleeps == []


def test_get_sends_user_agent_and_caller_headers() -> None:
    session = FakeSession().add(URL, response(200, b"{}"))
    make_client(session).get(URL, headers={"Accept": "application/json"})
    _, headers = session.calls[0]
    assert headers["User-Agent"].startswith("project-lock-engine/")
    assert headers["Accept"] == "application/json"


def test_get_fresh_cache_hit_skips_network() -> None:
    # B05
    session = FakeSession().add(URL, response(200, b"body", ETag='"v1"'))
    client = make_client(session, ttl_s=60)
    first = client.get(URL)
    second = client.get(URL)
    assert not first.from_cache
    assert second.from_cache
    assert second.content == b"body"
    assert session.count(URL) == 1


def test_get_stale_entry_revalidates_with_validators() -> None:
    # B06
    now = [1000.0]

    def conditional(headers):
        if headers.get("If-None-Match") == '"v1"':
            return response(304)
        return response(200, b"body", ETag='"v1"', Last_Modified="Mon, 01 Jan 2024 00:00:00 GMT")

    session = FakeSession().add(URL, conditional)
    client = make_client(session, ttl_s=10, clock=lambda: now[0])
    client.get(URL)
    now[0] += 11
    revalidated = client.get(URL)
    assert revalidated.from_cache
    assert revalidated.content == b"body"
    _, headers = session.calls[1]
    assert headers["If-Modified-Since"] == "Mon, 01 Jan 2024 00:00:00 GMT"

    # the 304 refreshed the entry, so the next call is a fresh hit
    now[0] += 5
    client.get(URL)
    assert session.count(URL) == 2


def test_get_stale_entry_replaced_on_200() -> None:
    # B07
    now = [1000.0]
    session = FakeSession().add(URL, response(200, b"old"), response(200, b"new"))
    client = make_client(session, ttl_s=1, clock=lambda: now[0])
    assert client.get(URL).content == b"old"
    now[0] += 2
    assert client.get(URL).content == b"new"


def test_response_cache_persists_on_disk(tmp_path: Path) -> None:
    session = FakeSession().add(URL, response(200, b"persisted", ETag='"e"'))
    make_client(session, cache=ResponseCache(tmp_path)).get(URL)

    other = FakeSession()
    hit = make_client(other, cache=ResponseCache(tmp_path)).get(URL)
    assert hit.from_cache
    assert hit.content == b"persisted"
    assert other.calls == []


def test_response_cache_ignores_tampered_body(tmp_path: Path) -> None:
    cache_client = make_client(FakeSession().add(URL, response(200, b"good")), cache=ResponseCache(tmp_path))
    cache_client.get(URL)
    body = next(tmp_path.glob("*.body"))
    body.write_bytes(b"evil")
    assert ResponseCache(tmp_path).get(URL) is None


@pytest.mark.parametrize(
    "kwargs, expected_header",
    [
        ({"suffix": 100}, "bytes=-100"),
        ({"start": 10, "end": 19}, "bytes=10-19"),
        ({"start": 10}, "bytes=10-"),
    ],
)
def test_get_range_headers(kwargs: dict[str, int], expected_header: str) -> None:
    # B09, B10
    data = bytes(range(256))
    session = FakeSession().add(URL, ranged(data))
    result = make_client(session).get_range(URL, **kwargs)
    _, headers = session.calls[0]
    assert headers["Range"] == expected_header
    assert headers["Accept-Encoding"] == "identity"
    assert result.partial
    assert result.total_size == 256


def test_get_range_suffix_content() -> None:
    data = bytes(range(256))
    session = FakeSession().add(URL, ranged(data))
    assert make_client(session).get_range(URL, suffix=6).content == data[-6:]


def test_get_range_server_ignores_range() -> None:
    # B11
    data = b"x" * 50
    session = FakeSession().add(URL, ranged(data, honor_range=False))
    result = make_client(session).get_range(URL, suffix=10)
    assert not result.partial
    assert result.content == data
    assert result.total_size == 50


def test_get_range_not_satisfiable() -> None:
    # B12
    session = FakeSession().add(URL, ranged(b"abc"))
    with pytest.raises(HttpFetchError) as ei:
        make_client(session).get_range(URL, start=100)
    assert ei.value.status_code == 416


def test_get_range_requires_bounds() -> None:
    # B13
    with pytest.raises(ValueError):
        make_client(FakeSession()).get_range(URL)


def test_download_to_streams_chunks() -> None:
    # B14
    data = b"0123456789" * 10
    session = FakeSession().add(URL, response(200, data))
    sink = io.BytesIO()
    seen: list[bytes] = []
    written = make_client(session).download_to(URL, sink, chunk_bytes=7, on_chunk=seen.append)
    assert written == len(data)
    assert sink.getvalue() == data
    assert b"".join(seen) == data


def test_download_to_mid_stream_failure() -> None:
    # B15
    broken = response(200, b"a" * 20)
    broken.fail_mid_stream = True
    session = FakeSession().add(URL, broken)
    with pytest.raises(HttpFetchError, match="stream reset"):
        make_client(session).download_to(URL, io.BytesIO(), chunk_bytes=5)


@pytest.mark.parametrize(
    "value, expected",
    [("bytes 0-9/100", 100), ("bytes */42", 42), ("bytes 0-9/*", None), (None, None), ("garbage", None)],
)
def test_parse_content_range_total(value: str | None, expected: int | None) -> None:
    assert _parse_content_range_total(value) == expected


def test_client_rejects_zero_retries() -> None:
    with pytest.raises(ValueError):
        CachingHttpClient(retries=0, session=FakeSession())  # type: ignore[arg-type]


def test_client_context_manager_closes_session() -> None:
    session = FakeSession()
    with make_client(session):
        pass
    assert session.closed


def test_status_bypasses_the_response_cache() -> None:
    # B16
    session = FakeSession().add(URL, response(200, b"body"), response(503), response(404))
    client = make_client(session, retries=1)
    client.get(URL)

    with pytest.raises(HttpFetchError):
        client.status(URL)
    assert client.status(URL) == 404
    assert session.count(URL) == 3
