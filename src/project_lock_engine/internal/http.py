from __future__ import annotations

import hashlib
import json
import logging
import os
import tempfile
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, Any

import requests

DEFAULT_USER_AGENT = "project-lock-engine/0"
_RETRYABLE_STATUS = frozenset({429, 500, 502, 503, 504})


class HttpFetchError(Exception):
    """
    A request failed after the configured number of retries, or returned a
    non-retryable error status.
    """

    def __init__(self, url: str, cause: BaseException | str, *, status_code: int | None = None):
        super().__init__(f"GET {url} failed: {cause}")
        self.url = url
        self.cause = cause
        self.status_code = status_code


@dataclass(frozen=True, slots=True)
class HttpResponse:
    url: str
    status_code: int
    headers: Mapping[str, str]
    content: bytes
    from_cache: bool = False

    def json(self) -> Any:
        return json.loads(self.content.decode("utf-8"))

    @property
    def text(self) -> str:
        return self.content.decode("utf-8", errors="replace")


@dataclass(frozen=True, slots=True)
class RangeResponse:
    """
    Result of a byte-range request.

    `partial` is False when the server ignored the Range header and sent the
    whole body; callers then hold the complete file in `content`.
    """

    content: bytes
    partial: bool
    total_size: int | None


def _parse_content_range_total(value: str | None) -> int | None:
    # "bytes 0-1023/4096" or "bytes */4096"
    if not value or "/" not in value:
        return None
    total = value.rsplit("/", 1)[1].strip()
    return int(total) if total.isdigit() else None


@dataclass(slots=True)
class _CachedResponse:
    url: str
    content: bytes
    etag: str | None
    last_modified: str | None
    fetched_at: float
    headers: dict[str, str] = field(default_factory=dict)


class ResponseCache:
    """
    Raw response cache keyed by URL.

    With a directory, entries persist across runs as `<sha256(url)>.json` (validators)
    plus `<sha256(url)>.body`; without one, entries live in memory for the run.
    """

    def __init__(self, directory: Path | None = None) -> None:
        self._directory = directory
        self._memory: dict[str, _CachedResponse] = {}
        if directory is not None:
            directory.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def _key(url: str) -> str:
        return hashlib.sha256(url.encode("utf-8")).hexdigest()

    def get(self, url: str) -> _CachedResponse | None:
        if self._directory is None:
            return self._memory.get(url)
        key = self._key(url)
        meta_path = self._directory / f"{key}.json"
        body_path = self._directory / f"{key}.body"
        try:
            meta = json.loads(meta_path.read_text(encoding="utf-8"))
            body = body_path.read_bytes()
        except (OSError, ValueError):
            return None
        if meta.get("url") != url or meta.get("sha256") != hashlib.sha256(body).hexdigest():
            return None
        return _CachedResponse(
            url=url,
            content=body,
            etag=meta.get("etag"),
            last_modified=meta.get("last_modified"),
            fetched_at=float(meta.get("fetched_at", 0.0)),
            headers=dict(meta.get("headers") or {}),
        )

    def put(self, entry: _CachedResponse) -> None:
        if self._directory is None:
            self._memory[entry.url] = entry
            return
        key = self._key(entry.url)
        meta = {
            "url": entry.url,
            "etag": entry.etag,
            "last_modified": entry.last_modified,
            "fetched_at": entry.fetched_at,
            "headers": entry.headers,
            "sha256": hashlib.sha256(entry.content).hexdigest(),
        }
        # body first: a meta file never points at a body that is not there yet
        self._write_atomic(self._directory / f"{key}.body", entry.content)
        self._write_atomic(
            self._directory / f"{key}.json", json.dumps(meta, sort_keys=True).encode("utf-8")
        )

    def touch(self, url: str, fetched_at: float) -> None:
        entry = self.get(url)
        if entry is not None:
            entry.fetched_at = fetched_at
            self.put(entry)

    @staticmethod
    def _write_atomic(path: Path, data: bytes) -> None:
        fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            os.replace(tmp, path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise


class CachingHttpClient:
    """
    Small HTTP GET client used for index pages, metadata and artifacts.

    - transient failures (connection errors, timeouts, 429/5xx) are retried with
      bounded exponential backoff: `retries` attempts in total, sleeping
      `backoff_s`, `2 * backoff_s`, `4 * backoff_s`, ... between them
    - `get` caches raw responses and revalidates them with ETag / Last-Modified
      once they are older than `ttl_s`
    - `get_range` issues Range requests for partial metadata retrieval
    """

    def __init__(
        self,
        *,
        cache: ResponseCache | None = None,
        timeout_s: float = 30.0,
        retries: int = 3,
        backoff_s: float = 0.5,
        ttl_s: float = 600.0,
        user_agent: str = DEFAULT_USER_AGENT,
        session: requests.Session | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if retries < 1:
            raise ValueError("retries must be at least 1")
        self._cache = cache or ResponseCache()
        self._timeout_s = timeout_s
        self._retries = retries
        self._backoff_s = backoff_s
        self._ttl_s = ttl_s
        self._user_agent = user_agent
        self._session = session or requests.Session()
        self._sleep = sleep
        self._clock = clock

    def close(self) -> None:
        self._session.close()

    def __enter__(self) -> CachingHttpClient:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # -------------------------
    # request plumbing
    # -------------------------

    def _request(self, url: str, headers: Mapping[str, str], *, stream: bool = False) -> requests.Response:
        merged = {"User-Agent": self._user_agent, **headers}
        last_error: BaseException | str = "no attempt made"
        for attempt in range(self._retries):
            if attempt:
                delay = self._backoff_s * (2 ** (attempt - 1))
                logging.debug(f"retrying GET {url} in {delay:.2f}s (attempt {attempt + 1}/{self._retries})")
                self._sleep(delay)
            try:
                resp = self._session.get(url, headers=merged, timeout=self._timeout_s, stream=stream)
            except (requests.ConnectionError, requests.Timeout) as e:
                last_error = e
                logging.debug(f"GET {url} failed: {type(e).__name__}: {e}")
                continue
            if resp.status_code in _RETRYABLE_STATUS:
                last_error = f"HTTP {resp.status_code}"
                logging.debug(f"GET {url} returned retryable status {resp.status_code}")
                resp.close()
                continue
            return resp
        raise HttpFetchError(url, last_error)

    @staticmethod
    def _raise_for_status(url: str, resp: requests.Response) -> None:
        if resp.status_code >= 400:
            resp.close()
            raise HttpFetchError(url, f"HTTP {resp.status_code}", status_code=resp.status_code)

    # -------------------------
    # public API
    # -------------------------

    def get(self, url: str, *, headers: Mapping[str, str] | None = None) -> HttpResponse:
        headers = dict(headers or {})
        now = self._clock()
        cached = self._cache.get(url)
        if cached is not None and now - cached.fetched_at < self._ttl_s:
            logging.debug(f"http cache hit (fresh): {url}")
            return HttpResponse(url=url, status_code=200, headers=cached.headers, content=cached.content, from_cache=True)

        if cached is not None:
            if cached.etag:
                headers["If-None-Match"] = cached.etag
            if cached.last_modified:
                headers["If-Modified-Since"] = cached.last_modified

        resp = self._request(url, headers)
        if resp.status_code == 304 and cached is not None:
            logging.debug(f"http cache hit (revalidated): {url}")
            self._cache.touch(url, now)
            return HttpResponse(url=url, status_code=200, headers=cached.headers, content=cached.content, from_cache=True)
        self._raise_for_status(url, resp)

        content = resp.content
        kept_headers = {
            k: v for k, v in resp.headers.items() if k.lower() in ("content-type", "etag", "last-modified")
        }
        self._cache.put(
            _CachedResponse(
                url=url,
                content=content,
                etag=resp.headers.get("ETag"),
                last_modified=resp.headers.get("Last-Modified"),
                fetched_at=now,
                headers=kept_headers,
            )
        )
        return HttpResponse(url=url, status_code=resp.status_code, headers=kept_headers, content=content)

    def status(self, url: str, *, headers: Mapping[str, str] | None = None) -> int:
        """
        Status code of a live GET of `url`; the response cache is not consulted.
        """
        resp = self._request(url, dict(headers or {}), stream=True)
        resp.close()
        return resp.status_code

    def get_range(self, url: str, *, start: int | None = None, end: int | None = None, suffix: int | None = None) -> RangeResponse:
        """
        Fetch a byte range: `start`..`end` inclusive, or the last `suffix` bytes.
        """
        if suffix is not None:
            spec = f"bytes=-{suffix}"
        elif start is not None:
            spec = f"bytes={start}-{'' if end is None else end}"
        else:
            raise ValueError("get_range requires start or suffix")

        resp = self._request(url, {"Range": spec, "Accept-Encoding": "identity"})
        if resp.status_code == 416:
            resp.close()
            raise HttpFetchError(url, "range not satisfiable", status_code=416)
        self._raise_for_status(url, resp)
        content = resp.content
        if resp.status_code == 206:
            return RangeResponse(
                content=content,
                partial=True,
                total_size=_parse_content_range_total(resp.headers.get("Content-Range")),
            )
        logging.debug(f"server ignored Range for {url}; received full body")
        return RangeResponse(content=content, partial=False, total_size=len(content))

    def download_to(self, url: str, fileobj: IO[bytes], *, chunk_bytes: int = 1024 * 1024, on_chunk: Callable[[bytes], None] | None = None) -> int:
        """
        Stream `url` into `fileobj`, returning the number of bytes written.

        Only the connection phase is retried; a failure mid-stream surfaces as
        HttpFetchError because the caller's file already holds a partial body.
        """
        resp = self._request(url, {}, stream=True)
        self._raise_for_status(url, resp)
        written = 0
        try:
            for chunk in resp.iter_content(chunk_size=chunk_bytes):
                if not chunk:
                    continue
                fileobj.write(chunk)
                if on_chunk is not None:
                    on_chunk(chunk)
                written += len(chunk)
        except requests.RequestException as e:
            raise HttpFetchError(url, e) from e
        finally:
            resp.close()
        return written
