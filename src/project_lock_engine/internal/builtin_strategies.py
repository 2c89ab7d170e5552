from __future__ import annotations

import hashlib
import io
import json
import logging
import re
import tarfile
import tempfile
import zipfile
import zlib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Final
from urllib.parse import unquote, urlparse
from urllib.request import url2pathname

from project_lock_engine.internal.http import CachingHttpClient, HttpFetchError
from project_lock_engine.model.keys import CoreMetadataKey, DistributionFormat, IndexMetadataKey
from project_lock_engine.repository import ArtifactRecord, ArtifactSource
from project_lock_engine.strategies import (
    CoreMetadataStrategy,
    IndexMetadataStrategy,
    StrategyNotApplicable,
)

_INVALID_SEGMENT_CHARS: Final[re.Pattern[str]] = re.compile(r"[^A-Za-z0-9._-]+")
PEP691_ACCEPT = "application/vnd.pypi.simple.v1+json"
_TAR_BLOCK = 512


def _safe_segment(value: str) -> str:
    """
    Make a filesystem-safe path segment.
    """
    value = value.strip()
    if not value:
        return "_"
    value = _INVALID_SEGMENT_CHARS.sub("_", value)
    return value[:160]  # keep segments sane


def _short_hash(value: str) -> str:
    """
    Stable short hash for building unique filenames without leaking huge URLs into paths.
    """
    return hashlib.sha256(value.encode("utf-8")).hexdigest()[:16]


def _require_file_destination(destination_uri: str) -> Path:
    """
    Built-in strategies write to local files only.
    """
    parsed = urlparse(destination_uri)
    if parsed.scheme != "file":
        raise ValueError(f"Built-in strategies require file:// destination URIs, got: {destination_uri!r}")
    return Path(url2pathname(parsed.path))


def local_path_from_url(url: str) -> Path | None:
    """
    Return the local path for file:// URLs and bare paths, None for remote URLs.
    """
    parsed = urlparse(url)
    if parsed.scheme == "file":
        return Path(url2pathname(unquote(parsed.path)))
    if parsed.scheme == "" or (len(parsed.scheme) == 1 and url[1:2] == ":"):
        return Path(url)
    return None


def _write_record(
    *, key: Any, dest_path: Path, payload: bytes, origin_uri: str, source: ArtifactSource
) -> ArtifactRecord:
    dest_path.parent.mkdir(parents=True, exist_ok=True)
    dest_path.write_bytes(payload)
    sha256 = hashlib.sha256(payload).hexdigest()
    return ArtifactRecord(
        key=key,
        destination_uri=dest_path.as_uri(),
        origin_uri=origin_uri,
        source=source,
        content_sha256=sha256,
        size=len(payload),
        content_hashes={"sha256": sha256},
    )


def _canonical_json(payload: Any) -> bytes:
    # Deterministic output for stable hashes.
    return (json.dumps(payload, indent=2, sort_keys=True) + "\n").encode("utf-8")


def _simple_project_url(index_base: str, project: str) -> str:
    base = index_base.rstrip("/") + "/"
    proj = project.strip("/")
    return f"{base}{proj}/"


# -------------------------
# archive readers
# -------------------------


def _find_dist_info_metadata_path(zf: zipfile.ZipFile) -> str:
    """
    Find a member path that looks like "<something>.dist-info/METADATA".
    """
    candidates = [
        n for n in zf.namelist() if n.endswith(".dist-info/METADATA") and n.count("/") == 1
    ]
    if not candidates:
        raise FileNotFoundError("Wheel does not contain any *.dist-info/METADATA entry")
    # Deterministic pick.
    candidates.sort()
    return candidates[0]


def _find_sdist_pkg_info_path(names: list[str]) -> str:
    candidates = sorted(n for n in names if n.endswith("/PKG-INFO") and n.count("/") == 1)
    if not candidates:
        raise FileNotFoundError("Source archive does not contain a top-level */PKG-INFO entry")
    return candidates[0]


def metadata_from_archive(fileobj: Any, *, filename: str, dist_format: DistributionFormat) -> bytes:
    """
    Extract core metadata bytes from a seekable wheel, zip sdist or tar sdist.
    """
    lowered = filename.lower()
    if dist_format is DistributionFormat.WHEEL or lowered.endswith(".zip"):
        with zipfile.ZipFile(fileobj) as zf:
            if dist_format is DistributionFormat.WHEEL:
                member = _find_dist_info_metadata_path(zf)
            else:
                member = _find_sdist_pkg_info_path(zf.namelist())
            return zf.read(member)
    with tarfile.open(fileobj=fileobj, mode="r:*") as tf:
        member = _find_sdist_pkg_info_path(tf.getnames())
        extracted = tf.extractfile(member)
        if extracted is None:
            raise FileNotFoundError(f"{member} is not a regular file in {filename}")
        return extracted.read()


class HttpRangeFile(io.RawIOBase):
    """
    Read-only, seekable view of a remote file backed by HTTP Range requests.

    Only the byte ranges actually read are transferred, which lets `zipfile`
    read a wheel's central directory and a single member without downloading
    the whole archive. When the server ignores Range, the full body received
    with the first request is used as-is.
    """

    def __init__(self, http: CachingHttpClient, url: str, *, initial_tail: int = 64 * 1024, min_fetch: int = 16 * 1024):
        super().__init__()
        self._http = http
        self._url = url
        self._min_fetch = min_fetch
        self._pos = 0
        self._segments: dict[int, bytes] = {}
        self.requests = 1

        first = http.get_range(url, suffix=initial_tail)
        if not first.partial:
            self._size = len(first.content)
            self._segments[0] = first.content
            self.partial = False
            return
        if first.total_size is None:
            raise HttpFetchError(url, "server did not report the file size for a range request")
        self._size = first.total_size
        self._segments[max(0, self._size - len(first.content))] = first.content
        self.partial = True

    @property
    def size(self) -> int:
        return self._size

    def readable(self) -> bool:
        return True

    def seekable(self) -> bool:
        return True

    def tell(self) -> int:
        return self._pos

    def seek(self, offset: int, whence: int = io.SEEK_SET) -> int:
        match whence:
            case io.SEEK_SET:
                self._pos = offset
            case io.SEEK_CUR:
                self._pos += offset
            case io.SEEK_END:
                self._pos = self._size + offset
            case _:
                raise ValueError(f"invalid whence: {whence}")
        if self._pos < 0:
            raise ValueError("negative seek position")
        return self._pos

    def _segment_at(self, pos: int) -> tuple[int, bytes] | None:
        for start, data in self._segments.items():
            if start <= pos < start + len(data):
                return start, data
        return None

    def _fetch(self, pos: int, wanted: int) -> None:
        end = min(self._size, pos + max(wanted, self._min_fetch)) - 1
        resp = self._http.get_range(self._url, start=pos, end=end)
        self.requests += 1
        if not resp.partial:
            self._segments = {0: resp.content}
            return
        self._segments[pos] = resp.content

    def readinto(self, buffer: Any) -> int:
        view = memoryview(buffer).cast("B")
        wanted = min(len(view), max(0, self._size - self._pos))
        copied = 0
        while copied < wanted:
            found = self._segment_at(self._pos)
            if found is None:
                self._fetch(self._pos, wanted - copied)
                found = self._segment_at(self._pos)
                if found is None:
                    raise HttpFetchError(self._url, f"range fetch did not cover offset {self._pos}")
            start, data = found
            offset = self._pos - start
            n = min(wanted - copied, len(data) - offset)
            view[copied : copied + n] = data[offset : offset + n]
            copied += n
            self._pos += n
        return copied


def _read_tar_member_from_prefix(decompressed: bytes, wanted: str) -> bytes | None:
    """
    Walk tar headers in a (possibly truncated) decompressed tar stream.

    Returns the member data when `wanted` (a predicate-style suffix such as
    "/PKG-INFO" at depth one) is found and fully contained in the prefix; None
    when the prefix ends before the member or its data.
    """
    offset = 0
    pending_name: str | None = None
    while offset + _TAR_BLOCK <= len(decompressed):
        block = decompressed[offset : offset + _TAR_BLOCK]
        if block == b"\0" * _TAR_BLOCK:
            return None
        try:
            info = tarfile.TarInfo.frombuf(block, "utf-8", "surrogateescape")
        except tarfile.HeaderError as e:
            raise ValueError(f"corrupt tar header at offset {offset}: {e}") from e
        data_start = offset + _TAR_BLOCK
        data_end = data_start + info.size
        padded_end = data_start + ((info.size + _TAR_BLOCK - 1) // _TAR_BLOCK) * _TAR_BLOCK

        if info.type in (tarfile.GNUTYPE_LONGNAME, tarfile.XHDTYPE):
            if data_end > len(decompressed):
                return None
            data = decompressed[data_start:data_end]
            if info.type == tarfile.GNUTYPE_LONGNAME:
                pending_name = data.rstrip(b"\0").decode("utf-8", "surrogateescape")
            else:
                match = re.search(rb"\d+ path=([^\n]*)\n", data)
                if match:
                    pending_name = match.group(1).decode("utf-8", "surrogateescape")
            offset = padded_end
            continue

        name = pending_name or info.name
        pending_name = None
        if info.isreg() and name.endswith(wanted) and name.count("/") == 1:
            if data_end > len(decompressed):
                return None
            return decompressed[data_start:data_end]
        offset = padded_end
    return None


# -------------------------
# index strategies
# -------------------------


@dataclass(frozen=True)
class Pep691IndexMetadataHttpStrategy(IndexMetadataStrategy):
    """
    Fetch a PEP 691 JSON project page. A 404 is recorded as an empty file list,
    meaning "this index does not know the project".
    """

    name: str = "pep691_http"
    precedence: int = 50
    http: CachingHttpClient = field(kw_only=True)

    def resolve(self, *, key: IndexMetadataKey, destination_uri: str) -> ArtifactRecord | None:
        if not isinstance(key, IndexMetadataKey):
            raise StrategyNotApplicable()
        if local_path_from_url(key.index_base) is not None:
            raise StrategyNotApplicable()

        dest_path = _require_file_destination(destination_uri)
        url = _simple_project_url(key.index_base, key.project)
        try:
            resp = self.http.get(url, headers={"Accept": PEP691_ACCEPT})
            payload: Any = resp.json()
        except HttpFetchError as e:
            if e.status_code != 404:
                raise
            payload = {"name": key.project, "files": []}
        except ValueError as e:
            raise ValueError(f"Index page {url} is not valid PEP 691 JSON: {e}") from e

        return _write_record(
            key=key,
            dest_path=dest_path,
            payload=_canonical_json(payload),
            origin_uri=url,
            source=self.source,
        )


@dataclass(frozen=True)
class LocalDirectoryIndexMetadataStrategy(IndexMetadataStrategy):
    """
    Read PEP 691 JSON pages from a local mirror laid out as
    `<index_base>/<project>/index.json`.
    """

    name: str = "local_directory_index"
    precedence: int = 40
    source: ArtifactSource = ArtifactSource.LOCAL_FILE

    def resolve(self, *, key: IndexMetadataKey, destination_uri: str) -> ArtifactRecord | None:
        if not isinstance(key, IndexMetadataKey):
            raise StrategyNotApplicable()
        root = local_path_from_url(key.index_base)
        if root is None:
            raise StrategyNotApplicable()

        page = root / key.project / "index.json"
        if page.is_file():
            payload = json.loads(page.read_text(encoding="utf-8"))
        else:
            payload = {"name": key.project, "files": []}
        return _write_record(
            key=key,
            dest_path=_require_file_destination(destination_uri),
            payload=_canonical_json(payload),
            origin_uri=page.as_uri(),
            source=self.source,
        )


# -------------------------
# core metadata strategies
# -------------------------


@dataclass(frozen=True)
class Pep658CoreMetadataHttpStrategy(CoreMetadataStrategy):
    """
    Download core metadata via the PEP 658 sidecar (<file_url>.metadata) when the
    index advertises one.
    """

    name: str = "pep658_http"
    precedence: int = 50
    http: CachingHttpClient = field(kw_only=True)

    def resolve(self, *, key: CoreMetadataKey, destination_uri: str) -> ArtifactRecord | None:
        if not isinstance(key, CoreMetadataKey) or key.metadata_url is None:
            raise StrategyNotApplicable()
        if local_path_from_url(key.metadata_url) is not None:
            raise StrategyNotApplicable()

        try:
            resp = self.http.get(key.metadata_url)
        except HttpFetchError as e:
            if e.status_code == 404:
                # Explicitly not applicable: let fallback strategies run.
                raise StrategyNotApplicable() from e
            raise

        return _write_record(
            key=key,
            dest_path=_require_file_destination(destination_uri),
            payload=resp.content,
            origin_uri=key.metadata_url,
            source=self.source,
        )


@dataclass(frozen=True)
class RangeRequestCoreMetadataStrategy(CoreMetadataStrategy):
    """
    Read core metadata with partial-content requests.

    Zip archives (wheels, zip sdists) are read through `HttpRangeFile`; tar
    sdists fetch a leading byte range, decompress it and walk the tar headers
    for PKG-INFO. When PKG-INFO extends past the fetched range the strategy
    steps aside so the full-download strategy can run.
    """

    name: str = "range_request"
    precedence: int = 70
    source: ArtifactSource = ArtifactSource.HTTP_RANGE
    leading_bytes: int = 256 * 1024
    http: CachingHttpClient = field(kw_only=True)

    def resolve(self, *, key: CoreMetadataKey, destination_uri: str) -> ArtifactRecord | None:
        if not isinstance(key, CoreMetadataKey):
            raise StrategyNotApplicable()
        if local_path_from_url(key.file_url) is not None:
            raise StrategyNotApplicable()

        lowered = key.filename.lower()
        if key.dist_format is DistributionFormat.WHEEL or lowered.endswith(".zip"):
            payload = self._from_zip(key)
        elif lowered.endswith((".tar.gz", ".tgz")):
            payload = self._from_tar_gz(key)
        else:
            raise StrategyNotApplicable()

        return _write_record(
            key=key,
            dest_path=_require_file_destination(destination_uri),
            payload=payload,
            origin_uri=key.file_url,
            source=self.source,
        )

    def _from_zip(self, key: CoreMetadataKey) -> bytes:
        remote = HttpRangeFile(self.http, key.file_url)
        payload = metadata_from_archive(remote, filename=key.filename, dist_format=key.dist_format)
        logging.debug(
            f"read metadata of {key.filename} with {remote.requests} request(s) "
            f"(range supported: {remote.partial})"
        )
        return payload

    def _from_tar_gz(self, key: CoreMetadataKey) -> bytes:
        head = self.http.get_range(key.file_url, start=0, end=self.leading_bytes - 1)
        if not head.partial:
            return metadata_from_archive(
                io.BytesIO(head.content), filename=key.filename, dist_format=key.dist_format
            )
        try:
            decompressed = zlib.decompressobj(16 + zlib.MAX_WBITS).decompress(head.content)
        except zlib.error as e:
            raise ValueError(f"{key.filename}: leading range is not gzip data: {e}") from e
        data = _read_tar_member_from_prefix(decompressed, "/PKG-INFO")
        if data is None:
            logging.debug(f"PKG-INFO of {key.filename} extends past {self.leading_bytes} bytes")
            raise StrategyNotApplicable()
        return data


@dataclass(frozen=True)
class FullDownloadCoreMetadataStrategy(CoreMetadataStrategy):
    """
    Fallback: download the whole distribution and extract its core metadata.
    """

    name: str = "full_download"
    precedence: int = 90
    source: ArtifactSource = ArtifactSource.HTTP_FULL
    http: CachingHttpClient = field(kw_only=True)

    def resolve(self, *, key: CoreMetadataKey, destination_uri: str) -> ArtifactRecord | None:
        if not isinstance(key, CoreMetadataKey):
            raise StrategyNotApplicable()
        if local_path_from_url(key.file_url) is not None:
            raise StrategyNotApplicable()

        with tempfile.TemporaryFile(prefix="ple-metadata-") as tmp:
            self.http.download_to(key.file_url, tmp)
            tmp.seek(0)
            payload = metadata_from_archive(tmp, filename=key.filename, dist_format=key.dist_format)

        return _write_record(
            key=key,
            dest_path=_require_file_destination(destination_uri),
            payload=payload,
            origin_uri=key.file_url,
            source=self.source,
        )


@dataclass(frozen=True)
class LocalFileCoreMetadataStrategy(CoreMetadataStrategy):
    """
    Resolve core metadata of a distribution whose file_url is a local path or
    file:// URI by reading the archive directly.
    """

    name: str = "local_file_core_metadata"
    precedence: int = 40
    source: ArtifactSource = ArtifactSource.LOCAL_FILE

    def resolve(self, *, key: CoreMetadataKey, destination_uri: str) -> ArtifactRecord | None:
        if not isinstance(key, CoreMetadataKey):
            raise StrategyNotApplicable()
        path = local_path_from_url(key.file_url)
        if path is None:
            raise StrategyNotApplicable()
        if not path.is_file():
            raise FileNotFoundError(str(path))

        with path.open("rb") as f:
            payload = metadata_from_archive(f, filename=key.filename, dist_format=key.dist_format)

        return _write_record(
            key=key,
            dest_path=_require_file_destination(destination_uri),
            payload=payload,
            origin_uri=key.file_url,
            source=self.source,
        )
