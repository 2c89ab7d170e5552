from __future__ import annotations

import hashlib
import json
import logging
import threading
from collections.abc import Iterable, Sequence
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol
from urllib.parse import urldefrag, urljoin, urlparse

from packaging.utils import (
    InvalidSdistFilename,
    InvalidWheelFilename,
    parse_sdist_filename,
    parse_wheel_filename,
)

from project_lock_engine.config import IndexConfig, order_indexes
from project_lock_engine.internal.builtin_strategies import PEP691_ACCEPT, local_path_from_url
from project_lock_engine.internal.http import CachingHttpClient, HttpFetchError
from project_lock_engine.model.keys import (
    PREFERRED_HASH_ALGORITHMS,
    DistributionFormat,
    DistributionKey,
    IndexMetadataKey,
    normalize_project_name,
)
from project_lock_engine.model.pep import Pep658Metadata, Pep691FileMetadata, Pep691Metadata
from project_lock_engine.model.resolution import (
    ArtifactResolutionError,
    MetadataFetchError,
    MetadataParseError,
    RequirementSpec,
    UnknownPackage,
)
from project_lock_engine.services import ResolutionServices


@dataclass(frozen=True, slots=True)
class IndexHealth:
    """
    Outcome of probing one configured index.
    """

    name: str
    url: str
    reachable: bool
    detail: str | None = None


@dataclass(frozen=True, slots=True)
class DistributionMetadata:
    """
    Dependency-relevant core metadata of one candidate.

    Attributes:
        name (str): Normalized name declared by the metadata.
        version (str): Version declared by the metadata.
        requires_python (str | None): Declared Requires-Python.
        requirements (tuple[RequirementSpec, ...]): Parsed Requires-Dist entries,
            markers (including `extra == ...`) left unevaluated.
        invalid_requirements (tuple[str, ...]): Requires-Dist entries that did
            not parse.
        provides_extra (frozenset[str]): Declared extras.
    """

    name: str
    version: str
    requires_python: str | None = None
    requirements: tuple[RequirementSpec, ...] = ()
    invalid_requirements: tuple[str, ...] = ()
    provides_extra: frozenset[str] = field(default_factory=frozenset)


class MetadataSource(Protocol):
    """
    What the resolver needs from a metadata provider.
    """

    def fetch_versions(self, name: str) -> list[DistributionKey]: ...

    def fetch_distribution_metadata(self, candidate: DistributionKey) -> DistributionMetadata: ...

    def prefetch_versions(self, names: Iterable[str]) -> None: ...

    def distribution_for_url(self, name: str, uri: str) -> DistributionKey: ...


def parse_core_metadata(text: str, *, expected: DistributionKey | None = None) -> DistributionMetadata:
    """
    Parse METADATA / PKG-INFO text into DistributionMetadata.

    Raises:
        ValueError: If mandatory headers are missing or disagree with `expected`.
    """
    core = Pep658Metadata.from_core_metadata_text(text)
    name = normalize_project_name(core.name)
    if expected is not None and name != expected.name:
        raise ValueError(f"metadata declares name {core.name!r}, expected {expected.name!r}")

    parsed: list[RequirementSpec] = []
    invalid: list[str] = []
    for raw in sorted(core.requires_dist):
        try:
            parsed.append(RequirementSpec.parse(raw))
        except ValueError:
            invalid.append(raw)
    return DistributionMetadata(
        name=name,
        version=core.version,
        requires_python=core.requires_python,
        requirements=tuple(parsed),
        invalid_requirements=tuple(invalid),
        provides_extra=frozenset(normalize_project_name(e) for e in core.provides_extra),
    )


def _pick_hash(hashes: dict[str, str] | None, url: str) -> tuple[str | None, str | None]:
    hashes = {k.lower(): v for k, v in (hashes or {}).items()}
    for alg in PREFERRED_HASH_ALGORITHMS:
        if hashes.get(alg):
            return alg, hashes[alg].lower()
    # "<url>#sha256=<hex>" as used by PEP 503 pages and direct references
    fragment = urldefrag(url).fragment
    alg, sep, digest = fragment.partition("=")
    if sep and alg.lower() in PREFERRED_HASH_ALGORITHMS and digest:
        return alg.lower(), digest.lower()
    return None, None


def distribution_from_file(
    file: Pep691FileMetadata, *, project: str, page_url: str, index_name: str | None
) -> DistributionKey | None:
    """
    Turn one index file entry into a DistributionKey.

    Returns None for files that are not wheels or sdists, whose filename does not
    parse or names another project, or that carry no supported hash.
    """
    filename = file.filename
    try:
        if filename.endswith(".whl"):
            name, version, build, _tags = parse_wheel_filename(filename)
            dist_format = DistributionFormat.WHEEL
            build_tag = "".join(str(p) for p in build) if build else ""
            # the compressed tag set; narrowed to one concrete tag per environment later
            tag = "-".join(filename[: -len(".whl")].split("-")[-3:])
        else:
            name, version = parse_sdist_filename(filename)
            dist_format = DistributionFormat.SDIST
            build_tag = ""
            tag = "source"
    except (InvalidWheelFilename, InvalidSdistFilename) as e:
        logging.debug(f"skipping {filename!r} on {page_url}: {e}")
        return None

    if normalize_project_name(str(name)) != project:
        logging.debug(f"skipping {filename!r}: belongs to {name!r}, not {project!r}")
        return None

    url = urljoin(page_url, file.url)
    alg, digest = _pick_hash(dict(file.hashes), url)
    if alg is None:
        logging.debug(f"skipping {filename!r}: no supported hash published")
        return None

    metadata_url: str | None = None
    if file.has_core_metadata:
        metadata_url = f"{urldefrag(url).url}.metadata"

    try:
        return DistributionKey(
            name=project,
            version=str(version),
            filename=filename,
            dist_format=dist_format,
            url=urldefrag(url).url,
            tag=tag,
            build_tag=build_tag,
            requires_python=file.requires_python or None,
            content_hash=digest,
            hash_algorithm=alg,
            size=file.size,
            upload_time=file.upload_time,
            yanked=file.yanked,
            index_name=index_name,
            metadata_url=metadata_url,
        )
    except ValueError as e:
        logging.debug(f"skipping {filename!r}: {e}")
        return None


class MetadataProvider:
    """
    Answers "which files exist for this name" and "what does this version depend on".

    Index pages are consulted in index priority order: the first index listing
    any files for a name wins, unless `merge_indexes` is set, in which case the
    file lists of all indexes are merged (the first index wins per filename).

    Results are memoized per run. `prefetch_versions` fetches index pages on a
    thread pool; each name is fetched at most once, and a caller asking for a
    name whose prefetch is in flight waits for it.
    """

    def __init__(
        self,
        *,
        services: ResolutionServices,
        indexes: Sequence[IndexConfig],
        http: CachingHttpClient | None = None,
        merge_indexes: bool = False,
        prefetch_workers: int = 8,
    ) -> None:
        if not indexes:
            raise ValueError("at least one index is required")
        self._services = services
        self._indexes = order_indexes(list(indexes))
        self._http = http
        self._merge_indexes = merge_indexes
        self._prefetch_workers = prefetch_workers
        # reentrant: a done-callback runs inline when the future already finished
        self._lock = threading.RLock()
        self._versions: dict[str, tuple[DistributionKey, ...]] = {}
        self._pending: dict[str, Future[tuple[DistributionKey, ...]]] = {}
        self._metadata: dict[DistributionKey, DistributionMetadata] = {}
        self._executor: ThreadPoolExecutor | None = None

    @property
    def indexes(self) -> tuple[IndexConfig, ...]:
        return self._indexes

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True, cancel_futures=True)
            self._executor = None

    def __enter__(self) -> MetadataProvider:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # -------------------------
    # versions
    # -------------------------

    def fetch_versions(self, name: str) -> list[DistributionKey]:
        """
        All published files of `name`, in index order.

        Raises:
            UnknownPackage: No configured index knows the name.
            MetadataFetchError: An index could not be queried.
            MetadataParseError: An index page is malformed.
        """
        project = normalize_project_name(name)
        with self._lock:
            cached = self._versions.get(project)
            pending = self._pending.get(project)
        if cached is not None:
            return list(cached)
        if pending is not None:
            return list(pending.result())

        versions = self._load_versions(project)
        with self._lock:
            self._versions.setdefault(project, versions)
        return list(versions)

    def prefetch_versions(self, names: Iterable[str]) -> None:
        """
        Start fetching index pages for `names` in the background.

        Failures are not raised here; they surface when `fetch_versions` is
        called for the failing name.
        """
        with self._lock:
            for name in names:
                project = normalize_project_name(name)
                if project in self._versions or project in self._pending:
                    continue
                if self._executor is None:
                    self._executor = ThreadPoolExecutor(
                        max_workers=self._prefetch_workers, thread_name_prefix="ple-prefetch"
                    )
                logging.debug(f"prefetching index pages for {project}")
                future = self._executor.submit(self._load_versions, project)
                self._pending[project] = future
                future.add_done_callback(lambda f, p=project: self._prefetch_done(p, f))

    def _prefetch_done(self, project: str, future: Future[tuple[DistributionKey, ...]]) -> None:
        with self._lock:
            self._pending.pop(project, None)
            if not future.cancelled() and future.exception() is None:
                self._versions.setdefault(project, future.result())

    def _load_versions(self, project: str) -> tuple[DistributionKey, ...]:
        merged: dict[str, DistributionKey] = {}
        known_somewhere = False

        for index in self._indexes:
            page_url, page = self._load_index_page(project, index)
            if not page.files:
                continue
            known_somewhere = True
            for file in page.files:
                key = distribution_from_file(file, project=project, page_url=page_url, index_name=index.name)
                if key is not None and key.filename not in merged:
                    merged[key.filename] = key
            if not self._merge_indexes:
                break

        if not known_somewhere:
            raise UnknownPackage(project, indexes=[i.url for i in self._indexes])
        logging.debug(f"{project}: {len(merged)} usable file(s)")
        return tuple(merged.values())

    def _load_index_page(self, project: str, index: IndexConfig) -> tuple[str, Pep691Metadata]:
        key = IndexMetadataKey(project=project, index_base=index.url)
        try:
            record = self._services.index_metadata.resolve(key)
        except ArtifactResolutionError as e:
            raise MetadataFetchError(project, None, e) from e

        path = local_path_from_url(record.destination_uri)
        if path is None:
            raise MetadataFetchError(project, None, f"unexpected record location {record.destination_uri!r}")
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
            page = Pep691Metadata.from_mapping({"name": project, **payload, "files": payload.get("files", [])})
        except (OSError, ValueError, KeyError, TypeError) as e:
            raise MetadataParseError(project, None, f"index page from {index.name}: {e}") from e
        return record.origin_uri, page

    # -------------------------
    # per-version metadata
    # -------------------------

    def fetch_distribution_metadata(self, candidate: DistributionKey) -> DistributionMetadata:
        """
        Dependencies and Requires-Python declared by one candidate.

        Raises:
            MetadataFetchError: The metadata could not be retrieved.
            MetadataParseError: The metadata is malformed.
        """
        with self._lock:
            cached = self._metadata.get(candidate)
        if cached is not None:
            return cached

        try:
            record = self._services.core_metadata.resolve(candidate.core_metadata_key())
        except ArtifactResolutionError as e:
            raise MetadataFetchError(candidate.name, candidate.version, e) from e

        path = local_path_from_url(record.destination_uri)
        try:
            text = path.read_bytes().decode("utf-8") if path is not None else ""
            metadata = parse_core_metadata(text, expected=candidate)
        except (OSError, UnicodeDecodeError, ValueError) as e:
            raise MetadataParseError(candidate.name, candidate.version, e) from e

        with self._lock:
            self._metadata.setdefault(candidate, metadata)
        return metadata

    # -------------------------
    # index health
    # -------------------------

    def check_indexes(self) -> list[IndexHealth]:
        """
        Probe every configured index, in query order. Local indexes must be an
        existing directory; remote ones must answer a live GET of their root
        with a non-error status.
        """
        return [self._check_index(index) for index in self._indexes]

    def _check_index(self, index: IndexConfig) -> IndexHealth:
        local = local_path_from_url(index.url)
        if local is not None:
            if local.is_dir():
                return IndexHealth(index.name, index.url, True)
            return IndexHealth(index.name, index.url, False, f"{local} is not a directory")
        if self._http is None:
            return IndexHealth(index.name, index.url, False, "no HTTP client configured")
        try:
            status = self._http.status(f"{index.url.rstrip('/')}/", headers={"Accept": PEP691_ACCEPT})
        except HttpFetchError as e:
            logging.debug(f"index {index.name} unreachable: {e}")
            return IndexHealth(index.name, index.url, False, str(e))
        if status >= 400:
            return IndexHealth(index.name, index.url, False, f"HTTP {status}")
        return IndexHealth(index.name, index.url, True)

    # -------------------------
    # direct references
    # -------------------------

    def distribution_for_url(self, name: str, uri: str) -> DistributionKey:
        """
        Build the candidate for a direct reference (`name @ <uri>`).

        The content hash comes from a `#sha256=` style fragment, or is computed
        from the file (local files are read, remote files downloaded once).
        """
        project = normalize_project_name(name)
        url, _fragment = urldefrag(uri)
        filename = Path(urlparse(url).path).name
        alg, digest = _pick_hash({}, uri)
        if alg is None:
            alg, digest = "sha256", self._digest_of(project, url)
        file = Pep691FileMetadata(
            filename=filename,
            url=url,
            hashes={alg: digest},
            requires_python=None,
            yanked=False,
            core_metadata=False,
        )
        key = distribution_from_file(file, project=project, page_url=url, index_name=None)
        if key is None:
            raise MetadataParseError(project, None, f"{uri!r} is not a distribution of {project}")
        return key

    def _digest_of(self, project: str, url: str) -> str:
        h = hashlib.sha256()
        local = local_path_from_url(url)
        try:
            if local is not None:
                with local.open("rb") as f:
                    for chunk in iter(lambda: f.read(1024 * 1024), b""):
                        h.update(chunk)
            elif self._http is not None:
                self._http.download_to(url, _NullSink(), on_chunk=h.update)
            else:
                raise MetadataFetchError(project, None, f"no HTTP client configured to fetch {url}")
        except (OSError, HttpFetchError) as e:
            raise MetadataFetchError(project, None, e) from e
        return h.hexdigest()


class _NullSink:
    def write(self, data: bytes) -> int:
        return len(data)
