from __future__ import annotations

import errno
import hashlib
import json
import logging
import os
import shutil
import tarfile
import tempfile
import time
import uuid
import zipfile
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping
from urllib.parse import unquote, urlparse

from typing_extensions import Self

from project_lock_engine.internal.builtin_strategies import local_path_from_url
from project_lock_engine.internal.http import CachingHttpClient, HttpFetchError
from project_lock_engine.internal.util.multiformat import MultiformatModelMixin
from project_lock_engine.model.keys import format_hash_spec, parse_hash_spec
from project_lock_engine.model.lock import LockDocument

ENTRY_FILE = "entry.json"
ARTIFACT_FILE = "artifact"
FILES_DIR = "files"
_CHUNK = 1024 * 1024


# -------------------------
# errors
# -------------------------


class CacheError(Exception):
    """
    Base error type for content cache and installation failures.
    """


class IntegrityMismatch(CacheError):
    def __init__(self, *, expected: str, actual: str, source_url: str):
        super().__init__(f"Content of {source_url} hashes to {actual}, expected {expected}")
        self.expected = expected
        self.actual = actual
        self.source_url = source_url


class DownloadError(CacheError):
    def __init__(self, source_url: str, cause: BaseException | str):
        super().__init__(f"Could not fetch {source_url}: {cause}")
        self.source_url = source_url
        self.cause = cause


class FilesystemError(CacheError):
    def __init__(self, message: str, *, path: Path | None = None, cause: BaseException | None = None):
        super().__init__(message)
        self.path = path
        self.cause = cause


# -------------------------
# models
# -------------------------


@dataclass(frozen=True, slots=True)
class CacheEntry(MultiformatModelMixin):
    """
    A verified, extracted artifact in the content store.

    An entry directory becomes visible only once complete, so every field here
    describes a fully-populated entry.

    Attributes:
        content_hash (str): Algorithm-tagged digest, e.g. "sha256:<hex>".
        path (Path): The entry directory.
        source_url (str): Where the artifact was fetched from.
        filename (str): Published filename of the artifact.
        size (int): Artifact size in bytes.
        created_at (float): Epoch seconds when the entry was promoted.
        last_access (float): Epoch seconds of the last cache hit.
    """

    content_hash: str
    path: Path
    source_url: str
    filename: str
    size: int
    created_at: float
    last_access: float

    @property
    def artifact_path(self) -> Path:
        return self.path / ARTIFACT_FILE

    @property
    def files_path(self) -> Path:
        return self.path / FILES_DIR

    def to_mapping(self, *args, **kwargs) -> dict[str, Any]:
        return {
            "content_hash": self.content_hash,
            "path": str(self.path),
            "source_url": self.source_url,
            "filename": self.filename,
            "size": self.size,
            "created_at": self.created_at,
            "last_access": self.last_access,
        }

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any], **_: Any) -> Self:
        return cls(
            content_hash=mapping["content_hash"],
            path=Path(mapping["path"]),
            source_url=mapping["source_url"],
            filename=mapping["filename"],
            size=int(mapping["size"]),
            created_at=float(mapping["created_at"]),
            last_access=float(mapping.get("last_access", mapping["created_at"])),
        )


@dataclass(frozen=True, slots=True)
class CacheStats:
    entry_count: int
    artifact_bytes: int
    total_bytes: int
    temp_dirs: int


@dataclass(frozen=True, slots=True)
class CorruptEntry:
    content_hash: str
    path: Path
    reason: str


@dataclass(frozen=True, slots=True)
class VerifyReport:
    checked: int
    corrupt: tuple[CorruptEntry, ...] = ()

    @property
    def ok(self) -> bool:
        return not self.corrupt


@dataclass(frozen=True, slots=True)
class GcReport:
    removed: tuple[str, ...] = ()
    broken: tuple[str, ...] = ()
    kept: int = 0
    freed_bytes: int = 0
    swept_temp_dirs: int = 0


# -------------------------
# helpers
# -------------------------


def _dir_size(path: Path) -> int:
    total = 0
    for p in path.rglob("*"):
        if p.is_file() and not p.is_symlink():
            total += p.stat().st_size
    return total


def _url_filename(url: str) -> str:
    return Path(unquote(urlparse(url).path)).name


def _check_member_path(dest: Path, name: str) -> Path:
    target = (dest / name).resolve()
    if not target.is_relative_to(dest.resolve()):
        raise CacheError(f"archive member escapes the extraction directory: {name!r}")
    return target


def _extract_zip(archive: Path, dest: Path) -> None:
    with zipfile.ZipFile(archive) as zf:
        for info in zf.infolist():
            _check_member_path(dest, info.filename)
        zf.extractall(dest)


def _extract_tar(archive: Path, dest: Path) -> None:
    with tarfile.open(archive, mode="r:*") as tf:
        members = []
        for member in tf.getmembers():
            _check_member_path(dest, member.name)
            if member.issym() or member.islnk() or member.isdev():
                logging.debug(f"skipping link/device member {member.name!r} in {archive.name}")
                continue
            members.append(member)
        if hasattr(tarfile, "data_filter"):
            tf.extractall(dest, members=members, filter="data")
        else:
            tf.extractall(dest, members=members)


def extract_archive(archive: Path, dest: Path, *, filename: str) -> None:
    """
    Unpack a wheel or sdist into `dest`.
    """
    dest.mkdir(parents=True, exist_ok=True)
    lowered = filename.lower()
    try:
        if lowered.endswith((".whl", ".zip")) or zipfile.is_zipfile(archive):
            _extract_zip(archive, dest)
        elif tarfile.is_tarfile(archive):
            _extract_tar(archive, dest)
        else:
            raise CacheError(f"{filename}: unsupported archive format")
    except (zipfile.BadZipFile, tarfile.TarError) as e:
        raise CacheError(f"{filename}: corrupt archive: {e}") from e


# -------------------------
# store
# -------------------------


class ContentStore:
    """
    Content-addressed store of downloaded and extracted distributions.

    Layout under `root`::

        entries/<alg>/<hh>/<hex>/artifact      the verified download
        entries/<alg>/<hh>/<hex>/files/        the extracted contents
        entries/<alg>/<hh>/<hex>/entry.json    descriptor; its mtime is the last access
        tmp/                                   in-progress fills and pending deletions

    An entry is built in a private directory under tmp/ and renamed into place
    only after its digest has been verified, so readers never observe a partial
    entry. Many processes may share one root.
    """

    def __init__(
        self,
        root: Path,
        *,
        http: CachingHttpClient | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._root = Path(root)
        self._entries_dir = self._root / "entries"
        self._tmp_dir = self._root / "tmp"
        self._http = http
        self._clock = clock
        self._entries_dir.mkdir(parents=True, exist_ok=True)
        self._tmp_dir.mkdir(parents=True, exist_ok=True)

    @property
    def root(self) -> Path:
        return self._root

    def entry_path(self, content_hash: str) -> Path:
        alg, digest = parse_hash_spec(content_hash)
        return self._entries_dir / alg / digest[:2] / digest

    # -------------------------
    # lookup
    # -------------------------

    def get(self, content_hash: str) -> CacheEntry | None:
        return self._load_entry(self.entry_path(content_hash))

    def entries(self) -> list[CacheEntry]:
        found: list[CacheEntry] = []
        for entry_dir in self._iter_entry_dirs():
            entry = self._load_entry(entry_dir)
            if entry is not None:
                found.append(entry)
        return sorted(found, key=lambda e: e.content_hash)

    def _iter_entry_dirs(self) -> Iterator[Path]:
        if not self._entries_dir.is_dir():
            return
        for alg_dir in sorted(p for p in self._entries_dir.iterdir() if p.is_dir()):
            for prefix_dir in sorted(p for p in alg_dir.iterdir() if p.is_dir()):
                yield from sorted(p for p in prefix_dir.iterdir() if p.is_dir())

    def _load_entry(self, entry_dir: Path) -> CacheEntry | None:
        descriptor = entry_dir / ENTRY_FILE
        try:
            mapping = json.loads(descriptor.read_text(encoding="utf-8"))
            last_access = descriptor.stat().st_mtime
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as e:
            logging.debug(f"unreadable cache entry {entry_dir}: {e}")
            return None
        return CacheEntry.from_mapping({**mapping, "path": str(entry_dir), "last_access": last_access})

    def _touch(self, entry: CacheEntry) -> CacheEntry:
        now = self._clock()
        try:
            os.utime(entry.path / ENTRY_FILE, (now, now))
        except FileNotFoundError:
            # collected concurrently; the caller still holds a usable description
            return entry
        return CacheEntry(
            content_hash=entry.content_hash,
            path=entry.path,
            source_url=entry.source_url,
            filename=entry.filename,
            size=entry.size,
            created_at=entry.created_at,
            last_access=now,
        )

    # -------------------------
    # population
    # -------------------------

    def ensure_cached(self, content_hash: str, source_url: str, *, filename: str | None = None) -> CacheEntry:
        """
        Return the entry for `content_hash`, downloading, verifying and
        extracting it from `source_url` on a miss.

        Raises:
            IntegrityMismatch: The downloaded bytes do not match `content_hash`;
                nothing becomes visible in the store.
            DownloadError: The artifact could not be fetched.
            CacheError: The artifact could not be extracted.
        """
        alg, digest = parse_hash_spec(content_hash)
        content_hash = format_hash_spec(alg, digest)
        entry_dir = self.entry_path(content_hash)

        existing = self._load_entry(entry_dir)
        if existing is not None:
            logging.debug(f"cache hit: {content_hash}")
            return self._touch(existing)

        filename = filename or _url_filename(source_url) or ARTIFACT_FILE
        work = Path(tempfile.mkdtemp(prefix="fill-", dir=self._tmp_dir))
        try:
            artifact = work / ARTIFACT_FILE
            hasher = hashlib.new(alg)
            size = self._download(source_url, artifact, hasher.update)
            actual = hasher.hexdigest()
            if actual != digest:
                raise IntegrityMismatch(
                    expected=content_hash, actual=format_hash_spec(alg, actual), source_url=source_url
                )

            extract_archive(artifact, work / FILES_DIR, filename=filename)
            now = self._clock()
            descriptor = {
                "content_hash": content_hash,
                "source_url": source_url,
                "filename": filename,
                "size": size,
                "created_at": now,
            }
            (work / ENTRY_FILE).write_text(json.dumps(descriptor, indent=2, sort_keys=True), encoding="utf-8")
            os.utime(work / ENTRY_FILE, (now, now))
            return self._promote(work, entry_dir, content_hash)
        except BaseException:
            shutil.rmtree(work, ignore_errors=True)
            raise

    def _promote(self, work: Path, entry_dir: Path, content_hash: str, *, replace_broken: bool = True) -> CacheEntry:
        entry_dir.parent.mkdir(parents=True, exist_ok=True)
        try:
            os.rename(work, entry_dir)
            logging.debug(f"cache promote: {content_hash} -> {entry_dir}")
        except OSError as e:
            if e.errno not in (errno.EEXIST, errno.ENOTEMPTY) and not isinstance(e, FileExistsError):
                raise FilesystemError(f"could not promote {content_hash}", path=entry_dir, cause=e) from e
            if replace_broken and self._load_entry(entry_dir) is None:
                # promoted entries always carry a descriptor, so this one is damaged
                logging.warning(f"Replacing unreadable cache entry {entry_dir}")
                self._discard(entry_dir)
                return self._promote(work, entry_dir, content_hash, replace_broken=False)
            # another filler won the race; its entry is equivalent to ours
            logging.debug(f"cache promote lost race for {content_hash}")
            shutil.rmtree(work, ignore_errors=True)

        entry = self._load_entry(entry_dir)
        if entry is None:
            raise FilesystemError(f"cache entry for {content_hash} vanished after promotion", path=entry_dir)
        return entry

    def _discard(self, entry_dir: Path) -> bool:
        """
        Move `entry_dir` into tmp/ and delete it there. Returns False when it
        was already gone.
        """
        doomed = self._tmp_dir / f"gc-{entry_dir.name}-{os.getpid()}-{uuid.uuid4().hex[:8]}"
        try:
            os.rename(entry_dir, doomed)
        except FileNotFoundError:
            return False
        except OSError as e:
            raise FilesystemError(f"could not remove cache entry {entry_dir}", path=entry_dir, cause=e) from e
        shutil.rmtree(doomed, ignore_errors=True)
        return True

    def _download(self, source_url: str, dest: Path, on_chunk: Callable[[bytes], None]) -> int:
        local = local_path_from_url(source_url)
        written = 0
        try:
            with dest.open("wb") as out:
                if local is not None:
                    with local.open("rb") as src:
                        for chunk in iter(lambda: src.read(_CHUNK), b""):
                            out.write(chunk)
                            on_chunk(chunk)
                            written += len(chunk)
                else:
                    if self._http is None:
                        raise DownloadError(source_url, "no HTTP client configured")
                    written = self._http.download_to(source_url, out, on_chunk=on_chunk)
                out.flush()
                os.fsync(out.fileno())
        except HttpFetchError as e:
            raise DownloadError(source_url, e) from e
        except FileNotFoundError as e:
            raise DownloadError(source_url, e) from e
        except OSError as e:
            raise FilesystemError(f"could not write {dest}", path=dest, cause=e) from e
        return written

    # -------------------------
    # maintenance
    # -------------------------

    def stats(self) -> CacheStats:
        entries = self.entries()
        total = sum(_dir_size(e.path) for e in entries)
        temp_dirs = sum(1 for p in self._tmp_dir.iterdir() if p.is_dir()) if self._tmp_dir.is_dir() else 0
        return CacheStats(
            entry_count=len(entries),
            artifact_bytes=sum(e.size for e in entries),
            total_bytes=total,
            temp_dirs=temp_dirs,
        )

    def verify(self) -> VerifyReport:
        """
        Recompute the digest of every stored artifact.
        """
        corrupt: list[CorruptEntry] = []
        checked = 0
        for entry_dir in self._iter_entry_dirs():
            checked += 1
            expected = f"{entry_dir.parent.parent.name}:{entry_dir.name}"
            entry = self._load_entry(entry_dir)
            if entry is None:
                corrupt.append(CorruptEntry(expected, entry_dir, "missing or unreadable entry.json"))
                continue
            if entry.content_hash != expected:
                corrupt.append(CorruptEntry(expected, entry_dir, f"descriptor names {entry.content_hash}"))
                continue
            if not entry.files_path.is_dir():
                corrupt.append(CorruptEntry(expected, entry_dir, "extracted files are missing"))
                continue
            alg, digest = parse_hash_spec(expected)
            hasher = hashlib.new(alg)
            try:
                with entry.artifact_path.open("rb") as f:
                    for chunk in iter(lambda: f.read(_CHUNK), b""):
                        hasher.update(chunk)
            except OSError as e:
                corrupt.append(CorruptEntry(expected, entry_dir, f"artifact unreadable: {e}"))
                continue
            if hasher.hexdigest() != digest:
                corrupt.append(CorruptEntry(expected, entry_dir, f"artifact hashes to {alg}:{hasher.hexdigest()}"))
        return VerifyReport(checked=checked, corrupt=tuple(corrupt))

    def collect_garbage(
        self,
        lock_documents: Iterable[LockDocument],
        *,
        retention_s: float,
        extra_references: Iterable[str] = (),
        stale_temp_s: float = 3600.0,
    ) -> GcReport:
        """
        Remove entries no lock document references and that have not been used
        for `retention_s` seconds, plus temp directories older than `stale_temp_s`.
        Entries whose descriptor is missing or unreadable are removed regardless,
        since they can never be served.

        Entries are first renamed into tmp/, so a concurrent reader either finds a
        complete entry or none at all.
        """
        referenced = {format_hash_spec(*parse_hash_spec(h)) for h in extra_references}
        for document in lock_documents:
            referenced.update(format_hash_spec(*parse_hash_spec(p.hash)) for p in document.packages)

        now = self._clock()
        removed: list[str] = []
        broken: list[str] = []
        kept = 0
        freed = 0
        for entry_dir in self._iter_entry_dirs():
            entry = self._load_entry(entry_dir)
            if entry is not None and (entry.content_hash in referenced or now - entry.last_access < retention_s):
                kept += 1
                continue
            size = _dir_size(entry_dir)
            if not self._discard(entry_dir):
                continue
            if entry is None:
                # entries without a readable descriptor are never served
                content_hash = f"{entry_dir.parent.parent.name}:{entry_dir.name}"
                logging.debug(f"cache gc removed unreadable entry {content_hash}")
                broken.append(content_hash)
            else:
                logging.debug(f"cache gc removed {entry.content_hash}")
                removed.append(entry.content_hash)
            freed += size

        swept = 0
        for tmp in self._tmp_dir.iterdir():
            try:
                age = now - tmp.stat().st_mtime
            except FileNotFoundError:
                continue
            if tmp.is_dir() and (age >= stale_temp_s or tmp.name.startswith("gc-")):
                shutil.rmtree(tmp, ignore_errors=True)
                swept += 1

        return GcReport(
            removed=tuple(removed), broken=tuple(broken), kept=kept, freed_bytes=freed, swept_temp_dirs=swept
        )
