from __future__ import annotations

import tempfile
import threading
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import urlparse
from urllib.request import url2pathname

from project_lock_engine.internal.builtin_strategies import _safe_segment, _short_hash
from project_lock_engine.model.keys import (
    BaseArtifactKey,
    CoreMetadataKey,
    IndexMetadataKey,
)
from project_lock_engine.repository import ArtifactRecord, ArtifactRepository


def _file_uri_path(uri: str) -> Path | None:
    parsed = urlparse(uri)
    if parsed.scheme != "file":
        return None
    return Path(url2pathname(parsed.path))


@dataclass(slots=True)
class EphemeralArtifactRepository(ArtifactRepository):
    """
    Run-scoped metadata repository.

    Index pages and core metadata fetched during one resolution land under a
    TemporaryDirectory and are indexed in memory by key, so the resolver never
    asks the network for the same artifact twice. Nothing persists once the
    repository is closed. Safe to share between prefetch worker threads.
    """

    _tmp: tempfile.TemporaryDirectory[str]
    _root: Path
    _index: dict[BaseArtifactKey, ArtifactRecord]
    _lock: threading.Lock

    def __init__(self, *, prefix: str = "project-lock-engine-ephemeral-") -> None:
        self._tmp = tempfile.TemporaryDirectory(prefix=prefix)
        self._root = Path(self._tmp.name).resolve()
        self._index = {}
        self._lock = threading.Lock()

    # -------------------------
    # lifecycle
    # -------------------------

    @property
    def root_path(self) -> Path:
        return self._root

    def close(self) -> None:
        with self._lock:
            self._index.clear()
        self._tmp.cleanup()

    def __enter__(self) -> EphemeralArtifactRepository:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # -------------------------
    # repository API
    # -------------------------

    def get(self, key: BaseArtifactKey) -> ArtifactRecord | None:
        """
        Return the record for `key`; a record whose file has disappeared is
        dropped and reported as a miss.
        """
        with self._lock:
            record = self._index.get(key)
            if record is None:
                return None
            path = _file_uri_path(record.destination_uri)
            if path is not None and not path.exists():
                self._index.pop(key, None)
                return None
            return record

    def put(self, record: ArtifactRecord) -> None:
        with self._lock:
            self._index[record.key] = record

    def delete(self, key: BaseArtifactKey) -> None:
        with self._lock:
            record = self._index.pop(key, None)
        if record is None:
            return
        path = _file_uri_path(record.destination_uri)
        if path is not None and path.resolve().is_relative_to(self._root):
            path.unlink(missing_ok=True)

    def allocate_destination_uri(self, key: BaseArtifactKey) -> str:
        """
        Allocate a deterministic file:// destination for the key.
        """
        path = self._allocate_path_for_key(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        return path.as_uri()

    # -------------------------
    # internals
    # -------------------------

    def _allocate_path_for_key(self, key: BaseArtifactKey) -> Path:
        match key:
            case IndexMetadataKey() as k:
                # Partition by index base so mirrors never collide.
                return self._root / "index_metadata" / _short_hash(k.index_base) / f"{_safe_segment(k.project)}.json"

            case CoreMetadataKey() as k:
                return (
                    self._root
                    / "core_metadata"
                    / _safe_segment(k.name)
                    / _safe_segment(k.version)
                    / f"{_short_hash(k.file_url)}-{_safe_segment(k.filename)}.metadata"
                )

            case _:
                raise TypeError(f"Unsupported artifact key type: {type(key).__name__}")
