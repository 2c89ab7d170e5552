from __future__ import annotations

import threading
from pathlib import Path

import pytest

from project_lock_engine.internal.builtin_repository import EphemeralArtifactRepository
from project_lock_engine.model.keys import CoreMetadataKey, DistributionKey, IndexMetadataKey
from project_lock_engine.repository import ArtifactRecord


def _record(repo: EphemeralArtifactRepository, key) -> ArtifactRecord:
    uri = repo.allocate_destination_uri(key)
    path = Path(uri.removeprefix("file://"))
    path.write_text("{}", encoding="utf-8")
    return ArtifactRecord(key=key, destination_uri=uri, origin_uri="https://origin/")


def test_allocation_layout_is_deterministic_and_partitioned() -> None:
    with EphemeralArtifactRepository() as repo:
        a = repo.allocate_destination_uri(IndexMetadataKey(project="Foo", index_base="https://a/simple"))
        b = repo.allocate_destination_uri(IndexMetadataKey(project="foo", index_base="https://b/simple"))
        again = repo.allocate_destination_uri(IndexMetadataKey(project="foo", index_base="https://a/simple"))
        core = repo.allocate_destination_uri(
            CoreMetadataKey(name="foo", version="1.0", filename="foo-1.0.tar.gz", file_url="https://x/foo-1.0.tar.gz")
        )

        assert a == again
        assert a != b
        assert a.endswith("/foo.json")
        assert "/index_metadata/" in a
        assert "/core_metadata/foo/1.0/" in core
        assert core.endswith("-foo-1.0.tar.gz.metadata")
        assert Path(core.removeprefix("file://")).parent.is_dir()


def test_allocation_rejects_other_keys() -> None:
    with EphemeralArtifactRepository() as repo:
        with pytest.raises(TypeError, match="Unsupported artifact key type"):
            repo.allocate_destination_uri(DistributionKey(name="foo", version="1", filename="foo-1.whl"))


def test_get_put_delete() -> None:
    key = IndexMetadataKey(project="foo")
    with EphemeralArtifactRepository() as repo:
        assert repo.get(key) is None
        record = _record(repo, key)
        repo.put(record)
        assert repo.get(key) is record

        path = Path(record.destination_uri.removeprefix("file://"))
        repo.delete(key)
        assert repo.get(key) is None
        assert not path.exists()
        repo.delete(key)


def test_get_drops_records_whose_file_vanished() -> None:
    key = IndexMetadataKey(project="foo")
    with EphemeralArtifactRepository() as repo:
        record = _record(repo, key)
        repo.put(record)
        Path(record.destination_uri.removeprefix("file://")).unlink()
        assert repo.get(key) is None


def test_delete_never_touches_files_outside_root(tmp_path: Path) -> None:
    outside = tmp_path / "keep.json"
    outside.write_text("{}", encoding="utf-8")
    key = IndexMetadataKey(project="foo")
    with EphemeralArtifactRepository() as repo:
        repo.put(ArtifactRecord(key=key, destination_uri=outside.as_uri(), origin_uri="x"))
        repo.delete(key)
    assert outside.exists()


def test_close_removes_directory() -> None:
    repo = EphemeralArtifactRepository()
    root = repo.root_path
    assert root.is_dir()
    repo.close()
    assert not root.exists()


def test_concurrent_puts_are_all_visible() -> None:
    with EphemeralArtifactRepository() as repo:
        keys = [IndexMetadataKey(project=f"p{i}") for i in range(32)]
        records = [_record(repo, k) for k in keys]
        threads = [threading.Thread(target=repo.put, args=(r,)) for r in records]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert all(repo.get(k) is r for k, r in zip(keys, records))
