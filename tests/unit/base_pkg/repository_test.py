from __future__ import annotations

from typing import Any

import pytest

from project_lock_engine.model.keys import CoreMetadataKey, DistributionFormat, IndexMetadataKey
from project_lock_engine.repository import ArtifactRecord, ArtifactRepository, ArtifactSource

RECORD_CASES = [
    {
        "id": "index-minimal",
        "record": ArtifactRecord(
            key=IndexMetadataKey(project="foo"),
            destination_uri="file:///tmp/foo.json",
            origin_uri="https://pypi.org/simple/foo/",
        ),
        "has_hashes": False,
    },
    {
        "id": "core-with-hashes",
        "record": ArtifactRecord(
            key=CoreMetadataKey(
                name="foo",
                version="1.0",
                filename="foo-1.0.tar.gz",
                file_url="https://x/foo-1.0.tar.gz",
                dist_format=DistributionFormat.SDIST,
            ),
            destination_uri="file:///tmp/foo.metadata",
            origin_uri="https://x/foo-1.0.tar.gz",
            source=ArtifactSource.HTTP_RANGE,
            content_sha256="a" * 64,
            size=12,
            content_hashes={"sha256": "a" * 64},
        ),
        "has_hashes": True,
    },
]


@pytest.mark.parametrize("row", RECORD_CASES, ids=lambda r: r["id"])
def test_artifact_record_mapping_round_trip(row: dict[str, Any]) -> None:
    record: ArtifactRecord = row["record"]
    mapping = record.to_mapping()
    assert ("content_hashes" in mapping) is row["has_hashes"]
    assert ArtifactRecord.from_mapping(mapping) == record


def test_artifact_record_source_defaults_to_other() -> None:
    mapping = RECORD_CASES[0]["record"].to_mapping()
    del mapping["source"]
    assert ArtifactRecord.from_mapping(mapping).source is ArtifactSource.OTHER


def test_repository_close_is_a_noop_by_default() -> None:
    class Minimal(ArtifactRepository):
        def get(self, key):
            return None

        def put(self, record):
            pass

        def delete(self, key):
            pass

        def allocate_destination_uri(self, key):
            return "file:///x"

    assert Minimal().close() is None


def test_repository_is_abstract() -> None:
    with pytest.raises(TypeError):
        ArtifactRepository()  # type: ignore[abstract]
