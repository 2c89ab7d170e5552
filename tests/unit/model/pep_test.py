from __future__ import annotations

from typing import Any

import pytest

from project_lock_engine.model.pep import Pep658Metadata, Pep691FileMetadata, Pep691Metadata

CORE_METADATA_TEXT = """Metadata-Version: 2.1
Name: Foo-Bar
Version: 2.0
Requires-Python: >=3.9
Provides-Extra: socks
Requires-Dist: idna>=2.5
Requires-Dist: PySocks!=1.5.7; extra == "socks"

Long description body that must be ignored.
Requires-Dist: not-a-header
"""

FILE_MAPPING_CASES = [
    {
        "id": "core-metadata-dict",
        "mapping": {"filename": "a.whl", "url": "u", "core-metadata": {"sha256": "x"}},
        "expected_core": {"sha256": "x"},
        "has_core": True,
    },
    {
        "id": "legacy-spelling",
        "mapping": {"filename": "a.whl", "url": "u", "data-dist-info-metadata": True},
        "expected_core": True,
        "has_core": True,
    },
    {
        "id": "garbage-coerced-false",
        "mapping": {"filename": "a.whl", "url": "u", "core-metadata": "yes"},
        "expected_core": False,
        "has_core": False,
    },
    {
        "id": "absent",
        "mapping": {"filename": "a.whl", "url": "u"},
        "expected_core": False,
        "has_core": False,
    },
]


def test_pep658_from_core_metadata_text_reads_headers_only() -> None:
    md = Pep658Metadata.from_core_metadata_text(CORE_METADATA_TEXT)
    assert md.name == "Foo-Bar"
    assert md.version == "2.0"
    assert md.requires_python == ">=3.9"
    assert md.provides_extra == frozenset({"socks"})
    assert md.requires_dist == frozenset({"idna>=2.5", 'PySocks!=1.5.7; extra == "socks"'})


def test_pep658_missing_name_raises() -> None:
    with pytest.raises(ValueError, match="Name or Version"):
        Pep658Metadata.from_core_metadata_text("Metadata-Version: 2.1\nVersion: 1.0\n\n")


def test_pep658_mapping_round_trip_is_sorted() -> None:
    md = Pep658Metadata.from_core_metadata_text(CORE_METADATA_TEXT)
    mapping = md.to_mapping()
    assert mapping["requires_dist"] == sorted(mapping["requires_dist"])
    assert Pep658Metadata.from_mapping(mapping) == md


@pytest.mark.parametrize("row", FILE_MAPPING_CASES, ids=lambda r: r["id"])
def test_pep691_file_core_metadata_coercion(row: dict[str, Any]) -> None:
    fm = Pep691FileMetadata.from_mapping(row["mapping"])
    assert fm.core_metadata == row["expected_core"]
    assert fm.has_core_metadata is row["has_core"]


def test_pep691_file_yanked_reason_string_is_true() -> None:
    fm = Pep691FileMetadata.from_mapping({"filename": "a.whl", "url": "u", "yanked": "broken build"})
    assert fm.yanked is True


def test_pep691_metadata_reads_serial_from_meta_and_skips_non_mappings() -> None:
    md = Pep691Metadata.from_mapping(
        {
            "meta": {"api-version": "1.1", "_last-serial": "42"},
            "name": "foo",
            "files": [
                {
                    "filename": "foo-1.0-py3-none-any.whl",
                    "url": "https://x/foo-1.0-py3-none-any.whl",
                    "hashes": {"sha256": "a" * 64},
                    "requires-python": ">=3.8",
                    "size": "10",
                    "upload-time": "2024-01-01T00:00:00Z",
                },
                "not-a-file",
            ],
        }
    )
    assert md.last_serial == 42
    assert len(md.files) == 1
    f = md.files[0]
    assert f.requires_python == ">=3.8"
    assert f.size == 10
    assert f.upload_time == "2024-01-01T00:00:00Z"
    assert Pep691Metadata.from_mapping(md.to_mapping()) == md
