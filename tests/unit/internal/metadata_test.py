from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import pytest

from project_lock_engine.config import IndexConfig
from project_lock_engine.internal.builtin_repository import EphemeralArtifactRepository
from project_lock_engine.internal.builtin_strategies import LocalDirectoryIndexMetadataStrategy
from project_lock_engine.internal.metadata import (
    IndexHealth,
    MetadataProvider,
    _pick_hash,
    distribution_from_file,
    parse_core_metadata,
)
from project_lock_engine.model.keys import DistributionFormat, IndexMetadataKey
from project_lock_engine.model.pep import Pep691FileMetadata
from project_lock_engine.model.resolution import MetadataFetchError, MetadataParseError, UnknownPackage
from project_lock_engine.services import build_services, default_strategies
from unit.helpers.artifacts_helper import LocalIndex, sdist_bytes, sha256, wheel_bytes
from unit.helpers.http_helper import FakeSession, make_client, response

SHA = "a" * 64
PAGE = "https://idx.example/simple/foo/"

###############################################################################
# BRANCH LEDGER
###############################################################################
"""
## distribution_from_file
B01: wheel -> tag from filename, build tag kept
B02: sdist -> tag "source"
B03: unparsable filename / other project / no hash -> None
B04: relative URL joined, fragment dropped, sidecar URL derived

## _pick_hash
B05: sha256 preferred, then sha512, then sha384, then URL fragment

## MetadataProvider
B06: first index listing the project wins
B07: merge_indexes unions files, first index wins per filename
B08: no index knows the project -> UnknownPackage
B09: prefetched pages are reused
B10: malformed page -> MetadataParseError; failing strategy -> MetadataFetchError
B11: core metadata memoized; name mismatch -> MetadataParseError
B12: direct references hashed from fragment, local file or download
B13: check_indexes inspects local directories and requests remote roots
"""


def _file(filename: str, **kwargs: Any) -> Pep691FileMetadata:
    mapping = {"filename": filename, "url": kwargs.pop("url", f"../../files/{filename}"), "hashes": {"sha256": SHA}}
    mapping.update(kwargs)
    return Pep691FileMetadata.from_mapping(mapping)


FROM_FILE_CASES = [
    {
        "id": "B01-wheel",
        "file": _file("foo-1.0-py3-none-any.whl", **{"requires-python": ">=3.8", "core-metadata": True}),
        "expected": {"tag": "py3-none-any", "dist_format": DistributionFormat.WHEEL, "requires_python": ">=3.8"},
    },
    {
        "id": "B01-wheel-build-tag-compressed-tags",
        "file": _file("foo-1.0-2-cp311.cp312-abi3-manylinux_2_17_x86_64.whl"),
        "expected": {"tag": "cp311.cp312-abi3-manylinux_2_17_x86_64", "build_tag": "2"},
    },
    {
        "id": "B02-sdist",
        "file": _file("Foo-1.0.tar.gz"),
        "expected": {"tag": "source", "dist_format": DistributionFormat.SDIST, "version": "1.0"},
    },
    {"id": "B03-egg", "file": _file("foo-1.0-py3.8.egg"), "expected": None},
    {"id": "B03-other-project", "file": _file("bar-1.0-py3-none-any.whl"), "expected": None},
    {
        "id": "B03-no-hash",
        "file": Pep691FileMetadata.from_mapping({"filename": "foo-1.0.tar.gz", "url": "x", "hashes": {"md5": "0" * 32}}),
        "expected": None,
    },
    {
        "id": "B03-malformed-digest",
        "file": Pep691FileMetadata.from_mapping({"filename": "foo-1.0.tar.gz", "url": "x", "hashes": {"sha256": "zz"}}),
        "expected": None,
    },
]


@pytest.mark.parametrize("row", FROM_FILE_CASES, ids=lambda r: r["id"])
def test_distribution_from_file(row: dict[str, Any]) -> None:
    key = distribution_from_file(row["file"], project="foo", page_url=PAGE, index_name="main")
    if row["expected"] is None:
        assert key is None
        return
    assert key is not None
    for attr, value in row["expected"].items():
        assert getattr(key, attr) == value
    assert key.index_name == "main"
    assert key.hash_spec == f"sha256:{SHA}"


def test_distribution_from_file_urls() -> None:
    # B04
    file = _file("foo-1.0-py3-none-any.whl", url="../../files/foo-1.0-py3-none-any.whl#sha256=" + SHA, **{"core-metadata": {"sha256": "x"}})
    key = distribution_from_file(file, project="foo", page_url=PAGE, index_name=None)
    assert key.url == "https://idx.example/files/foo-1.0-py3-none-any.whl"
    assert key.metadata_url == "https://idx.example/files/foo-1.0-py3-none-any.whl.metadata"


@pytest.mark.parametrize(
    "hashes, url, expected",
    [
        ({"sha512": "b" * 128, "sha256": "a" * 64}, "u", ("sha256", "a" * 64)),
        ({"SHA512": "B" * 128, "sha384": "c" * 96}, "u", ("sha512", "b" * 128)),
        ({"sha384": "c" * 96}, "u", ("sha384", "c" * 96)),
        ({}, "https://x/f.whl#sha256=" + "D" * 64, ("sha256", "d" * 64)),
        ({}, "https://x/f.whl#md5=abc", (None, None)),
        (None, "https://x/f.whl", (None, None)),
    ],
)
def test_pick_hash(hashes, url, expected) -> None:
    # B05
    assert _pick_hash(hashes, url) == expected


def test_parse_core_metadata_collects_invalid_requirements() -> None:
    text = (
        "Metadata-Version: 2.1\nName: Foo\nVersion: 1.0\nProvides-Extra: Fast_Path\n"
        "Requires-Dist: bar>=1\nRequires-Dist: baz (>>2\n\n"
    )
    md = parse_core_metadata(text)
    assert md.name == "foo"
    assert [r.name for r in md.requirements] == ["bar"]
    assert md.invalid_requirements == ("baz (>>2",)
    assert md.provides_extra == frozenset({"fast-path"})


# ------------------------------------------------------------------------------
# provider over local indexes
# ------------------------------------------------------------------------------


@dataclass(frozen=True)
class CountingLocalIndexStrategy(LocalDirectoryIndexMetadataStrategy):
    calls: list[str] = field(default_factory=list, compare=False)

    def resolve(self, *, key: IndexMetadataKey, destination_uri: str):
        self.calls.append(key.project)
        return LocalDirectoryIndexMetadataStrategy.resolve(self, key=key, destination_uri=destination_uri)


@pytest.fixture
def repo():
    with EphemeralArtifactRepository() as r:
        yield r


def _provider(repo, indexes: list[IndexConfig], *, session: FakeSession | None = None, counter=None, **kwargs: Any) -> MetadataProvider:
    http = make_client(session or FakeSession())
    index_strategies, core_strategies = default_strategies(http)
    if counter is not None:
        index_strategies = [counter]
    services = build_services(repo=repo, index_metadata_strategies=index_strategies, core_metadata_strategies=core_strategies)
    return MetadataProvider(services=services, indexes=indexes, http=http, **kwargs)


def _two_indexes(tmp_path: Path) -> tuple[LocalIndex, LocalIndex, list[IndexConfig]]:
    primary = LocalIndex(tmp_path / "primary")
    mirror = LocalIndex(tmp_path / "mirror")
    configs = [
        IndexConfig(name="mirror", url=mirror.url, priority=20),
        IndexConfig(name="primary", url=primary.url, priority=10, default=True),
    ]
    return primary, mirror, configs


def test_first_index_listing_project_wins(tmp_path: Path, repo) -> None:
    # B06
    primary, mirror, configs = _two_indexes(tmp_path)
    primary.add_wheel("foo", "1.0")
    mirror.add_wheel("foo", "2.0")
    mirror.add_wheel("only-mirror", "1.0")

    with _provider(repo, configs) as provider:
        assert [i.name for i in provider.indexes] == ["primary", "mirror"]
        assert [k.version for k in provider.fetch_versions("foo")] == ["1.0"]
        assert provider.fetch_versions("foo")[0].index_name == "primary"
        # primary does not know it, so the mirror is consulted
        assert [k.version for k in provider.fetch_versions("Only_Mirror")] == ["1.0"]


def test_merge_indexes(tmp_path: Path, repo) -> None:
    # B07
    primary, mirror, configs = _two_indexes(tmp_path)
    primary.add_wheel("foo", "1.0")
    mirror.add_wheel("foo", "1.0")
    mirror.add_wheel("foo", "2.0")

    with _provider(repo, configs, merge_indexes=True) as provider:
        keys = provider.fetch_versions("foo")
    assert [(k.version, k.index_name) for k in keys] == [("1.0", "primary"), ("2.0", "mirror")]


def test_unknown_package(tmp_path: Path, repo) -> None:
    # B08
    _, _, configs = _two_indexes(tmp_path)
    with _provider(repo, configs) as provider, pytest.raises(UnknownPackage) as ei:
        provider.fetch_versions("ghost")
    assert ei.value.name == "ghost"
    assert len(ei.value.indexes) == 2


def test_prefetch_fetches_each_page_once(tmp_path: Path, repo) -> None:
    # B09
    index = LocalIndex(tmp_path / "simple")
    for name in ("a", "b", "c"):
        index.add_wheel(name, "1.0")
    counter = CountingLocalIndexStrategy()
    with _provider(repo, [IndexConfig(name="local", url=index.url)], counter=counter) as provider:
        provider.prefetch_versions(["a", "B", "c", "a"])
        provider.prefetch_versions(["b"])
        for name in ("a", "b", "c"):
            assert provider.fetch_versions(name)[0].name == name
        assert provider.fetch_versions("a")[0].version == "1.0"
    assert sorted(counter.calls) == ["a", "b", "c"]


def test_prefetch_failure_surfaces_on_fetch(tmp_path: Path, repo) -> None:
    index = LocalIndex(tmp_path / "simple")
    with _provider(repo, [IndexConfig(name="local", url=index.url)]) as provider:
        provider.prefetch_versions(["ghost"])
        with pytest.raises(UnknownPackage):
            provider.fetch_versions("ghost")


def test_malformed_index_page(tmp_path: Path, repo) -> None:
    # B10
    index = LocalIndex(tmp_path / "simple")
    (index.root / "foo").mkdir(parents=True)
    (index.root / "foo" / "index.json").write_text(json.dumps({"name": "foo", "files": [{"url": "no-filename"}]}))
    with _provider(repo, [IndexConfig(name="local", url=index.url)]) as provider, pytest.raises(MetadataParseError):
        provider.fetch_versions("foo")


def test_unreachable_index(repo) -> None:
    session = FakeSession().add("https://down.example/simple/foo/", response(503))
    with _provider(repo, [IndexConfig(name="down", url="https://down.example/simple")], session=session) as provider:
        with pytest.raises(MetadataFetchError) as ei:
            provider.fetch_versions("foo")
    assert not isinstance(ei.value, MetadataParseError)


def test_fetch_distribution_metadata_is_memoized(tmp_path: Path, repo) -> None:
    # B11
    index = LocalIndex(tmp_path / "simple")
    entry = index.add_wheel("foo", "1.0", requires_dist=["bar>=1", 'baz; extra == "fast"'], provides_extra=["fast"])
    with _provider(repo, [IndexConfig(name="local", url=index.url)]) as provider:
        key = provider.fetch_versions("foo")[0]
        md = provider.fetch_distribution_metadata(key)
        Path(entry["url"].removeprefix("file://")).unlink()
        assert provider.fetch_distribution_metadata(key) is md
    assert [str(r) for r in md.requirements] == ["bar>=1", 'baz ; extra == "fast"']
    assert md.provides_extra == frozenset({"fast"})


def test_fetch_distribution_metadata_name_mismatch(tmp_path: Path, repo) -> None:
    index = LocalIndex(tmp_path / "simple")
    index.add_file("foo", "foo-1.0-py3-none-any.whl", wheel_bytes("not-foo", "1.0"))
    with _provider(repo, [IndexConfig(name="local", url=index.url)]) as provider:
        key = provider.fetch_versions("foo")[0]
        with pytest.raises(MetadataParseError, match="expected 'foo'"):
            provider.fetch_distribution_metadata(key)


def test_fetch_distribution_metadata_no_strategy(tmp_path: Path, repo) -> None:
    index = LocalIndex(tmp_path / "simple")
    entry = index.add_wheel("foo", "1.0")
    with _provider(repo, [IndexConfig(name="local", url=index.url)]) as provider:
        key = provider.fetch_versions("foo")[0]
        Path(entry["url"].removeprefix("file://")).unlink()
        with pytest.raises(MetadataFetchError):
            provider.fetch_distribution_metadata(key)


def test_distribution_for_url(tmp_path: Path, repo) -> None:
    # B12
    data = sdist_bytes("foo", "1.0")
    local = tmp_path / "foo-1.0.tar.gz"
    local.write_bytes(data)
    remote_url = "https://files.example/foo-1.0.tar.gz"
    session = FakeSession().add(remote_url, response(200, data))

    with _provider(repo, [IndexConfig(name="pypi", url="https://pypi.org/simple")], session=session) as provider:
        from_local = provider.distribution_for_url("Foo", local.as_uri())
        from_remote = provider.distribution_for_url("foo", remote_url)
        from_fragment = provider.distribution_for_url("foo", f"{remote_url}#sha256={'e' * 64}")

        with pytest.raises(MetadataParseError, match="not a distribution of bar"):
            provider.distribution_for_url("bar", local.as_uri())
        with pytest.raises(MetadataFetchError):
            provider.distribution_for_url("foo", (tmp_path / "missing-1.0.tar.gz").as_uri())

    assert from_local.content_hash == sha256(data) == hashlib.sha256(data).hexdigest()
    assert from_local.dist_format is DistributionFormat.SDIST
    assert from_remote.content_hash == sha256(data)
    assert session.count(remote_url) == 1
    assert from_fragment.content_hash == "e" * 64
    assert from_fragment.url == remote_url


def test_provider_requires_indexes(repo) -> None:
    with pytest.raises(ValueError):
        _provider(repo, [])


def test_check_indexes(tmp_path: Path, repo) -> None:
    # B13
    local = LocalIndex(tmp_path / "simple")
    local.add_wheel("foo", "1.0")
    session = (
        FakeSession()
        .add("https://up.example/simple/", response(200, b"{}"))
        .add("https://down.example/simple/", response(500))
    )
    indexes = [
        IndexConfig(name="local", url=local.url, priority=1),
        IndexConfig(name="gone", url=(tmp_path / "nowhere").as_uri(), priority=2),
        IndexConfig(name="up", url="https://up.example/simple", priority=3),
        IndexConfig(name="down", url="https://down.example/simple", priority=4),
        IndexConfig(name="missing", url="https://missing.example/simple/", priority=5),
    ]

    with _provider(repo, indexes, session=session) as provider:
        health = provider.check_indexes()

    assert [h.name for h in health] == ["local", "gone", "up", "down", "missing"]
    assert [h.reachable for h in health] == [True, False, True, False, False]
    assert health[0] == IndexHealth("local", local.url, True)
    assert "not a directory" in health[1].detail
    assert health[4].detail == "HTTP 404"
    _, headers = session.calls[0]
    assert headers["Accept"] == "application/vnd.pypi.simple.v1+json"
