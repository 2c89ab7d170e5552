from __future__ import annotations

import re
from abc import ABC
from dataclasses import dataclass, field
from enum import Enum
from functools import total_ordering
from typing import Any, Mapping, TypeVar

from packaging.utils import canonicalize_name
from packaging.version import InvalidVersion, Version
from typing_extensions import Self

from project_lock_engine.internal.util.multiformat import MultiformatModelMixin

_HEX_DIGEST_RE: dict[str, re.Pattern[str]] = {
    "sha256": re.compile(r"^[0-9a-f]{64}$"),
    "sha384": re.compile(r"^[0-9a-f]{96}$"),
    "sha512": re.compile(r"^[0-9a-f]{128}$"),
}
PREFERRED_HASH_ALGORITHMS: tuple[str, ...] = ("sha256", "sha512", "sha384")


class ArtifactKind(Enum):
    INDEX_METADATA = "index_metadata"
    CORE_METADATA = "core_metadata"
    DISTRIBUTION = "distribution"
    NONE = "none"


class DistributionFormat(Enum):
    """
    Closed set of distribution formats a candidate can be published in.
    """

    WHEEL = "wheel"
    SDIST = "sdist"

    @property
    def rank(self) -> int:
        # Prebuilt artifacts are preferred over source archives for the same version.
        return 0 if self is DistributionFormat.WHEEL else 1


def normalize_project_name(project: str) -> str:
    """
    Normalize a project name for consistent keying.

    This uses packaging's canonicalize_name, which is what pip uses for normalization.
    """
    return canonicalize_name(project)


def normalize_version(version: str) -> str:
    try:
        return str(Version(version))
    except InvalidVersion:
        return version


def format_hash_spec(algorithm: str, digest: str) -> str:
    return f"{algorithm.strip().lower()}:{digest.strip().lower()}"


def parse_hash_spec(spec: str) -> tuple[str, str]:
    """
    Split an algorithm-tagged digest ("sha256:<hex>") and validate it.

    Raises:
        ValueError: If the value is not tagged or the digest does not look like a
            digest of the named algorithm.
    """
    alg, sep, digest = spec.partition(":")
    if not sep or not alg or not digest:
        raise ValueError(f"Hash must be tagged with its algorithm, got {spec!r}")
    alg = alg.strip().lower()
    digest = digest.strip().lower()
    pattern = _HEX_DIGEST_RE.get(alg)
    if pattern is None:
        raise ValueError(f"Unsupported hash algorithm {alg!r} in {spec!r}")
    if not pattern.match(digest):
        raise ValueError(f"Invalid {alg.upper()} digest: {digest!r}")
    return alg, digest


@dataclass(frozen=True, slots=True)
class BaseArtifactKey(ABC, MultiformatModelMixin):
    kind: ArtifactKind

    # :: MechanicalOperation | type=deserialization
    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any], **_: Any) -> BaseArtifactKey:
        kind_mapping = mapping.get("kind", "none")
        kind = ArtifactKind(kind_mapping)
        match kind:
            case ArtifactKind.INDEX_METADATA:
                return IndexMetadataKey.from_mapping(mapping)
            case ArtifactKind.CORE_METADATA:
                return CoreMetadataKey.from_mapping(mapping)
            case ArtifactKind.DISTRIBUTION:
                return DistributionKey.from_mapping(mapping)
            case _:
                raise ValueError(f"Unknown artifact key kind: {kind_mapping!r}")


ArtifactKeyType = TypeVar("ArtifactKeyType", bound=BaseArtifactKey)


@dataclass(frozen=True, slots=True)
class IndexMetadataKey(BaseArtifactKey):
    project: str
    index_base: str = field(default="https://pypi.org/simple")
    kind: ArtifactKind = field(default=ArtifactKind.INDEX_METADATA, init=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "project", normalize_project_name(self.project))

    # :: MechanicalOperation | type=serialization
    def to_mapping(self, *args, **kwargs) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "index_base": self.index_base,
            "project": self.project,
        }

    # :: MechanicalOperation | type=deserialization
    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any], **_: Any) -> Self:
        return cls(index_base=mapping["index_base"], project=mapping["project"])


@dataclass(frozen=True, slots=True)
class CoreMetadataKey(BaseArtifactKey):
    """
    Identifies the core metadata (METADATA / PKG-INFO) of one published file.

    Attributes:
        name (str): Normalized project name.
        version (str): Normalized version of the distribution.
        filename (str): Published filename of the distribution.
        file_url (str): URL of the distribution file itself.
        dist_format (DistributionFormat): Wheel or sdist, used by strategies to
            pick an extraction method.
        metadata_url (str | None): PEP 658 sidecar URL, when the index advertises one.
    """

    name: str
    version: str
    filename: str
    file_url: str
    dist_format: DistributionFormat = DistributionFormat.WHEEL
    metadata_url: str | None = field(default=None, compare=False)
    kind: ArtifactKind = field(default=ArtifactKind.CORE_METADATA, init=False)

    # :: MechanicalOperation | type=serialization
    def to_mapping(self, *args, **kwargs) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "name": self.name,
            "version": self.version,
            "filename": self.filename,
            "file_url": self.file_url,
            "dist_format": self.dist_format.value,
            "metadata_url": self.metadata_url,
        }

    # :: MechanicalOperation | type=deserialization
    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any], **_: Any) -> Self:
        return cls(
            name=mapping["name"],
            version=mapping["version"],
            filename=mapping["filename"],
            file_url=mapping["file_url"],
            dist_format=DistributionFormat(mapping.get("dist_format", "wheel")),
            metadata_url=mapping.get("metadata_url"),
        )


@total_ordering
@dataclass(frozen=True, slots=True)
class DistributionKey(BaseArtifactKey):
    """
    One concrete, installable file of one version of a package.

    Wheels and sdists share this single shape and are told apart by
    `dist_format`. Identity (equality, hashing, ordering) is the
    (name, version, filename) triple; everything else is descriptive.

    Attributes:
        name (str): The normalized project name.
        version (str): The version, normalized if it parses.
        filename (str): Published filename.
        dist_format (DistributionFormat): Wheel or sdist.
        url (str): Where the file can be fetched.
        tag (str): Best environment-compatible wheel tag, or "source" for sdists.
        build_tag (str): Wheel build tag ("" when absent).
        requires_python (str | None): Index-declared Python requirement.
        content_hash (str | None): Hex digest of the file contents.
        hash_algorithm (str | None): Algorithm of `content_hash`.
        size (int | None): File size in bytes, when the index reports it.
        upload_time (str | None): ISO-8601 upload time, when the index reports it.
        yanked (bool): Whether the file is yanked.
        index_name (str | None): Name of the index the file was found on.
        metadata_url (str | None): PEP 658 sidecar URL, when advertised.
    """

    name: str
    version: str
    filename: str
    dist_format: DistributionFormat = field(default=DistributionFormat.WHEEL, compare=False)
    url: str = field(default="", compare=False)
    tag: str = field(default="py3-none-any", compare=False)
    build_tag: str = field(default="", compare=False)
    requires_python: str | None = field(default=None, compare=False)
    content_hash: str | None = field(default=None, compare=False)
    hash_algorithm: str | None = field(default=None, compare=False)
    size: int | None = field(default=None, compare=False)
    upload_time: str | None = field(default=None, compare=False)
    yanked: bool = field(default=False, compare=False)
    index_name: str | None = field(default=None, compare=False)
    metadata_url: str | None = field(default=None, compare=False)
    kind: ArtifactKind = field(default=ArtifactKind.DISTRIBUTION, init=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "name", normalize_project_name(self.name))
        object.__setattr__(self, "version", normalize_version(self.version))
        if self.content_hash is not None and self.hash_algorithm is not None:
            alg, digest = parse_hash_spec(
                format_hash_spec(self.hash_algorithm, self.content_hash)
            )
            object.__setattr__(self, "hash_algorithm", alg)
            object.__setattr__(self, "content_hash", digest)

    @property
    def identifier(self) -> str:
        return f"{self.name}=={self.version} ({self.filename})"

    @property
    def hash_spec(self) -> str | None:
        if self.content_hash is None or self.hash_algorithm is None:
            return None
        return format_hash_spec(self.hash_algorithm, self.content_hash)

    @property
    def is_wheel(self) -> bool:
        return self.dist_format is DistributionFormat.WHEEL

    def as_tuple(self) -> tuple[str, str, str]:
        return self.name, self.version, self.filename

    def __lt__(self, other: DistributionKey) -> bool:
        return self.as_tuple() < other.as_tuple()

    def __eq__(self, other: Any) -> bool:
        return isinstance(other, DistributionKey) and self.as_tuple() == other.as_tuple()

    def __hash__(self) -> int:
        return hash(self.as_tuple())

    def __str__(self) -> str:
        return self.identifier

    def core_metadata_key(self) -> CoreMetadataKey:
        return CoreMetadataKey(
            name=self.name,
            version=self.version,
            filename=self.filename,
            file_url=self.url,
            dist_format=self.dist_format,
            metadata_url=self.metadata_url,
        )

    # :: MechanicalOperation | type=serialization
    def to_mapping(self, *args, **kwargs) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "name": self.name,
            "version": self.version,
            "filename": self.filename,
            "dist_format": self.dist_format.value,
            "url": self.url,
            "tag": self.tag,
            "build_tag": self.build_tag,
            "requires_python": self.requires_python,
            "content_hash": self.content_hash,
            "hash_algorithm": self.hash_algorithm,
            "size": self.size,
            "upload_time": self.upload_time,
            "yanked": self.yanked,
            "index_name": self.index_name,
            "metadata_url": self.metadata_url,
        }

    # :: MechanicalOperation | type=deserialization
    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any], **_: Any) -> Self:
        return cls(
            name=mapping["name"],
            version=mapping["version"],
            filename=mapping["filename"],
            dist_format=DistributionFormat(mapping.get("dist_format", "wheel")),
            url=mapping.get("url", ""),
            tag=mapping.get("tag", "py3-none-any"),
            build_tag=mapping.get("build_tag", ""),
            requires_python=mapping.get("requires_python"),
            content_hash=mapping.get("content_hash"),
            hash_algorithm=mapping.get("hash_algorithm"),
            size=mapping.get("size"),
            upload_time=mapping.get("upload_time"),
            yanked=bool(mapping.get("yanked", False)),
            index_name=mapping.get("index_name"),
            metadata_url=mapping.get("metadata_url"),
        )
