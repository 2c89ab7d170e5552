from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, replace
from typing import Any

from typing_extensions import Self

from project_lock_engine.internal.util.multiformat import MultiformatModelMixin
from project_lock_engine.model.graph import ResolvedGraph, ResolvedNode
from project_lock_engine.model.keys import (
    DistributionFormat,
    DistributionKey,
    normalize_project_name,
    parse_hash_spec,
)
from project_lock_engine.model.resolution import RequirementSpec

LOCK_SCHEMA_VERSION = "1.0"


class LockDocumentError(Exception):
    """
    Base error type for lock document failures.
    """


class CorruptLockDocument(LockDocumentError):
    pass


class UnsupportedSchema(LockDocumentError):
    def __init__(self, schema_version: str, *, supported: str = LOCK_SCHEMA_VERSION):
        super().__init__(
            f"Lock document schema {schema_version!r} is not supported "
            f"(this version reads {supported.split('.')[0]}.x)"
        )
        self.schema_version = schema_version
        self.supported = supported


def _required(mapping: Mapping[str, Any], key: str, where: str) -> Any:
    try:
        value = mapping[key]
    except KeyError:
        raise CorruptLockDocument(f"{where}: missing required field {key!r}") from None
    if value is None or value == "":
        raise CorruptLockDocument(f"{where}: field {key!r} is empty")
    return value


@dataclass(frozen=True, slots=True)
class LockedPackage(MultiformatModelMixin):
    """
    The persisted form of one resolved package.

    Attributes:
        name (str): Normalized package name.
        version (str): Chosen version.
        filename (str): Chosen distribution filename.
        dist_format (DistributionFormat): Wheel or sdist.
        url (str): Where the distribution is fetched from.
        hash (str): Algorithm-tagged content digest ("sha256:<hex>").
        dependencies (tuple[str, ...]): Sorted names of direct dependencies.
        extras (tuple[str, ...]): Sorted extras requested of this package.
        size (int | None): Size in bytes, when known.
        tag (str | None): Wheel tag the file was selected for.
        requires_python (str | None): Declared Python requirement.
    """

    name: str
    version: str
    filename: str
    dist_format: DistributionFormat
    url: str
    hash: str
    dependencies: tuple[str, ...] = ()
    extras: tuple[str, ...] = ()
    size: int | None = None
    tag: str | None = None
    requires_python: str | None = None

    @classmethod
    def from_node(cls, node: ResolvedNode) -> LockedPackage:
        dist = node.distribution
        if dist.hash_spec is None:
            raise ValueError(f"{dist.identifier}: a content hash is required to lock")
        return cls(
            name=dist.name,
            version=dist.version,
            filename=dist.filename,
            dist_format=dist.dist_format,
            url=dist.url,
            hash=dist.hash_spec,
            dependencies=tuple(sorted(node.dependencies)),
            extras=tuple(sorted(node.extras)),
            size=dist.size,
            tag=dist.tag if dist.is_wheel else None,
            requires_python=dist.requires_python,
        )

    def to_node(self) -> ResolvedNode:
        alg, digest = parse_hash_spec(self.hash)
        return ResolvedNode(
            distribution=DistributionKey(
                name=self.name,
                version=self.version,
                filename=self.filename,
                dist_format=self.dist_format,
                url=self.url,
                tag=self.tag or "source",
                requires_python=self.requires_python,
                content_hash=digest,
                hash_algorithm=alg,
                size=self.size,
            ),
            dependencies=frozenset(self.dependencies),
            extras=frozenset(self.extras),
        )

    def to_mapping(self, *args, **kwargs) -> dict[str, Any]:
        mapping: dict[str, Any] = {
            "name": self.name,
            "version": self.version,
            "filename": self.filename,
            "format": self.dist_format.value,
            "url": self.url,
            "hash": self.hash,
        }
        if self.size is not None:
            mapping["size"] = self.size
        if self.tag is not None:
            mapping["tag"] = self.tag
        if self.requires_python is not None:
            mapping["requires-python"] = self.requires_python
        mapping["dependencies"] = list(self.dependencies)
        mapping["extras"] = list(self.extras)
        return mapping

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any], **_: Any) -> Self:
        where = f"package {mapping.get('name', '<unnamed>')!r}"
        hash_spec = str(_required(mapping, "hash", where))
        try:
            parse_hash_spec(hash_spec)
            dist_format = DistributionFormat(_required(mapping, "format", where))
        except ValueError as e:
            raise CorruptLockDocument(f"{where}: {e}") from e
        deps = mapping.get("dependencies") or []
        extras = mapping.get("extras") or []
        if not isinstance(deps, list) or not isinstance(extras, list):
            raise CorruptLockDocument(f"{where}: dependencies and extras must be arrays")
        size = mapping.get("size")
        return cls(
            name=str(_required(mapping, "name", where)),
            version=str(_required(mapping, "version", where)),
            filename=str(_required(mapping, "filename", where)),
            dist_format=dist_format,
            url=str(_required(mapping, "url", where)),
            hash=hash_spec,
            dependencies=tuple(str(d) for d in deps),
            extras=tuple(str(e) for e in extras),
            size=int(size) if size is not None else None,
            tag=mapping.get("tag"),
            requires_python=mapping.get("requires-python"),
        )


@dataclass(frozen=True, slots=True)
class LockMetadata(MultiformatModelMixin):
    """
    Source-of-truth inputs recorded alongside the locked packages.
    """

    schema_version: str
    resolver: str
    environment: str
    generated_at: str
    requirements_hash: str

    def to_mapping(self, *args, **kwargs) -> dict[str, Any]:
        return {
            "schema-version": self.schema_version,
            "resolver": self.resolver,
            "environment": self.environment,
            "generated-at": self.generated_at,
            "requirements-hash": self.requirements_hash,
        }

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any], **_: Any) -> Self:
        where = "metadata"
        return cls(
            schema_version=str(_required(mapping, "schema-version", where)),
            resolver=str(_required(mapping, "resolver", where)),
            environment=str(_required(mapping, "environment", where)),
            generated_at=str(_required(mapping, "generated-at", where)),
            requirements_hash=str(_required(mapping, "requirements-hash", where)),
        )


@dataclass(frozen=True, slots=True)
class LockDocument(MultiformatModelMixin):
    """
    Persisted, reproducible record of a resolution's outcome.

    Packages are kept sorted by name and requirements by their string form, so
    the mapping form (and therefore the encoded bytes) is canonical.
    """

    metadata: LockMetadata
    requirements: tuple[RequirementSpec, ...]
    roots: tuple[str, ...]
    packages: tuple[LockedPackage, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        object.__setattr__(self, "requirements", tuple(sorted(self.requirements, key=str)))
        object.__setattr__(self, "roots", tuple(sorted(self.roots)))
        object.__setattr__(self, "packages", tuple(sorted(self.packages, key=lambda p: p.name)))
        self._validate()

    def _validate(self) -> None:
        names = [p.name for p in self.packages]
        dupes = sorted({n for n in names if names.count(n) > 1})
        if dupes:
            raise CorruptLockDocument(f"Duplicate package entries: {dupes}")
        known = set(names)
        non_canonical = sorted(n for n in names if normalize_project_name(n) != n)
        if non_canonical:
            raise CorruptLockDocument(f"Package names are not normalized: {non_canonical}")
        dangling = sorted(
            {f"{p.name} -> {d}" for p in self.packages for d in p.dependencies if d not in known}
        )
        if dangling:
            raise CorruptLockDocument(f"Dependencies refer to missing packages: {dangling}")
        missing_roots = sorted(set(self.roots) - known)
        if missing_roots:
            raise CorruptLockDocument(f"Roots without a locked package: {missing_roots}")

    @classmethod
    def from_graph(
        cls,
        graph: ResolvedGraph,
        requirements: Iterable[RequirementSpec],
        *,
        metadata: LockMetadata,
    ) -> LockDocument:
        return cls(
            metadata=metadata,
            requirements=tuple(requirements),
            roots=tuple(graph.roots),
            packages=tuple(LockedPackage.from_node(node) for node in graph),
        )

    def get(self, name: str) -> LockedPackage | None:
        target = normalize_project_name(name)
        return next((p for p in self.packages if p.name == target), None)

    def to_graph(self) -> ResolvedGraph:
        return ResolvedGraph(
            roots=frozenset(self.roots),
            nodes={p.name: p.to_node() for p in self.packages},
        )

    def with_generated_at(self, generated_at: str) -> LockDocument:
        return replace(self, metadata=replace(self.metadata, generated_at=generated_at))

    def to_mapping(self, *args, **kwargs) -> dict[str, Any]:
        return {
            "metadata": {
                **self.metadata.to_mapping(),
                "requirements": [str(r) for r in self.requirements],
                "roots": list(self.roots),
            },
            "package": [p.to_mapping() for p in self.packages],
        }

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any], **_: Any) -> Self:
        meta_map = mapping.get("metadata")
        if not isinstance(meta_map, Mapping):
            raise CorruptLockDocument("Lock document has no [metadata] table")
        raw_requirements = meta_map.get("requirements") or []
        try:
            requirements = tuple(RequirementSpec.parse(str(r)) for r in raw_requirements)
        except ValueError as e:
            raise CorruptLockDocument(str(e)) from e
        raw_packages = mapping.get("package") or []
        if not isinstance(raw_packages, list) or not all(
            isinstance(p, Mapping) for p in raw_packages
        ):
            raise CorruptLockDocument("[[package]] entries must be tables")
        return cls(
            metadata=LockMetadata.from_mapping(meta_map),
            requirements=requirements,
            roots=tuple(str(r) for r in meta_map.get("roots") or ()),
            packages=tuple(LockedPackage.from_mapping(p) for p in raw_packages),
        )
