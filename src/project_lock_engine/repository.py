from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Generic, Mapping, TYPE_CHECKING, TypeVar

from typing_extensions import Self

from project_lock_engine.internal.util.multiformat import MultiformatModelMixin

if TYPE_CHECKING:
    from project_lock_engine.model.keys import BaseArtifactKey

    ArtifactKeyType = TypeVar("ArtifactKeyType", bound="BaseArtifactKey")
else:
    ArtifactKeyType = TypeVar("ArtifactKeyType")


class ArtifactSource(Enum):
    HTTP_PEP691 = "http_pep691"
    HTTP_PEP658 = "http_pep658"
    HTTP_RANGE = "http_range"
    HTTP_FULL = "http_full"
    LOCAL_FILE = "local_file"
    OTHER = "other"


class ArtifactRepository(ABC):
    """
    Run-scoped store for metadata artifacts acquired during a resolution.
    """

    @abstractmethod
    def get(self, key: BaseArtifactKey) -> ArtifactRecord | None: ...

    @abstractmethod
    def put(self, record: ArtifactRecord) -> None: ...

    @abstractmethod
    def delete(self, key: BaseArtifactKey) -> None: ...

    @abstractmethod
    def allocate_destination_uri(self, key: BaseArtifactKey) -> str: ...

    def close(self) -> None:
        """
        Cleanup hook for repositories.

        The default implementation is a no-op. Override in repositories
        that hold resources (file handles, connections, temp dirs, etc.).
        """
        return None


class ArtifactResolver(Generic[ArtifactKeyType], ABC):
    @abstractmethod
    def resolve(self, key: ArtifactKeyType, destination_uri: str) -> ArtifactRecord: ...


@dataclass(frozen=True, slots=True)
class ArtifactRecord(MultiformatModelMixin):
    key: BaseArtifactKey
    destination_uri: str
    origin_uri: str
    source: ArtifactSource = ArtifactSource.OTHER
    content_sha256: str | None = None
    size: int | None = None
    content_hashes: dict[str, str] = field(default_factory=dict)

    def to_mapping(self, *args, **kwargs) -> dict[str, Any]:
        mapping: dict[str, Any] = {
            "key": self.key.to_mapping(),
            "destination_uri": self.destination_uri,
            "origin_uri": self.origin_uri,
            "source": self.source.value,
            "content_sha256": self.content_sha256,
            "size": self.size,
        }
        if self.content_hashes:
            mapping.update({"content_hashes": self.content_hashes})
        return mapping

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any], **_: Any) -> Self:
        from project_lock_engine.model.keys import BaseArtifactKey

        return cls(
            key=BaseArtifactKey.from_mapping(mapping["key"]),
            destination_uri=mapping["destination_uri"],
            origin_uri=mapping["origin_uri"],
            source=ArtifactSource(mapping.get("source", ArtifactSource.OTHER.value)),
            content_sha256=mapping.get("content_sha256"),
            size=mapping.get("size"),
            content_hashes=dict(mapping.get("content_hashes", {})),
        )
