from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from email.message import Message
from email.parser import Parser
from typing import Any

from typing_extensions import Self

from project_lock_engine.internal.util.multiformat import MultiformatModelMixin


def _coerce_field(value: Any) -> bool | Mapping[str, str]:
    # If it's a dict, keep it as-is
    if isinstance(value, Mapping):
        return dict(value)
    # PEP 691 says it can be a boolean; anything else → False
    if isinstance(value, bool):
        return value
    return False


@dataclass(slots=True, frozen=True)
class Pep658Metadata(MultiformatModelMixin):
    """
    Represents core metadata as served by a PEP 658 sidecar or extracted from a
    distribution (METADATA in wheels, PKG-INFO in sdists).

    Attributes:
        name (str): The name of the package.
        version (str): The version of the package.
        requires_python (str | None): The Python version requirement if specified,
            or None otherwise.
        requires_dist (frozenset[str]): Raw Requires-Dist values.
        provides_extra (frozenset[str]): Extras the distribution declares.
    """

    name: str
    version: str
    requires_python: str | None
    requires_dist: frozenset[str]
    provides_extra: frozenset[str] = field(default_factory=frozenset)

    # :: MechanicalOperation | type=serialization
    def to_mapping(self, *_args, **_kwargs) -> dict[str, Any]:
        return {
            "name": self.name,
            "version": self.version,
            "requires_python": self.requires_python,
            "requires_dist": sorted(self.requires_dist),
            "provides_extra": sorted(self.provides_extra),
        }

    # :: MechanicalOperation | type=deserialization
    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any], **_: Any) -> Self:
        return cls(
            name=str(mapping["name"]),
            version=str(mapping["version"]),
            requires_python=(mapping.get("requires_python") or None),
            requires_dist=frozenset(mapping.get("requires_dist") or []),
            provides_extra=frozenset(mapping.get("provides_extra") or []),
        )

    @classmethod
    def from_core_metadata_text(cls, text: str) -> Pep658Metadata:
        """
        Creates an instance from RFC 822 style core metadata text.

        Raises:
            ValueError: If the text lacks the mandatory Name or Version headers.
        """
        msg: Message = Parser().parsestr(text, headersonly=True)
        name: str = (msg.get("Name") or "").strip()
        version: str = (msg.get("Version") or "").strip()
        if not name or not version:
            raise ValueError("Core metadata is missing the Name or Version header")
        rp_raw: str | None = msg.get("Requires-Python")
        requires_python: str | None = rp_raw.strip() if rp_raw else None
        rd_headers: list[str] = msg.get_all("Requires-Dist") or []
        extras_headers: list[str] = msg.get_all("Provides-Extra") or []

        return cls.from_mapping(
            {
                "name": name,
                "version": version,
                "requires_python": requires_python,
                "requires_dist": [h.strip() for h in rd_headers if h.strip()],
                "provides_extra": [h.strip() for h in extras_headers if h.strip()],
            }
        )


@dataclass(slots=True, frozen=True)
class Pep691FileMetadata(MultiformatModelMixin):
    filename: str
    url: str
    hashes: Mapping[str, str]
    requires_python: str | None
    yanked: bool
    core_metadata: bool | Mapping[str, str]
    size: int | None = None
    upload_time: str | None = None

    @property
    def has_core_metadata(self) -> bool:
        return bool(self.core_metadata)

    # :: MechanicalOperation | type=serialization
    def to_mapping(self, *_args, **_kwargs) -> dict[str, Any]:
        return {
            "filename": self.filename,
            "url": self.url,
            "hashes": dict(self.hashes),
            "requires_python": self.requires_python,
            "yanked": self.yanked,
            "core-metadata": self.core_metadata,
            "size": self.size,
            "upload-time": self.upload_time,
        }

    # :: MechanicalOperation | type=deserialization
    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any], **_: Any) -> Self:
        # "data-dist-info-metadata" is the pre-rename spelling of "core-metadata".
        core_metadata = _coerce_field(
            mapping.get("core-metadata", mapping.get("data-dist-info-metadata"))
        )
        size = mapping.get("size")
        return cls(
            filename=mapping["filename"],
            url=mapping["url"],
            hashes=dict(mapping.get("hashes") or {}),
            requires_python=mapping.get("requires-python", mapping.get("requires_python")),
            # bool, or a non-empty reason string
            yanked=bool(mapping.get("yanked", False)),
            core_metadata=core_metadata,
            size=int(size) if size is not None else None,
            upload_time=mapping.get("upload-time"),
        )


@dataclass(slots=True, frozen=True)
class Pep691Metadata(MultiformatModelMixin):
    name: str
    files: Sequence[Pep691FileMetadata]
    last_serial: int | None = None

    # :: MechanicalOperation | type=serialization
    def to_mapping(self, *_args, **_kwargs) -> dict[str, Any]:
        return {
            "name": self.name,
            "files": [f.to_mapping() for f in self.files],
            "last_serial": self.last_serial,
        }

    # :: MechanicalOperation | type=deserialization
    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any], **_: Any) -> Self:
        files = [
            Pep691FileMetadata.from_mapping(f)
            for f in mapping["files"]
            if isinstance(f, Mapping)
        ]
        last_serial = mapping.get("last_serial", (mapping.get("meta") or {}).get("_last-serial"))
        return cls(
            name=mapping["name"],
            files=files,
            last_serial=int(last_serial) if last_serial is not None else None,
        )
