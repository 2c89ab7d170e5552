from __future__ import annotations

import hashlib
import json
from collections.abc import Mapping, Sequence
from datetime import date, datetime
from enum import Enum
from pathlib import Path
from typing import Any

from typing_extensions import Self

from project_lock_engine.internal.util.toml import dump_toml_to_str, load_toml_text


def _normalize(value: Any) -> Any:
    """
    Convert a value into a plain, deterministically ordered structure suitable for
    JSON/TOML/YAML output and for hashing.
    """
    match value:
        case Path():
            return value.as_posix()
        case Enum():
            return value.value
        case Mapping():
            return {str(k): _normalize(value[k]) for k in sorted(value, key=str)}
        case set() | frozenset():
            return sorted((_normalize(v) for v in value), key=repr)
        case list() | tuple():
            return [_normalize(v) for v in value]
        case datetime() | date():
            return value.isoformat()
        case _:
            return value


def _drop_none(value: Any) -> Any:
    # TOML has no null.
    match value:
        case Mapping():
            return {k: _drop_none(v) for k, v in value.items() if v is not None}
        case list():
            return [_drop_none(v) for v in value if v is not None]
        case _:
            return value


class MultiformatSerializableMixin:
    def to_mapping(self, *args, **kwargs) -> Mapping[str, Any]:
        raise NotImplementedError

    def mapping_hash(self) -> str:
        """
        Stable SHA-512 digest of the normalized mapping form of this object.
        """
        payload = json.dumps(
            _normalize(self.to_mapping()), sort_keys=True, separators=(",", ":")
        ).encode("utf-8")
        return hashlib.new("sha512", payload).hexdigest()

    def to_json(self, *, indent: int | None = 2) -> str:
        return json.dumps(_normalize(self.to_mapping()), indent=indent, sort_keys=True)

    def to_yaml(self) -> str:
        try:
            import yaml
        except ImportError as e:
            raise RuntimeError("YAML output requires the 'yaml' extra (PyYAML)") from e
        return yaml.safe_dump(_normalize(self.to_mapping()), sort_keys=True)

    def to_toml(self) -> str:
        return dump_toml_to_str(_drop_none(_normalize(self.to_mapping())))

    def serialize(self, fmt: str = "json") -> str:
        match fmt:
            case "json":
                return self.to_json()
            case "yaml":
                return self.to_yaml()
            case "toml":
                return self.to_toml()
            case _:
                raise ValueError(f"Unrecognized serialization format: {fmt!r}")

    def flat_summary(
        self,
        *,
        first_fields: Sequence[str] = ("name", "version"),
        exclude: Sequence[str] = (),
        include_empty: bool = False,
        sep: str = ", ",
    ) -> str:
        mapping = self.to_mapping()
        all_keys = set(mapping.keys()) - set(exclude)
        first = [f for f in first_fields if f in all_keys]
        ordered = first + sorted(all_keys - set(first))

        items: list[str] = []
        for k in ordered:
            v = mapping[k]
            if not include_empty and (
                v is None or v == "" or (isinstance(v, (list, tuple, set, dict)) and not v)
            ):
                continue
            if isinstance(v, (datetime, date)):
                items.append(f"{k}={v.isoformat()}")
            elif isinstance(v, dict):
                items.append(f"{k}={{{', '.join(f'{a}: {b}' for a, b in v.items())}}}")
            elif isinstance(v, (list, tuple, set)):
                items.append(f"{k}=[{', '.join(str(x) for x in v)}]")
            else:
                items.append(f"{k}={v}")
        return sep.join(items)

    def __str__(self) -> str:
        return self.flat_summary()


class MultiformatDeserializableMixin:
    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any], **_: Any) -> Self:
        raise NotImplementedError

    @classmethod
    def deserialize(cls, text: str, *, fmt: str = "json") -> Self:
        raw = cls._parse_text(text, fmt=fmt, path=None)
        mapping = cls._coerce_root_mapping(raw, fmt=fmt, path=None)
        return cls.from_mapping(mapping)

    @classmethod
    def from_json(cls, text: str) -> Self:
        return cls.deserialize(text, fmt="json")

    @classmethod
    def from_yaml(cls, text: str) -> Self:
        return cls.deserialize(text, fmt="yaml")

    @classmethod
    def from_toml(cls, text: str) -> Self:
        return cls.deserialize(text, fmt="toml")

    @classmethod
    def from_file(cls, path: str | Path, *, fmt: str | None = None) -> Self:
        path = Path(path)
        text = path.read_text(encoding="utf-8")
        fmt = fmt or cls._infer_format_from_suffix(path)
        raw = cls._parse_text(text, fmt=fmt, path=path)
        mapping = cls._coerce_root_mapping(raw, fmt=fmt, path=path)
        return cls.from_mapping(mapping)

    @staticmethod
    def _infer_format_from_suffix(path: Path) -> str:
        match path.suffix.lower():
            case ".json":
                return "json"
            case ".yaml" | ".yml":
                return "yaml"
            case ".toml":
                return "toml"
            case suffix:
                raise ValueError(f"Cannot infer format from file suffix {suffix!r}: {path}")

    @staticmethod
    def _parse_text(text: str, *, fmt: str, path: Path | None) -> Any:
        match fmt:
            case "json":
                return json.loads(text)
            case "yaml":
                try:
                    import yaml
                except ImportError as e:
                    raise RuntimeError("YAML input requires the 'yaml' extra (PyYAML)") from e
                docs = list(yaml.safe_load_all(text))
                if len(docs) > 1:
                    raise ValueError(f"Expected a single YAML document in {path or '<text>'}")
                return docs[0] if docs else {}
            case "toml":
                return load_toml_text(text)
            case _:
                raise ValueError(f"Unrecognized format: {fmt!r}")

    @staticmethod
    def _coerce_root_mapping(raw: Any, *, fmt: str, path: Path | None) -> Mapping[str, Any]:
        if isinstance(raw, Mapping):
            return raw
        raise TypeError(
            f"Expected a mapping at the root of {fmt} input {path or '<text>'}, "
            f"got {type(raw).__name__}"
        )


class MultiformatModelMixin(MultiformatSerializableMixin, MultiformatDeserializableMixin):
    pass
