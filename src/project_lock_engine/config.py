from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Mapping

import tomli
from typing_extensions import Self

from project_lock_engine.internal.util.multiformat import MultiformatModelMixin
from project_lock_engine.internal.util.toml import load_toml_file
from project_lock_engine.model.resolution import ResolutionPolicy

PYPI_SIMPLE_URL = "https://pypi.org/simple"
SAFETY_DB_URL = "https://raw.githubusercontent.com/pyupio/safety-db/master/data/insecure_full.json"
ADVISORY_DB_FILE = "advisories.json"
CONFIG_FILE_NAME = "project-lock-engine.toml"
PYPROJECT_TOOL_TABLE = "project-lock-engine"
ENV_CACHE_DIR = "PROJECT_LOCK_ENGINE_CACHE_DIR"
ENV_INDEX_URL = "PROJECT_LOCK_ENGINE_INDEX_URL"


class ConfigError(ValueError):
    pass


def default_cache_dir() -> Path:
    xdg = os.environ.get("XDG_CACHE_HOME")
    base = Path(xdg) if xdg else Path.home() / ".cache"
    return base / "project-lock-engine"


@dataclass(frozen=True, slots=True)
class IndexConfig(MultiformatModelMixin):
    """
    One package index (or mirror of one).

    Indexes are consulted in ascending `priority`; among equal priorities the
    default index comes first, then by name.
    """

    name: str
    url: str
    priority: int = 100
    default: bool = False

    def __post_init__(self) -> None:
        if not self.name:
            raise ConfigError("index name must not be empty")
        if not self.url:
            raise ConfigError(f"index {self.name!r} has no url")

    @property
    def sort_key(self) -> tuple[int, int, str]:
        return self.priority, 0 if self.default else 1, self.name

    def to_mapping(self, *args, **kwargs) -> dict[str, Any]:
        return {"name": self.name, "url": self.url, "priority": self.priority, "default": self.default}

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any], **_: Any) -> Self:
        try:
            return cls(
                name=str(mapping["name"]),
                url=str(mapping["url"]),
                priority=int(mapping.get("priority", 100)),
                default=bool(mapping.get("default", False)),
            )
        except KeyError as e:
            raise ConfigError(f"index entry is missing {e.args[0]!r}") from e


def order_indexes(indexes: tuple[IndexConfig, ...] | list[IndexConfig]) -> tuple[IndexConfig, ...]:
    ordered = tuple(sorted(indexes, key=lambda i: i.sort_key))
    names = [i.name for i in ordered]
    if len(names) != len(set(names)):
        raise ConfigError(f"duplicate index names in {names}")
    if sum(1 for i in ordered if i.default) > 1:
        raise ConfigError("at most one index may be marked default")
    return ordered


@dataclass(frozen=True, slots=True)
class EngineConfig(MultiformatModelMixin):
    """
    Settings for one engine instance.

    Attributes:
        indexes (tuple[IndexConfig, ...]): Indexes and mirrors, in query order.
        merge_indexes (bool): Merge file lists of all indexes instead of
            stopping at the first one that knows a package.
        cache_dir (Path): Root of the content cache and the HTTP response cache.
        http_timeout_s (float): Per-request timeout.
        http_retries (int): Attempts per request for transient failures.
        http_backoff_s (float): Initial backoff between attempts.
        http_cache_ttl_s (float): Age below which cached responses are used
            without revalidation.
        partial_retrieval (bool): Use HTTP range requests for core metadata.
        prefetch_workers (int): Threads fetching index pages ahead of the resolver.
        install_workers (int): Threads used to populate an environment.
        max_rounds (int): Resolver round bound.
        gc_retention_s (float): Minimum age of unreferenced cache entries
            before garbage collection removes them.
        advisory_url (str): Where `update_advisories` fetches the vulnerability
            database (pyup.io safety-db layout).
        policy (ResolutionPolicy): Resolution policy knobs.
    """

    indexes: tuple[IndexConfig, ...] = (IndexConfig(name="pypi", url=PYPI_SIMPLE_URL, default=True),)
    merge_indexes: bool = False
    cache_dir: Path = field(default_factory=default_cache_dir)
    http_timeout_s: float = 30.0
    http_retries: int = 3
    http_backoff_s: float = 0.5
    http_cache_ttl_s: float = 600.0
    partial_retrieval: bool = True
    prefetch_workers: int = 8
    install_workers: int = 4
    max_rounds: int = 200_000
    gc_retention_s: float = 7 * 24 * 3600.0
    advisory_url: str = SAFETY_DB_URL
    policy: ResolutionPolicy = field(default_factory=ResolutionPolicy)

    def __post_init__(self) -> None:
        if not self.indexes:
            raise ConfigError("at least one index is required")
        object.__setattr__(self, "indexes", order_indexes(list(self.indexes)))
        object.__setattr__(self, "cache_dir", Path(self.cache_dir).expanduser())
        for attr in ("http_retries", "prefetch_workers", "install_workers", "max_rounds"):
            if getattr(self, attr) < 1:
                raise ConfigError(f"{attr} must be at least 1")

    @property
    def http_cache_dir(self) -> Path:
        return self.cache_dir / "http"

    @property
    def content_store_dir(self) -> Path:
        return self.cache_dir / "store"

    @property
    def advisory_db_path(self) -> Path:
        return self.cache_dir / ADVISORY_DB_FILE

    def with_env_overrides(self, environ: Mapping[str, str] | None = None) -> EngineConfig:
        """
        Apply PROJECT_LOCK_ENGINE_CACHE_DIR and PROJECT_LOCK_ENGINE_INDEX_URL.

        The index URL override replaces the default index's URL (or adds a
        default index when none is marked).
        """
        environ = os.environ if environ is None else environ
        updated = self
        cache_dir = environ.get(ENV_CACHE_DIR)
        if cache_dir:
            updated = replace(updated, cache_dir=Path(cache_dir))
        index_url = environ.get(ENV_INDEX_URL)
        if index_url:
            indexes = list(updated.indexes)
            for i, idx in enumerate(indexes):
                if idx.default:
                    indexes[i] = replace(idx, url=index_url)
                    break
            else:
                indexes.append(IndexConfig(name="env", url=index_url, priority=0, default=True))
            updated = replace(updated, indexes=tuple(indexes))
        return updated

    def to_mapping(self, *args, **kwargs) -> dict[str, Any]:
        return {
            "indexes": [i.to_mapping() for i in self.indexes],
            "merge_indexes": self.merge_indexes,
            "cache_dir": str(self.cache_dir),
            "http_timeout_s": self.http_timeout_s,
            "http_retries": self.http_retries,
            "http_backoff_s": self.http_backoff_s,
            "http_cache_ttl_s": self.http_cache_ttl_s,
            "partial_retrieval": self.partial_retrieval,
            "prefetch_workers": self.prefetch_workers,
            "install_workers": self.install_workers,
            "max_rounds": self.max_rounds,
            "gc_retention_s": self.gc_retention_s,
            "advisory_url": self.advisory_url,
            "policy": dict(self.policy.to_mapping()),
        }

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any], **_: Any) -> Self:
        known = set(cls.__dataclass_fields__)
        unknown = sorted(set(mapping) - known)
        if unknown:
            raise ConfigError(f"unknown configuration keys: {unknown}")

        kwargs: dict[str, Any] = {}
        for name in known - {"indexes", "cache_dir", "policy"}:
            if name in mapping:
                kwargs[name] = mapping[name]
        if "indexes" in mapping:
            kwargs["indexes"] = tuple(IndexConfig.from_mapping(i) for i in mapping["indexes"])
        if "cache_dir" in mapping:
            kwargs["cache_dir"] = Path(mapping["cache_dir"])
        if "policy" in mapping:
            try:
                kwargs["policy"] = ResolutionPolicy.from_mapping(mapping["policy"])
            except ValueError as e:
                raise ConfigError(f"invalid policy: {e}") from e
        return cls(**kwargs)


def load_config(path: Path | None = None, *, environ: Mapping[str, str] | None = None) -> EngineConfig:
    """
    Load engine settings.

    `path` may point at a dedicated TOML file or at a pyproject.toml, whose
    `[tool.project-lock-engine]` table is used. A directory is searched for
    project-lock-engine.toml, then pyproject.toml. Missing files yield the
    defaults. Environment overrides are applied last.
    """
    mapping: Mapping[str, Any] = {}
    if path is not None:
        path = Path(path)
        if path.is_dir():
            for candidate in (path / CONFIG_FILE_NAME, path / "pyproject.toml"):
                if candidate.is_file():
                    path = candidate
                    break
        if path.is_file():
            try:
                data = load_toml_file(path)
            except tomli.TOMLDecodeError as e:
                raise ConfigError(f"{path}: invalid TOML: {e}") from e
            if path.name == "pyproject.toml":
                mapping = (data.get("tool") or {}).get(PYPROJECT_TOOL_TABLE) or {}
            else:
                mapping = data
    return EngineConfig.from_mapping(mapping).with_env_overrides(environ)
