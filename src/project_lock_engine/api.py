from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

import requests

from project_lock_engine.cache.installer import InstallReport, install_lock
from project_lock_engine.cache.store import ContentStore, GcReport
from project_lock_engine.config import EngineConfig
from project_lock_engine.internal.builtin_repository import EphemeralArtifactRepository
from project_lock_engine.internal.http import CachingHttpClient, ResponseCache
from project_lock_engine.internal.metadata import IndexHealth, MetadataProvider, MetadataSource
from project_lock_engine.internal.resolvelib import resolve_graph
from project_lock_engine.lockfile import build_document, lock_path_for, read_lock_file, write_lock_file
from project_lock_engine.model.graph import ResolvedGraph
from project_lock_engine.model.lock import LockDocument
from project_lock_engine.model.resolution import ResolutionParams
from project_lock_engine.security import AdvisoryDatabase, ScanReport, fetch_advisories, scan_graph, scan_lock
from project_lock_engine.services import load_services


@dataclass(frozen=True, slots=True)
class LockOutcome:
    """
    Result of `ProjectLockEngine.lock`.

    Attributes:
        graph (ResolvedGraph): The resolution.
        document (LockDocument): The lock document as persisted (or as it would be).
        lock_path (Path | None): Where the document lives, when written.
        written (bool): False when nothing was written, or when the existing
            document was already equivalent.
        advisories (ScanReport | None): Known advisories affecting the
            resolution; None when the scan was skipped.
    """

    graph: ResolvedGraph
    document: LockDocument
    lock_path: Path | None = None
    written: bool = False
    advisories: ScanReport | None = None


class ProjectLockEngine:
    """
    Entry point tying resolution, lock documents and installation together.

    The engine raises structured errors and never prints or exits; presentation
    belongs to the caller.
    """

    def __init__(self, config: EngineConfig | None = None, *, session: requests.Session | None = None) -> None:
        self._config = config or EngineConfig()
        self._session = session
        self._store_http: CachingHttpClient | None = None

    @property
    def config(self) -> EngineConfig:
        return self._config

    def close(self) -> None:
        if self._store_http is not None:
            self._store_http.close()
            self._store_http = None

    def __enter__(self) -> ProjectLockEngine:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # -------------------------
    # wiring
    # -------------------------

    def _http_client(self) -> CachingHttpClient:
        cfg = self._config
        return CachingHttpClient(
            cache=ResponseCache(cfg.http_cache_dir),
            timeout_s=cfg.http_timeout_s,
            retries=cfg.http_retries,
            backoff_s=cfg.http_backoff_s,
            ttl_s=cfg.http_cache_ttl_s,
            session=self._session,
        )

    @contextmanager
    def metadata_provider(self) -> Iterator[MetadataProvider]:
        """
        A run-scoped metadata provider; its artifacts are discarded on exit.
        """
        cfg = self._config
        with self._http_client() as http, EphemeralArtifactRepository() as repo:
            services = load_services(repo=repo, http=http, partial_retrieval=cfg.partial_retrieval)
            with MetadataProvider(
                services=services,
                indexes=cfg.indexes,
                http=http,
                merge_indexes=cfg.merge_indexes,
                prefetch_workers=cfg.prefetch_workers,
            ) as provider:
                yield provider

    # -------------------------
    # operations
    # -------------------------

    def resolve(
        self,
        params: ResolutionParams,
        *,
        metadata: MetadataSource | None = None,
        should_cancel: Callable[[], bool] | None = None,
    ) -> ResolvedGraph:
        if metadata is not None:
            return self._resolve_with(metadata, params, should_cancel)
        with self.metadata_provider() as provider:
            return self._resolve_with(provider, params, should_cancel)

    def _resolve_with(
        self, metadata: MetadataSource, params: ResolutionParams, should_cancel: Callable[[], bool] | None
    ) -> ResolvedGraph:
        return resolve_graph(
            metadata=metadata,
            env=params.environment,
            roots=params.root_requirements,
            max_rounds=self._config.max_rounds,
            should_cancel=should_cancel,
        )

    def lock(
        self,
        params: ResolutionParams,
        *,
        project_root: Path | None = None,
        metadata: MetadataSource | None = None,
        should_cancel: Callable[[], bool] | None = None,
        skip_security: bool = False,
    ) -> LockOutcome:
        """
        Resolve `params` and build its lock document, writing it to
        `<project_root>/project-lock.toml` when `params.write_lock` is set and a
        project root is given.

        Unless `skip_security` is set, the resolution is checked against the
        local advisory database. Findings are reported on the outcome and logged;
        they do not stop the lock from being written.
        """
        graph = self.resolve(params, metadata=metadata, should_cancel=should_cancel)
        advisories = None if skip_security else scan_graph(graph, self.advisories())
        document = build_document(
            graph,
            params.root_requirements,
            environment=params.environment.identifier,
            generated_at=params.generated_at,
        )
        if not params.write_lock or project_root is None:
            return LockOutcome(graph=graph, document=document, advisories=advisories)

        path = lock_path_for(project_root)
        persisted = write_lock_file(path, document)
        return LockOutcome(
            graph=graph,
            document=persisted,
            lock_path=path,
            written=persisted is document,
            advisories=advisories,
        )

    def open_store(self) -> ContentStore:
        if self._store_http is None:
            self._store_http = self._http_client()
        return ContentStore(self._config.content_store_dir, http=self._store_http)

    def install(self, lock_path: Path, environment_path: Path) -> InstallReport:
        """
        Install the packages of the lock document at `lock_path`.

        Per-package failures are reported, not raised; call
        `InstallReport.raise_for_failures()` to turn them into `InstallFailed`.
        """
        document = read_lock_file(lock_path)
        report = install_lock(
            document,
            Path(environment_path),
            self.open_store(),
            max_workers=self._config.install_workers,
        )
        logging.log(
            logging.INFO,
            f"Installed {len(report.installed)} package(s) into {environment_path}, {len(report.failures)} failed",
        )
        return report

    def collect_garbage(self, lock_paths: Iterable[Path], *, retention_s: float | None = None) -> GcReport:
        """
        Remove content store entries that none of the lock documents at
        `lock_paths` reference and that have been unused for `retention_s`
        seconds (`EngineConfig.gc_retention_s` by default).
        """
        documents = [read_lock_file(p) for p in lock_paths]
        report = self.open_store().collect_garbage(
            documents,
            retention_s=self._config.gc_retention_s if retention_s is None else retention_s,
        )
        logging.log(
            logging.INFO,
            f"Cache collection removed {len(report.removed) + len(report.broken)} entries, kept {report.kept}",
        )
        return report

    # -------------------------
    # advisories and indexes
    # -------------------------

    def advisories(self) -> AdvisoryDatabase:
        return AdvisoryDatabase.load(self._config.advisory_db_path)

    def update_advisories(self, url: str | None = None) -> AdvisoryDatabase:
        """
        Fetch the advisory database and store it under the cache directory.

        Raises:
            AdvisoryError: The database could not be fetched or parsed.
        """
        source = url or self._config.advisory_url
        with self._http_client() as http:
            database = fetch_advisories(http, source)
        database.save(self._config.advisory_db_path)
        logging.log(logging.INFO, f"Stored {len(database)} advisories from {source}")
        return database

    def scan(self, lock_path: Path) -> ScanReport:
        """
        Check the packages of the lock document at `lock_path` against the
        local advisory database.
        """
        return scan_lock(read_lock_file(lock_path), self.advisories())

    def check_indexes(self) -> list[IndexHealth]:
        with self.metadata_provider() as provider:
            return provider.check_indexes()
