from __future__ import annotations

import errno
import logging
import os
import shutil
import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path

from project_lock_engine.cache.store import CacheEntry, CacheError, ContentStore, FilesystemError
from project_lock_engine.model.lock import LockDocument, LockedPackage

# Hard links are impossible across devices or on filesystems that refuse them.
_LINK_FALLBACK_ERRNOS = frozenset(
    e
    for e in (
        errno.EXDEV,
        errno.EPERM,
        errno.EMLINK,
        getattr(errno, "ENOTSUP", None),
        getattr(errno, "EOPNOTSUPP", None),
    )
    if e is not None
)


@dataclass(frozen=True, slots=True)
class InstalledFileSet:
    """
    Files placed into an environment from one cache entry.

    Attributes:
        content_hash (str): The entry the files came from.
        environment_path (Path): Installation target.
        files (tuple[Path, ...]): Installed paths, relative to the target.
        linked (int): Files placed as hard links.
        copied (int): Files copied because linking was not possible.
    """

    content_hash: str
    environment_path: Path
    files: tuple[Path, ...]
    linked: int = 0
    copied: int = 0


class InstallFailed(CacheError):
    def __init__(self, failures: dict[str, BaseException]):
        names = ", ".join(sorted(failures))
        super().__init__(f"Installation failed for: {names}")
        self.failures = dict(failures)


@dataclass(frozen=True, slots=True)
class InstallReport:
    installed: dict[str, InstalledFileSet] = field(default_factory=dict)
    failures: dict[str, BaseException] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failures

    def raise_for_failures(self) -> None:
        if self.failures:
            raise InstallFailed(self.failures)


def _place(source: Path, target: Path) -> bool:
    """
    Put `source` at `target`, replacing any existing file atomically.

    Returns True when a hard link was made, False when the file was copied.
    """
    target.parent.mkdir(parents=True, exist_ok=True)
    staging = target.with_name(f".{target.name}.{uuid.uuid4().hex}.tmp")
    linked = True
    try:
        try:
            os.link(source, staging)
        except OSError as e:
            if e.errno not in _LINK_FALLBACK_ERRNOS:
                raise
            linked = False
            shutil.copy2(source, staging)
        os.replace(staging, target)
    except OSError as e:
        staging.unlink(missing_ok=True)
        raise FilesystemError(f"could not install {target}", path=target, cause=e) from e
    return linked


def install_into(environment_path: Path, entry: CacheEntry) -> InstalledFileSet:
    """
    Materialize the extracted files of `entry` under `environment_path`.

    Files are hard-linked from the store so identical content shares storage;
    where linking is impossible they are copied.

    Raises:
        FilesystemError: A file could be neither linked nor copied.
    """
    environment_path = Path(environment_path)
    source_root = entry.files_path
    if not source_root.is_dir():
        raise FilesystemError(f"cache entry {entry.content_hash} has no extracted files", path=source_root)

    installed: list[Path] = []
    linked = copied = 0
    for source in sorted(p for p in source_root.rglob("*") if p.is_file()):
        relative = source.relative_to(source_root)
        if _place(source, environment_path / relative):
            linked += 1
        else:
            copied += 1
        installed.append(relative)

    logging.debug(
        f"installed {entry.filename} into {environment_path}: {linked} linked, {copied} copied"
    )
    return InstalledFileSet(
        content_hash=entry.content_hash,
        environment_path=environment_path,
        files=tuple(installed),
        linked=linked,
        copied=copied,
    )


def _install_package(store: ContentStore, package: LockedPackage, environment_path: Path) -> InstalledFileSet:
    entry = store.ensure_cached(package.hash, package.url, filename=package.filename)
    return install_into(environment_path, entry)


def install_lock(
    document: LockDocument,
    environment_path: Path,
    store: ContentStore,
    *,
    max_workers: int = 4,
) -> InstallReport:
    """
    Install every package of a lock document into `environment_path`.

    Packages are fetched and installed in parallel. A failing package does not
    stop the others and nothing is rolled back; failures are collected in the
    returned report.
    """
    environment_path = Path(environment_path)
    environment_path.mkdir(parents=True, exist_ok=True)
    installed: dict[str, InstalledFileSet] = {}
    failures: dict[str, BaseException] = {}

    with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="ple-install") as pool:
        futures = {
            pool.submit(_install_package, store, package, environment_path): package.name
            for package in document.packages
        }
        for future in as_completed(futures):
            name = futures[future]
            try:
                installed[name] = future.result()
            except (CacheError, ValueError, OSError) as e:
                logging.debug(f"install of {name} failed: {type(e).__name__}: {e}")
                failures[name] = e

    return InstallReport(
        installed=dict(sorted(installed.items())),
        failures=dict(sorted(failures.items())),
    )
