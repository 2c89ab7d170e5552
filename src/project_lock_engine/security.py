from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from packaging.specifiers import InvalidSpecifier, SpecifierSet
from packaging.version import InvalidVersion, Version
from typing_extensions import Self

from project_lock_engine.config import SAFETY_DB_URL
from project_lock_engine.internal.http import CachingHttpClient, HttpFetchError
from project_lock_engine.internal.util.multiformat import MultiformatModelMixin
from project_lock_engine.lockfile import atomic_write_bytes
from project_lock_engine.model.graph import ResolvedGraph
from project_lock_engine.model.keys import normalize_project_name
from project_lock_engine.model.lock import LockDocument


class AdvisoryError(Exception):
    """
    The advisory database could not be read, fetched or parsed.
    """


class VulnerablePackages(AdvisoryError):
    def __init__(self, findings: Iterable[Finding]):
        self.findings = tuple(findings)
        listed = ", ".join(f"{f.package}=={f.version} ({f.advisory.id})" for f in self.findings)
        super().__init__(f"Packages with known advisories: {listed}")


@dataclass(frozen=True, slots=True)
class Advisory(MultiformatModelMixin):
    """
    One published vulnerability.

    Attributes:
        id (str): Advisory identifier.
        package (str): Normalized project name.
        affected (tuple[str, ...]): Version specifiers of the affected ranges;
            a version matching any of them is affected. Empty means every version.
        severity (str): Free-form severity label.
        description (str): Human-readable summary.
        fixed_version (str | None): First release known to carry the fix.
    """

    id: str
    package: str
    affected: tuple[str, ...] = ()
    severity: str = "unknown"
    description: str = ""
    fixed_version: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "package", normalize_project_name(self.package))
        for spec in self.affected:
            try:
                SpecifierSet(spec)
            except InvalidSpecifier as e:
                raise AdvisoryError(f"advisory {self.id}: invalid version range {spec!r}") from e

    def affects(self, version: str) -> bool:
        try:
            parsed = Version(version)
        except InvalidVersion:
            logging.debug(f"cannot match advisory {self.id} against non-PEP 440 version {version!r}")
            return False
        if not self.affected:
            return True
        return any(SpecifierSet(spec).contains(parsed, prereleases=True) for spec in self.affected)

    def to_mapping(self, *args, **kwargs) -> dict[str, Any]:
        return {
            "id": self.id,
            "package": self.package,
            "affected": list(self.affected),
            "severity": self.severity,
            "description": self.description,
            "fixed_version": self.fixed_version,
        }

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any], **_: Any) -> Self:
        try:
            return cls(
                id=str(mapping["id"]),
                package=str(mapping["package"]),
                affected=tuple(str(s) for s in mapping.get("affected") or ()),
                severity=str(mapping.get("severity") or "unknown"),
                description=str(mapping.get("description") or ""),
                fixed_version=mapping.get("fixed_version"),
            )
        except KeyError as e:
            raise AdvisoryError(f"advisory entry is missing {e.args[0]!r}") from e


class AdvisoryDatabase:
    """
    Advisories indexed by project name, persisted as a JSON list.
    """

    def __init__(self, advisories: Iterable[Advisory] = ()) -> None:
        self._by_package: dict[str, list[Advisory]] = {}
        for advisory in advisories:
            self._by_package.setdefault(advisory.package, []).append(advisory)

    def __len__(self) -> int:
        return sum(len(v) for v in self._by_package.values())

    def __iter__(self) -> Iterator[Advisory]:
        for name in sorted(self._by_package):
            yield from self._by_package[name]

    def matching(self, name: str, version: str) -> list[Advisory]:
        return [a for a in self._by_package.get(normalize_project_name(name), ()) if a.affects(version)]

    @classmethod
    def load(cls, path: Path) -> AdvisoryDatabase:
        """
        Read a database written by `save`; a missing file is an empty database.
        """
        try:
            raw = json.loads(Path(path).read_text(encoding="utf-8"))
        except FileNotFoundError:
            return cls()
        except (OSError, ValueError) as e:
            raise AdvisoryError(f"{path}: unreadable advisory database: {e}") from e
        if not isinstance(raw, list):
            raise AdvisoryError(f"{path}: expected a list of advisories")
        return cls(Advisory.from_mapping(item) for item in raw)

    def save(self, path: Path) -> None:
        payload = json.dumps([a.to_mapping() for a in self], indent=2, sort_keys=True)
        atomic_write_bytes(Path(path), payload.encode("utf-8"))

    @classmethod
    def from_safety_db(cls, data: Mapping[str, Any]) -> AdvisoryDatabase:
        """
        Convert the pyup.io safety-db layout: project name -> list of
        {"id", "specs", "advisory", ...}. Entries with unusable ranges are skipped.
        """
        advisories: list[Advisory] = []
        for package, entries in data.items():
            if package.startswith("$") or not isinstance(entries, list):
                continue
            for entry in entries:
                if not isinstance(entry, Mapping):
                    continue
                try:
                    advisories.append(
                        Advisory(
                            id=str(entry.get("id") or "unknown"),
                            package=package,
                            affected=tuple(str(s) for s in entry.get("specs") or ()),
                            severity=str(entry.get("severity") or "unknown"),
                            description=str(entry.get("advisory") or ""),
                        )
                    )
                except AdvisoryError as e:
                    logging.debug(f"skipping advisory for {package}: {e}")
        return cls(advisories)


def fetch_advisories(http: CachingHttpClient, url: str = SAFETY_DB_URL) -> AdvisoryDatabase:
    try:
        data = http.get(url).json()
    except HttpFetchError as e:
        raise AdvisoryError(f"could not fetch advisories from {url}: {e}") from e
    except ValueError as e:
        raise AdvisoryError(f"advisories at {url} are not valid JSON: {e}") from e
    if not isinstance(data, Mapping):
        raise AdvisoryError(f"advisories at {url}: expected a JSON object")
    return AdvisoryDatabase.from_safety_db(data)


# -------------------------
# scanning
# -------------------------


@dataclass(frozen=True, slots=True)
class Finding:
    package: str
    version: str
    advisory: Advisory


@dataclass(frozen=True, slots=True)
class ScanReport:
    scanned: int
    findings: tuple[Finding, ...] = ()

    @property
    def ok(self) -> bool:
        return not self.findings

    def raise_for_findings(self) -> None:
        if self.findings:
            raise VulnerablePackages(self.findings)


def scan_pins(pins: Mapping[str, str], database: AdvisoryDatabase) -> ScanReport:
    findings = [
        Finding(package=name, version=version, advisory=advisory)
        for name, version in sorted(pins.items())
        for advisory in database.matching(name, version)
    ]
    for f in findings:
        logging.warning(f"{f.package}=={f.version} is affected by {f.advisory.id}: {f.advisory.description}")
    return ScanReport(scanned=len(pins), findings=tuple(findings))


def scan_lock(document: LockDocument, database: AdvisoryDatabase) -> ScanReport:
    return scan_pins({p.name: p.version for p in document.packages}, database)


def scan_graph(graph: ResolvedGraph, database: AdvisoryDatabase) -> ScanReport:
    return scan_pins(graph.pins(), database)
