from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Collection, Mapping, Protocol

from resolvelib import BaseReporter
from resolvelib.structs import RequirementInformation
from typing_extensions import Self

from project_lock_engine.internal.util.multiformat import MultiformatModelMixin
from project_lock_engine.model.keys import DistributionKey
from project_lock_engine.model.resolution import RequirementSpec, ResolutionCancelled


class Preference(Protocol):
    def __lt__(self, __other: Any) -> bool: ...


def identifier_for(name: str, extras: frozenset[str] = frozenset()) -> str:
    """
    Resolver identifier: the bare name, or "name[e1,e2]" for an extras-qualified
    requirement. Extras identifiers always pin the same file as their base name.
    """
    if not extras:
        return name
    return f"{name}[{','.join(sorted(extras))}]"


def split_identifier(identifier: str) -> tuple[str, frozenset[str]]:
    name, sep, rest = identifier.partition("[")
    if not sep:
        return name, frozenset()
    return name, frozenset(e for e in rest.rstrip("]").split(",") if e)


@dataclass(frozen=True, slots=True, kw_only=True)
class ResolverRequirement(MultiformatModelMixin):
    """
    A requirement as seen by resolvelib.

    `pinned` ties an extras requirement to the exact file chosen for the base
    name, so "a[x]" and "a" can never resolve to different versions.
    """

    spec: RequirementSpec
    pinned: DistributionKey | None = None

    @property
    def name(self) -> str:
        return self.spec.name

    @property
    def extras(self) -> frozenset[str]:
        return self.spec.extras

    @property
    def identifier(self) -> str:
        return identifier_for(self.spec.name, self.spec.extras)

    def __str__(self) -> str:
        if self.pinned is not None:
            return f"{self.spec.name}=={self.pinned.version} ({self.pinned.filename})"
        return str(self.spec)

    def to_mapping(self, *args, **kwargs) -> dict[str, Any]:
        return {
            "spec": self.spec.to_mapping(),
            "pinned": self.pinned.to_mapping() if self.pinned is not None else None,
        }

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any], **_: Any) -> Self:
        pinned = mapping.get("pinned")
        return cls(
            spec=RequirementSpec.from_mapping(mapping["spec"]),
            pinned=DistributionKey.from_mapping(pinned) if pinned else None,
        )


@dataclass(frozen=True, slots=True, kw_only=True)
class ResolverCandidate(MultiformatModelMixin):
    """
    One version of a package, represented by its preferred file.
    """

    distribution: DistributionKey
    extras: frozenset[str] = field(default_factory=frozenset)

    @property
    def name(self) -> str:
        return self.distribution.name

    @property
    def version(self) -> str:
        return self.distribution.version

    @property
    def identifier(self) -> str:
        return identifier_for(self.distribution.name, self.extras)

    def __str__(self) -> str:
        return f"{self.identifier}=={self.version}"

    def to_mapping(self, *args, **kwargs) -> dict[str, Any]:
        return {"distribution": self.distribution.to_mapping(), "extras": sorted(self.extras)}

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any], **_: Any) -> Self:
        return cls(
            distribution=DistributionKey.from_mapping(mapping["distribution"]),
            extras=frozenset(mapping.get("extras") or ()),
        )


class LockResolutionReporter(BaseReporter):
    """
    Logs resolver progress and checks for cancellation between rounds.
    """

    def __init__(self, *, should_cancel: Callable[[], bool] | None = None) -> None:
        self._should_cancel = should_cancel
        self.rounds = 0
        self.backtracks = 0

    def starting(self) -> None:
        logging.log(logging.INFO, "Starting resolution...")

    def starting_round(self, index: int) -> None:
        self.rounds = index + 1
        if self._should_cancel is not None and self._should_cancel():
            raise ResolutionCancelled(f"Resolution cancelled in round {index}")
        logging.log(logging.DEBUG, f"Starting round {index}")

    def ending_round(self, index: int, state: Any) -> None:
        logging.log(logging.DEBUG, f"Ending round {index}")

    def ending(self, state: Any) -> None:
        logging.log(
            logging.INFO, f"Resolution complete after {self.rounds} round(s), {self.backtracks} backtrack(s)."
        )

    def adding_requirement(self, requirement: ResolverRequirement, parent: ResolverCandidate | None) -> None:
        via = "root" if parent is None else str(parent)
        logging.log(logging.DEBUG, f"Adding requirement: {requirement} (via {via})")

    def pinning(self, candidate: ResolverCandidate) -> None:
        logging.log(logging.DEBUG, f"Pinning candidate: {candidate}")

    def rejecting_candidate(self, criterion: Any, candidate: ResolverCandidate) -> None:
        logging.log(logging.DEBUG, f"Rejecting candidate: {candidate} (criterion={criterion})")

    def resolving_conflicts(
        self, causes: Collection[RequirementInformation[ResolverRequirement, ResolverCandidate]]
    ) -> None:
        self.backtracks += 1
        logging.log(logging.DEBUG, f"Resolving conflicts: {[str(c.requirement) for c in causes]}")
