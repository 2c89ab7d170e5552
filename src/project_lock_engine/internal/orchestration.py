from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Generic, Sequence

from project_lock_engine.model.keys import ArtifactKeyType
from project_lock_engine.model.resolution import ArtifactResolutionError
from project_lock_engine.repository import (
    ArtifactRecord,
    ArtifactRepository,
    ArtifactResolver,
)
from project_lock_engine.strategies import (
    BaseArtifactResolutionStrategy,
    StrategyNotApplicable,
)


@dataclass(frozen=True, slots=True)
class StrategyChainArtifactResolver(
    Generic[ArtifactKeyType], ArtifactResolver[ArtifactKeyType]
):
    """
    ArtifactResolver implementation that tries strategies in precedence order.

    The first strategy producing a record wins; strategies that are not
    applicable are skipped, failures are collected and reported together when
    nothing succeeds.
    """

    strategies: Sequence[BaseArtifactResolutionStrategy[ArtifactKeyType]]

    def __post_init__(self) -> None:
        ordered = tuple(sorted(self.strategies, key=lambda s: (s.precedence, s.name)))
        object.__setattr__(self, "strategies", ordered)

    def resolve(self, key: ArtifactKeyType, destination_uri: str) -> ArtifactRecord:
        causes: list[BaseException] = []

        for strategy in self.strategies:
            try:
                record = strategy.resolve(key=key, destination_uri=destination_uri)
                if record is None:
                    logging.debug(f"strategy returned None: {strategy.name} key={key!r}")
                    continue
                return record

            except StrategyNotApplicable:
                logging.debug(f"strategy not applicable: {strategy.name} key={key!r}")
                continue

            except Exception as e:
                causes.append(e)
                logging.debug(
                    f"strategy failed: {strategy.name} key={key!r} err={type(e).__name__}: {e}"
                )
                continue

        raise ArtifactResolutionError(
            "No strategy was able to resolve the requested artifact",
            key=key,
            causes=tuple(causes),
        )


@dataclass(frozen=True, slots=True)
class ArtifactCoordinator(Generic[ArtifactKeyType]):
    repo: ArtifactRepository
    resolver: ArtifactResolver[ArtifactKeyType]

    def resolve(self, key: ArtifactKeyType) -> ArtifactRecord:
        hit = self.repo.get(key)
        if hit is not None:
            return hit

        dest_uri = self.repo.allocate_destination_uri(key)
        record = self.resolver.resolve(key=key, destination_uri=dest_uri)
        self.repo.put(record)
        return record
