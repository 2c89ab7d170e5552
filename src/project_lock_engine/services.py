from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

from project_lock_engine.internal.builtin_strategies import (
    FullDownloadCoreMetadataStrategy,
    LocalDirectoryIndexMetadataStrategy,
    LocalFileCoreMetadataStrategy,
    Pep658CoreMetadataHttpStrategy,
    Pep691IndexMetadataHttpStrategy,
    RangeRequestCoreMetadataStrategy,
)
from project_lock_engine.internal.http import CachingHttpClient
from project_lock_engine.internal.orchestration import (
    ArtifactCoordinator,
    StrategyChainArtifactResolver,
)
from project_lock_engine.model.keys import CoreMetadataKey, IndexMetadataKey
from project_lock_engine.repository import ArtifactRepository
from project_lock_engine.strategies import CoreMetadataStrategy, IndexMetadataStrategy


# -------------------------
# service wiring
# -------------------------


@dataclass(frozen=True, slots=True)
class ResolutionServices:
    """
    Wires the run repository and strategy chains into one coordinator per
    artifact kind.

    The metadata provider depends on this object, not on raw repositories or
    strategies.
    """

    index_metadata: ArtifactCoordinator[IndexMetadataKey]
    core_metadata: ArtifactCoordinator[CoreMetadataKey]


def build_services(
    *,
    repo: ArtifactRepository,
    index_metadata_strategies: Sequence[IndexMetadataStrategy],
    core_metadata_strategies: Sequence[CoreMetadataStrategy],
) -> ResolutionServices:
    if not index_metadata_strategies or not core_metadata_strategies:
        raise ValueError("at least one index and one core metadata strategy are required")

    index_resolver: StrategyChainArtifactResolver[IndexMetadataKey] = StrategyChainArtifactResolver(
        index_metadata_strategies
    )
    core_resolver: StrategyChainArtifactResolver[CoreMetadataKey] = StrategyChainArtifactResolver(
        core_metadata_strategies
    )
    return ResolutionServices(
        index_metadata=ArtifactCoordinator(repo=repo, resolver=index_resolver),
        core_metadata=ArtifactCoordinator(repo=repo, resolver=core_resolver),
    )


def default_strategies(
    http: CachingHttpClient, *, partial_retrieval: bool = True
) -> tuple[list[IndexMetadataStrategy], list[CoreMetadataStrategy]]:
    """
    The built-in strategy set.

    Core metadata is tried as: local file, PEP 658 sidecar, HTTP range reads
    (unless disabled), then a full download.
    """
    index: list[IndexMetadataStrategy] = [
        LocalDirectoryIndexMetadataStrategy(),
        Pep691IndexMetadataHttpStrategy(http=http),
    ]
    core: list[CoreMetadataStrategy] = [
        LocalFileCoreMetadataStrategy(),
        Pep658CoreMetadataHttpStrategy(http=http),
        FullDownloadCoreMetadataStrategy(http=http),
    ]
    if partial_retrieval:
        core.append(RangeRequestCoreMetadataStrategy(http=http))
    return index, core


def load_services(
    *, repo: ArtifactRepository, http: CachingHttpClient, partial_retrieval: bool = True
) -> ResolutionServices:
    index, core = default_strategies(http, partial_retrieval=partial_retrieval)
    return build_services(repo=repo, index_metadata_strategies=index, core_metadata_strategies=core)
