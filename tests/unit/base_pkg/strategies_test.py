from __future__ import annotations

from dataclasses import FrozenInstanceError, dataclass

import pytest

from project_lock_engine.repository import ArtifactSource
from project_lock_engine.strategies import (
    BaseArtifactResolutionStrategy,
    CoreMetadataStrategy,
    IndexMetadataStrategy,
    StrategyNotApplicable,
)


@dataclass(frozen=True)
class NoopCoreStrategy(CoreMetadataStrategy):
    def resolve(self, *, key, destination_uri):
        raise StrategyNotApplicable()


@dataclass(frozen=True)
class NoopIndexStrategy(IndexMetadataStrategy):
    def resolve(self, *, key, destination_uri):
        return None


def test_typed_strategy_defaults() -> None:
    core = NoopCoreStrategy(name="core")
    index = NoopIndexStrategy(name="index")
    assert core.precedence == 100
    assert core.source is ArtifactSource.HTTP_PEP658
    assert index.source is ArtifactSource.HTTP_PEP691
    with pytest.raises(StrategyNotApplicable):
        core.resolve(key=None, destination_uri="file:///x")
    assert index.resolve(key=None, destination_uri="file:///x") is None


def test_strategies_are_immutable() -> None:
    with pytest.raises(FrozenInstanceError):
        NoopCoreStrategy(name="core").precedence = 1  # type: ignore[misc]


def test_base_strategy_is_abstract() -> None:
    with pytest.raises(TypeError):
        BaseArtifactResolutionStrategy(name="x")  # type: ignore[abstract]
