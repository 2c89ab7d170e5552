from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Generic

from project_lock_engine.model.keys import CoreMetadataKey, IndexMetadataKey
from project_lock_engine.repository import (
    ArtifactKeyType,
    ArtifactRecord,
    ArtifactSource,
)


class StrategyNotApplicable(Exception):
    """
    Used for normal control flow: "this strategy does not apply to this key".
    """

    pass


@dataclass(frozen=True, slots=True)
class BaseArtifactResolutionStrategy(Generic[ArtifactKeyType], ABC):
    """
    Base strategy contract (acquisition only).

    Important: a strategy must NOT consult or mutate repositories.
    It only resolves a key to a destination URI. Lower precedence runs earlier.
    """

    name: str
    precedence: int = 100
    source: ArtifactSource = ArtifactSource.OTHER

    @abstractmethod
    def resolve(
        self, *, key: ArtifactKeyType, destination_uri: str
    ) -> ArtifactRecord | None:
        """
        Attempt to resolve the key into a destination_uri.

        Return:
          - ArtifactRecord if resolved
          - None if not applicable (allowed but less explicit than raising)
        Raise:
          - StrategyNotApplicable for "not applicable" (preferred)
          - any other exception for real failures while attempting resolution
        """
        raise NotImplementedError


# -------------------------
# typed specializations
# -------------------------


@dataclass(frozen=True, slots=True)
class IndexMetadataStrategy(BaseArtifactResolutionStrategy[IndexMetadataKey], ABC):
    source: ArtifactSource = ArtifactSource.HTTP_PEP691


@dataclass(frozen=True, slots=True)
class CoreMetadataStrategy(BaseArtifactResolutionStrategy[CoreMetadataKey], ABC):
    source: ArtifactSource = ArtifactSource.HTTP_PEP658
