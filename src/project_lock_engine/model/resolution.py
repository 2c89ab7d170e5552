from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Sequence, cast

from packaging.markers import Environment, Marker, default_environment
from packaging.requirements import InvalidRequirement, Requirement
from packaging.specifiers import SpecifierSet
from packaging.tags import sys_tags
from typing_extensions import Self

from project_lock_engine.internal.util.multiformat import MultiformatModelMixin
from project_lock_engine.internal.util.validation import validate_typed_dict
from project_lock_engine.model.keys import BaseArtifactKey, normalize_project_name


class RequiresDistUrlPolicy(Enum):
    HONOR = "honor"  # resolve the dependency from its direct URL
    IGNORE = "ignore"  # drop req.url, resolve by name and specifier
    RAISE = "raise"  # fail fast


class YankedPolicy(Enum):
    SKIP = "skip"
    ALLOW = "allow"  # allow yanked files to participate


class PreReleasePolicy(Enum):
    DEFAULT = "default"  # let packaging decide (SpecifierSet prerelease rules)
    ALLOW = "allow"  # treat prereleases as allowed for contains checks
    DISALLOW = "disallow"  # treat prereleases as not allowed for contains checks


class InvalidRequiresDistPolicy(Enum):
    SKIP = "skip"
    RAISE = "raise"


class SdistPolicy(Enum):
    ALLOW = "allow"  # sdists are candidates, ranked after wheels of the same version
    ONLY_IF_NO_WHEEL = "only_if_no_wheel"
    DISALLOW = "disallow"


@dataclass(kw_only=True, frozen=True, slots=True)
class ResolutionPolicy(MultiformatModelMixin):
    """
    Policy knobs that influence resolution behavior but are not intrinsic properties of
    the target interpreter or platform.

    Attributes:
        requires_dist_url_policy (RequiresDistUrlPolicy): How direct URL
            dependencies in `Requires-Dist` are handled.
        yanked_policy (YankedPolicy): Whether yanked files may be selected.
        prerelease_policy (PreReleasePolicy): How pre-releases are admitted.
        invalid_requires_dist_policy (InvalidRequiresDistPolicy): Behavior when a
            `Requires-Dist` entry does not parse.
        sdist_policy (SdistPolicy): Whether source distributions are candidates.
    """

    requires_dist_url_policy: RequiresDistUrlPolicy = RequiresDistUrlPolicy.IGNORE
    yanked_policy: YankedPolicy = YankedPolicy.SKIP
    prerelease_policy: PreReleasePolicy = PreReleasePolicy.DEFAULT
    invalid_requires_dist_policy: InvalidRequiresDistPolicy = InvalidRequiresDistPolicy.RAISE
    sdist_policy: SdistPolicy = SdistPolicy.ALLOW

    def to_mapping(self, *args: Any, **kwargs: Any) -> Mapping[str, Any]:
        return {
            "requires_dist_url_policy": self.requires_dist_url_policy.value,
            "yanked_policy": self.yanked_policy.value,
            "prerelease_policy": self.prerelease_policy.value,
            "invalid_requires_dist_policy": self.invalid_requires_dist_policy.value,
            "sdist_policy": self.sdist_policy.value,
        }

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any], *args: Any, **kwargs: Any) -> Self:
        return cls(
            requires_dist_url_policy=RequiresDistUrlPolicy(
                mapping.get("requires_dist_url_policy", RequiresDistUrlPolicy.IGNORE.value)
            ),
            yanked_policy=YankedPolicy(mapping.get("yanked_policy", YankedPolicy.SKIP.value)),
            prerelease_policy=PreReleasePolicy(
                mapping.get("prerelease_policy", PreReleasePolicy.DEFAULT.value)
            ),
            invalid_requires_dist_policy=InvalidRequiresDistPolicy(
                mapping.get(
                    "invalid_requires_dist_policy", InvalidRequiresDistPolicy.RAISE.value
                )
            ),
            sdist_policy=SdistPolicy(mapping.get("sdist_policy", SdistPolicy.ALLOW.value)),
        )


@dataclass(kw_only=True, frozen=True, slots=True)
class ResolutionEnv(MultiformatModelMixin):
    """
    The target environment a resolution is computed for.

    `supported_tags` is ordered from most to least preferred, as produced by
    `packaging.tags.sys_tags()` for the target interpreter. The environment
    creator supplies it together with the target directory.
    """

    identifier: str
    supported_tags: tuple[str, ...]
    marker_environment: Environment = field(default_factory=default_environment)
    policy: ResolutionPolicy = field(default_factory=ResolutionPolicy)

    @classmethod
    def for_running_interpreter(
        cls, *, identifier: str = "default", policy: ResolutionPolicy | None = None
    ) -> ResolutionEnv:
        return cls(
            identifier=identifier,
            supported_tags=tuple(str(t) for t in sys_tags()),
            marker_environment=default_environment(),
            policy=policy or ResolutionPolicy(),
        )

    def tag_rank(self, tag: str) -> int | None:
        try:
            return self.supported_tags.index(tag)
        except ValueError:
            return None

    def to_mapping(self, *args, **kwargs) -> Mapping[str, Any]:
        return {
            "identifier": self.identifier,
            "supported_tags": list(self.supported_tags),
            "marker_environment": dict(cast(Mapping[str, str], self.marker_environment)),
            "policy": self.policy.to_mapping(),
        }

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any], *args, **kwargs) -> Self:
        env_map: dict[str, str] = dict(mapping.get("marker_environment") or default_environment())
        validate_typed_dict("marker_environment", env_map, Environment, str)
        mrk_env = cast(Environment, cast(object, env_map))
        policy_map: Mapping[str, Any] = mapping.get("policy") or {}
        return cls(
            identifier=mapping["identifier"],
            supported_tags=tuple(mapping["supported_tags"]),
            marker_environment=mrk_env,
            policy=ResolutionPolicy.from_mapping(policy_map),
        )


@dataclass(kw_only=True, frozen=True, slots=True)
class RequirementSpec(MultiformatModelMixin):
    """
    A named package plus acceptable version range and optional conditions.

    Root requirements come from the caller; transitive ones are produced from
    `Requires-Dist` of chosen candidates.

    Attributes:
        name (str): Normalized package name.
        specifier (SpecifierSet): Version constraint; empty means "any version".
        extras (frozenset[str]): Requested extras of the package.
        marker (Marker | None): Environment marker gating the requirement.
        uri (str | None): Direct reference; when set it wins over the index.
    """

    name: str
    specifier: SpecifierSet = field(default_factory=SpecifierSet)
    extras: frozenset[str] = field(default_factory=frozenset)
    marker: Marker | None = field(default=None)
    uri: str | None = field(default=None)

    def __post_init__(self) -> None:
        object.__setattr__(self, "name", normalize_project_name(self.name))
        object.__setattr__(
            self, "extras", frozenset(normalize_project_name(e) for e in self.extras)
        )
        u = (self.uri.strip() or None) if self.uri is not None else None
        object.__setattr__(self, "uri", u)

    @classmethod
    def parse(cls, text: str) -> RequirementSpec:
        """
        Parse a PEP 508 requirement string.

        Raises:
            ValueError: If `text` is not a valid requirement.
        """
        try:
            req = Requirement(text)
        except InvalidRequirement as e:
            raise ValueError(f"Invalid requirement {text!r}: {e}") from e
        return cls.from_requirement(req)

    @classmethod
    def from_requirement(cls, req: Requirement) -> RequirementSpec:
        return cls(
            name=req.name,
            specifier=req.specifier,
            extras=frozenset(req.extras),
            marker=req.marker,
            uri=req.url or None,
        )

    def applies_to(self, marker_environment: Mapping[str, str]) -> bool:
        if self.marker is None:
            return True
        return self.marker.evaluate(environment=dict(marker_environment))

    @property
    def identifier(self) -> str:
        return str(self)

    def __str__(self) -> str:
        extras = f"[{','.join(sorted(self.extras))}]" if self.extras else ""
        if self.uri is not None:
            text = f"{self.name}{extras} @ {self.uri}"
        else:
            text = f"{self.name}{extras}{self.specifier}"
        if self.marker is not None:
            text = f"{text} ; {self.marker}"
        return text

    def to_mapping(self, *args, **kwargs) -> Mapping[str, Any]:
        return {
            "name": self.name,
            "specifier": str(self.specifier),
            "extras": sorted(self.extras),
            "marker": str(self.marker) if self.marker is not None else None,
            "uri": self.uri,
        }

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any], *args, **kwargs) -> Self:
        marker = mapping.get("marker")
        return cls(
            name=mapping["name"],
            specifier=SpecifierSet(mapping.get("specifier") or ""),
            extras=frozenset(mapping.get("extras") or ()),
            marker=Marker(marker) if marker else None,
            uri=mapping.get("uri"),
        )


@dataclass(kw_only=True, frozen=True, slots=True)
class ResolutionParams:
    """
    Inputs for one resolution run.

    Attributes:
        root_requirements (list[RequirementSpec]): What the user asked for.
        environment (ResolutionEnv): The target environment.
        generated_at (str | None): Timestamp to stamp into the lock document;
            None lets the codec pick one.
        write_lock (bool): Whether the lock document is written to the project.
    """

    root_requirements: list[RequirementSpec]
    environment: ResolutionEnv
    generated_at: str | None = None
    write_lock: bool = True


# ---------------------------------------------------------------------------
# errors
# ---------------------------------------------------------------------------


class ResolutionError(Exception):
    """
    Base error type for resolution failures.
    """


class UnknownPackage(ResolutionError):
    def __init__(self, name: str, *, indexes: Sequence[str] = ()):
        where = f" on any of {list(indexes)}" if indexes else ""
        super().__init__(f"Package {name!r} was not found{where}")
        self.name = name
        self.indexes = tuple(indexes)


@dataclass(frozen=True, slots=True)
class ConflictLink:
    """
    One requirement participating in a conflict and the package that imposed it
    (None for a root requirement).
    """

    requirement: RequirementSpec
    requirer: str | None
    requirer_version: str | None = None

    def describe(self) -> str:
        who = (
            "the root requirements"
            if self.requirer is None
            else f"{self.requirer} {self.requirer_version or ''}".strip()
        )
        return f"{who} requires {self.requirement}"


class NoSatisfyingVersion(ResolutionError):
    """
    No candidate of `name` satisfies the intersection of the constraints imposed on it.

    Attributes:
        name (str): The package that could not be assigned.
        constraints (tuple[str, ...]): Every constraint attempted for the package.
        requirers (tuple[str, ...]): Packages imposing those constraints
            ("<root>" for the user's own requirements).
        chain (tuple[ConflictLink, ...]): All requirements involved in the conflict,
            possibly spanning several package names.
    """

    def __init__(
        self,
        name: str,
        *,
        constraints: Iterable[str],
        requirers: Iterable[str],
        chain: Iterable[ConflictLink] = (),
    ):
        self.name = name
        self.constraints = tuple(constraints)
        self.requirers = tuple(requirers)
        self.chain = tuple(chain)
        super().__init__(
            f"No version of {name!r} satisfies {', '.join(self.constraints) or '<any>'} "
            f"(required by {', '.join(self.requirers) or '<root>'})"
        )

    def explain(self) -> str:
        lines = [str(self)]
        lines.extend(f"  - {link.describe()}" for link in self.chain)
        return "\n".join(lines)


class MetadataFetchError(ResolutionError):
    def __init__(self, name: str, version: str | None, cause: BaseException | str):
        what = f"{name}=={version}" if version else name
        super().__init__(f"Could not fetch metadata for {what}: {cause}")
        self.name = name
        self.version = version
        self.cause = cause


class MetadataParseError(MetadataFetchError):
    """
    The metadata was retrieved but is malformed.
    """


class ResolutionTooDeepError(ResolutionError):
    def __init__(self, max_rounds: int):
        super().__init__(f"Resolution did not finish within {max_rounds} rounds")
        self.max_rounds = max_rounds


class ResolutionCancelled(ResolutionError):
    pass


class ArtifactResolutionError(ResolutionError):
    """
    Raised when an ArtifactResolver cannot resolve an artifact after trying all strategies.
    """

    def __init__(
        self,
        message: str,
        *,
        key: BaseArtifactKey,
        causes: Sequence[BaseException] = (),
    ):
        super().__init__(message)
        self.key = key
        self.causes = tuple(causes)
