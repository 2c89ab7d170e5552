from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Callable, Iterable, Iterator, Mapping, Sequence
from dataclasses import replace
from urllib.parse import urldefrag

from packaging.specifiers import InvalidSpecifier, SpecifierSet
from packaging.utils import InvalidWheelFilename, parse_wheel_filename
from packaging.version import InvalidVersion, Version
from resolvelib import AbstractProvider, ResolutionImpossible, ResolutionTooDeep, Resolver
from resolvelib.structs import RequirementInformation

from project_lock_engine.internal.metadata import MetadataSource
from project_lock_engine.internal.resolvelib_types import (
    LockResolutionReporter,
    Preference,
    ResolverCandidate,
    ResolverRequirement,
    split_identifier,
)
from project_lock_engine.model.graph import ResolvedGraph, ResolvedNode
from project_lock_engine.model.keys import DistributionKey
from project_lock_engine.model.resolution import (
    ConflictLink,
    InvalidRequiresDistPolicy,
    MetadataParseError,
    NoSatisfyingVersion,
    PreReleasePolicy,
    RequirementSpec,
    RequiresDistUrlPolicy,
    ResolutionEnv,
    ResolutionTooDeepError,
    SdistPolicy,
    YankedPolicy,
)

DEFAULT_MAX_ROUNDS = 200_000
ROOT_REQUIRER = "<root>"


def _env_python_version(env: ResolutionEnv) -> Version:
    # Prefer the full version if present (e.g., 3.11.7); else python_version (e.g., 3.11).
    full = env.marker_environment.get("python_full_version")
    short = env.marker_environment.get("python_version")
    raw = full or short or "0"
    try:
        return Version(str(raw))
    except InvalidVersion:
        return Version("0")


def _python_allowed(requires_python: str | None, python_version: Version) -> bool:
    if not requires_python:
        return True
    try:
        return SpecifierSet(requires_python).contains(python_version, prereleases=True)
    except InvalidSpecifier:
        logging.debug(f"ignoring invalid Requires-Python {requires_python!r}")
        return True


def _is_exact_pin(spec: RequirementSpec) -> bool:
    return any(s.operator in ("==", "===") and not s.version.endswith(".*") for s in spec.specifier)


def order_same_version(files: Iterable[DistributionKey], env: ResolutionEnv) -> list[DistributionKey]:
    """
    Order the files of one version from most to least preferred.

    Wheels come before sdists; wheels are ordered by the rank of their tag in the
    environment, then most recent upload time, then build tag (descending).
    """
    ordered = sorted(files, key=lambda f: f.build_tag, reverse=True)
    ordered.sort(key=lambda f: f.upload_time or "", reverse=True)

    def rank(f: DistributionKey) -> tuple[int, int]:
        tag_rank = env.tag_rank(f.tag)
        return f.dist_format.rank, tag_rank if tag_rank is not None else len(env.supported_tags)

    ordered.sort(key=rank)
    return ordered


class LockResolutionProvider(AbstractProvider):
    """
    resolvelib provider over a MetadataSource.

    Each version of a package is one candidate, represented by its preferred
    compatible file. Extras are resolved under their own identifier ("a[x]")
    whose candidate depends on the exact file chosen for the base name.
    """

    def __init__(self, *, metadata: MetadataSource, env: ResolutionEnv) -> None:
        self._metadata = metadata
        self._env = env
        self._policy = env.policy
        self._python_version = _env_python_version(env)
        self._marker_env = dict(env.marker_environment)
        self._compatible: dict[str, dict[Version, list[DistributionKey]]] = {}
        self._direct: dict[tuple[str, str], DistributionKey] = {}
        self._python_checked: dict[DistributionKey, bool] = {}
        self._requested_by: dict[str, list[ConflictLink]] = {}

    def identify(self, requirement_or_candidate: ResolverRequirement | ResolverCandidate) -> str:
        return requirement_or_candidate.identifier

    # -------------------------
    # candidate discovery
    # -------------------------

    def find_matches(
        self,
        identifier: str,
        requirements: Mapping[str, Iterator[ResolverRequirement]],
        incompatibilities: Mapping[str, Iterator[ResolverCandidate]],
    ) -> Callable[[], Iterator[ResolverCandidate]]:
        name, extras = split_identifier(identifier)
        reqs = list(requirements.get(identifier, iter(())))
        bad_versions = {c.version for c in incompatibilities.get(identifier, iter(()))}

        # Raise UnknownPackage / fetch errors here rather than lazily inside resolvelib.
        uris = sorted({r.spec.uri for r in reqs if r.spec.uri})
        if not uris:
            self._compatible_versions(name)

        # A factory, so candidates further down the list never cost a metadata fetch
        # unless the resolver actually gets to them.
        return lambda: self._iter_matches(name, extras, reqs, bad_versions, uris)

    def _iter_matches(
        self,
        name: str,
        extras: frozenset[str],
        reqs: Sequence[ResolverRequirement],
        bad_versions: set[str],
        uris: Sequence[str],
    ) -> Iterator[ResolverCandidate]:
        if uris:
            by_version: dict[Version, list[DistributionKey]] = {}
            for uri in uris:
                direct = self._direct_candidate(name, uri)
                if direct is not None:
                    by_version.setdefault(Version(direct.version), []).append(direct)
            prereleases: bool | None = True
        else:
            by_version = self._compatible_versions(name)
            prereleases = self._prerelease_setting()

        combined = SpecifierSet()
        for r in reqs:
            combined &= r.spec.specifier
        allowed = set(combined.filter(by_version.keys(), prereleases=prereleases))
        pinned = {r.pinned for r in reqs if r.pinned is not None}
        allow_yanked = self._policy.yanked_policy is YankedPolicy.ALLOW or any(_is_exact_pin(r.spec) for r in reqs)

        for version in sorted(allowed, reverse=True):
            if str(version) in bad_versions:
                continue
            for dist in by_version[version]:
                if pinned and dist not in pinned:
                    continue
                if dist.yanked and not allow_yanked:
                    continue
                if not self._declared_python_allowed(dist):
                    continue
                yield ResolverCandidate(distribution=dist, extras=extras)
                break

    def _prerelease_setting(self) -> bool | None:
        match self._policy.prerelease_policy:
            case PreReleasePolicy.ALLOW:
                return True
            case PreReleasePolicy.DISALLOW:
                return False
            case _:
                return None

    def _compatible_versions(self, name: str) -> dict[Version, list[DistributionKey]]:
        cached = self._compatible.get(name)
        if cached is not None:
            return cached

        grouped: dict[Version, list[DistributionKey]] = {}
        has_wheel = False
        for dist in self._metadata.fetch_versions(name):
            compatible = self._compatible_file(dist)
            if compatible is None:
                continue
            has_wheel = has_wheel or compatible.is_wheel
            grouped.setdefault(Version(compatible.version), []).append(compatible)

        if has_wheel and self._policy.sdist_policy is SdistPolicy.ONLY_IF_NO_WHEEL:
            grouped = {v: [f for f in files if f.is_wheel] for v, files in grouped.items()}
        result = {v: order_same_version(files, self._env) for v, files in grouped.items() if files}
        self._compatible[name] = result
        logging.debug(f"{name}: {len(result)} compatible version(s)")
        return result

    def _compatible_file(self, dist: DistributionKey) -> DistributionKey | None:
        """
        The file narrowed to this environment (wheel tag set to its best supported
        tag), or None when it cannot be installed here.
        """
        try:
            Version(dist.version)
        except InvalidVersion:
            return None
        if not _python_allowed(dist.requires_python, self._python_version):
            return None
        if not dist.is_wheel:
            return None if self._policy.sdist_policy is SdistPolicy.DISALLOW else dist

        try:
            _name, _ver, _build, tags = parse_wheel_filename(dist.filename)
        except InvalidWheelFilename:
            return None
        ranked = [(rank, str(t)) for t in tags if (rank := self._env.tag_rank(str(t))) is not None]
        if not ranked:
            return None
        return replace(dist, tag=min(ranked)[1])

    def _direct_candidate(self, name: str, uri: str) -> DistributionKey | None:
        key = (name, uri)
        if key not in self._direct:
            self._direct[key] = self._metadata.distribution_for_url(name, uri)
        return self._compatible_file(self._direct[key])

    def _declared_python_allowed(self, dist: DistributionKey) -> bool:
        # Index pages without requires-python leave the check to the core metadata.
        if dist.requires_python is not None:
            return True
        allowed = self._python_checked.get(dist)
        if allowed is None:
            meta = self._metadata.fetch_distribution_metadata(dist)
            allowed = _python_allowed(meta.requires_python, self._python_version)
            self._python_checked[dist] = allowed
        return allowed

    def is_satisfied_by(self, requirement: ResolverRequirement, candidate: ResolverCandidate) -> bool:
        if candidate.name != requirement.name:
            return False
        if requirement.pinned is not None:
            return candidate.distribution == requirement.pinned
        if requirement.spec.uri is not None:
            return candidate.distribution.url == urldefrag(requirement.spec.uri).url
        return requirement.spec.specifier.contains(Version(candidate.version), prereleases=True)

    # -------------------------
    # dependencies
    # -------------------------

    def _marker_true(self, spec: RequirementSpec, extra: str) -> bool:
        if spec.marker is None:
            return True
        return spec.marker.evaluate(environment={**self._marker_env, "extra": extra})

    def get_dependencies(self, candidate: ResolverCandidate) -> Iterable[ResolverRequirement]:
        dist = candidate.distribution
        meta = self._metadata.fetch_distribution_metadata(dist)

        if meta.invalid_requirements and self._policy.invalid_requires_dist_policy is InvalidRequiresDistPolicy.RAISE:
            raise MetadataParseError(
                dist.name, dist.version, f"invalid Requires-Dist entries: {list(meta.invalid_requirements)}"
            )

        deps: list[ResolverRequirement] = []
        if candidate.extras:
            missing = candidate.extras - meta.provides_extra
            if missing:
                logging.debug(f"{dist.identifier} does not provide extra(s) {sorted(missing)}")
            deps.append(
                ResolverRequirement(
                    spec=RequirementSpec(name=dist.name, specifier=SpecifierSet(f"=={dist.version}")),
                    pinned=dist,
                )
            )
            selected = [
                spec
                for spec in meta.requirements
                if spec.marker is not None
                and not self._marker_true(spec, "")
                and any(self._marker_true(spec, e) for e in sorted(candidate.extras))
            ]
        else:
            selected = [spec for spec in meta.requirements if self._marker_true(spec, "")]

        for spec in selected:
            if spec.uri is not None:
                match self._policy.requires_dist_url_policy:
                    case RequiresDistUrlPolicy.IGNORE:
                        spec = replace(spec, uri=None)
                    case RequiresDistUrlPolicy.RAISE:
                        raise MetadataParseError(
                            dist.name, dist.version, f"direct URL dependency not allowed: {spec}"
                        )
            # the marker has been evaluated; keep requirement identity marker-free
            deps.append(ResolverRequirement(spec=replace(spec, marker=None)))

        self.note_requested(candidate, deps)
        self._metadata.prefetch_versions(d.name for d in deps if d.pinned is None and d.spec.uri is None)
        return deps

    # -------------------------
    # provenance
    # -------------------------

    def note_requested(self, parent: ResolverCandidate | None, requirements: Iterable[ResolverRequirement]) -> None:
        """
        Remember which package (None for the roots) asked for each requirement.
        """
        for requirement in requirements:
            if requirement.pinned is not None:
                continue
            link = ConflictLink(
                requirement=requirement.spec,
                requirer=parent.name if parent is not None else None,
                requirer_version=parent.version if parent is not None else None,
            )
            links = self._requested_by.setdefault(requirement.name, [])
            if link not in links:
                links.append(link)

    def lineage(self, name: str, version: str) -> list[ConflictLink]:
        """
        The requirements that brought `name` `version` into the graph, starting
        at a root requirement. Empty when nothing recorded explains it.
        """
        links: list[ConflictLink] = []
        seen: set[tuple[str, str]] = set()
        current: tuple[str, str] | None = (name, version)
        while current is not None and current not in seen:
            seen.add(current)
            wanted = Version(current[1])
            link = next(
                (
                    lk
                    for lk in self._requested_by.get(current[0], ())
                    if lk.requirement.specifier.contains(wanted, prereleases=True)
                ),
                None,
            )
            if link is None:
                break
            links.append(link)
            current = None if link.requirer is None else (link.requirer, link.requirer_version or "0")
        links.reverse()
        return links

    def get_preference(
        self,
        identifier: str,
        resolutions: Mapping[str, ResolverCandidate],
        candidates: Mapping[str, Iterator[ResolverCandidate]],
        information: Mapping[str, Iterator[RequirementInformation[ResolverRequirement, ResolverCandidate]]],
        backtrack_causes: Sequence[RequirementInformation[ResolverRequirement, ResolverCandidate]],
        **_: object,
    ) -> Preference:
        """
        Decide which identifier resolvelib should try to resolve next.

        Candidates of one identifier are ranked in find_matches(); this only
        orders identifiers.
        """
        infos = tuple(information.get(identifier, ()))
        name, _extras = split_identifier(identifier)

        is_pinned = any(ri.requirement.pinned is not None for ri in infos)
        is_backtrack_cause = any(ri.requirement.name == name for ri in backtrack_causes)
        is_root = any(ri.parent is None for ri in infos)
        constraint_count = sum(len(ri.requirement.spec.specifier) for ri in infos)

        # smaller sorts first:
        #  1) extras pinned to a chosen base file
        #  2) backtrack causes
        #  3) root requirements
        #  4) more constrained names
        #  5) identifier
        return (
            0 if is_pinned else 1,
            0 if is_backtrack_cause else 1,
            0 if is_root else 1,
            -constraint_count,
            identifier,
        )


# -------------------------
# entry point
# -------------------------


def _conflict_error(
    causes: Sequence[RequirementInformation[ResolverRequirement, ResolverCandidate]],
    provider: LockResolutionProvider,
) -> NoSatisfyingVersion:
    chain: list[ConflictLink] = []
    for ri in causes:
        parent = ri.parent
        link = ConflictLink(
            requirement=ri.requirement.spec,
            requirer=parent.name if parent is not None else None,
            requirer_version=parent.version if parent is not None else None,
        )
        if link not in chain:
            chain.append(link)

    counts = Counter(ri.requirement.name for ri in causes)
    name = counts.most_common(1)[0][0] if counts else "<unknown>"
    on_name = [link for link in chain if link.requirement.name == name]
    # then how each requiring package entered the graph
    for ri in causes:
        if ri.parent is not None:
            for link in provider.lineage(ri.parent.name, ri.parent.version):
                if link not in chain:
                    chain.append(link)
    return NoSatisfyingVersion(
        name,
        constraints=[str(link.requirement) for link in on_name],
        requirers=[
            ROOT_REQUIRER if link.requirer is None else f"{link.requirer}=={link.requirer_version}"
            for link in on_name
        ],
        chain=chain,
    )


def resolve_graph(
    *,
    metadata: MetadataSource,
    env: ResolutionEnv,
    roots: Sequence[RequirementSpec],
    max_rounds: int = DEFAULT_MAX_ROUNDS,
    should_cancel: Callable[[], bool] | None = None,
) -> ResolvedGraph:
    """
    Resolve `roots` for `env` into a ResolvedGraph.

    Root requirements whose markers do not apply to the environment are dropped.

    Raises:
        UnknownPackage: A required name is not known to any index.
        NoSatisfyingVersion: The constraints cannot be satisfied; carries the
            requirements involved in the conflict.
        MetadataFetchError: Metadata could not be retrieved or parsed.
        ResolutionTooDeepError: `max_rounds` was exhausted.
        ResolutionCancelled: `should_cancel` returned True between rounds.
    """
    marker_env = {**dict(env.marker_environment), "extra": ""}
    applicable = [r for r in roots if r.applies_to(marker_env)]
    requirements = [ResolverRequirement(spec=replace(r, marker=None)) for r in applicable]
    metadata.prefetch_versions(r.name for r in applicable if r.uri is None)

    provider = LockResolutionProvider(metadata=metadata, env=env)
    provider.note_requested(None, requirements)
    reporter = LockResolutionReporter(should_cancel=should_cancel)
    resolver = Resolver(provider, reporter)
    try:
        result = resolver.resolve(requirements, max_rounds=max_rounds)
    except ResolutionImpossible as e:
        raise _conflict_error(e.causes, provider) from e
    except ResolutionTooDeep as e:
        raise ResolutionTooDeepError(max_rounds) from e

    chosen: dict[str, DistributionKey] = {}
    extras: dict[str, set[str]] = {}
    for identifier, candidate in result.mapping.items():
        name, _ = split_identifier(identifier)
        if not candidate.extras or name not in chosen:
            chosen[name] = candidate.distribution
        extras.setdefault(name, set()).update(candidate.extras)

    root_names: set[str] = set()
    dependencies: dict[str, set[str]] = {name: set() for name in chosen}
    for parent in result.graph:
        for child in result.graph.iter_children(parent):
            child_name, _ = split_identifier(child)
            if parent is None:
                root_names.add(child_name)
                continue
            parent_name, _ = split_identifier(parent)
            if parent_name != child_name and child_name in chosen:
                dependencies[parent_name].add(child_name)

    return ResolvedGraph(
        roots=frozenset(root_names),
        nodes={
            name: ResolvedNode(
                distribution=dist,
                dependencies=frozenset(dependencies[name]),
                extras=frozenset(extras.get(name, ())),
            )
            for name, dist in chosen.items()
        },
    )
