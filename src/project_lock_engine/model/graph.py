from __future__ import annotations

from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from typing import Any

from typing_extensions import Self

from project_lock_engine.internal.util.multiformat import MultiformatModelMixin
from project_lock_engine.model.keys import DistributionKey, normalize_project_name


@dataclass(slots=True, frozen=True)
class ResolvedNode(MultiformatModelMixin):
    """
    One chosen package in a resolution: the selected distribution plus the names
    of the packages it was resolved against.

    Attributes:
        distribution (DistributionKey): The chosen file of the chosen version.
        dependencies (frozenset[str]): Normalized names of direct dependencies that
            are part of the graph. Edges may form cycles.
        extras (frozenset[str]): Extras that were requested of this package.
    """

    distribution: DistributionKey
    dependencies: frozenset[str] = field(default_factory=frozenset)
    extras: frozenset[str] = field(default_factory=frozenset)

    @property
    def name(self) -> str:
        return self.distribution.name

    @property
    def version(self) -> str:
        return self.distribution.version

    @property
    def hash_spec(self) -> str | None:
        return self.distribution.hash_spec

    def to_mapping(self, *args, **kwargs) -> dict[str, Any]:
        return {
            "distribution": self.distribution.to_mapping(),
            "dependencies": sorted(self.dependencies),
            "extras": sorted(self.extras),
        }

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any], **_: Any) -> Self:
        return cls(
            distribution=DistributionKey.from_mapping(mapping["distribution"]),
            dependencies=frozenset(mapping.get("dependencies") or ()),
            extras=frozenset(mapping.get("extras") or ()),
        )


@dataclass(slots=True, frozen=True)
class ResolvedGraph(MultiformatModelMixin):
    """
    Result of resolving a set of root requirements: exactly one node per package name.

    The graph validates its topology on construction and is never mutated
    afterwards; a new resolution produces a new graph.

    Attributes:
        roots (frozenset[str]): Names requested directly by the root requirements.
        nodes (Mapping[str, ResolvedNode]): Canonical mapping from normalized package
            name to the chosen node.
    """

    roots: frozenset[str]
    nodes: Mapping[str, ResolvedNode]

    def __post_init__(self) -> None:
        """
        Validates the topology of nodes and dependencies after initialization.

        Raises:
            ValueError: If a node is keyed under a name other than its own, if a
                root is missing from the nodes, or if an edge points at a
                missing node.
        """
        misfiled = {
            key for key, node in self.nodes.items() if normalize_project_name(key) != node.name
        }
        if misfiled:
            raise ValueError(f"Nodes keyed under a foreign name: {sorted(misfiled)}")

        missing_roots = set(self.roots) - set(self.nodes)
        if missing_roots:
            raise ValueError(f"Root nodes without metadata: {sorted(missing_roots)}")

        missing_deps: set[str] = set()
        for node in self.nodes.values():
            missing_deps.update(dep for dep in node.dependencies if dep not in self.nodes)
        if missing_deps:
            raise ValueError(f"Dependencies refer to missing nodes: {sorted(missing_deps)}")

        object.__setattr__(self, "nodes", dict(sorted(self.nodes.items())))

    def __iter__(self) -> Iterator[ResolvedNode]:
        return iter(self.nodes.values())

    def __len__(self) -> int:
        return len(self.nodes)

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and normalize_project_name(name) in self.nodes

    def __getitem__(self, name: str) -> ResolvedNode:
        return self.nodes[normalize_project_name(name)]

    def pins(self) -> dict[str, str]:
        return {name: node.version for name, node in self.nodes.items()}

    def dependents_of(self, name: str) -> list[str]:
        target = normalize_project_name(name)
        return sorted(n for n, node in self.nodes.items() if target in node.dependencies)

    def to_dot(self) -> str:
        """
        Render the dependency graph in Graphviz DOT syntax.
        """
        lines = ["digraph dependencies {"]
        for name, node in self.nodes.items():
            shape = "doublecircle" if name in self.roots else "ellipse"
            lines.append(f'    "{name}" [label="{name}\\n{node.version}", shape={shape}];')
        for name, node in self.nodes.items():
            for dep in sorted(node.dependencies):
                lines.append(f'    "{name}" -> "{dep}";')
        lines.append("}")
        return "\n".join(lines) + "\n"

    def to_mapping(self, *args, **kwargs) -> dict[str, Any]:
        return {
            "roots": sorted(self.roots),
            "nodes": {name: node.to_mapping() for name, node in self.nodes.items()},
        }

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any], **_: Any) -> Self:
        raw_nodes = mapping.get("nodes") or {}
        nodes = {name: ResolvedNode.from_mapping(m) for name, m in raw_nodes.items()}
        return cls(roots=frozenset(mapping.get("roots") or ()), nodes=nodes)
