from __future__ import annotations

import hashlib
import logging
import os
import tempfile
from collections.abc import Iterable
from datetime import datetime, timezone
from pathlib import Path

import tomli

from project_lock_engine.internal.util.toml import dump_toml_to_str
from project_lock_engine.model.graph import ResolvedGraph
from project_lock_engine.model.lock import (
    LOCK_SCHEMA_VERSION,
    CorruptLockDocument,
    LockDocument,
    LockMetadata,
    UnsupportedSchema,
)
from project_lock_engine.model.resolution import RequirementSpec

LOCK_FILE_NAME = "project-lock.toml"
RESOLVER_ALGORITHM = "resolvelib-backtracking/1"


def _schema_major(version: str) -> str:
    return version.split(".", 1)[0]


def resolve_timestamp(generated_at: str | None = None) -> str:
    """
    Pick the generation timestamp for a new lock document.

    An explicit value wins, then SOURCE_DATE_EPOCH (reproducible builds), then the
    current UTC time truncated to whole seconds.
    """
    if generated_at:
        return generated_at
    epoch = os.environ.get("SOURCE_DATE_EPOCH")
    if epoch:
        moment = datetime.fromtimestamp(int(epoch), tz=timezone.utc)
    else:
        moment = datetime.now(tz=timezone.utc).replace(microsecond=0)
    return moment.isoformat()


def requirements_hash(requirements: Iterable[RequirementSpec], *, environment: str) -> str:
    """
    Stable, algorithm-tagged digest of the resolution inputs.
    """
    lines = sorted(str(r) for r in requirements)
    payload = "\n".join([f"environment={environment}", *lines]).encode("utf-8")
    return f"sha256:{hashlib.sha256(payload).hexdigest()}"


def build_document(
    graph: ResolvedGraph,
    source_requirements: Iterable[RequirementSpec],
    *,
    environment: str,
    generated_at: str | None = None,
) -> LockDocument:
    requirements = tuple(source_requirements)
    metadata = LockMetadata(
        schema_version=LOCK_SCHEMA_VERSION,
        resolver=RESOLVER_ALGORITHM,
        environment=environment,
        generated_at=resolve_timestamp(generated_at),
        requirements_hash=requirements_hash(requirements, environment=environment),
    )
    return LockDocument.from_graph(graph, requirements, metadata=metadata)


def encode_document(document: LockDocument) -> bytes:
    return dump_toml_to_str(document.to_mapping()).encode("utf-8")


def encode(
    graph: ResolvedGraph,
    source_requirements: Iterable[RequirementSpec],
    *,
    environment: str,
    generated_at: str | None = None,
) -> bytes:
    """
    Serialize a resolved graph and the requirements it was produced from.

    Output is deterministic: packages are sorted by name, nested lists are sorted,
    and table keys are emitted in a fixed order.
    """
    return encode_document(
        build_document(
            graph, source_requirements, environment=environment, generated_at=generated_at
        )
    )


def decode(data: bytes) -> LockDocument:
    """
    Parse and validate a lock document.

    Raises:
        UnsupportedSchema: The document declares a major schema version this
            code does not read.
        CorruptLockDocument: The bytes are not a structurally valid document.
    """
    try:
        raw = tomli.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, tomli.TOMLDecodeError) as e:
        raise CorruptLockDocument(f"Lock document is not valid TOML: {e}") from e

    meta = raw.get("metadata")
    schema = meta.get("schema-version") if isinstance(meta, dict) else None
    if schema is None:
        raise CorruptLockDocument("Lock document does not declare a schema-version")
    if _schema_major(str(schema)) != _schema_major(LOCK_SCHEMA_VERSION):
        raise UnsupportedSchema(str(schema))

    try:
        return LockDocument.from_mapping(raw)
    except CorruptLockDocument:
        raise
    except (TypeError, ValueError) as e:
        raise CorruptLockDocument(f"Lock document is malformed: {e}") from e


def is_up_to_date(document: LockDocument, requirements: Iterable[RequirementSpec], *, environment: str) -> bool:
    return document.metadata.requirements_hash == requirements_hash(
        requirements, environment=environment
    ) and document.metadata.environment == environment


def verify_reproduces(document: LockDocument, graph: ResolvedGraph) -> list[str]:
    """
    Compare a locked document with a freshly resolved graph.

    Returns:
        list[str]: Human-readable differences; empty when the graph reproduces the lock.
    """
    diffs: list[str] = []
    locked = {p.name: p for p in document.packages}
    fresh = {node.name: node for node in graph}
    for name in sorted(set(locked) - set(fresh)):
        diffs.append(f"{name}: locked but no longer resolved")
    for name in sorted(set(fresh) - set(locked)):
        diffs.append(f"{name}: resolved but not locked")
    for name in sorted(set(locked) & set(fresh)):
        lp, node = locked[name], fresh[name]
        if lp.version != node.version:
            diffs.append(f"{name}: version {lp.version} != {node.version}")
        if lp.hash != node.hash_spec:
            diffs.append(f"{name}: hash {lp.hash} != {node.hash_spec}")
        if tuple(sorted(node.dependencies)) != lp.dependencies:
            diffs.append(f"{name}: dependencies differ")
    return diffs


def lock_path_for(project_root: str | Path) -> Path:
    return Path(project_root) / LOCK_FILE_NAME


def read_lock_file(path: str | Path) -> LockDocument:
    return decode(Path(path).read_bytes())


def atomic_write_bytes(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def write_lock_file(path: str | Path, document: LockDocument) -> LockDocument:
    """
    Atomically replace the lock document at `path`.

    When an existing, readable document differs from `document` only in its
    generation timestamp, the file is left untouched and the existing document
    is returned, so re-locking an unchanged project is byte-identical.
    """
    path = Path(path)
    if path.exists():
        try:
            existing = read_lock_file(path)
        except (CorruptLockDocument, UnsupportedSchema) as e:
            logging.warning(f"Replacing unreadable lock document {path}: {e}")
        else:
            if existing.with_generated_at(document.metadata.generated_at) == document:
                logging.debug(f"Lock document {path} is unchanged")
                return existing

    atomic_write_bytes(path, encode_document(document))
    logging.log(logging.INFO, f"Wrote lock document {path} ({len(document.packages)} packages)")
    return document
