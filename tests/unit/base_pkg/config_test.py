from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest

from project_lock_engine.config import (
    ConfigError,
    EngineConfig,
    IndexConfig,
    default_cache_dir,
    load_config,
    order_indexes,
)
from project_lock_engine.model.resolution import SdistPolicy, YankedPolicy

INVALID_MAPPING_CASES = [
    {"id": "unknown-key", "mapping": {"colour": "blue"}, "match": "unknown configuration keys"},
    {"id": "no-indexes", "mapping": {"indexes": []}, "match": "at least one index"},
    {"id": "index-missing-url", "mapping": {"indexes": [{"name": "a"}]}, "match": "missing 'url'"},
    {"id": "index-empty-name", "mapping": {"indexes": [{"name": "", "url": "u"}]}, "match": "must not be empty"},
    {"id": "zero-retries", "mapping": {"http_retries": 0}, "match": "http_retries must be at least 1"},
    {"id": "bad-policy", "mapping": {"policy": {"yanked_policy": "sometimes"}}, "match": "invalid policy"},
    {
        "id": "duplicate-index",
        "mapping": {"indexes": [{"name": "a", "url": "u1"}, {"name": "a", "url": "u2"}]},
        "match": "duplicate index names",
    },
    {
        "id": "two-defaults",
        "mapping": {"indexes": [{"name": "a", "url": "u", "default": True}, {"name": "b", "url": "u", "default": True}]},
        "match": "at most one index",
    },
]


@pytest.mark.parametrize("row", INVALID_MAPPING_CASES, ids=lambda r: r["id"])
def test_from_mapping_rejects_invalid(row: dict[str, Any]) -> None:
    with pytest.raises(ConfigError, match=row["match"]):
        EngineConfig.from_mapping(row["mapping"])


def test_defaults_and_derived_paths(tmp_path: Path) -> None:
    cfg = EngineConfig(cache_dir=tmp_path)
    assert [i.name for i in cfg.indexes] == ["pypi"]
    assert cfg.http_cache_dir == tmp_path / "http"
    assert cfg.content_store_dir == tmp_path / "store"
    assert cfg.policy.sdist_policy is SdistPolicy.ALLOW


def test_default_cache_dir_honors_xdg(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("XDG_CACHE_HOME", str(tmp_path))
    assert default_cache_dir() == tmp_path / "project-lock-engine"


def test_order_indexes_priority_then_default_then_name() -> None:
    ordered = order_indexes(
        [
            IndexConfig(name="zz", url="u", priority=10),
            IndexConfig(name="mirror", url="u", priority=50),
            IndexConfig(name="aa", url="u", priority=50),
            IndexConfig(name="main", url="u", priority=50, default=True),
        ]
    )
    assert [i.name for i in ordered] == ["zz", "main", "aa", "mirror"]


def test_env_overrides_replace_default_index_and_cache(tmp_path: Path) -> None:
    cfg = EngineConfig(cache_dir=tmp_path).with_env_overrides(
        {
            "PROJECT_LOCK_ENGINE_CACHE_DIR": str(tmp_path / "elsewhere"),
            "PROJECT_LOCK_ENGINE_INDEX_URL": "https://mirror.example/simple",
        }
    )
    assert cfg.cache_dir == tmp_path / "elsewhere"
    assert [(i.name, i.url) for i in cfg.indexes] == [("pypi", "https://mirror.example/simple")]


def test_env_index_override_adds_default_when_none_marked(tmp_path: Path) -> None:
    cfg = EngineConfig(indexes=(IndexConfig(name="corp", url="https://corp/simple"),), cache_dir=tmp_path)
    updated = cfg.with_env_overrides({"PROJECT_LOCK_ENGINE_INDEX_URL": "https://env/simple"})
    assert [i.name for i in updated.indexes] == ["env", "corp"]
    assert updated.indexes[0].default


def test_mapping_round_trip(tmp_path: Path) -> None:
    cfg = EngineConfig(
        indexes=(IndexConfig(name="a", url="https://a/simple", priority=1), IndexConfig(name="b", url="https://b/simple")),
        merge_indexes=True,
        cache_dir=tmp_path,
        max_rounds=50,
    )
    assert EngineConfig.from_mapping(cfg.to_mapping()) == cfg
    assert EngineConfig.from_toml(cfg.to_toml()) == cfg


def test_load_config_from_dedicated_file(tmp_path: Path) -> None:
    (tmp_path / "project-lock-engine.toml").write_text(
        f"""
merge_indexes = true
cache_dir = "{tmp_path.as_posix()}/cache"
max_rounds = 10

[[indexes]]
name = "local"
url = "file:///srv/simple"
priority = 5

[policy]
yanked_policy = "allow"
""",
        encoding="utf-8",
    )
    cfg = load_config(tmp_path, environ={})
    assert cfg.merge_indexes
    assert cfg.max_rounds == 10
    assert cfg.cache_dir == tmp_path / "cache"
    assert cfg.indexes[0].url == "file:///srv/simple"
    assert cfg.policy.yanked_policy is YankedPolicy.ALLOW


def test_load_config_from_pyproject_tool_table(tmp_path: Path) -> None:
    pyproject = tmp_path / "pyproject.toml"
    pyproject.write_text(
        '[project]\nname = "demo"\n\n[tool.project-lock-engine]\nprefetch_workers = 2\n',
        encoding="utf-8",
    )
    assert load_config(pyproject, environ={}).prefetch_workers == 2
    assert load_config(tmp_path, environ={}).prefetch_workers == 2


def test_load_config_missing_file_gives_defaults(tmp_path: Path) -> None:
    cfg = load_config(tmp_path / "absent.toml", environ={"PROJECT_LOCK_ENGINE_CACHE_DIR": str(tmp_path)})
    assert cfg.cache_dir == tmp_path
    assert cfg.http_retries == 3


def test_load_config_invalid_toml(tmp_path: Path) -> None:
    path = tmp_path / "project-lock-engine.toml"
    path.write_text("max_rounds = = 3", encoding="utf-8")
    with pytest.raises(ConfigError, match="invalid TOML"):
        load_config(path, environ={})
