from __future__ import annotations
import pytest
from pathlib import Path
from wbs_ingest.config.loader import ConfigError, config_from_dict, load_config


def _write(path: Path, text: str) -> Path:
    path.write_text(text, encoding="utf-8")
    return path


def test_load_config_success(temp_workdir: Path):
    path = _write(
        temp_workdir / "config" / "ingest.yml",
        "storage:\n  backend: local\n  root: ./store\n"
        "ingestion:\n  chunk_size: 1000\n  sheet_patterns: [\"Desglose\"]\n"
        "retrieval:\n  max_limit: 50\n",
    )
    cfg = load_config(path, env={})
    assert cfg.storage.root == "./store"
    assert cfg.ingestion.chunk_size == 1000
    assert cfg.ingestion.sheet_patterns == ("Desglose",)
    assert cfg.retrieval.max_limit == 50
    # 未指定キーはデフォルト
    assert cfg.ingestion.upload_concurrency == 5
    assert cfg.queue.name == "excel-processing"


def test_default_path_missing_gives_defaults(temp_workdir: Path):
    cfg = load_config(env={})
    assert cfg.storage.backend == "local"
    assert cfg.ingestion.chunk_size == 2000


def test_default_path_is_used_when_present(temp_workdir: Path):
    _write(temp_workdir / "config" / "ingest.yml", "ingestion:\n  chunk_size: 10\n")
    assert load_config(env={}).ingestion.chunk_size == 10


def test_load_config_missing_file(temp_workdir: Path):
    missing = temp_workdir / "config" / "not_exists.yml"
    with pytest.raises(ConfigError):
        load_config(missing, env={})


def test_wbs_config_env_points_to_missing_file(temp_workdir: Path):
    with pytest.raises(ConfigError) as e:
        load_config(env={"WBS_CONFIG": "config/other.yml"})
    assert "not found" in str(e.value)


def test_load_config_extra_field(temp_workdir: Path):
    path = _write(temp_workdir / "config" / "ingest.yml", "ingestion:\n  chunk_size: 10\nextra_field: 1\n")
    with pytest.raises(ConfigError) as e:
        load_config(path, env={})
    assert "config validation failed" in str(e.value)


@pytest.mark.parametrize(
    "data",
    [
        {"ingestion": {"chunk_size": 0}},
        {"ingestion": {"upload_concurrency": 100}},
        {"ingestion": {"sheet_patterns": []}},
        {"storage": {"backend": "s3"}},
        {"storage": {"signing_secret": "short"}},
        {"retrieval": {"unknown": 1}},
    ],
)
def test_schema_violations(data):
    with pytest.raises(ConfigError) as e:
        config_from_dict(data, env={})
    assert "config validation failed" in str(e.value)


def test_default_limit_must_not_exceed_max():
    with pytest.raises(ConfigError):
        config_from_dict({"retrieval": {"default_limit": 200, "max_limit": 100}}, env={})


def test_invalid_yaml(temp_workdir: Path):
    path = _write(temp_workdir / "config" / "ingest.yml", "storage: [unclosed\n")
    with pytest.raises(ConfigError) as e:
        load_config(path, env={})
    assert "invalid yaml" in str(e.value)


def test_non_mapping_root(temp_workdir: Path):
    path = _write(temp_workdir / "config" / "ingest.yml", "- a\n- b\n")
    with pytest.raises(ConfigError):
        load_config(path, env={})


def test_env_overrides_take_precedence(temp_workdir: Path):
    path = _write(temp_workdir / "config" / "ingest.yml", "storage:\n  root: ./from-file\n")
    cfg = load_config(
        path,
        env={
            "WBS_STORAGE_ROOT": "/srv/blobs",
            "WBS_SIGNING_SECRET": "env-secret-value",
            "WBS_PUBLIC_BASE_URL": "https://api.example.com/blobs",
            "WBS_REDIS_URL": "redis://cache:6379/1",
        },
    )
    assert cfg.storage.root == "/srv/blobs"
    assert cfg.storage.signing_secret == "env-secret-value"
    assert cfg.storage.public_base_url == "https://api.example.com/blobs"
    assert cfg.queue.redis_url == "redis://cache:6379/1"


def test_sample_config_file_is_valid():
    sample = Path(__file__).resolve().parents[2] / "config" / "ingest.yml"
    cfg = load_config(sample, env={})
    assert cfg.ingestion.sheet_patterns[0] == "03 Desglose f"
