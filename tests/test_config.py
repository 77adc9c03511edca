import json
from pathlib import Path

import pytest

from memkeep.config import (
    get_config_path,
    get_env_overrides,
    load_config,
    read_config_file,
    write_config_file,
)


def test_read_config_file_rejects_invalid_json(tmp_path: Path) -> None:
    config_path = tmp_path / "config.json"
    config_path.write_text("{not-json}")
    with pytest.raises(ValueError, match="invalid config json"):
        read_config_file(config_path)


def test_read_config_file_rejects_non_object(tmp_path: Path) -> None:
    config_path = tmp_path / "config.json"
    config_path.write_text("[1, 2]")
    with pytest.raises(ValueError, match="must be an object"):
        read_config_file(config_path)


def test_read_config_file_missing_or_blank(tmp_path: Path) -> None:
    assert read_config_file(tmp_path / "absent.json") == {}
    blank = tmp_path / "blank.json"
    blank.write_text("   \n")
    assert read_config_file(blank) == {}


def test_write_config_file_roundtrip(tmp_path: Path) -> None:
    config_path = tmp_path / "nested" / "config.json"
    written = write_config_file({"lock_ttl_s": 120}, config_path)
    assert written == config_path
    assert json.loads(config_path.read_text()) == {"lock_ttl_s": 120}


def test_config_path_honors_env(monkeypatch, tmp_path: Path) -> None:
    target = tmp_path / "elsewhere.json"
    monkeypatch.setenv("MEMKEEP_CONFIG", str(target))
    assert get_config_path() == target


def test_load_config_applies_file_then_env(monkeypatch, tmp_path: Path) -> None:
    config_path = tmp_path / "config.json"
    config_path.write_text(
        json.dumps(
            {
                "lock_ttl_s": "120",
                "relevance_threshold": 7.5,
                "default_plan": "pro",
                "unknown_key": "ignored",
            }
        )
    )
    monkeypatch.setenv("MEMKEEP_LOCK_TTL_S", "30")

    cfg = load_config(config_path)

    assert cfg.lock_ttl_s == 30
    assert cfg.relevance_threshold == 7.5
    assert cfg.default_plan == "pro"
    assert not hasattr(cfg, "unknown_key")


def test_load_config_warns_on_invalid_numbers(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("MEMKEEP_MAX_ROLLBACK_STEPS", "many")
    monkeypatch.setenv("MEMKEEP_HEALTH_THRESHOLD", "low")

    with pytest.warns(RuntimeWarning, match="max_rollback_steps"):
        cfg = load_config(tmp_path / "absent.json")

    assert cfg.max_rollback_steps == 50
    assert cfg.health_threshold == 15.0


def test_env_overrides_only_include_set_values(monkeypatch) -> None:
    monkeypatch.setenv("MEMKEEP_PRIORITY_STEP", "5")
    assert get_env_overrides() == {"priority_step": "5"}
