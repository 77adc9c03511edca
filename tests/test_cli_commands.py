from __future__ import annotations

import json
from pathlib import Path

import pytest
from typer.testing import CliRunner, Result

from memkeep import __version__
from memkeep.cli_app import app

runner = CliRunner()


@pytest.fixture
def cli_db(tmp_path: Path) -> str:
    db_path = str(tmp_path / "cli.sqlite")
    assert _invoke(db_path, "org", "create", "acme").exit_code == 0
    assert _invoke(db_path, "project", "create", "proj", "acme").exit_code == 0
    return db_path


def _invoke(db_path: str, *args: str) -> Result:
    return runner.invoke(app, [*args, "--db-path", db_path])


def _invoke_in_project(db_path: str, *args: str) -> Result:
    return _invoke(db_path, *args, "--project", "proj")


def test_store_get_update_roundtrip(cli_db: str) -> None:
    created = _invoke_in_project(cli_db, "store", "notes/auth", "use JWT", "--tag", "auth")
    assert created.exit_code == 0, created.output
    assert "Created notes/auth (version 1)" in created.stdout

    updated = _invoke_in_project(cli_db, "update", "notes/auth", "--content", "use sessions")
    assert updated.exit_code == 0, updated.output
    assert "version 2" in updated.stdout

    fetched = _invoke_in_project(cli_db, "get", "notes/auth", "--json")
    assert fetched.exit_code == 0, fetched.output
    payload = json.loads(fetched.stdout)
    assert payload["content"] == "use sessions"
    assert payload["tags"] == ["auth"]


def test_diff_and_rollback(cli_db: str) -> None:
    _invoke_in_project(cli_db, "store", "k", "v1")
    _invoke_in_project(cli_db, "store", "k", "v2")

    diff = _invoke_in_project(cli_db, "diff", "k", "1", "--json")
    assert diff.exit_code == 0, diff.output
    assert json.loads(diff.stdout)["summary"] == {"added": 1, "removed": 1, "unchanged": 0}

    rolled = _invoke_in_project(cli_db, "rollback", "k")
    assert rolled.exit_code == 0, rolled.output
    assert "recorded as v3" in rolled.stdout

    history = _invoke_in_project(cli_db, "history", "k")
    assert "v3 restored" in history.stdout


def test_errors_exit_nonzero(cli_db: str) -> None:
    missing = _invoke_in_project(cli_db, "get", "missing")
    assert missing.exit_code == 1
    assert "not found" in missing.stdout

    _invoke_in_project(cli_db, "store", "k", "only")
    short = _invoke_in_project(cli_db, "rollback", "k")
    assert short.exit_code == 1
    assert "Not enough version history" in short.stdout

    bad_metadata = _invoke_in_project(cli_db, "store", "k", "x", "--metadata", "[1]")
    assert bad_metadata.exit_code == 1


def test_project_from_environment(cli_db: str) -> None:
    result = runner.invoke(
        app, ["store", "k", "from env", "--db-path", cli_db], env={"MEMKEEP_PROJECT": "proj"}
    )
    assert result.exit_code == 0, result.output

    listed = _invoke_in_project(cli_db, "list", "--json")
    assert [item["key"] for item in json.loads(listed.stdout)] == ["k"]


def test_lock_contention_exit_code(cli_db: str) -> None:
    first = _invoke_in_project(cli_db, "lock", "acquire", "k", "--holder", "a")
    assert first.exit_code == 0, first.output

    second = _invoke_in_project(cli_db, "lock", "acquire", "k", "--holder", "b")
    assert second.exit_code == 2

    wrong = _invoke_in_project(cli_db, "lock", "release", "k", "--holder", "b")
    assert wrong.exit_code == 1

    released = _invoke_in_project(cli_db, "lock", "release", "k", "--holder", "a")
    assert released.exit_code == 0
    status = _invoke_in_project(cli_db, "lock", "status", "k")
    assert "not locked" in status.stdout


def test_lifecycle_run_json(cli_db: str) -> None:
    result = _invoke_in_project(cli_db, "lifecycle", "run", "auto_promote", "bogus", "--json")
    assert result.exit_code == 0, result.output
    payload = json.loads(result.stdout)
    assert payload["auto_promote"] == {"affected": 0}
    assert payload["bogus"]["details"] == "Unknown policy: bogus"


def test_store_safe_conflict(cli_db: str) -> None:
    _invoke_in_project(cli_db, "store", "k", "server")
    result = _invoke_in_project(
        cli_db,
        "store-safe",
        "k",
        "client",
        "--if-unmodified-since",
        "2000-01-01T00:00:00Z",
        "--strategy",
        "return_both",
    )
    assert result.exit_code == 0, result.output
    assert '"current_content": "server"' in result.stdout


def test_capacity_json(cli_db: str) -> None:
    _invoke_in_project(cli_db, "store", "k", "x")
    result = _invoke_in_project(cli_db, "capacity", "--json")
    assert result.exit_code == 0, result.output
    payload = json.loads(result.stdout)
    assert payload["project_used"] == 1
    assert payload["org_hard_limit"] == 500


def test_config_set_writes_file(tmp_path: Path) -> None:
    result = runner.invoke(app, ["config", "--set", "lock_ttl_s=90"])
    assert result.exit_code == 0, result.output
    assert json.loads((tmp_path / "config.json").read_text()) == {"lock_ttl_s": "90"}

    rejected = runner.invoke(app, ["config", "--set", "nope=1"])
    assert rejected.exit_code == 1


def test_version_command() -> None:
    result = runner.invoke(app, ["version"])
    assert result.exit_code == 0
    assert __version__ in result.stdout


def test_batch_get_many_and_traverse(cli_db: str) -> None:
    for key in ("a", "b", "c"):
        _invoke_in_project(cli_db, "store", key, f"content {key}")
    _invoke_in_project(cli_db, "link", "a", "b")

    batch = _invoke_in_project(cli_db, "batch", "set_priority", "a", "b", "zz", "--priority", "80")
    assert batch.exit_code == 0, batch.output
    assert "2 affected, 2 of 3 matched" in batch.stdout
    assert "Not found: zz" in batch.stdout

    many = _invoke_in_project(cli_db, "get-many", "a", "c", "zz", "--json")
    assert many.exit_code == 0, many.output
    payload = json.loads(many.stdout)
    assert sorted(payload["memories"]) == ["a", "c"]
    assert payload["memories"]["a"]["priority"] == 80
    assert (payload["found"], payload["requested"]) == (2, 3)

    walked = _invoke_in_project(cli_db, "traverse", "a", "--depth", "1", "--json")
    assert walked.exit_code == 0, walked.output
    assert [node["key"] for node in json.loads(walked.stdout)["nodes"]] == ["a", "b"]

    rejected = _invoke_in_project(cli_db, "batch", "explode", "a")
    assert rejected.exit_code == 1
    assert "Unknown action" in rejected.stdout
