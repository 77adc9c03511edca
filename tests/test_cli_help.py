from typer.testing import CliRunner

from memkeep.cli_app import app

runner = CliRunner()


def test_root_help_shows_namespaces() -> None:
    result = runner.invoke(app, ["--help"])
    assert result.exit_code == 0
    for name in (
        "store",
        "rollback",
        "store-safe",
        "batch",
        "get-many",
        "traverse",
        "lock",
        "lifecycle",
        "org",
        "db",
    ):
        assert name in result.stdout


def test_lifecycle_help_shows_commands() -> None:
    result = runner.invoke(app, ["lifecycle", "--help"])
    assert result.exit_code == 0
    for name in ("run", "scheduled", "suggest", "health"):
        assert name in result.stdout


def test_lock_help_shows_commands() -> None:
    result = runner.invoke(app, ["lock", "--help"])
    assert result.exit_code == 0
    for name in ("acquire", "release", "status"):
        assert name in result.stdout
