import asyncio
import json

import pytest
from click.testing import CliRunner
from rich.console import Console

from snaprun import cli
from snaprun.config import build_paths
from snaprun.store import RunStore


@pytest.fixture(autouse=True)
def wide_console(monkeypatch):
    monkeypatch.setattr(cli, "console", Console(width=200))


def _run_ids(data_dir):
    return [item.id for item in asyncio.run(RunStore(build_paths(data_dir)).list_runs())]


def test_run_list_show_and_timeline(tmp_path, repo):
    data_dir = tmp_path / "data"
    runner = CliRunner()

    result = runner.invoke(cli.main, ["--data-dir", str(data_dir), "run", str(repo), "cat hello.txt"])
    assert result.exit_code == 0, result.output
    assert "finished" in result.output
    [run_id] = _run_ids(data_dir)

    listing = runner.invoke(cli.main, ["--data-dir", str(data_dir), "list"])
    assert listing.exit_code == 0
    assert run_id in listing.output

    shown = runner.invoke(cli.main, ["--data-dir", str(data_dir), "show", run_id])
    assert shown.exit_code == 0
    assert f'"runId": "{run_id}"' in shown.output

    timeline = runner.invoke(cli.main, ["--data-dir", str(data_dir), "timeline", run_id])
    assert timeline.exit_code == 0
    assert "sandbox.run → ok" in timeline.output

    no_fix = runner.invoke(cli.main, ["--data-dir", str(data_dir), "timeline", run_id, "--phase", "fix"])
    assert no_fix.exit_code != 0
    assert "no fix timeline" in no_fix.output


def test_failed_run_exits_nonzero(tmp_path, repo):
    runner = CliRunner()
    result = runner.invoke(
        cli.main, ["--data-dir", str(tmp_path / "data"), "run", str(repo), "echo 'Error: boom' >&2; exit 1"]
    )
    assert result.exit_code == 1
    assert "failed" in result.output


def test_run_with_fix_from_config_file(tmp_path, repo):
    config_path = tmp_path / "snaprun.json"
    config_path.write_text(
        json.dumps(
            {
                "data_dir": str(tmp_path / "data"),
                "openai": {"enabled": False},
                "fix_agent": {"command": ["sh", "-c", "cat >/dev/null; touch status.txt", "fix-agent"]},
            }
        ),
        encoding="utf-8",
    )
    runner = CliRunner()
    result = runner.invoke(
        cli.main,
        [
            "--config",
            str(config_path),
            "run",
            str(repo),
            "test -f status.txt || { echo 'Error: missing status' >&2; exit 1; }",
            "--fix",
        ],
    )
    assert result.exit_code == 0, result.output
    assert "Fix Summary" in result.output
    assert "verified" in result.output


def test_show_unknown_run(tmp_path):
    result = CliRunner().invoke(cli.main, ["--data-dir", str(tmp_path / "data"), "show", "zzzz-000000"])
    assert result.exit_code != 0
    assert "not found" in result.output


def test_apply_without_suggestion_exits_nonzero(tmp_path, repo):
    data_dir = tmp_path / "data"
    runner = CliRunner()
    runner.invoke(cli.main, ["--data-dir", str(data_dir), "run", str(repo), "exit 1"])
    (run_id,) = _run_ids(data_dir)

    result = runner.invoke(cli.main, ["--data-dir", str(data_dir), "apply", run_id, "--yes"])
    assert result.exit_code == 1
    assert "no suggestion available" in result.output
