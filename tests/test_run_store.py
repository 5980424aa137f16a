import asyncio
from pathlib import Path

import pytest

from snaprun.errors import InvalidLogNameError, InvalidRunIdError, PathEscapeError, RunNotFoundError
from snaprun.models import RunRecord
from snaprun.store import RUN_ID_RE, RunStore, contained_path, generate_run_id, step_entry


def _store_with_run(config, run_id="lx1a2b3c-abc123"):
    store = RunStore(config.paths)
    asyncio.run(store.create_run(RunRecord(run_id=run_id, repo_path="/tmp/repo", command="echo hi")))
    return store


def test_generate_run_id_is_time_ordered_base36():
    run_id = generate_run_id()
    assert RUN_ID_RE.fullmatch(run_id)
    prefix, suffix = run_id.split("-")
    assert len(suffix) == 6
    assert int(prefix, 36) > 1_600_000_000_000


def test_concurrent_appends_keep_submission_order(config):
    run_id = "lx1a2b3c-abc123"
    store = _store_with_run(config, run_id)

    async def scenario():
        await asyncio.gather(*(store.append_step(run_id, step_entry("tick", str(i))) for i in range(25)))
        return await store.read_run(run_id)

    record = asyncio.run(scenario())
    assert [step.message for step in record.steps] == [str(i) for i in range(25)]
    assert len(store.locks) == 0


def test_different_runs_do_not_block_each_other(config):
    store = _store_with_run(config, "aaa-111111")
    asyncio.run(store.create_run(RunRecord(run_id="bbb-222222", repo_path="/tmp/repo", command="echo hi")))

    async def scenario():
        async with store.locks.hold("aaa-111111"):
            await asyncio.wait_for(store.append_step("bbb-222222", step_entry("tick", "b")), timeout=5)
        return await store.read_run("aaa-111111"), await store.read_run("bbb-222222")

    first, second = asyncio.run(scenario())
    assert first.steps == []
    assert [step.message for step in second.steps] == ["b"]


def test_update_run_persists_last_updated(config):
    store = _store_with_run(config)
    before = asyncio.run(store.read_run("lx1a2b3c-abc123")).last_updated_at

    def _mutate(record):
        record.error = "boom"

    updated = asyncio.run(store.update_run("lx1a2b3c-abc123", _mutate))
    reread = asyncio.run(store.read_run("lx1a2b3c-abc123"))
    assert reread.error == "boom"
    assert updated.last_updated_at >= before


@pytest.mark.parametrize("bad_id", ["../etc", "abc", "a/b-c", "/abs-path", "x-y/../z", "", "abc-def\n", "abc-def\r"])
def test_invalid_run_ids_are_rejected_before_io(config, bad_id):
    store = RunStore(config.paths)
    with pytest.raises(InvalidRunIdError):
        asyncio.run(store.read_run(bad_id))
    with pytest.raises(InvalidRunIdError):
        asyncio.run(store.write_log(bad_id, "stdout", "x"))
    assert list(config.paths.logs_dir.iterdir()) == []


@pytest.mark.parametrize("bad_name", ["../escape", "a/b", "..", "x..y", "name with space", "", "stdout\n"])
def test_invalid_log_names_are_rejected_before_io(config, bad_name):
    store = _store_with_run(config)
    with pytest.raises(InvalidLogNameError):
        asyncio.run(store.write_log("lx1a2b3c-abc123", bad_name, "x"))
    assert list(config.paths.logs_dir.iterdir()) == []


def test_contained_path_refuses_escape(tmp_path: Path):
    with pytest.raises(PathEscapeError):
        contained_path(tmp_path / "logs", "../outside.txt")
    assert contained_path(tmp_path, "inside.txt") == (tmp_path / "inside.txt").resolve()


def test_read_missing_run(config):
    store = RunStore(config.paths)
    with pytest.raises(RunNotFoundError):
        asyncio.run(store.read_run("nothere-abcdef"))


def test_list_runs_newest_first(config):
    store = RunStore(config.paths)
    for run_id in ("a-aaaaaa", "zz-aaaaaa", "b0-aaaaaa"):
        asyncio.run(store.create_run(RunRecord(run_id=run_id, repo_path="/r", command="true")))

    items = asyncio.run(store.list_runs())
    assert [item.id for item in items] == ["zz-aaaaaa", "b0-aaaaaa", "a-aaaaaa"]
    assert items[0].file == "zz-aaaaaa.json"
    assert items[0].ts == int("zz", 36)


def test_logs_metrics_diff_and_patch_roundtrip(config):
    store = _store_with_run(config)
    run_id = "lx1a2b3c-abc123"

    log_path = asyncio.run(store.write_log(run_id, "verify.stdout", "all good"))
    assert Path(log_path).name == f"{run_id}.verify.stdout.txt"
    assert asyncio.run(store.read_log(run_id, "verify.stdout")) == "all good"
    assert asyncio.run(store.read_log(run_id, "missing")) is None
    assert asyncio.run(store.list_logs(run_id)) == {"verify.stdout": log_path}

    asyncio.run(store.write_metrics(run_id, {"runId": run_id, "totalMs": 5}))
    merged = asyncio.run(store.update_metrics(run_id, {"verifyMs": 7}))
    assert merged == {"runId": run_id, "totalMs": 5, "verifyMs": 7}

    assert asyncio.run(store.read_diff(run_id)) is None
    asyncio.run(store.write_diff(run_id, "diff --git a/x b/x\n"))
    assert asyncio.run(store.read_diff(run_id)).startswith("diff --git")

    patch_path = asyncio.run(store.save_patch(run_id, [{"files": []}]))
    assert Path(patch_path).name == f"{run_id}-patch.json"


def test_artifacts_are_namespaced_by_run(config):
    store = RunStore(config.paths)
    record = asyncio.run(store.create_run(RunRecord(run_id="abc-123456", repo_path="/r", command="true")))
    assert Path(record.artifacts_dir).name == "abc-123456"
    assert Path(record.artifacts_dir).is_dir()
    assert store.timeline_base("abc-123456").name == "timeline"
    assert store.timeline_base("abc-123456", "fix").name == "fix.timeline"
