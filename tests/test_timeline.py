import asyncio
import json
import re

from snaprun.timeline import Timeline


def test_flush_twice_is_byte_identical(tmp_path):
    timeline = Timeline(tmp_path / "artifacts" / "timeline")
    timeline.start("sandbox.run", "npm test")
    timeline.ok("sandbox.run", "exit 0", {"durationMs": 12})
    timeline.skip("fix.diff")

    asyncio.run(timeline.flush())
    first_txt = timeline.txt_path.read_bytes()
    first_json = timeline.json_path.read_bytes()
    asyncio.run(timeline.flush())

    assert timeline.txt_path.read_bytes() == first_txt
    assert timeline.json_path.read_bytes() == first_json


def test_text_rendering(tmp_path):
    timeline = Timeline(tmp_path / "timeline")
    timeline.start("analysis")
    timeline.fail("verify", "exit 1")
    asyncio.run(timeline.flush())

    lines = timeline.txt_path.read_text(encoding="utf-8").splitlines()
    assert re.match(r"^\[\d+\.\d{2}s\] analysis → start$", lines[0])
    assert re.match(r"^\[\d+\.\d{2}s\] verify → fail \(exit 1\)$", lines[1])


def test_json_rendering_lists_events_in_order(tmp_path):
    timeline = Timeline(tmp_path / "timeline")
    timeline.start("run.create")
    timeline.ok("run.create", "abc-123456", {"k": 1})
    asyncio.run(timeline.flush())

    events = json.loads(timeline.json_path.read_text(encoding="utf-8"))
    assert [(event["step"], event["status"]) for event in events] == [("run.create", "start"), ("run.create", "ok")]
    assert events[1]["meta"] == {"k": 1}
    assert events[0]["t"] <= events[1]["t"]
    assert "message" not in events[0]


def test_phases_write_separate_files(tmp_path):
    run_phase = Timeline(tmp_path / "timeline")
    fix_phase = Timeline(tmp_path / "fix.timeline", phase="fix")
    run_phase.ok("run.complete")
    asyncio.run(run_phase.flush())
    fix_phase.ok("fix.agent")
    asyncio.run(fix_phase.flush())

    assert "run.complete" in Timeline.read_txt(tmp_path / "timeline")
    assert "fix.agent" in Timeline.read_txt(tmp_path / "fix.timeline")
    assert "fix.agent" not in Timeline.read_txt(tmp_path / "timeline")


def test_reading_absent_timeline(tmp_path):
    assert Timeline.read_txt(tmp_path / "nothing") == ""
    assert Timeline.read_json(tmp_path / "nothing") is None


def test_flush_replaces_files_without_leftovers(tmp_path):
    timeline = Timeline(tmp_path / "artifacts" / "timeline")
    timeline.start("sandbox.run")
    asyncio.run(timeline.flush())
    timeline.ok("sandbox.run", "exit 0")
    asyncio.run(timeline.flush())

    assert sorted(path.name for path in (tmp_path / "artifacts").iterdir()) == ["timeline.json", "timeline.txt"]
    assert [event["status"] for event in Timeline.read_json(tmp_path / "artifacts" / "timeline")] == ["start", "ok"]
