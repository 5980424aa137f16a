from pathlib import Path

import pytest

from snaprun.config import AppConfig, build_paths


@pytest.fixture
def config(tmp_path: Path) -> AppConfig:
    cfg = AppConfig(paths=build_paths(tmp_path / "data"))
    cfg.execution.cancel_grace_ms = 2_000
    cfg.openai.enabled = False
    return cfg


@pytest.fixture
def repo(tmp_path: Path) -> Path:
    path = tmp_path / "repo"
    path.mkdir()
    (path / "hello.txt").write_text("hello\n", encoding="utf-8")
    return path
