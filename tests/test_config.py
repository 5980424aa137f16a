import json
from pathlib import Path

from snaprun.config import AppConfig, load_config


def test_defaults_without_file(monkeypatch, tmp_path):
    for name in ("SNAPRUN_DATA_DIR", "SNAPRUN_API_KEY", "SNAPRUN_VERIFY_CAP_MS"):
        monkeypatch.delenv(name, raising=False)
    config = load_config(data_dir=tmp_path / "data")
    assert isinstance(config, AppConfig)
    assert config.paths.runs_dir == (tmp_path / "data").resolve() / "runs"
    assert config.execution.default_mode == "sandbox"
    assert config.server.api_key is None


def test_json_file_overlays_sections(monkeypatch, tmp_path):
    monkeypatch.delenv("SNAPRUN_DATA_DIR", raising=False)
    path = tmp_path / "config.json"
    path.write_text(
        json.dumps(
            {
                "environment": "ci",
                "data_dir": str(tmp_path / "store"),
                "execution": {"default_timeout_ms": 5000, "unknown_key": 1},
                "policy": {"allowlist_prefixes": ["npm "]},
            }
        ),
        encoding="utf-8",
    )
    config = load_config(path)
    assert config.environment == "ci"
    assert config.paths.data_dir == (tmp_path / "store").resolve()
    assert config.execution.default_timeout_ms == 5000
    assert not hasattr(config.execution, "unknown_key")
    assert config.policy.allowlist_prefixes == ["npm "]


def test_environment_overrides(monkeypatch, tmp_path):
    monkeypatch.setenv("SNAPRUN_DATA_DIR", str(tmp_path / "env-data"))
    monkeypatch.setenv("SNAPRUN_API_KEY", "k")
    monkeypatch.setenv("SNAPRUN_VERIFY_CAP_MS", "not-a-number")
    monkeypatch.setenv("SNAPRUN_ALLOWLIST_PREFIXES", "npm , pytest,")
    monkeypatch.setenv("SNAPRUN_STRICT_COMMAND_POLICY", "false")
    config = load_config()
    assert config.paths.data_dir == (tmp_path / "env-data").resolve()
    assert config.server.api_key == "k"
    assert config.execution.verify_cap_ms == 30_000
    assert config.policy.allowlist_prefixes == ["npm", "pytest"]
    assert config.policy.strict_command_policy is False

    explicit = load_config(data_dir=Path(tmp_path / "cli-data"))
    assert explicit.paths.data_dir == (tmp_path / "cli-data").resolve()


def test_to_dict_masks_api_key(tmp_path):
    config = load_config(data_dir=tmp_path)
    config.server.api_key = "super-secret"
    payload = config.to_dict()
    assert payload["server"]["api_key"] == "***"
    assert payload["paths"]["data_dir"] == str(tmp_path.resolve())
    json.dumps(payload)
