from __future__ import annotations

import json
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional


DEFAULT_EXCLUDED_DIRS = [
    ".git",
    "node_modules",
    "__pycache__",
    ".venv",
    "venv",
    ".tox",
    ".pytest_cache",
    ".mypy_cache",
    "dist",
    "build",
    ".next",
    ".snaprun",
]

DEFAULT_FIX_AGENT_COMMAND = [
    "cline",
    "--no-interactive",
    "-y",
    "-m",
    "act",
    "--output-format",
    "plain",
]


@dataclass
class PathsConfig:
    """Filesystem layout for persisted runs, all derived from ``data_dir``."""

    data_dir: Path
    runs_dir: Path
    logs_dir: Path
    metrics_dir: Path
    diffs_dir: Path
    patches_dir: Path
    artifacts_dir: Path
    sandbox_dir: Path

    def all_dirs(self) -> List[Path]:
        return [
            self.data_dir,
            self.runs_dir,
            self.logs_dir,
            self.metrics_dir,
            self.diffs_dir,
            self.patches_dir,
            self.artifacts_dir,
            self.sandbox_dir,
        ]

    def ensure(self) -> None:
        for directory in self.all_dirs():
            directory.mkdir(parents=True, exist_ok=True)


@dataclass
class ExecutionConfig:
    """Timeouts and copy rules used by the sandbox executor and verifier."""

    default_mode: str = "sandbox"
    default_timeout_ms: int = 120_000
    hard_timeout_margin_ms: int = 5_000
    cancel_grace_ms: int = 5_000
    keep_sandbox: bool = False
    excluded_dirs: List[str] = field(default_factory=lambda: list(DEFAULT_EXCLUDED_DIRS))
    max_output_bytes: int = 50 * 1024 * 1024
    verify_default_ms: int = 30_000
    verify_cap_ms: int = 30_000
    verify_hard_floor_ms: int = 10_000
    verify_hard_margin_ms: int = 2_000
    docker_binary: str = "docker"


@dataclass
class PolicyConfig:
    """Limits applied to commands, logs and patch paths."""

    max_command_len: int = 400
    max_log_bytes: int = 2_000_000
    max_patch_files: int = 12
    strict_command_policy: bool = True
    allowlist_prefixes: List[str] = field(default_factory=list)


@dataclass
class FixAgentConfig:
    """How the external fix agent is launched. The task text is appended to ``command``."""

    command: List[str] = field(default_factory=lambda: list(DEFAULT_FIX_AGENT_COMMAND))
    timeout_ms: int = 240_000
    hard_timeout_margin_ms: int = 5_000


@dataclass
class OpenAIConfig:
    """Configuration describing how patch candidates are requested from the OpenAI APIs."""

    model: str = "gpt-5-mini"
    temperature: float = 0.2
    max_output_tokens: int = 4096
    enabled: bool = True
    api_key_env: str = "OPENAI_API_KEY"
    base_url: Optional[str] = None


@dataclass
class ServerConfig:
    host: str = "127.0.0.1"
    port: int = 4000
    api_key: Optional[str] = None
    abort_poll_interval: float = 0.5


@dataclass
class AppConfig:
    """Top level configuration, resolved once at process start."""

    environment: str = "local"
    paths: PathsConfig = field(default_factory=lambda: build_paths(Path.cwd() / ".snaprun"))
    execution: ExecutionConfig = field(default_factory=ExecutionConfig)
    policy: PolicyConfig = field(default_factory=PolicyConfig)
    fix_agent: FixAgentConfig = field(default_factory=FixAgentConfig)
    openai: OpenAIConfig = field(default_factory=OpenAIConfig)
    server: ServerConfig = field(default_factory=ServerConfig)

    def to_dict(self) -> Dict[str, Any]:
        """Return a JSON serialisable copy of the config; the API key is masked."""
        payload = asdict(self)
        payload["paths"] = {key: str(value) for key, value in payload["paths"].items()}
        if self.server.api_key:
            payload["server"]["api_key"] = "***"
        return payload


def build_paths(data_dir: Path) -> PathsConfig:
    """Construct the default filesystem layout under *data_dir*."""
    data_dir = Path(data_dir).expanduser().resolve()
    return PathsConfig(
        data_dir=data_dir,
        runs_dir=data_dir / "runs",
        logs_dir=data_dir / "logs",
        metrics_dir=data_dir / "metrics",
        diffs_dir=data_dir / "diffs",
        patches_dir=data_dir / "patches",
        artifacts_dir=data_dir / "artifacts",
        sandbox_dir=data_dir / "sandbox",
    )


def load_config(path: Optional[Path] = None, data_dir: Optional[Path] = None) -> AppConfig:
    """
    Load configuration from *path* if provided, then apply ``SNAPRUN_*`` environment overrides.

    The configuration file is expected to be JSON. Unspecified fields fall back to the
    dataclass defaults above. An explicit *data_dir* wins over both.
    """
    config = AppConfig()

    if path is not None:
        with Path(path).expanduser().open("r", encoding="utf-8") as handle:
            data = json.load(handle)
        _apply_config_updates(config, data)

    _apply_env_overrides(config, os.environ)

    if data_dir is not None:
        config.paths = build_paths(data_dir)
    return config


def _apply_config_updates(config: AppConfig, payload: Dict[str, Any]) -> None:
    """Update *config* in-place using keys from the *payload* dict."""
    if "environment" in payload:
        config.environment = payload["environment"]

    if "data_dir" in payload:
        config.paths = build_paths(Path(payload["data_dir"]))

    for section in ("execution", "policy", "fix_agent", "openai", "server"):
        if section not in payload:
            continue
        target = getattr(config, section)
        for key, value in payload[section].items():
            if hasattr(target, key):
                setattr(target, key, value)


def _apply_env_overrides(config: AppConfig, environ: Dict[str, str]) -> None:
    if environ.get("SNAPRUN_DATA_DIR"):
        config.paths = build_paths(Path(environ["SNAPRUN_DATA_DIR"]))
    if environ.get("SNAPRUN_API_KEY"):
        config.server.api_key = environ["SNAPRUN_API_KEY"]
    if environ.get("SNAPRUN_VERIFY_CAP_MS"):
        config.execution.verify_cap_ms = _positive_int(environ["SNAPRUN_VERIFY_CAP_MS"], config.execution.verify_cap_ms)
    if environ.get("SNAPRUN_MAX_LOG_BYTES"):
        config.policy.max_log_bytes = _positive_int(environ["SNAPRUN_MAX_LOG_BYTES"], config.policy.max_log_bytes)
    if environ.get("SNAPRUN_ALLOWLIST_PREFIXES"):
        config.policy.allowlist_prefixes = [
            prefix.strip() for prefix in environ["SNAPRUN_ALLOWLIST_PREFIXES"].split(",") if prefix.strip()
        ]
    if environ.get("SNAPRUN_STRICT_COMMAND_POLICY"):
        config.policy.strict_command_policy = environ["SNAPRUN_STRICT_COMMAND_POLICY"].strip().lower() == "true"
    if environ.get("SNAPRUN_FIX_AGENT_COMMAND"):
        config.fix_agent.command = environ["SNAPRUN_FIX_AGENT_COMMAND"].split()


def _positive_int(raw: str, fallback: int) -> int:
    try:
        value = int(raw)
    except ValueError:
        return fallback
    return value if value > 0 else fallback
