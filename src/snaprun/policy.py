"""Command and patch-path safety policy."""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, List, Optional, Pattern

from .config import PolicyConfig
from .errors import PolicyViolation


DENY_PATTERNS: List[Pattern[str]] = [
    re.compile(r"\brm\s+-rf\b", re.I),
    re.compile(r"\bdel\s+/s\b", re.I),
    re.compile(r"\bshutdown\b", re.I),
    re.compile(r"\breboot\b", re.I),
    re.compile(r"\bmkfs\b", re.I),
    re.compile(r"\bdd\s+if=", re.I),
    re.compile(r"\bformat\b", re.I),
    re.compile(r"\bpoweroff\b", re.I),
    re.compile(r"\bkill\s+-9\s+1\b", re.I),
    re.compile(r"\bcat\s+~/\.ssh\b", re.I),
    re.compile(r"\bcat\s+/etc/shadow\b", re.I),
    re.compile(r"\bprintenv\b", re.I),
    re.compile(r"\benv\b", re.I),
    re.compile(r"\bcurl\b", re.I),
    re.compile(r"\bwget\b", re.I),
    re.compile(r"\bnc\b|\bnetcat\b", re.I),
]

BLOCKED_PATCH_PREFIXES = [
    ".git/",
    ".github/",
    ".gitlab/",
    ".circleci/",
    ".vscode/",
    "scripts/",
    ".snaprun/",
]

SENSITIVE_FRAGMENTS = [
    ".env",
    ".ssh",
    "id_rsa",
    "id_ed25519",
    "authorized_keys",
    "known_hosts",
    ".npmrc",
    ".pypirc",
    "secrets",
    "token",
    "credentials",
]

_DRIVE_PATH = re.compile(r"^[A-Za-z]:/")
_INFRA_FILE = re.compile(r"(^|/)dockerfile$|docker-compose\.ya?ml$", re.I)


@dataclass(frozen=True)
class PolicyDecision:
    ok: bool
    code: Optional[str] = None
    reason: Optional[str] = None

    def raise_for_denial(self) -> None:
        if not self.ok:
            raise PolicyViolation(self.code or "POLICY_DENIED", self.reason or "denied by policy")


ALLOWED = PolicyDecision(ok=True)


def _deny(code: str, reason: str) -> PolicyDecision:
    return PolicyDecision(ok=False, code=code, reason=reason)


class SafetyPolicy:
    """Deterministic string checks gating every execution and every patch path."""

    def __init__(self, config: Optional[PolicyConfig] = None) -> None:
        self._config = config or PolicyConfig()

    @property
    def config(self) -> PolicyConfig:
        return self._config

    def check_command(self, command: Optional[str]) -> PolicyDecision:
        """Validate a command before it reaches the sandbox executor."""
        text = (command or "").strip()
        if not text:
            return _deny("EMPTY_COMMAND", "Command is empty.")
        if len(text) > self._config.max_command_len:
            return _deny("COMMAND_TOO_LONG", f"Command exceeds {self._config.max_command_len} chars.")

        for pattern in DENY_PATTERNS:
            if pattern.search(text):
                return _deny("COMMAND_BLOCKED", f"Command blocked by policy: {pattern.pattern}")

        prefixes = self._config.allowlist_prefixes
        if self._config.strict_command_policy and prefixes:
            if not any(text.startswith(prefix) for prefix in prefixes):
                return _deny(
                    "COMMAND_NOT_ALLOWLISTED",
                    f"Command not allowed. Allowed prefixes: {', '.join(prefixes)}",
                )
        return ALLOWED

    def check_patch_paths(self, paths: Iterable[str]) -> PolicyDecision:
        """Refuse traversal, absolute paths, infrastructure directories and sensitive files."""
        path_list = list(paths)
        if len(path_list) > self._config.max_patch_files:
            return _deny("PATCH_TOO_LARGE", f"Too many files in patch (max {self._config.max_patch_files}).")

        for raw in path_list:
            if not isinstance(raw, str) or not raw.strip():
                return _deny("BAD_PATCH_PATH", "Patch contains empty/non-string path.")

            normalized = raw.strip().replace("\\", "/")
            if normalized.startswith("/") or _DRIVE_PATH.match(normalized):
                return _deny("PATCH_PATH_BLOCKED", f"Patch path not allowed: {raw}")
            if ".." in normalized:
                return _deny("PATCH_PATH_BLOCKED", f"Patch path not allowed: {raw}")

            for prefix in BLOCKED_PATCH_PREFIXES:
                if normalized == prefix[:-1] or normalized.startswith(prefix):
                    return _deny("PATCH_INFRA_BLOCKED", f"Patch targets restricted path: {raw}")

            lowered = normalized.lower()
            if any(fragment in lowered for fragment in SENSITIVE_FRAGMENTS):
                return _deny("PATCH_SENSITIVE_FILE", f"Patch targets sensitive file: {raw}")

            if _INFRA_FILE.search(normalized):
                return _deny("PATCH_INFRA_BLOCKED", f"Patch targets infra file: {raw}")
        return ALLOWED

    def clamp_log(self, text: Optional[str]) -> str:
        """Keep the tail of oversized logs, which usually holds the error."""
        value = text or ""
        limit = self._config.max_log_bytes
        encoded = value.encode("utf-8")
        if len(encoded) <= limit:
            return value
        tail = encoded[-limit:].decode("utf-8", errors="ignore")
        return f"... (truncated to last {limit} bytes)\n{tail}"
