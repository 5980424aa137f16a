"""Exception types raised across snaprun components."""
from __future__ import annotations

from typing import Any, Optional


class SnaprunError(Exception):
    """Base class for all snaprun errors."""


class InvalidRunIdError(SnaprunError, ValueError):
    def __init__(self, run_id: str) -> None:
        super().__init__(f"invalid run id: {run_id!r}")
        self.run_id = run_id


class InvalidLogNameError(SnaprunError, ValueError):
    def __init__(self, name: str) -> None:
        super().__init__(f"invalid log name: {name!r}")
        self.name = name


class PathEscapeError(SnaprunError, ValueError):
    """A derived path resolved outside of its designated directory."""

    def __init__(self, base_dir: Any, target: Any) -> None:
        super().__init__(f"path {target} escapes {base_dir}")
        self.base_dir = base_dir
        self.target = target


class RunNotFoundError(SnaprunError, KeyError):
    def __init__(self, run_id: str) -> None:
        super().__init__(run_id)
        self.run_id = run_id

    def __str__(self) -> str:
        return f"run {self.run_id} not found"


class PolicyViolation(SnaprunError):
    """A command or patch path was refused by the safety policy."""

    def __init__(self, code: str, reason: str) -> None:
        super().__init__(f"{code}: {reason}")
        self.code = code
        self.reason = reason


class InvalidTransitionError(SnaprunError):
    def __init__(self, current: str, target: str) -> None:
        super().__init__(f"illegal status transition {current} -> {target}")
        self.current = current
        self.target = target


class HardTimeoutError(SnaprunError, TimeoutError):
    """The hard deadline fired before the wrapped operation settled."""

    def __init__(self, timeout_ms: int, partial: Optional[Any] = None) -> None:
        super().__init__(f"timeout_after_{timeout_ms}ms")
        self.timeout_ms = timeout_ms
        self.partial = partial
