"""External fix agent invocation and git based change detection."""
from __future__ import annotations

import asyncio
import logging
import os
import signal
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from .config import FixAgentConfig
from .deadlines import CancelToken
from .models import PolicyBlock
from .policy import SafetyPolicy


LOGGER = logging.getLogger("snaprun.fix_agent")

GIT_TIMEOUT_SECONDS = 30.0


@dataclass
class FixAgentResult:
    ok: bool
    code: Optional[int]
    duration_ms: int
    stdout: str = ""
    stderr: str = ""
    files_touched: List[str] = field(default_factory=list)
    policy_blocked: Optional[PolicyBlock] = None
    timed_out: bool = False
    cancelled: bool = False
    error: Optional[str] = None


async def _run_git(repo_path: Path, *args: str) -> Optional[str]:
    """Run a git subcommand in *repo_path*; ``None`` when git is missing or fails."""
    try:
        process = await asyncio.create_subprocess_exec(
            "git",
            *args,
            cwd=str(repo_path),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as exc:
        LOGGER.warning("git %s could not start: %s", " ".join(args), exc)
        return None
    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=GIT_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        LOGGER.warning("git %s timed out in %s", " ".join(args), repo_path)
        return None
    if process.returncode != 0:
        LOGGER.warning("git %s failed: %s", " ".join(args), stderr.decode("utf-8", errors="replace").strip())
        return None
    return stdout.decode("utf-8", errors="replace")


def parse_porcelain(output: str) -> List[str]:
    files: List[str] = []
    for line in output.splitlines():
        if not line.strip():
            continue
        entry = line[3:].strip() if len(line) > 3 else line.strip()
        if " -> " in entry:
            entry = entry.split(" -> ", 1)[1].strip()
        entry = entry.strip('"')
        if entry and entry not in files:
            files.append(entry)
    return files


async def detect_touched_files(repo_path: Path) -> List[str]:
    if not (Path(repo_path) / ".git").exists():
        return []
    output = await _run_git(Path(repo_path), "status", "--porcelain")
    return parse_porcelain(output) if output else []


async def capture_git_diff(repo_path: Path) -> Optional[str]:
    """Best-effort ``git diff`` of the working tree; ``None`` without a repository."""
    if not (Path(repo_path) / ".git").exists():
        return None
    return await _run_git(Path(repo_path), "diff")


class FixAgent:
    """
    Launch the configured fix agent against a repository.

    The agent receives the task as its final argument and the failure context on stdin.
    Files it changed are read back from ``git status --porcelain`` and checked against the
    patch-path policy.
    """

    def __init__(self, config: Optional[FixAgentConfig] = None, policy: Optional[SafetyPolicy] = None) -> None:
        self._config = config or FixAgentConfig()
        self._policy = policy or SafetyPolicy()

    @property
    def config(self) -> FixAgentConfig:
        return self._config

    async def run(
        self,
        repo_path: str,
        task: str,
        stdin_text: str = "",
        timeout_ms: Optional[int] = None,
        token: Optional[CancelToken] = None,
    ) -> FixAgentResult:
        repo = Path(repo_path).expanduser().resolve()
        timeout_ms = timeout_ms or self._config.timeout_ms
        argv = [*self._config.command, task.strip()]
        started = time.monotonic()

        env = dict(os.environ, TERM="dumb", NO_COLOR="1")
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                cwd=str(repo),
                env=env,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as exc:
            LOGGER.warning("Fix agent %r could not start: %s", argv[0], exc)
            return FixAgentResult(
                ok=False,
                code=None,
                duration_ms=int((time.monotonic() - started) * 1000),
                error=f"Failed to start fix agent: {exc}",
            )

        communicate = asyncio.ensure_future(process.communicate(stdin_text.encode("utf-8")))
        watchers = {communicate}
        cancel_watch = asyncio.ensure_future(token.wait()) if token is not None else None
        if cancel_watch is not None:
            watchers.add(cancel_watch)

        timed_out = False
        cancelled = False
        try:
            done, _ = await asyncio.wait(watchers, timeout=timeout_ms / 1000, return_when=asyncio.FIRST_COMPLETED)
            if communicate not in done:
                cancelled = cancel_watch is not None and cancel_watch in done
                timed_out = not cancelled
                LOGGER.warning("Fix agent %s; killing it", "cancelled" if cancelled else f"exceeded {timeout_ms}ms")
                self._kill(process)
            stdout_bytes, stderr_bytes = await communicate
        finally:
            if process.returncode is None:
                self._kill(process)
            if cancel_watch is not None and not cancel_watch.done():
                cancel_watch.cancel()

        duration_ms = int((time.monotonic() - started) * 1000)
        code = None if (timed_out or cancelled) else process.returncode
        files_touched = await detect_touched_files(repo)
        result = FixAgentResult(
            ok=code == 0,
            code=code,
            duration_ms=duration_ms,
            stdout=stdout_bytes.decode("utf-8", errors="replace"),
            stderr=stderr_bytes.decode("utf-8", errors="replace"),
            files_touched=files_touched,
            timed_out=timed_out,
            cancelled=cancelled,
        )
        if timed_out:
            result.error = f"timeout_after_{timeout_ms}ms"
        elif cancelled:
            result.error = f"cancelled: {token.reason if token else 'cancelled'}"

        if files_touched:
            decision = self._policy.check_patch_paths(files_touched)
            if not decision.ok:
                LOGGER.warning("Fix agent touched restricted paths: %s", decision.reason)
                result.ok = False
                result.policy_blocked = PolicyBlock(
                    code=decision.code or "POLICY_DENIED", reason=decision.reason or "", files=files_touched
                )
        return result

    @staticmethod
    def _kill(process: asyncio.subprocess.Process) -> None:
        try:
            os.killpg(process.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        except OSError:
            try:
                process.kill()
            except ProcessLookupError:
                pass
