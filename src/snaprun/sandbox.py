"""Run shell commands in place, in a copied working directory, or in a container."""
from __future__ import annotations

import asyncio
import logging
import os
import shutil
import signal
import tempfile
import time
import uuid
from pathlib import Path
from typing import Callable, List, Optional, Set

from .config import ExecutionConfig, PathsConfig
from .deadlines import CancelToken
from .models import ExecutionMode, RunResult


LOGGER = logging.getLogger("snaprun.sandbox")

READ_CHUNK = 64 * 1024


class _CappedBuffer:
    """Accumulates stream output up to a byte cap and counts what was dropped."""

    def __init__(self, limit: int) -> None:
        self._limit = limit
        self._chunks: List[bytes] = []
        self._size = 0
        self.dropped = 0

    def feed(self, chunk: bytes) -> None:
        room = self._limit - self._size
        if room <= 0:
            self.dropped += len(chunk)
            return
        kept = chunk[:room]
        self._chunks.append(kept)
        self._size += len(kept)
        self.dropped += len(chunk) - len(kept)

    def text(self) -> str:
        value = b"".join(self._chunks).decode("utf-8", errors="replace")
        if self.dropped:
            value += f"\n... ({self.dropped} bytes of output dropped)"
        return value


async def _drain(stream: Optional[asyncio.StreamReader], buffer: _CappedBuffer) -> None:
    if stream is None:
        return
    while True:
        chunk = await stream.read(READ_CHUNK)
        if not chunk:
            return
        buffer.feed(chunk)


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


class SandboxExecutor:
    """
    Execute a command against a source tree and report a ``RunResult``.

    ``direct`` mode runs inside the source tree. ``sandbox`` mode copies the tree into a
    fresh ``snap-*`` directory first and removes it afterwards unless asked to keep it.
    Supplying a container image runs the command through ``docker run`` with the working
    directory mounted at ``/work``. The executor never touches the run store.
    """

    def __init__(self, paths: PathsConfig, config: Optional[ExecutionConfig] = None) -> None:
        self._paths = paths
        self._config = config or ExecutionConfig()

    @property
    def config(self) -> ExecutionConfig:
        return self._config

    async def execute(
        self,
        source_path: str,
        command: str,
        timeout_ms: Optional[int] = None,
        mode: Optional[ExecutionMode] = None,
        docker_image: Optional[str] = None,
        token: Optional[CancelToken] = None,
        keep_sandbox: Optional[bool] = None,
    ) -> RunResult:
        started = time.monotonic()
        mode = ExecutionMode(mode or self._config.default_mode)
        timeout_ms = timeout_ms or self._config.default_timeout_ms
        keep = self._config.keep_sandbox if keep_sandbox is None else keep_sandbox

        source = Path(source_path).expanduser().resolve()
        if not source.exists():
            return RunResult(ok=False, error=f"Source path does not exist: {source}", command=command, mode=mode)
        if not source.is_dir():
            return RunResult(ok=False, error=f"Source path is not a directory: {source}", command=command, mode=mode)

        sandbox_root: Optional[Path] = None
        workdir = source
        copy_ms = 0
        try:
            if mode is ExecutionMode.SANDBOX:
                self._paths.sandbox_dir.mkdir(parents=True, exist_ok=True)
                sandbox_root = Path(tempfile.mkdtemp(prefix="snap-", dir=self._paths.sandbox_dir))
                workdir = sandbox_root / "repo"
                copy_started = time.monotonic()
                try:
                    await asyncio.to_thread(
                        shutil.copytree, source, workdir, symlinks=True, ignore=self._ignore_for(source)
                    )
                except (OSError, shutil.Error) as exc:
                    LOGGER.warning("Copying %s into sandbox failed: %s", source, exc)
                    return RunResult(
                        ok=False,
                        error=f"Failed to copy repo: {exc}",
                        command=command,
                        mode=mode,
                        duration_ms=_elapsed_ms(started),
                        sandbox_dir=str(sandbox_root) if keep else None,
                    )
                copy_ms = _elapsed_ms(copy_started)
                LOGGER.debug("Copied %s into %s in %sms", source, workdir, copy_ms)

            exec_started = time.monotonic()
            result = await self._spawn_and_wait(command, workdir, timeout_ms, docker_image, token)
            return result.model_copy(
                update={
                    "mode": mode,
                    "duration_ms": _elapsed_ms(started),
                    "copy_ms": copy_ms,
                    "exec_ms": _elapsed_ms(exec_started),
                    "sandbox_dir": str(sandbox_root) if (sandbox_root and keep) else None,
                }
            )
        finally:
            if sandbox_root is not None and not keep:
                await asyncio.to_thread(self._remove_tree, sandbox_root)

    def _ignore_for(self, source: Path) -> Callable[[str, List[str]], Set[str]]:
        excluded = set(self._config.excluded_dirs)
        data_dir = self._paths.data_dir.resolve()

        def _ignore(directory: str, names: List[str]) -> Set[str]:
            skipped: Set[str] = set()
            for name in names:
                candidate = Path(directory) / name
                if name in excluded and candidate.is_dir():
                    skipped.add(name)
                elif candidate.resolve() == data_dir:
                    skipped.add(name)
            return skipped

        return _ignore

    @staticmethod
    def _remove_tree(path: Path) -> None:
        try:
            shutil.rmtree(path)
        except OSError as exc:
            LOGGER.warning("Could not remove sandbox %s: %s", path, exc)

    async def _spawn_and_wait(
        self,
        command: str,
        workdir: Path,
        timeout_ms: int,
        docker_image: Optional[str],
        token: Optional[CancelToken],
    ) -> RunResult:
        if token is not None and token.cancelled:
            return RunResult(ok=False, cancelled=True, error=f"cancelled: {token.reason}", command=command)

        container_name: Optional[str] = None
        try:
            if docker_image:
                container_name = f"snaprun-{uuid.uuid4().hex[:12]}"
                process = await asyncio.create_subprocess_exec(
                    self._config.docker_binary,
                    "run",
                    "--rm",
                    "--name",
                    container_name,
                    "-v",
                    f"{workdir}:/work",
                    "-w",
                    "/work",
                    docker_image,
                    "sh",
                    "-lc",
                    command,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    start_new_session=True,
                )
            else:
                process = await asyncio.create_subprocess_shell(
                    command,
                    cwd=str(workdir),
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    start_new_session=True,
                )
        except OSError as exc:
            LOGGER.warning("Could not start command %r: %s", command, exc)
            return RunResult(ok=False, error=f"Failed to start command: {exc}", command=command)

        stdout = _CappedBuffer(self._config.max_output_bytes)
        stderr = _CappedBuffer(self._config.max_output_bytes)
        drains = [
            asyncio.ensure_future(_drain(process.stdout, stdout)),
            asyncio.ensure_future(_drain(process.stderr, stderr)),
        ]
        waiter = asyncio.ensure_future(process.wait())
        watchers = {waiter}
        cancel_watch = None
        if token is not None:
            cancel_watch = asyncio.ensure_future(token.wait())
            watchers.add(cancel_watch)

        timed_out = False
        cancelled = False
        try:
            done, _ = await asyncio.wait(
                watchers, timeout=timeout_ms / 1000, return_when=asyncio.FIRST_COMPLETED
            )
            if waiter not in done:
                if cancel_watch is not None and cancel_watch in done:
                    cancelled = True
                    LOGGER.info("Command %r cancelled (%s); killing process group", command, token.reason)
                else:
                    timed_out = True
                    LOGGER.info("Command %r exceeded %sms; killing process group", command, timeout_ms)
                await self._kill(process, container_name)
                await self._await_death(waiter)
            else:
                self._reap_group(process)
            await self._settle_drains(drains)
        finally:
            if process.returncode is None:
                # Reached only when the surrounding task itself is being cancelled.
                await self._kill(process, container_name)
            for pending in (cancel_watch, waiter, *drains):
                if pending is not None and not pending.done():
                    pending.cancel()

        code = None if (timed_out or cancelled) else process.returncode
        error: Optional[str] = None
        if timed_out:
            error = f"timeout_after_{timeout_ms}ms"
        elif cancelled:
            error = f"cancelled: {token.reason if token else 'cancelled'}"
        elif code != 0:
            error = f"Command failed with exit code {code}"
        return RunResult(
            ok=code == 0,
            code=code,
            stdout=stdout.text(),
            stderr=stderr.text(),
            error=error,
            command=command,
            timed_out=timed_out,
            cancelled=cancelled,
        )

    @staticmethod
    def _reap_group(process: asyncio.subprocess.Process) -> None:
        """Kill background children the command left behind in its process group."""
        try:
            os.killpg(process.pid, signal.SIGKILL)
        except ProcessLookupError:
            return
        except OSError as exc:
            LOGGER.warning("killpg(%s) after exit failed: %s", process.pid, exc)
            return
        LOGGER.debug("Killed leftover processes in group %s", process.pid)

    async def _kill(self, process: asyncio.subprocess.Process, container_name: Optional[str]) -> None:
        try:
            os.killpg(process.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        except OSError as exc:
            LOGGER.warning("killpg(%s) failed: %s; killing the process only", process.pid, exc)
            try:
                process.kill()
            except ProcessLookupError:
                pass
        if container_name:
            await self._remove_container(container_name)

    async def _remove_container(self, name: str) -> None:
        try:
            remover = await asyncio.create_subprocess_exec(
                self._config.docker_binary,
                "rm",
                "-f",
                name,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
            await asyncio.wait_for(remover.wait(), timeout=self._config.cancel_grace_ms / 1000)
        except (OSError, asyncio.TimeoutError) as exc:
            LOGGER.warning("Could not force-remove container %s: %s", name, exc)

    async def _await_death(self, waiter: "asyncio.Future[int]") -> None:
        done, _ = await asyncio.wait({waiter}, timeout=self._config.cancel_grace_ms / 1000)
        if waiter not in done:
            LOGGER.warning("Process did not exit within %sms of SIGKILL", self._config.cancel_grace_ms)

    async def _settle_drains(self, drains: List["asyncio.Future[None]"]) -> None:
        done, pending = await asyncio.wait(drains, timeout=self._config.cancel_grace_ms / 1000)
        for task in pending:
            LOGGER.debug("Output stream still open after process exit; abandoning it")
            task.cancel()
        for task in done:
            if task.exception() is not None:
                LOGGER.warning("Reading command output failed: %s", task.exception())
