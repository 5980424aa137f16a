"""Re-run a run's command in a fresh sandbox and record the verdict."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional

from .config import ExecutionConfig
from .deadlines import CancelToken, with_hard_timeout
from .errors import HardTimeoutError
from .logging_config import trace_event
from .models import ALLOWED_TRANSITIONS, ExecutionMode, RunRecord, RunResult, RunStatus, VerifyRecord, utcnow_iso
from .policy import SafetyPolicy
from .sandbox import SandboxExecutor
from .store import RunStore, step_entry


LOGGER = logging.getLogger("snaprun.verifier")

MIN_VERIFY_TIMEOUT_MS = 1_000


@dataclass
class VerifyOutcome:
    run_id: str
    verify_result: RunResult
    log_paths: Dict[str, str] = field(default_factory=dict)
    trace_file: Optional[str] = None


def settle_status(record: RunRecord, target: RunStatus) -> None:
    """Apply *target* when the state machine allows it; terminal states are left alone."""
    if target in ALLOWED_TRANSITIONS[record.status]:
        record.status = target
    else:
        LOGGER.info("Run %s stays %s; %s is not reachable from it", record.run_id, record.status.value, target.value)


class Verifier:
    def __init__(
        self,
        store: RunStore,
        executor: SandboxExecutor,
        policy: SafetyPolicy,
        config: Optional[ExecutionConfig] = None,
    ) -> None:
        self._store = store
        self._executor = executor
        self._policy = policy
        self._config = config or ExecutionConfig()

    def normalize_timeout(self, timeout_ms: Optional[int]) -> int:
        if not timeout_ms or timeout_ms <= 0:
            timeout_ms = self._config.verify_default_ms
        return max(MIN_VERIFY_TIMEOUT_MS, min(timeout_ms, self._config.verify_cap_ms))

    def hard_timeout_for(self, timeout_ms: int) -> int:
        return max(self._config.verify_hard_floor_ms, timeout_ms + self._config.verify_hard_margin_ms)

    async def verify(
        self,
        run_id: str,
        command: Optional[str] = None,
        timeout_ms: Optional[int] = None,
        docker_image: Optional[str] = None,
        token: Optional[CancelToken] = None,
    ) -> VerifyOutcome:
        """
        Execute the verification command for *run_id* in a throwaway sandbox.

        Raises ``PolicyViolation`` before anything is recorded when the command is refused.
        Every other failure, the hard deadline included, is recorded on the run as a failed
        verification and returned as a normal outcome.
        """
        run = await self._store.read_run(run_id)
        command_to_run = (command or run.command or "").strip()
        self._policy.check_command(command_to_run).raise_for_denial()

        timeout_ms = self.normalize_timeout(timeout_ms)
        hard_ms = self.hard_timeout_for(timeout_ms)
        token = token or CancelToken()
        trace_file = Path(self._store.artifacts_dir_for(run_id)) / "verify.trace.log"

        trace_event(
            trace_file,
            "verify.start",
            {
                "runId": run_id,
                "repoPath": run.repo_path,
                "command": command_to_run,
                "timeoutMs": timeout_ms,
                "hardMs": hard_ms,
                "dockerImage": docker_image,
            },
        )
        await self._store.append_step(
            run_id,
            step_entry(
                "verify.start",
                "Verifying fix (sandbox runner)",
                {"command": command_to_run, "timeoutMs": timeout_ms, "dockerImage": docker_image},
            ),
        )

        async def _on_hard_timeout() -> None:
            trace_event(trace_file, "verify.hard_timeout", {"runId": run_id, "hardMs": hard_ms, "timeoutMs": timeout_ms})
            await self._store.append_step(
                run_id,
                step_entry(
                    "verify.timeout",
                    f"Verify exceeded hard timeout ({hard_ms}ms)",
                    {"hardTimeoutMs": hard_ms, "timeoutMs": timeout_ms},
                ),
            )

        started = time.monotonic()
        try:
            result = await with_hard_timeout(
                self._executor.execute(
                    run.repo_path,
                    command_to_run,
                    timeout_ms=timeout_ms,
                    mode=ExecutionMode.SANDBOX,
                    docker_image=docker_image,
                    token=token,
                    keep_sandbox=False,
                ),
                hard_ms,
                on_timeout=_on_hard_timeout,
                token=token,
                grace_ms=self._config.cancel_grace_ms,
            )
        except HardTimeoutError as exc:
            return await self._record_exception(run_id, command_to_run, str(exc), started, trace_file)
        except Exception as exc:  # noqa: BLE001 - recorded on the run as a failed verification
            LOGGER.exception("Verifier raised for run %s", run_id)
            return await self._record_exception(run_id, command_to_run, str(exc), started, trace_file)

        duration_ms = int((time.monotonic() - started) * 1000)
        trace_event(
            trace_file,
            "verify.done",
            {
                "runId": run_id,
                "ok": result.ok,
                "code": result.code,
                "durationMs": duration_ms,
                "execMs": result.exec_ms,
                "mode": result.mode.value if result.mode else None,
            },
        )

        log_paths = {
            "verify.stdout": await self._store.write_log(run_id, "verify.stdout", self._policy.clamp_log(result.stdout)),
            "verify.stderr": await self._store.write_log(run_id, "verify.stderr", self._policy.clamp_log(result.stderr)),
        }

        def _apply(record: RunRecord) -> None:
            record.log_paths.update(log_paths)
            record.verify = VerifyRecord(verified_at=utcnow_iso(), result=result)
            settle_status(record, RunStatus.VERIFIED if result.ok else RunStatus.FAILED)
            record.steps.append(
                step_entry(
                    "verify.complete",
                    "Verification passed" if result.ok else "Verification failed",
                    {"durationMs": duration_ms, "exitCode": result.code},
                )
            )

        record = await self._store.update_run(run_id, _apply)
        await self._store.update_metrics(run_id, {"verifyMs": duration_ms, "lastVerifyAt": utcnow_iso()})
        LOGGER.info("Verification of %s finished: ok=%s code=%s", run_id, result.ok, result.code)
        return VerifyOutcome(run_id=run_id, verify_result=result, log_paths=dict(record.log_paths), trace_file=str(trace_file))

    async def _record_exception(
        self, run_id: str, command: str, message: str, started: float, trace_file: Path
    ) -> VerifyOutcome:
        LOGGER.warning("Verification of %s failed with an exception: %s", run_id, message)
        trace_event(trace_file, "verify.exception", {"runId": run_id, "msg": message})
        duration_ms = int((time.monotonic() - started) * 1000)
        error_path = await self._store.write_log(
            run_id, "verify.error", self._policy.clamp_log(f"verify exception: {message}")
        )
        result = RunResult(ok=False, code=None, error=message, command=command, mode=ExecutionMode.SANDBOX)

        def _apply(record: RunRecord) -> None:
            record.log_paths["verify.error"] = error_path
            record.verify = VerifyRecord(verified_at=utcnow_iso(), result=result)
            settle_status(record, RunStatus.FAILED)
            record.steps.append(
                step_entry(
                    "verify.complete",
                    "Verification failed (exception)",
                    {"durationMs": duration_ms, "exitCode": None, "error": message},
                )
            )

        record = await self._store.update_run(run_id, _apply)
        await self._store.update_metrics(run_id, {"verifyMs": duration_ms, "lastVerifyAt": utcnow_iso()})
        return VerifyOutcome(run_id=run_id, verify_result=result, log_paths=dict(record.log_paths), trace_file=str(trace_file))
