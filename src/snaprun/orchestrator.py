"""Drives a run through execution, analysis, fixing and verification."""
from __future__ import annotations

import asyncio
import json
import logging
import time
import traceback
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from .analyzer import analyze_output
from .config import AppConfig
from .deadlines import CLIENT_ABORTED, AbortLatch, CancelToken, with_hard_timeout
from .errors import HardTimeoutError, InvalidRunIdError, PathEscapeError, PolicyViolation, RunNotFoundError
from .fix_agent import FixAgent, FixAgentResult, capture_git_diff
from .models import (
    FIXABLE_STATUSES,
    AppliedRecord,
    ExecutionMode,
    FixRecord,
    FixRequest,
    PatchSuggestion,
    RunRecord,
    RunResult,
    RunStatus,
    StartRunRequest,
    SuggestionRecord,
    utcnow_iso,
)
from .openai_client import OpenAIClient
from .patches import PatchGenerator
from .policy import SafetyPolicy
from .sandbox import SandboxExecutor
from .store import RunStore, contained_path, generate_run_id, step_entry, write_atomic
from .timeline import Timeline
from .verifier import Verifier, settle_status


LOGGER = logging.getLogger("snaprun.orchestrator")

STATUS_ABORTED_REQUEST = 499
FIX_PROMPT = """\
You are a repair agent working inside a developer's repository (current working directory).
Goal:
1) Identify the root cause using the error context provided on standard input.
2) Apply minimal, correct code changes directly in this repo.
3) Re-run: {command}
4) Ensure it passes.
5) Print a short summary at the end (what broke, what changed, result)."""


@dataclass
class OrchestratorReply:
    """HTTP-shaped outcome of an orchestrator operation."""

    status_code: int
    body: Dict[str, Any]

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300 and bool(self.body.get("ok"))


def _reply_error(status_code: int, error: str, **extra: Any) -> OrchestratorReply:
    body: Dict[str, Any] = {"ok": False, "error": error}
    body.update(extra)
    return OrchestratorReply(status_code=status_code, body=body)


def _read_existing(path: Path) -> Optional[str]:
    try:
        return path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None


def _aborted(token: CancelToken, latch: Optional[AbortLatch]) -> bool:
    if latch is not None:
        return latch.aborted
    return token.cancelled and token.reason == CLIENT_ABORTED


class RunOrchestrator:
    """
    Coordinates the store, executor, verifier and fix agent for each run.

    Every public operation returns an ``OrchestratorReply``; unexpected exceptions are
    logged, written to the run's ``internal.error`` log and reported as a generic 500.
    """

    def __init__(
        self,
        config: AppConfig,
        store: RunStore,
        executor: SandboxExecutor,
        verifier: Verifier,
        fix_agent: FixAgent,
        patch_generator: Optional[PatchGenerator] = None,
        policy: Optional[SafetyPolicy] = None,
    ) -> None:
        self._config = config
        self._store = store
        self._executor = executor
        self._verifier = verifier
        self._fix_agent = fix_agent
        self._patch_generator = patch_generator
        self._policy = policy or SafetyPolicy(config.policy)

    @property
    def store(self) -> RunStore:
        return self._store

    # -- start -----------------------------------------------------------

    async def start_run(
        self,
        request: StartRunRequest,
        token: Optional[CancelToken] = None,
        latch: Optional[AbortLatch] = None,
    ) -> OrchestratorReply:
        command = (request.command or "").strip()
        if not request.repo_path_on_host or not command:
            return _reply_error(400, "repoPathOnHost and command are required")
        decision = self._policy.check_command(command)
        if not decision.ok:
            return _reply_error(400, decision.reason or "command refused", code=decision.code)
        source = Path(request.repo_path_on_host).expanduser().resolve()
        if not source.is_dir():
            return _reply_error(400, f"Source path not found: {source}")

        token = token or (latch.token if latch is not None else CancelToken())
        run_id = generate_run_id()
        timeline = Timeline(self._store.timeline_base(run_id))
        try:
            return await self._start(run_id, source, command, request, token, latch, timeline)
        except Exception:  # noqa: BLE001 - reported as internal_error
            return await self._internal_failure(run_id, timeline, "run")

    async def _start(
        self,
        run_id: str,
        source: Path,
        command: str,
        request: StartRunRequest,
        token: CancelToken,
        latch: Optional[AbortLatch],
        timeline: Timeline,
    ) -> OrchestratorReply:
        execution = self._config.execution
        mode = ExecutionMode(request.mode or execution.default_mode)
        timeout_ms = request.timeout_ms or execution.default_timeout_ms
        hard_ms = timeout_ms + execution.hard_timeout_margin_ms
        started = time.monotonic()

        timeline.start("run.create")
        record = RunRecord(
            run_id=run_id,
            repo_path=str(source),
            command=command,
            mode=mode,
            docker_image=request.docker_image,
            timeout_ms=timeout_ms,
        )
        await self._store.create_run(record)
        await self._store.append_step(
            run_id,
            step_entry("run.start", f"Running `{command}`", {"mode": mode.value, "timeoutMs": timeout_ms}),
        )
        timeline.ok("run.create", run_id)
        timeline.start("sandbox.run", command, {"mode": mode.value, "timeoutMs": timeout_ms, "hardTimeoutMs": hard_ms})
        await timeline.flush()

        hard_timeout: Optional[HardTimeoutError] = None
        try:
            result = await with_hard_timeout(
                self._executor.execute(
                    str(source),
                    command,
                    timeout_ms=timeout_ms,
                    mode=mode,
                    docker_image=request.docker_image,
                    token=token,
                    keep_sandbox=request.keep_sandbox,
                ),
                hard_ms,
                token=token,
                grace_ms=execution.cancel_grace_ms,
            )
        except HardTimeoutError as exc:
            hard_timeout = exc
            partial = exc.partial if isinstance(exc.partial, RunResult) else None
            if partial is not None:
                result = partial.model_copy(update={"ok": False, "code": None, "timed_out": True, "error": str(exc)})
            else:
                result = RunResult(ok=False, error=str(exc), command=command, mode=mode, timed_out=True)
        sandbox_ms = int((time.monotonic() - started) * 1000)

        if _aborted(token, latch):
            status = RunStatus.ABORTED
        elif result.timed_out or hard_timeout is not None:
            status = RunStatus.TIMEOUT
        elif result.ok:
            status = RunStatus.FINISHED
        else:
            status = RunStatus.FAILED

        if status is RunStatus.FINISHED:
            timeline.ok("sandbox.run", f"exit {result.code}", {"durationMs": result.duration_ms})
        else:
            timeline.fail("sandbox.run", result.error or status.value, {"code": result.code})

        analysis_started = time.monotonic()
        timeline.start("analysis")
        analysis = analyze_output(result.stdout, result.stderr)
        analysis_ms = int((time.monotonic() - analysis_started) * 1000)
        timeline.ok("analysis", analysis.primary_error_kind or "unknown", {"confidence": analysis.confidence})

        log_paths = {
            "stdout": await self._store.write_log(run_id, "stdout", self._policy.clamp_log(result.stdout)),
            "stderr": await self._store.write_log(run_id, "stderr", self._policy.clamp_log(result.stderr)),
        }
        if status is RunStatus.TIMEOUT:
            log_paths["start.error"] = await self._store.write_log(
                run_id,
                "start.error",
                f"timeout: command did not settle within {timeout_ms}ms "
                f"(hard timeout {hard_ms}ms)\n{result.error or ''}",
            )

        metrics = {
            "runId": run_id,
            "status": status.value,
            "totalMs": int((time.monotonic() - started) * 1000),
            "sandboxMs": sandbox_ms,
            "copyMs": result.copy_ms,
            "execMs": result.exec_ms,
            "analysisMs": analysis_ms,
            "ts": utcnow_iso(),
        }
        metrics_path = await self._store.write_metrics(run_id, metrics)

        def _finalize(run: RunRecord) -> None:
            run.log_paths.update(log_paths)
            run.run_result = result
            run.analysis = analysis
            run.metrics_path = metrics_path
            run.finished_at = utcnow_iso()
            run.transition(status)
            if status is RunStatus.TIMEOUT:
                run.error = result.error
            elif status is RunStatus.ABORTED:
                run.error = CLIENT_ABORTED
            run.steps.append(
                step_entry("run.complete", f"Run {status.value}", {"code": result.code, "durationMs": result.duration_ms})
            )

        record = await self._store.update_run(run_id, _finalize)
        if status in (RunStatus.FINISHED, RunStatus.FAILED):
            timeline.ok("run.complete", status.value)
        else:
            timeline.fail("run.complete", status.value)
        await timeline.flush()
        LOGGER.info("Run %s %s (code=%s, %sms)", run_id, status.value, result.code, metrics["totalMs"])

        body = {
            "ok": status in (RunStatus.FINISHED, RunStatus.FAILED),
            "runId": run_id,
            "status": status.value,
            "analysis": analysis.to_json_dict(),
            "runResult": result.to_json_dict(),
            "logPaths": dict(record.log_paths),
            "metricsPath": metrics_path,
        }
        if status is RunStatus.ABORTED:
            return OrchestratorReply(status_code=STATUS_ABORTED_REQUEST, body=dict(body, error=CLIENT_ABORTED))
        if status is RunStatus.TIMEOUT:
            return OrchestratorReply(status_code=504, body=dict(body, error=result.error))
        return OrchestratorReply(status_code=200, body=body)

    # -- fix -------------------------------------------------------------

    async def fix_run(
        self,
        run_id: str,
        request: Optional[FixRequest] = None,
        token: Optional[CancelToken] = None,
        latch: Optional[AbortLatch] = None,
    ) -> OrchestratorReply:
        request = request or FixRequest()
        try:
            run = await self._store.read_run(run_id)
        except InvalidRunIdError as exc:
            return _reply_error(400, str(exc))
        except RunNotFoundError:
            return _reply_error(404, "run not found", runId=run_id)

        if run.status is RunStatus.FINISHED or (
            run.status in FIXABLE_STATUSES and run.analysis is not None and not run.analysis.error_detected
        ):
            return OrchestratorReply(
                status_code=200,
                body={
                    "ok": True,
                    "runId": run_id,
                    "status": "no_fix_needed",
                    "reason": "Command succeeded or no clear error was detected.",
                },
            )
        if run.status not in FIXABLE_STATUSES:
            return _reply_error(409, "not_fixable", runId=run_id, status=run.status.value)

        command = (request.command or run.command).strip()
        decision = self._policy.check_command(command)
        if not decision.ok:
            return _reply_error(400, decision.reason or "command refused", code=decision.code, runId=run_id)

        token = token or (latch.token if latch is not None else CancelToken())
        timeline = Timeline(self._store.timeline_base(run_id, phase="fix"), phase="fix")
        try:
            return await self._fix(run, command, request, token, latch, timeline)
        except Exception:  # noqa: BLE001 - reported as internal_error
            return await self._internal_failure(run_id, timeline, "fix")

    async def _fix(
        self,
        run: RunRecord,
        command: str,
        request: FixRequest,
        token: CancelToken,
        latch: Optional[AbortLatch],
        timeline: Timeline,
    ) -> OrchestratorReply:
        run_id = run.run_id
        agent_config = self._fix_agent.config
        timeout_ms = request.timeout_ms or agent_config.timeout_ms
        hard_ms = timeout_ms + agent_config.hard_timeout_margin_ms
        started_at = utcnow_iso()

        await self._store.append_step(
            run_id, step_entry("fix.start", "Invoking fix agent", {"command": command, "timeoutMs": timeout_ms})
        )
        timeline.start("fix.agent", command, {"timeoutMs": timeout_ms, "hardTimeoutMs": hard_ms})
        await timeline.flush()

        async def _on_hard_timeout() -> None:
            await self._store.append_step(
                run_id,
                step_entry("fix.timeout", f"Fix agent exceeded hard timeout ({hard_ms}ms)", {"hardTimeoutMs": hard_ms}),
            )

        try:
            agent = await with_hard_timeout(
                self._fix_agent.run(
                    run.repo_path,
                    FIX_PROMPT.format(command=command),
                    stdin_text=self._fix_context(run),
                    timeout_ms=timeout_ms,
                    token=token,
                ),
                hard_ms,
                on_timeout=_on_hard_timeout,
                token=token,
                grace_ms=self._config.execution.cancel_grace_ms,
            )
        except HardTimeoutError as exc:
            agent = exc.partial if isinstance(exc.partial, FixAgentResult) else None
            if agent is None:
                agent = FixAgentResult(ok=False, code=None, duration_ms=hard_ms, timed_out=True)
            agent.ok = False
            agent.timed_out = True
            agent.error = str(exc)

        log_paths = {
            "fix.cline.output": await self._store.write_log(
                run_id,
                "fix.cline.output",
                self._policy.clamp_log(f"{agent.stdout}\n--- stderr ---\n{agent.stderr}"),
            )
        }
        if agent.error:
            log_paths["fix.cline.error"] = await self._store.write_log(run_id, "fix.cline.error", agent.error)

        fix_record = FixRecord(
            started_at=started_at,
            finished_at=utcnow_iso(),
            code=agent.code,
            duration_ms=agent.duration_ms,
            files_touched=agent.files_touched,
            policy_blocked=agent.policy_blocked,
        )
        base_body = {"runId": run_id, "fix": fix_record.to_json_dict()}

        if _aborted(token, latch):
            timeline.fail("fix.agent", CLIENT_ABORTED)
            await timeline.flush()
            await self._store.update_run(run_id, self._record_fix(fix_record, log_paths, RunStatus.CLINE_FAILED, CLIENT_ABORTED))
            return OrchestratorReply(
                status_code=STATUS_ABORTED_REQUEST,
                body=dict(base_body, ok=False, status="aborted", error=CLIENT_ABORTED),
            )

        if agent.policy_blocked is not None:
            blocked = agent.policy_blocked
            timeline.fail("fix.policy", f"{blocked.code}: {blocked.reason}")
            await timeline.flush()
            await self._store.update_run(run_id, self._record_fix(fix_record, log_paths, RunStatus.FAILED, blocked.code))
            return OrchestratorReply(
                status_code=200,
                body=dict(
                    base_body,
                    ok=False,
                    status="refused_policy",
                    code=blocked.code,
                    reason=blocked.reason,
                    files=blocked.files,
                    logPaths=log_paths,
                ),
            )

        if not agent.ok:
            timeline.fail("fix.agent", agent.error or f"exit {agent.code}")
            await timeline.flush()
            record = await self._store.update_run(
                run_id, self._record_fix(fix_record, log_paths, RunStatus.CLINE_FAILED, agent.error)
            )
            return OrchestratorReply(
                status_code=200,
                body=dict(base_body, ok=False, status=RunStatus.CLINE_FAILED.value, logPaths=dict(record.log_paths)),
            )
        timeline.ok("fix.agent", f"{len(agent.files_touched)} file(s) touched")

        timeline.start("fix.diff")
        diff = await capture_git_diff(Path(run.repo_path))
        diff_path: Optional[str] = None
        if diff:
            diff_path = await self._store.write_diff(run_id, diff)
            timeline.ok("fix.diff", f"{len(diff.splitlines())} line(s)")
        else:
            timeline.skip("fix.diff", "no version-control diff")

        def _apply(record: RunRecord) -> None:
            self._record_fix(fix_record, log_paths, RunStatus.APPLIED, None)(record)
            record.applied = AppliedRecord(applied_at=utcnow_iso(), files=agent.files_touched)
            if diff_path:
                record.diff_path = diff_path
            record.steps.append(step_entry("fix.applied", "Fix agent changes applied", {"files": agent.files_touched}))

        await self._store.update_run(run_id, _apply)
        timeline.start("verify", command)
        await timeline.flush()

        outcome = await self._verifier.verify(
            run_id, command=command, docker_image=request.docker_image, token=token
        )
        verified = outcome.verify_result.ok
        if verified:
            timeline.ok("verify", "passed")
        else:
            timeline.fail("verify", outcome.verify_result.error or f"exit {outcome.verify_result.code}")
        await timeline.flush()

        final = await self._store.read_run(run_id)
        return OrchestratorReply(
            status_code=200,
            body=dict(
                base_body,
                ok=verified,
                status=final.status.value,
                verify=outcome.verify_result.to_json_dict(),
                diffPath=diff_path,
                logPaths=dict(final.log_paths),
            ),
        )

    @staticmethod
    def _record_fix(
        fix_record: FixRecord, log_paths: Dict[str, str], target: RunStatus, error: Optional[str]
    ):
        def _mutate(record: RunRecord) -> None:
            record.fix = fix_record
            record.log_paths.update(log_paths)
            record.transition(target)
            if error:
                record.error = error
            record.steps.append(
                step_entry("fix.complete", f"Fix agent finished: {target.value}", {"code": fix_record.code})
            )

        return _mutate

    def _fix_context(self, run: RunRecord) -> str:
        analysis = run.analysis
        result = run.run_result
        context = {
            "runId": run.run_id,
            "command": run.command,
            "summary": analysis.summary if analysis else None,
            "primaryError": analysis.primary_error_line if analysis else None,
            "errorKind": analysis.primary_error_kind if analysis else None,
            "locations": [loc.to_json_dict() for loc in (analysis.primary_locations or [])] if analysis else [],
            "exitCode": result.code if result else None,
            "stderrTail": (result.stderr[-8000:] if result else ""),
            "stdoutTail": (result.stdout[-4000:] if result else ""),
        }
        return json.dumps(context, indent=2)

    # -- verify ----------------------------------------------------------

    async def verify_run(
        self,
        run_id: str,
        request: Optional[FixRequest] = None,
        token: Optional[CancelToken] = None,
    ) -> OrchestratorReply:
        request = request or FixRequest()
        try:
            run = await self._store.read_run(run_id)
        except InvalidRunIdError as exc:
            return _reply_error(400, str(exc))
        except RunNotFoundError:
            return _reply_error(404, "run not found", runId=run_id)
        if run.status is RunStatus.RUNNING:
            return _reply_error(409, "run_in_progress", runId=run_id)

        try:
            outcome = await self._verifier.verify(
                run_id,
                command=request.command,
                timeout_ms=request.timeout_ms,
                docker_image=request.docker_image,
                token=token,
            )
        except PolicyViolation as exc:
            return _reply_error(400, exc.reason, code=exc.code, runId=run_id)
        except Exception:  # noqa: BLE001 - reported as internal_error
            return await self._internal_failure(run_id, Timeline(self._store.timeline_base(run_id, phase="verify")), "verify")

        final = await self._store.read_run(run_id)
        return OrchestratorReply(
            status_code=200,
            body={
                "ok": outcome.verify_result.ok,
                "runId": run_id,
                "status": final.status.value,
                "verify": outcome.verify_result.to_json_dict(),
                "logPaths": outcome.log_paths,
                "traceFile": outcome.trace_file,
            },
        )

    # -- patch candidates -----------------------------------------------

    async def generate_patches(self, run_id: str) -> OrchestratorReply:
        try:
            run = await self._store.read_run(run_id)
        except InvalidRunIdError as exc:
            return _reply_error(400, str(exc))
        except RunNotFoundError:
            return _reply_error(404, "run not found", runId=run_id)
        if self._patch_generator is None:
            return _reply_error(503, "patch generation is not configured", runId=run_id)

        try:
            outcome = await self._patch_generator.generate(run)
            patch_path: Optional[str] = None
            if outcome.accepted:
                patch_path = await self._store.save_patch(
                    run_id, [suggestion.to_json_dict() for suggestion in outcome.accepted]
                )
            suggestion = SuggestionRecord(
                available=bool(outcome.accepted),
                path=patch_path,
                generated_at=utcnow_iso(),
                rejected=outcome.rejected,
            )

            def _apply(record: RunRecord) -> None:
                record.suggestion = suggestion
                if patch_path:
                    record.patch_path = patch_path
                record.steps.append(
                    step_entry(
                        "patch.generate",
                        f"{len(outcome.accepted)} patch candidate(s) generated",
                        {"rejected": len(outcome.rejected)},
                    )
                )

            await self._store.update_run(run_id, _apply)
        except Exception:  # noqa: BLE001 - reported as internal_error
            return await self._internal_failure(run_id, Timeline(self._store.timeline_base(run_id, phase="patch")), "patch")

        body: Dict[str, Any] = {
            "ok": True,
            "runId": run_id,
            "available": bool(outcome.accepted),
            "suggestions": [suggestion.to_json_dict() for suggestion in outcome.accepted],
            "rejected": outcome.rejected,
            "patchPath": patch_path,
        }
        if not outcome.model_available:
            body["message"] = "No model configured; no suggestions generated."
        return OrchestratorReply(status_code=200, body=body)

    async def apply_patches(self, run_id: str, apply: bool = False) -> OrchestratorReply:
        """
        Write the stored patch candidates into the run's repository.

        Without *apply* this is a dry run that only lists the files. Every path is
        re-checked against the patch policy and must resolve inside the repository;
        the previous contents are kept under ``artifacts/<id>/backup``.
        """
        try:
            run = await self._store.read_run(run_id)
        except InvalidRunIdError as exc:
            return _reply_error(400, str(exc))
        except RunNotFoundError:
            return _reply_error(404, "run not found", runId=run_id)
        if run.suggestion is None or not run.suggestion.available:
            return _reply_error(400, "no suggestion available for this run", runId=run_id)

        raw = await self._store.read_patch(run_id)
        if raw is None:
            return _reply_error(400, "no suggestion available for this run", runId=run_id)
        try:
            suggestions = [PatchSuggestion.model_validate(item) for item in json.loads(raw)]
        except ValueError as exc:
            LOGGER.warning("Stored patch for run %s is malformed: %s", run_id, exc)
            return _reply_error(400, "stored patch is malformed", runId=run_id)
        changes = [change for suggestion in suggestions for change in suggestion.files]
        file_list = list(dict.fromkeys(change.path for change in changes))

        decision = self._policy.check_patch_paths(file_list)
        if not decision.ok:
            return _reply_error(400, decision.reason or "patch refused", code=decision.code, runId=run_id)
        repo = Path(run.repo_path)
        try:
            targets = {path: contained_path(repo, path) for path in file_list}
        except PathEscapeError as exc:
            return _reply_error(400, str(exc), code="PATCH_PATH_BLOCKED", runId=run_id)

        if not apply:
            return OrchestratorReply(
                status_code=200,
                body={
                    "ok": True,
                    "runId": run_id,
                    "willApply": file_list,
                    "message": "call again with apply=true to actually write files",
                },
            )

        try:
            backed_up: Dict[str, str] = {}
            for change in changes:
                target = targets[change.path]
                if change.path not in backed_up:
                    previous = await asyncio.to_thread(_read_existing, target)
                    backed_up[change.path] = await self._store.write_backup(run_id, change.path, previous)
                await asyncio.to_thread(write_atomic, target, change.after)
            LOGGER.info("Applied %d file(s) to %s for run %s", len(file_list), repo, run_id)

            def _mark(record: RunRecord) -> None:
                record.applied = AppliedRecord(applied_at=utcnow_iso(), files=file_list)
                settle_status(record, RunStatus.APPLIED)
                record.steps.append(
                    step_entry("patch.apply", f"{len(file_list)} file(s) written", {"files": file_list})
                )

            final = await self._store.update_run(run_id, _mark)
        except Exception:  # noqa: BLE001 - reported as internal_error
            return await self._internal_failure(run_id, Timeline(self._store.timeline_base(run_id, phase="patch")), "apply")

        return OrchestratorReply(
            status_code=200,
            body={
                "ok": True,
                "runId": run_id,
                "status": final.status.value,
                "applied": file_list,
                "backups": backed_up,
            },
        )

    # -- failures --------------------------------------------------------

    async def _internal_failure(self, run_id: str, timeline: Timeline, step: str) -> OrchestratorReply:
        """Must be called from inside an ``except`` block."""
        LOGGER.exception("Unexpected error during %s for run %s", step, run_id)
        details = traceback.format_exc()
        timeline.fail(step, "internal_error")
        await timeline.flush()
        try:
            error_path = await self._store.write_log(run_id, "internal.error", details)

            def _mark(record: RunRecord) -> None:
                record.log_paths["internal.error"] = error_path
                record.error = "internal_error"
                settle_status(record, RunStatus.FAILED)
                if record.finished_at is None:
                    record.finished_at = utcnow_iso()

            await self._store.update_run(run_id, _mark)
        except Exception:  # noqa: BLE001 - the original failure is what gets reported
            LOGGER.warning("Could not record internal error on run %s", run_id, exc_info=True)
        return _reply_error(500, "internal_error", runId=run_id)


def build_orchestrator(config: AppConfig) -> RunOrchestrator:
    """Wire every component from a resolved configuration."""
    policy = SafetyPolicy(config.policy)
    store = RunStore(config.paths)
    executor = SandboxExecutor(config.paths, config.execution)
    verifier = Verifier(store, executor, policy, config.execution)
    fix_agent = FixAgent(config.fix_agent, policy)
    patch_generator = PatchGenerator(OpenAIClient.from_config(config.openai), policy)
    return RunOrchestrator(config, store, executor, verifier, fix_agent, patch_generator, policy)
