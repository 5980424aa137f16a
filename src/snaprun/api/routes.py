"""HTTP routes exposing the run orchestrator."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response
from fastapi.responses import JSONResponse, PlainTextResponse

from .. import __version__
from ..analyzer import analyze_logs
from ..deadlines import AbortLatch
from ..models import AnalyzeRequest, ApplyRequest, FixRequest, StartRunRequest
from ..orchestrator import OrchestratorReply, RunOrchestrator
from ..timeline import Timeline
from .auth import require_api_key

LOGGER = logging.getLogger("snaprun.api")

public_router = APIRouter()
router = APIRouter(dependencies=[Depends(require_api_key)])


def get_orchestrator(request: Request) -> RunOrchestrator:
    return request.app.state.orchestrator


def _respond(reply: OrchestratorReply) -> JSONResponse:
    return JSONResponse(status_code=reply.status_code, content=reply.body)


def _not_found(what: str) -> JSONResponse:
    return JSONResponse(status_code=404, content={"ok": False, "error": f"{what} not found"})


async def _with_latch(request: Request, call) -> JSONResponse:
    """Run *call(latch)* while watching for the caller going away."""
    interval = request.app.state.config.server.abort_poll_interval
    latch = AbortLatch(request.is_disconnected, poll_interval=interval)
    async with latch.watch():
        reply = await call(latch)
    if latch.aborted:
        LOGGER.info("Caller disconnected before %s %s completed", request.method, request.url.path)
    latch.mark_responded()
    return _respond(reply)


@public_router.get("/health")
async def healthcheck() -> Dict[str, Any]:
    return {
        "ok": True,
        "status": "ok",
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.post("/runs/start")
@router.post("/snap")
async def start_run(
    payload: StartRunRequest,
    request: Request,
    orchestrator: RunOrchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    return await _with_latch(request, lambda latch: orchestrator.start_run(payload, latch=latch))


@router.get("/runs")
@router.get("/results")
async def list_runs(orchestrator: RunOrchestrator = Depends(get_orchestrator)) -> Dict[str, Any]:
    items = await orchestrator.store.list_runs()
    return {"ok": True, "results": [item.to_json_dict() for item in items]}


@router.get("/runs/{run_id}")
async def get_run(run_id: str, orchestrator: RunOrchestrator = Depends(get_orchestrator)) -> Dict[str, Any]:
    record = await orchestrator.store.read_run(run_id)
    return record.to_json_dict()


@router.get("/runs/{run_id}/logs")
async def get_logs(
    run_id: str,
    name: Optional[str] = Query(default=None),
    orchestrator: RunOrchestrator = Depends(get_orchestrator),
) -> Response:
    store = orchestrator.store
    if name:
        text = await store.read_log(run_id, name)
        if text is None:
            return _not_found(f"log {name}")
        return PlainTextResponse(text)
    return JSONResponse(content={"ok": True, "runId": run_id, "logs": await store.list_logs(run_id)})


@router.get("/runs/{run_id}/diff")
async def get_diff(run_id: str, orchestrator: RunOrchestrator = Depends(get_orchestrator)) -> Response:
    diff = await orchestrator.store.read_diff(run_id)
    if diff is None:
        return _not_found("diff")
    return PlainTextResponse(diff)


@router.get("/runs/{run_id}/patch")
async def get_patch(run_id: str, orchestrator: RunOrchestrator = Depends(get_orchestrator)) -> Response:
    patch = await orchestrator.store.read_patch(run_id)
    if patch is None:
        return _not_found("patch")
    return Response(content=patch, media_type="application/json")


@router.get("/runs/{run_id}/timeline")
async def get_timeline(run_id: str, orchestrator: RunOrchestrator = Depends(get_orchestrator)) -> Response:
    store = orchestrator.store
    parts = [Timeline.read_txt(store.timeline_base(run_id)), Timeline.read_txt(store.timeline_base(run_id, "fix"))]
    return PlainTextResponse("\n".join(part for part in parts if part))


@router.get("/runs/{run_id}/timeline.json")
async def get_timeline_json(
    run_id: str,
    phase: Optional[str] = Query(default=None, pattern=r"^[a-z]+$"),
    orchestrator: RunOrchestrator = Depends(get_orchestrator),
) -> Response:
    events = Timeline.read_json(orchestrator.store.timeline_base(run_id, None if phase == "run" else phase))
    if events is None:
        return _not_found("timeline")
    return JSONResponse(content=events)


@router.get("/runs/{run_id}/metrics")
async def get_metrics(run_id: str, orchestrator: RunOrchestrator = Depends(get_orchestrator)) -> Response:
    metrics = await orchestrator.store.read_metrics(run_id)
    if not metrics:
        return _not_found("metrics")
    return JSONResponse(content=metrics)


@router.post("/runs/{run_id}/fix")
async def fix_run(
    run_id: str,
    request: Request,
    payload: Optional[FixRequest] = None,
    orchestrator: RunOrchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    return await _with_latch(request, lambda latch: orchestrator.fix_run(run_id, payload, latch=latch))


@router.post("/runs/{run_id}/verify")
async def verify_run(
    run_id: str,
    payload: Optional[FixRequest] = None,
    orchestrator: RunOrchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    return _respond(await orchestrator.verify_run(run_id, payload))


@router.post("/runs/{run_id}/generate")
async def generate_patches(run_id: str, orchestrator: RunOrchestrator = Depends(get_orchestrator)) -> JSONResponse:
    return _respond(await orchestrator.generate_patches(run_id))


@router.post("/runs/{run_id}/apply")
async def apply_patches(
    run_id: str,
    payload: Optional[ApplyRequest] = None,
    orchestrator: RunOrchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    apply = payload.apply if payload is not None else False
    return _respond(await orchestrator.apply_patches(run_id, apply=apply))


@router.post("/analyze")
async def analyze(payload: AnalyzeRequest) -> Dict[str, Any]:
    if not payload.logs:
        raise HTTPException(status_code=400, detail="missing logs")
    return {"ok": True, "analysis": analyze_logs(payload.logs).to_json_dict()}
