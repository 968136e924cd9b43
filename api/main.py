#!/usr/bin/env python3
"""HTTP surface for the job pipeline.

Routes stay thin: they translate requests into orchestrator calls, run the
blocking ones off the event loop and map pipeline errors to status codes.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone

import anyio
import uvicorn
from fastapi import Body, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import BaseModel
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from config.settings import Settings, load_settings
from engine.errors import (
    ArtifactExpiredError,
    JobStateError,
    MetadataError,
    NotFoundError,
    PipelineError,
    QuotaError,
    ToolUnavailableError,
    ValidationError,
)
from engine.job_store import JOB_STATUS_PROCESSING, JobStore
from engine.media_engine import MediaEngine
from engine.paths import ensure_dir
from engine.pipeline import PipelineOrchestrator
from engine.process import ProcessRunner
from engine.runtime import get_runtime_info
from input.url_classifier import Platform, platform_info
from scheduler.jobs.cleanup import CleanupScheduler

APP_NAME = "reelgrab API"
LOG_FILENAME = "reelgrab.log"

_ERROR_STATUS = (
    (QuotaError, 429),
    (ValidationError, 400),
    (ArtifactExpiredError, 410),
    (NotFoundError, 404),
    (ToolUnavailableError, 503),
    (MetadataError, 422),
    (JobStateError, 409),
)

_BOOT_SETTINGS = load_settings()

app = FastAPI(title=APP_NAME)
app.add_middleware(
    CORSMiddleware,
    allow_origins=[_BOOT_SETTINGS.frontend_url],
    allow_methods=["GET", "POST", "DELETE"],
    allow_headers=["*"],
)
if _BOOT_SETTINGS.trust_proxy:
    app.add_middleware(ProxyHeadersMiddleware, trusted_hosts="*")


@dataclass
class Services:
    settings: Settings
    store: JobStore
    engine: MediaEngine
    cleanup: CleanupScheduler
    pipeline: PipelineOrchestrator


def build_services(settings: Settings, *, runner: ProcessRunner | None = None) -> Services:
    store = JobStore()
    engine = MediaEngine(settings, runner=runner)
    cleanup = CleanupScheduler(
        store,
        settings.temp_dir,
        expiry_minutes=settings.job_expiry_minutes,
        interval_minutes=settings.cleanup_interval_minutes,
    )
    pipeline = PipelineOrchestrator(store, engine, cleanup, settings)
    cleanup.cancel_hook = pipeline.cancel
    return Services(settings=settings, store=store, engine=engine, cleanup=cleanup, pipeline=pipeline)


def install_services(services: Services) -> None:
    app.state.settings = services.settings
    app.state.store = services.store
    app.state.engine = services.engine
    app.state.cleanup = services.cleanup
    app.state.pipeline = services.pipeline


def _setup_logging(log_dir, level="INFO"):
    ensure_dir(log_dir)
    root = logging.getLogger("")
    log_path = os.path.join(log_dir, LOG_FILENAME)
    root.setLevel(getattr(logging, str(level).upper(), logging.INFO))
    formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(message)s")
    has_file = False
    has_stream = False
    for handler in root.handlers:
        if isinstance(handler, logging.FileHandler):
            if os.path.abspath(getattr(handler, "baseFilename", "")) == os.path.abspath(log_path):
                has_file = True
        elif isinstance(handler, logging.StreamHandler):
            has_stream = True
    if not has_file:
        file_handler = logging.FileHandler(log_path)
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)
    if not has_stream:
        stream_handler = logging.StreamHandler()
        stream_handler.setFormatter(formatter)
        root.addHandler(stream_handler)


def _http_error(exc: PipelineError, **extra) -> HTTPException:
    status_code = 500
    for error_type, code in _ERROR_STATUS:
        if isinstance(exc, error_type):
            status_code = code
            break
    if status_code >= 500 and exc.detail:
        logging.error("Request failed: %s (%s)", exc.message, exc.detail)
    return HTTPException(status_code=status_code, detail={"error": exc.message, **extra})


def _requester_key(request: Request) -> str:
    client = request.client
    return client.host if client and client.host else "unknown"


class AnalyzeRequest(BaseModel):
    url: str | None = None


class ProcessRequest(BaseModel):
    jobId: str | None = None
    formatId: str | None = None
    quality: str | None = None


@app.on_event("startup")
async def startup():
    settings = _BOOT_SETTINGS
    _setup_logging(settings.log_dir, settings.log_level)
    ensure_dir(settings.temp_dir)
    services = build_services(settings)
    install_services(services)
    await anyio.to_thread.run_sync(services.cleanup.start)
    logging.info("%s started (env=%s, temp_dir=%s)", settings.app_name, settings.env, settings.temp_dir)


@app.on_event("shutdown")
async def shutdown():
    cleanup = getattr(app.state, "cleanup", None)
    if cleanup is not None:
        cleanup.stop()
    pipeline = getattr(app.state, "pipeline", None)
    if pipeline is not None:
        await anyio.to_thread.run_sync(pipeline.shutdown)


@app.get("/health")
async def health():
    engines = await anyio.to_thread.run_sync(app.state.engine.probe_tools)
    storage = await anyio.to_thread.run_sync(app.state.cleanup.storage_stats)
    healthy = all(status.available for status in engines.values())
    return {
        "status": "healthy" if healthy else "degraded",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "service": app.state.settings.app_name,
        "engines": {name: status.to_dict() for name, status in engines.items()},
        "storage": storage,
        "jobs": {
            "total": len(app.state.store),
            "running": len(app.state.engine.active_job_ids()),
        },
        "runtime": get_runtime_info(app.state.settings.env),
    }


@app.post("/api/analyze")
async def analyze(request: Request, payload: AnalyzeRequest = Body(default=AnalyzeRequest())):
    url = (payload.url or "").strip()
    if not url:
        raise HTTPException(status_code=400, detail={"error": "URL is required"})
    pipeline = app.state.pipeline
    try:
        job = pipeline.create_job(url, _requester_key(request))
    except PipelineError as exc:
        raise _http_error(exc) from exc
    try:
        result = await anyio.to_thread.run_sync(pipeline.analyze, job.id)
    except PipelineError as exc:
        raise _http_error(exc, jobId=job.id) from exc

    platform = Platform(job.platform) if job.platform else None
    return {
        "success": True,
        "jobId": job.id,
        "platform": {"id": job.platform, **platform_info(platform)},
        "video": result.metadata.to_dict(),
        "formats": [rendition.to_dict() for rendition in result.renditions],
    }


@app.post("/api/process")
async def process(payload: ProcessRequest = Body(default=ProcessRequest())):
    if not payload.jobId:
        raise HTTPException(status_code=400, detail={"error": "Job ID is required"})
    pipeline = app.state.pipeline
    try:
        job = pipeline.select_rendition_and_start(
            payload.jobId,
            format_id=payload.formatId,
            preset=payload.quality,
        )
    except PipelineError as exc:
        raise _http_error(exc) from exc
    rendition = job.selected_rendition
    return {
        "success": True,
        "jobId": job.id,
        "status": JOB_STATUS_PROCESSING,
        "selectedFormat": rendition.to_dict() if rendition else None,
    }


@app.get("/api/progress/{job_id}")
async def progress(job_id: str):
    try:
        snapshot = app.state.pipeline.get_progress(job_id)
    except PipelineError as exc:
        raise _http_error(exc) from exc
    return {"success": True, **snapshot.to_dict()}


@app.get("/api/download/{job_id}")
async def download(job_id: str):
    try:
        artifact = app.state.pipeline.fetch_completed_file(job_id)
    except JobStateError as exc:
        raise HTTPException(status_code=400, detail={"error": exc.message}) from exc
    except PipelineError as exc:
        raise _http_error(exc) from exc
    headers = {
        "Content-Disposition": f'attachment; filename="{artifact.filename}"',
        "Content-Length": str(artifact.size),
    }
    return StreamingResponse(artifact.iter_chunks(), media_type=artifact.media_type, headers=headers)


@app.delete("/api/cleanup/{job_id}")
async def cleanup(job_id: str):
    try:
        cancelled = await anyio.to_thread.run_sync(app.state.pipeline.cancel_and_cleanup, job_id)
    except PipelineError as exc:
        raise _http_error(exc) from exc
    return {"success": True, "jobId": job_id, "cancelled": cancelled, "message": "Job cleaned up successfully"}


def main():
    uvicorn.run(app, host=_BOOT_SETTINGS.host, port=_BOOT_SETTINGS.port)


if __name__ == "__main__":
    main()
