import asyncio
import functools
import logging
import os
from datetime import datetime, timedelta, timezone

import anyio
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from fastapi import APIRouter, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel

from config.settings import DEFAULT_AUTHOR, DEFAULT_TITLE, REQUEST_TIMEOUT_SECONDS
from engine.core import DEFAULT_CONFIG, load_effective_config
from engine.delivery import (
    content_disposition,
    delivery_filename,
    finalize_delivery,
    iter_delivery,
    job_status_payload,
    sweep_orphaned_files,
)
from engine.extraction import ExtractionError, build_adapter
from engine.formatting import format_duration
from engine.job_store import JOB_STATUS_PROCESSING, DownloadJobStore
from engine.orchestrator import DownloadOrchestrator, DownloadRequestError
from engine.paths import build_engine_paths, ensure_dir, resolve_config_path
from engine.runtime import get_runtime_info
from input.intent_router import detect_link

APP_NAME = "tokfetch API"
SWEEP_JOB_ID = "orphan_sweep"
SHUTDOWN_GRACE_SECONDS = 5

router = APIRouter(prefix="/api")


class DownloadRequest(BaseModel):
    url: str
    format: str


class ValidateRequest(BaseModel):
    url: str


def _error_response(status_code, message, code):
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "error": message, "code": code},
    )


def _setup_logging(log_dir):
    ensure_dir(log_dir)
    root = logging.getLogger("")
    log_path = os.path.join(log_dir, "tokfetch.log")
    root.setLevel(logging.INFO)
    for handler in root.handlers:
        if isinstance(handler, logging.FileHandler):
            if os.path.abspath(getattr(handler, "baseFilename", "")) == os.path.abspath(log_path):
                return
    file_handler = logging.FileHandler(log_path)
    file_handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))
    file_handler.setLevel(logging.INFO)
    root.addHandler(file_handler)


def _resolve_config_path():
    try:
        return resolve_config_path(os.environ.get("TOKFETCH_CONFIG"))
    except ValueError as exc:
        logging.error("Invalid config override: %s", exc)
        return resolve_config_path(None)


def _referenced_paths(app):
    store = app.state.store
    orchestrator = app.state.orchestrator
    referenced = set(store.referenced_paths())
    for job in store.list_jobs(status=JOB_STATUS_PROCESSING):
        path = orchestrator.output_path(job)
        referenced.add(path)
        referenced.add(f"{path}.part")
    return referenced


async def _run_sweep(app, max_age_seconds):
    referenced = _referenced_paths(app)
    return await anyio.to_thread.run_sync(
        sweep_orphaned_files,
        app.state.paths.downloads_dir,
        referenced,
        max_age_seconds,
    )


def _orphan_max_age_seconds(app):
    return float(app.state.config.get("orphan_max_age_minutes") or 0) * 60


def _sweep_tick(app):
    # Runs on the scheduler thread; the sweep itself must run on the loop that owns the store.
    loop = getattr(app.state, "loop", None)
    if not loop or loop.is_closed():
        return
    asyncio.run_coroutine_threadsafe(_run_sweep(app, _orphan_max_age_seconds(app)), loop)


def _start_scheduler(app):
    interval = app.state.config.get("cleanup_interval_minutes") or 0
    if interval <= 0:
        logging.info("Orphan sweep disabled by config")
        return None
    scheduler = BackgroundScheduler(timezone="UTC")
    scheduler.add_job(
        functools.partial(_sweep_tick, app),
        trigger=IntervalTrigger(
            minutes=interval,
            start_date=datetime.now(timezone.utc) + timedelta(minutes=interval),
        ),
        id=SWEEP_JOB_ID,
        replace_existing=True,
        max_instances=1,
        coalesce=True,
        misfire_grace_time=30,
    )
    scheduler.start()
    logging.info("Orphan sweep active: every %s minutes", interval)
    return scheduler


def create_app(*, config=None, paths=None, store=None, adapter=None, session=None):
    """Build the API app.

    Every collaborator can be injected; anything left out is built on
    startup from the environment and the JSON config file.
    """
    app = FastAPI(
        title=APP_NAME,
        description="Fetch TikTok videos or their audio as one-shot downloads.",
    )
    app.state.store = store if store is not None else DownloadJobStore()
    app.state.scheduler = None

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(_request: Request, exc: RequestValidationError):
        logging.info("Rejected request body: %s", exc.errors())
        return _error_response(400, "Invalid request data", "INVALID_REQUEST")

    @app.on_event("startup")
    async def startup():
        app.state.paths = paths or build_engine_paths()
        for d in (app.state.paths.log_dir, app.state.paths.downloads_dir):
            ensure_dir(d)
        _setup_logging(app.state.paths.log_dir)
        if config is not None:
            app.state.config = {**DEFAULT_CONFIG, **config}
        else:
            app.state.config = load_effective_config(_resolve_config_path())
        app.state.adapter = adapter or build_adapter(app.state.config)
        app.state.orchestrator = DownloadOrchestrator(
            app.state.store,
            app.state.adapter,
            app.state.paths.downloads_dir,
            session=session,
            request_timeout=app.state.config.get("request_timeout_seconds") or REQUEST_TIMEOUT_SECONDS,
        )
        app.state.loop = asyncio.get_running_loop()
        logging.info(
            "Startup: extractor=%s downloads_dir=%s",
            app.state.adapter.name,
            app.state.paths.downloads_dir,
        )
        # Nothing on disk survives a restart in a usable state.
        await _run_sweep(app, 0)
        app.state.scheduler = _start_scheduler(app)

    @app.on_event("shutdown")
    async def shutdown():
        scheduler = app.state.scheduler
        if scheduler:
            scheduler.shutdown(wait=False)
        orchestrator = getattr(app.state, "orchestrator", None)
        if orchestrator and orchestrator.pending_count:
            logging.info("Shutdown with %d job(s) in flight", orchestrator.pending_count)
            if not await orchestrator.wait_idle(timeout=SHUTDOWN_GRACE_SECONDS):
                logging.warning("Shutdown timeout while waiting for download jobs")

    app.include_router(router)
    return app


@router.post("/download")
async def api_start_download(request: Request, payload: DownloadRequest):
    orchestrator = request.app.state.orchestrator
    try:
        download_id = orchestrator.start_job(payload.url, payload.format)
    except DownloadRequestError as exc:
        logging.info("Download request rejected: %s url=%s", exc, payload.url)
        return _error_response(400, str(exc), "INVALID_REQUEST")
    return {"success": True, "downloadId": download_id}


def _parse_download_id(value):
    # Non-numeric ids name no job; they get the same 404 as unknown ones.
    value = (value or "").strip()
    return int(value) if value.isdigit() else None


@router.get("/download/{download_id}/status")
async def api_download_status(request: Request, download_id: str):
    job_id = _parse_download_id(download_id)
    job = request.app.state.store.get(job_id) if job_id is not None else None
    if job is None:
        return _error_response(404, "Download not found", "NOT_FOUND")
    return {"success": True, "download": job_status_payload(job)}


@router.get("/download/{download_id}/file")
async def api_download_file(request: Request, download_id: str):
    store = request.app.state.store
    job_id = _parse_download_id(download_id)
    job = store.acquire_delivery(job_id) if job_id is not None else None
    if job is None:
        return _error_response(404, "File not found or not ready", "NOT_READY")
    if not os.path.isfile(job.file_path):
        store.release_delivery(job.id)
        logging.warning("Delivery file missing job_id=%s path=%s", job.id, job.file_path)
        return _error_response(404, "File not found", "FILE_MISSING")

    headers = {"Content-Disposition": content_disposition(delivery_filename(job))}
    logging.info("HTTP client download started job_id=%s", job.id)
    return StreamingResponse(
        iter_delivery(job.file_path, functools.partial(finalize_delivery, store, job)),
        media_type=job.content_type,
        headers=headers,
    )


@router.post("/validate")
async def api_validate(request: Request, payload: ValidateRequest):
    url = payload.url.strip()
    if not url:
        return _error_response(400, "Please enter a TikTok URL", "INVALID_REQUEST")
    if not detect_link(url).is_tiktok:
        return _error_response(400, "Please enter a valid TikTok URL", "INVALID_REQUEST")
    adapter = request.app.state.adapter
    try:
        preview = await anyio.to_thread.run_sync(adapter.preview, url)
    except ExtractionError as exc:
        logging.warning("URL preview failed: %s url=%s", exc, url)
        return _error_response(502, "Failed to fetch video info", "EXTRACTION_FAILED")
    return {
        "success": True,
        "info": {
            "title": preview.get("title") or DEFAULT_TITLE,
            "author": preview.get("author") or DEFAULT_AUTHOR,
            "duration": format_duration(preview.get("duration")),
            "thumbnail": preview.get("thumbnail"),
            "viewCount": preview.get("viewCount"),
            "likeCount": preview.get("likeCount"),
        },
    }


@router.get("/download_jobs")
async def api_download_jobs(request: Request, limit: int = Query(100, ge=1, le=1000), status: str | None = None):
    jobs = request.app.state.store.list_jobs(limit=limit, status=status)
    return {
        "jobs": [
            {**job_status_payload(job), "createdAt": job.created_at}
            for job in jobs
        ]
    }


@router.post("/cleanup")
async def api_cleanup(request: Request):
    app = request.app
    deleted_files, deleted_bytes = await _run_sweep(app, _orphan_max_age_seconds(app))
    return {"deleted_files": deleted_files, "deleted_bytes": deleted_bytes}


@router.get("/version")
async def api_version():
    return get_runtime_info()


app = create_app()
