"""FastAPI surface: analyze, upload, download and health endpoints."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from urllib.parse import quote

from fastapi import APIRouter, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

from papercheck.config import (
    CORS_ALLOW_ORIGINS,
    PUBLIC_BASE_URL,
    TEMP_DIR,
    bootstrap_runtime_dirs,
    configure_logging,
)
from papercheck.ingest import prepare_submission
from papercheck.llm_client import LLMClient, UnconfiguredClient, get_llm_client
from papercheck.pipeline import analyze_text, persist_artifacts
from papercheck.rules import RuleCatalog, get_rule_catalog
from papercheck.security import (
    IntakeError,
    PayloadTooLargeError,
    max_upload_bytes,
    validate_extension,
    validate_upload_size,
)
from papercheck.storage import ArtifactError, ArtifactStore, new_submission_id

log = logging.getLogger(__name__)

CONTENT_TYPES = {
    ".json": "application/json",
    ".md": "text/markdown; charset=utf-8",
    ".txt": "text/plain; charset=utf-8",
    ".pdf": "application/pdf",
    ".docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    ".tex": "application/x-tex",
}
NO_CACHE_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}

router = APIRouter()


def _cors_headers() -> dict[str, str]:
    origin = "*" if "*" in CORS_ALLOW_ORIGINS or not CORS_ALLOW_ORIGINS else CORS_ALLOW_ORIGINS[0]
    return {
        "Access-Control-Allow-Origin": origin,
        "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
        "Access-Control-Allow-Headers": "Content-Type, Authorization",
    }


def _check_content_length(request: Request) -> None:
    declared = request.headers.get("content-length")
    if declared and declared.isdigit() and int(declared) > max_upload_bytes():
        raise PayloadTooLargeError("Payload too large.")


async def _read_upload(request: Request) -> tuple[str, bytes, str, str | None]:
    """Returns (filename, bytes, content type, client-extracted text)."""
    _check_content_length(request)
    form = await request.form()
    upload = form.get("file")
    if upload is None or isinstance(upload, str) or not upload.filename:
        raise IntakeError("No valid file provided.")
    validate_extension(upload.filename)
    raw = await upload.read()
    validate_upload_size(len(raw))
    file_text = form.get("fileText")
    return (
        upload.filename,
        raw,
        upload.content_type or "application/octet-stream",
        file_text if isinstance(file_text, str) else None,
    )


def _download_url(request: Request, filename: str) -> str:
    base = PUBLIC_BASE_URL or str(request.base_url).rstrip("/")
    return f"{base}/download?path={quote(filename)}"


def _schedule_purge(request: Request, submission_id: str) -> None:
    store: ArtifactStore = request.app.state.store
    tasks: set[asyncio.Task] = request.app.state.purge_tasks
    store.schedule_purge(submission_id)
    task = asyncio.create_task(store.purge_later(submission_id))
    tasks.add(task)
    task.add_done_callback(tasks.discard)


@router.post("/analyze")
async def analyze(request: Request):
    filename, raw, _, file_text = await _read_upload(request)
    text = await asyncio.to_thread(prepare_submission, filename, raw, file_text)

    store: ArtifactStore = request.app.state.store
    submission_id = new_submission_id()
    try:
        await store.save("upload", submission_id, raw, Path(filename).suffix)
    except OSError as exc:
        log.warning("Could not stage upload %s: %s", filename, exc)
    _schedule_purge(request, submission_id)

    try:
        outcome = await analyze_text(text, request.app.state.llm, request.app.state.catalog)
        saved = await persist_artifacts(store, submission_id, outcome.result)
    except Exception as exc:
        log.exception("Analysis of %s failed unexpectedly", submission_id)
        return JSONResponse({"error": f"Analysis failed: {exc}"}, status_code=500)

    payload = outcome.result.to_payload()
    payload["submissionId"] = submission_id
    payload["reportLinks"] = {key: _download_url(request, path.name) for key, path in saved.items()}
    if outcome.timed_out:
        payload["error"] = outcome.result.analysis_error
        return JSONResponse(payload, status_code=504)
    return JSONResponse(payload)


@router.post("/upload")
async def upload(request: Request):
    filename, raw, content_type, _ = await _read_upload(request)
    store: ArtifactStore = request.app.state.store
    submission_id = new_submission_id()
    try:
        path = await store.save("upload", submission_id, raw, Path(filename).suffix)
    except OSError as exc:
        log.error("Could not stage upload %s: %s", filename, exc)
        return JSONResponse({"error": "Failed to store the uploaded file."}, status_code=500)
    _schedule_purge(request, submission_id)
    return {
        "success": True,
        "submissionId": submission_id,
        "file": {"name": filename, "type": content_type, "size": len(raw), "path": path.name},
    }


@router.get("/download")
async def download(request: Request, path: str = ""):
    store: ArtifactStore = request.app.state.store
    resolved = store.resolve_token(path)
    content = await store.read(resolved)
    headers = {"Content-Disposition": f'attachment; filename="{resolved.name}"', **NO_CACHE_HEADERS}
    media_type = CONTENT_TYPES.get(resolved.suffix.lower(), "application/octet-stream")
    return Response(content=content, media_type=media_type, headers=headers)


@router.get("/health")
async def health():
    return {"status": "healthy"}


@router.options("/analyze")
@router.options("/upload")
@router.options("/download")
@router.options("/health")
async def options():
    return Response(status_code=200, headers=_cors_headers())


async def _intake_error(request: Request, exc: IntakeError) -> JSONResponse:
    status = 413 if isinstance(exc, PayloadTooLargeError) else 400
    log.info("Rejected submission (%d): %s", status, exc)
    return JSONResponse({"error": str(exc)}, status_code=status)


async def _artifact_error(request: Request, exc: ArtifactError) -> JSONResponse:
    log.info("Rejected download (%d): %s", exc.status_code, exc)
    return JSONResponse({"error": str(exc)}, status_code=exc.status_code)


def create_app(
    llm: LLMClient | None = None,
    store: ArtifactStore | None = None,
    catalog: RuleCatalog | None = None,
) -> FastAPI:
    configure_logging()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        bootstrap_runtime_dirs()
        app.state.catalog = catalog or get_rule_catalog()
        app.state.store = store or ArtifactStore(TEMP_DIR)
        app.state.purge_tasks = set()
        if llm is not None:
            app.state.llm = llm
        else:
            try:
                app.state.llm = get_llm_client()
            except ValueError as exc:
                log.warning("LLM client unavailable (%s); analyses will return degraded results.", exc)
                app.state.llm = UnconfiguredClient(str(exc))
        removed = app.state.store.purge_stale_files()
        if removed:
            log.info("Removed %d stale artifacts from %s", removed, app.state.store.root)
        log.info("papercheck API ready (oracle=%s)", app.state.llm.provider)

        yield

        for task in list(app.state.purge_tasks):
            task.cancel()
        log.info("papercheck API stopped")

    app = FastAPI(
        title="papercheck",
        description="Structure checks for scientific manuscripts",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ALLOW_ORIGINS,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )
    app.add_exception_handler(IntakeError, _intake_error)
    app.add_exception_handler(ArtifactError, _artifact_error)
    app.include_router(router)
    return app


app = create_app()
