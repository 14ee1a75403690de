"""
Media download API.

POST /download        submit a job; validates Google Drive access before queuing
GET  /status/{job_id} poll a job
GET  /jobs            list jobs, newest first
GET  /health          liveness and job count

Without a storage destination the file is saved under OUTPUT_DIR and the job
reports its absolute path. With one, yt-dlp output is streamed straight into
the Drive folder. A callback URL, if given, receives the final job record.
"""

import logging
import uuid
from contextlib import asynccontextmanager
from typing import Any, Callable, Dict, Optional
from urllib.parse import urlparse

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from starlette.concurrency import run_in_threadpool

import config
from db import JobStore, get_job_store
from gdrive import validate_google_drive
from queue_service import JobLauncher, ThreadLauncher
from schema import (
    QUALITIES,
    SUPPORTED_FORMAT,
    DestinationError,
    DownloadRequest,
    JobRecord,
    RequestValidationFailed,
)
from worker import JobProcessor

logger = logging.getLogger(__name__)

REQUIRED_CREDENTIAL_FIELDS = {
    "service_account": ("project_id", "private_key", "client_email"),
    "oauth2": ("client_id", "client_secret", "refresh_token"),
}


# -------------------- Validation --------------------

def _pick(body: Dict[str, Any], *names: str) -> Any:
    for name in names:
        if body.get(name) is not None:
            return body[name]
    return None


def _is_absolute_url(value: str) -> bool:
    try:
        parsed = urlparse(value)
    except ValueError:
        return False
    return bool(parsed.scheme and parsed.netloc)


def _non_empty_str(value: Any) -> bool:
    return isinstance(value, str) and value.strip() != ""


def parse_download_request(body: Any) -> DownloadRequest:
    """Structural validation of a POST /download body. First violation wins."""
    if not isinstance(body, dict):
        raise RequestValidationFailed("Request body must be a JSON object")

    if not _non_empty_str(body.get("url")):
        raise RequestValidationFailed('"url" is required and must be a string')

    quality = body.get("quality")
    if quality is not None and (not isinstance(quality, str) or quality not in QUALITIES):
        raise RequestValidationFailed(f'"quality" must be one of: {", ".join(QUALITIES)}')

    fmt = body.get("format")
    if fmt is not None and fmt != SUPPORTED_FORMAT:
        raise RequestValidationFailed(f'"format" must be "{SUPPORTED_FORMAT}"')

    callback_url = _pick(body, "callbackUrl", "webhookUrl")
    if callback_url is not None and not (isinstance(callback_url, str) and _is_absolute_url(callback_url)):
        raise RequestValidationFailed('"callbackUrl" must be a valid URL')

    destination = _pick(body, "storageDestination", "googleDrive")
    if destination is not None:
        if not isinstance(destination, dict):
            raise RequestValidationFailed('"storageDestination" must be an object')
        creds = destination.get("credentials")
        if not isinstance(creds, dict):
            raise RequestValidationFailed('"storageDestination.credentials" must be a credentials object')
        creds_type = creds.get("type")
        if not isinstance(creds_type, str) or creds_type not in REQUIRED_CREDENTIAL_FIELDS:
            raise RequestValidationFailed(
                '"storageDestination.credentials.type" must be "service_account" or "oauth2"'
            )
        missing = [f for f in REQUIRED_CREDENTIAL_FIELDS[creds_type] if not _non_empty_str(creds.get(f))]
        if missing:
            raise RequestValidationFailed(
                f'{creds_type} credentials require {", ".join(repr(f) for f in REQUIRED_CREDENTIAL_FIELDS[creds_type])}'
                f' (missing: {", ".join(missing)})'
            )
        if not _non_empty_str(_pick(destination, "destinationId", "folderId")):
            raise RequestValidationFailed(
                '"storageDestination.destinationId" is required when storageDestination is provided'
            )

    # null means "not given" for every optional field, so defaults apply
    present = {key: value for key, value in body.items() if value is not None}
    try:
        return DownloadRequest.model_validate(present)
    except ValidationError as e:
        first = e.errors()[0]
        location = ".".join(str(part) for part in first["loc"])
        raise RequestValidationFailed(f'"{location}": {first["msg"]}') from e


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


# -------------------- App --------------------

def create_app(
    store: Optional[JobStore] = None,
    launcher: Optional[JobLauncher] = None,
    processor: Optional[JobProcessor] = None,
    validate_destination: Callable = validate_google_drive,
) -> FastAPI:
    store = store or get_job_store()
    launcher = launcher or ThreadLauncher()
    processor = processor or JobProcessor(store, output_dir=config.OUTPUT_DIR)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("=== Media download API ===")
        logger.info("POST /download      - submit a download job")
        logger.info("GET  /status/{jobId} - poll result")
        logger.info("GET  /health        - server health")
        logger.info("Local output dir: %s", processor.output_dir)
        logger.info("System requirement: yt-dlp must be installed and in PATH")
        yield
        logger.info("Shutting down, waiting for running jobs")
        launcher.shutdown(wait=True)

    app = FastAPI(title="media-download-api", version="0.1.0", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.store = store
    app.state.launcher = launcher
    app.state.processor = processor

    @app.post("/download", status_code=202)
    async def submit_download(request: Request):
        try:
            body = await request.json()
        except ValueError:
            return _error(400, "Request body must be valid JSON")

        try:
            download_request = parse_download_request(body)
        except RequestValidationFailed as e:
            return _error(400, str(e))

        destination = download_request.storage_destination
        if destination is not None:
            # Live credential + folder check before anything is queued
            logger.info("Validating Google Drive credentials and folder access...")
            try:
                await run_in_threadpool(validate_destination, destination)
            except DestinationError as e:
                logger.warning("Google Drive validation rejected request: %s", e)
                return _error(422, str(e))
            logger.info("Google Drive OK")

        job_id = str(uuid.uuid4())
        store.create(JobRecord(job_id=job_id))
        launcher.launch(job_id, processor.process_job, job_id, download_request)
        logger.info("[%s] Job queued", job_id)

        return JSONResponse(status_code=202, content={"jobId": job_id, "status": "queued"})

    @app.get("/status/{job_id}")
    def get_job_status(job_id: str):
        job = store.get(job_id)
        if job is None:
            return _error(404, "Job not found")
        return job.to_payload()

    @app.get("/jobs")
    def list_jobs(limit: int = 10, skip: int = 0):
        jobs = [job.to_payload() for job in store.list(limit=limit, skip=skip)]
        return {"jobs": jobs, "count": len(jobs)}

    @app.get("/health")
    def health():
        return {"ok": True, "jobs": store.count()}

    return app


app = create_app()


if __name__ == "__main__":
    logging.basicConfig(
        level=config.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(app, host=config.HOST, port=config.PORT)
