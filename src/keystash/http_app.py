"""HTTP transport for keystash.

Routes:
    GET    /f            list entries (offset, n, q)
    GET    /f/{key}      download (mime overrides the content type)
    PUT    /f[/{key}]    upload the request body, responds with /f/{key}
    POST   /f[/{key}]    same as PUT
    DELETE /f/{key}      remove
"""

import logging
import mimetypes
import tempfile
import time
from datetime import datetime

from fastapi import FastAPI, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, PlainTextResponse, StreamingResponse
from pydantic import BaseModel

from keystash.errors import (
    AlreadyExistsError,
    InvalidKeyError,
    InvalidQueryError,
    KeystashError,
    NotFoundError,
)
from keystash.metadata import FileEntry
from keystash.service import FileEntryService, parse_paging

log = logging.getLogger("keystash.http")

# Bodies above this size spill from memory to a temp file.
SPOOL_MAX_SIZE = 8 * 1024 * 1024

_STATUS_BY_ERROR: list[tuple[type[KeystashError], int]] = [
    (InvalidKeyError, 400),
    (InvalidQueryError, 400),
    (AlreadyExistsError, 409),
    (NotFoundError, 404),
]


def status_for(exc: KeystashError) -> int:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status_code
    return 500


class FileEntryResponse(BaseModel):
    key: str
    original_name: str
    size: int
    created_at: datetime
    last_access_at: datetime
    download_count: int

    @classmethod
    def from_entry(cls, entry: FileEntry) -> "FileEntryResponse":
        return cls(
            key=entry.key,
            original_name=entry.original_name,
            size=entry.size,
            created_at=entry.created_at,
            last_access_at=entry.last_access_at,
            download_count=entry.download_count,
        )


def create_app(service: FileEntryService) -> FastAPI:
    app = FastAPI(
        title="keystash",
        description="Key-addressed file store",
        version="0.1.0",
    )
    app.state.service = service

    @app.exception_handler(KeystashError)
    async def keystash_error_handler(request: Request, exc: KeystashError):
        status_code = status_for(exc)
        if status_code >= 500:
            log.error("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(
            status_code=status_code,
            content={"code": exc.code, "detail": str(exc)},
        )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        log.info(
            "%s %s %d %.1fms",
            request.method,
            request.url.path,
            response.status_code,
            (time.perf_counter() - start) * 1000,
        )
        return response

    @app.get("/")
    def root():
        return {"status": "running", "service": "keystash"}

    @app.get("/f", response_model=list[FileEntryResponse])
    def list_files(offset: str | None = None, n: str | None = None, q: str | None = None):
        start, limit = parse_paging(offset, n, service.default_limit)
        entries = service.list_entries(start, limit, q or None)
        return [FileEntryResponse.from_entry(e) for e in entries]

    @app.get("/f/{key}")
    def get_file(key: str, mime: str | None = None):
        download = service.get(key)
        media_type = mime or mimetypes.guess_type(key)[0] or "application/octet-stream"
        return StreamingResponse(
            iter(download),
            media_type=media_type,
            headers={"Content-Length": str(download.size)},
        )

    async def store_body(request: Request, key: str | None) -> PlainTextResponse:
        body = tempfile.SpooledTemporaryFile(max_size=SPOOL_MAX_SIZE)
        try:
            async for chunk in request.stream():
                # Past SPOOL_MAX_SIZE the spool is a disk file.
                await run_in_threadpool(body.write, chunk)
            body.seek(0)
            stored = await run_in_threadpool(service.put, key, body)
        finally:
            body.close()
        return PlainTextResponse(f"/f/{stored}")

    @app.api_route("/f", methods=["PUT", "POST"], response_class=PlainTextResponse)
    async def put_generated(request: Request):
        return await store_body(request, None)

    @app.api_route("/f/{key}", methods=["PUT", "POST"], response_class=PlainTextResponse)
    async def put_keyed(key: str, request: Request):
        return await store_body(request, key)

    @app.delete("/f/{key}", response_class=PlainTextResponse)
    def delete_file(key: str):
        service.delete(key)
        return "OK"

    return app
