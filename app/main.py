import unicodedata
from contextlib import asynccontextmanager
from typing import BinaryIO, Iterator
from urllib.parse import quote

from fastapi import FastAPI, File, Form, Header, HTTPException, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse, StreamingResponse

from app.config import Settings, get_settings
from app.errors import HandoffError, InvalidPayload
from app.keys import normalize_key
from app.logging_config import configure_logging
from app.models import FileInfo, HealthResponse, StatusResponse, UploadResponse
from app.service import SessionService

EPUB_MEDIA_TYPE = "application/epub+zip"


def ascii_filename(filename: str) -> str:
    folded = unicodedata.normalize("NFKD", filename).encode("ascii", "ignore").decode("ascii")
    folded = folded.replace('"', "").replace("\\", "").strip()
    return folded or "book.epub"


def content_disposition(filename: str) -> str:
    quoted = quote(filename)
    if quoted != filename:
        fallback = ascii_filename(filename)
        return f"attachment; filename=\"{fallback}\"; filename*=utf-8''{quoted}"
    return f'attachment; filename="{filename}"'


def iter_file(handle: BinaryIO, chunk_size: int = 64 * 1024) -> Iterator[bytes]:
    try:
        while True:
            chunk = handle.read(chunk_size)
            if not chunk:
                break
            yield chunk
    finally:
        handle.close()


def create_app(settings: Settings | None = None, *, service: SessionService | None = None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.log_level)

    service = service or SessionService(settings)

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        service.storage.init(reset=settings.reset_storage_on_startup)
        yield
        service.shutdown()

    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.state.service = service

    def error_response(status_code: int, message: str, code: str) -> JSONResponse:
        return JSONResponse(
            status_code=status_code,
            content={"error": {"code": code, "message": message}},
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_exception_handler(_: Request, exc: RequestValidationError):
        missing_fields = [
            ".".join(str(item) for item in error["loc"] if item != "body")
            for error in exc.errors()
            if error.get("type") == "missing"
        ]
        if missing_fields:
            message = f"missing parameters: {', '.join(missing_fields)}"
        else:
            message = "invalid request parameters"
        return error_response(400, message, "bad_request")

    @app.exception_handler(HTTPException)
    async def http_exception_handler(_: Request, exc: HTTPException):
        message = str(exc.detail) if exc.detail else "request failed"
        code_map = {
            400: "bad_request",
            403: "forbidden",
            404: "not_found",
            413: "payload_too_large",
        }
        return error_response(exc.status_code, message, code_map.get(exc.status_code, "error"))

    @app.exception_handler(HandoffError)
    async def handoff_exception_handler(_: Request, exc: HandoffError):
        return error_response(exc.status_code, exc.message, exc.code)

    @app.get("/")
    def root() -> dict:
        return {"status": "ok", "service": settings.app_name}

    @app.get("/health", response_model=HealthResponse)
    def health() -> HealthResponse:
        return HealthResponse(status="ok", environment=settings.app_env, sessions=service.session_count)

    @app.post("/generate", response_class=PlainTextResponse)
    async def generate_key(user_agent: str = Header("")) -> str:
        return service.issue(user_agent)

    @app.post("/upload", response_model=UploadResponse, status_code=201)
    async def upload_file(
        key: str = Form(...),
        file: UploadFile | None = File(None),
        kepubify: bool = Form(False),
        user_agent: str = Header(""),
    ):
        if file is None or not file.filename:
            raise InvalidPayload("Invalid or no file submitted")
        try:
            stored = await service.bind_upload(
                key,
                user_agent,
                file.filename,
                file.file,
                transcode=kepubify,
            )
        finally:
            await file.close()
        return UploadResponse(
            key=normalize_key(key),
            filename=stored.display_name,
            uploaded_at=stored.uploaded_at,
        )

    @app.get("/download/{key}")
    async def download_file(key: str, user_agent: str = Header("")):
        opened = service.open_download(key, user_agent)
        if opened is None:
            raise HTTPException(status_code=404, detail="not found")
        file, handle = opened
        return StreamingResponse(
            iter_file(handle),
            media_type=EPUB_MEDIA_TYPE,
            headers={"Content-Disposition": content_disposition(file.display_name)},
        )

    @app.delete("/file/{key}", response_class=PlainTextResponse)
    async def release_file(key: str) -> str:
        service.release(key)
        return "ok"

    @app.get("/status/{key}", response_model=StatusResponse)
    async def session_status(key: str, user_agent: str = Header("")):
        status = service.status(key, user_agent)
        return StatusResponse(
            alive=status.last_touched_at,
            file=FileInfo(name=status.file_name) if status.file_name else None,
        )

    return app


app = create_app()
