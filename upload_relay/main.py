import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, File, Header, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse, Response
from starlette.exceptions import HTTPException

from upload_relay.config import Settings, get_settings
from upload_relay.errors import MissingUploader, NoFilePart, OriginNotAllowed, UploadError
from upload_relay.logging_config import setup_logging
from upload_relay.middleware import UploadGuardMiddleware
from upload_relay.models import ErrorResponse, HealthResponse, UploadRequest, UploadResponse
from upload_relay.service import UploadService
from upload_relay.storage import LocalUploadStorage, UploadStorage
from upload_relay.validation import UploadPolicy

logger = logging.getLogger(__name__)


def create_app(settings: Settings | None = None, storage: UploadStorage | None = None) -> FastAPI:
    settings = settings or get_settings()

    storage = storage or LocalUploadStorage(settings.upload_dir, ledger_filename=settings.ledger_filename)
    policy = UploadPolicy(settings.allowed_content_types, settings.max_upload_size_bytes)
    service = UploadService(storage, policy, mount_prefix=settings.mount_prefix)

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        storage.init()
        yield

    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.add_middleware(
        UploadGuardMiddleware,
        paths={"/upload"},
        max_file_bytes=settings.max_upload_size_bytes,
        timeout_seconds=settings.body_read_timeout_seconds,
        total_timeout_seconds=settings.body_total_timeout_seconds,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    def error_response(status_code: int, message: str) -> JSONResponse:
        return JSONResponse(status_code=status_code, content={"error": message})

    @app.exception_handler(UploadError)
    async def upload_error_handler(_: Request, exc: UploadError):
        return error_response(exc.status_code, exc.message)

    @app.exception_handler(RequestValidationError)
    async def request_validation_exception_handler(_: Request, exc: RequestValidationError):
        if any("file" in error["loc"] for error in exc.errors()):
            return error_response(NoFilePart.status_code, NoFilePart.message)
        return error_response(400, "invalid request parameters")

    @app.exception_handler(HTTPException)
    async def http_exception_handler(_: Request, exc: HTTPException):
        message = str(exc.detail) if exc.detail else "request failed"
        return error_response(exc.status_code, message)

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return error_response(500, "Internal server error")

    def origin_allowed(origin: str | None) -> bool:
        if origin is None:
            return True
        return "*" in settings.allowed_origins or origin in settings.allowed_origins

    @app.get("/health", response_model=HealthResponse)
    def health() -> HealthResponse:
        return HealthResponse(ok=True)

    upload_errors = {status: {"model": ErrorResponse} for status in (400, 401, 403, 408, 409, 413, 500)}

    @app.post("/upload", response_model=UploadResponse, responses=upload_errors)
    def upload_file(
        file: UploadFile | None = File(None),
        origin: str | None = Header(None),
        uploader: str | None = Header(None, alias=settings.uploader_header),
    ):
        if not origin_allowed(origin):
            logger.warning("Rejected upload from origin %s", origin)
            raise OriginNotAllowed()
        if settings.require_uploader and not (uploader and uploader.strip()):
            raise MissingUploader(settings.uploader_header)
        if file is None or not file.filename:
            raise NoFilePart()

        record = service.accept(
            UploadRequest(
                stream=file.file,
                filename=file.filename,
                content_type=file.content_type,
                size=file.size,
            ),
            uploader=(uploader or "").strip() or None,
        )
        return UploadResponse(message="File uploaded successfully", file=record)

    @app.get(settings.public_prefix + "/{storage_name}", responses={404: {"model": ErrorResponse}})
    def serve_upload(storage_name: str):
        stored = storage.fetch(storage_name)
        if stored is None:
            raise HTTPException(status_code=404, detail="File not found")
        if stored.path is not None:
            return FileResponse(path=stored.path, media_type=stored.content_type)
        return Response(content=storage.read(storage_name), media_type=stored.content_type)

    return app


app = create_app()


def run() -> None:
    settings = get_settings()
    setup_logging(settings.log_level)
    logger.info("Starting %s on %s:%d", settings.app_name, settings.host, settings.port)
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port)


if __name__ == "__main__":
    run()
