import logging
from typing import Optional

from fastapi import (
    FastAPI, UploadFile, File, Depends,
    Request
)
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

from filedrop import config
from filedrop.db import engine, SessionLocal, init_db
from filedrop.errors import (
    NotFoundError, ExpiredError, FileMissingError,
    UploadTooLargeError, BadRequestError, CodeExhaustedError
)
from filedrop.ingest import IngestionGateway, read_chunks
from filedrop.reaper import Reaper
from filedrop.registry import AccessRegistry
from filedrop.storage import LocalBlobStore, BlobNotFoundError
from filedrop.utils import content_disposition

# =========================
# Logging
# =========================
logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s [%(levelname)s %(name)s] %(message)s"
)
logger = logging.getLogger("main")

# room for boundaries and part headers around the file bytes
MULTIPART_OVERHEAD = 64 * 1024


# =========================
# Dependencies
# =========================
def get_registry(request: Request) -> AccessRegistry:
    return request.app.state.registry


def get_gateway(request: Request) -> IngestionGateway:
    return request.app.state.gateway


def get_blob_store(request: Request) -> LocalBlobStore:
    return request.app.state.blob_store


def token_param(request: Request) -> str:
    token = request.query_params.get("code") or request.query_params.get("link")
    if not token:
        raise BadRequestError("Missing access code or link")
    return token.strip()


def message(status_code: int, text: str) -> JSONResponse:
    return JSONResponse({"message": text}, status_code=status_code)


# =========================
# App
# =========================
def build_app(
    registry: AccessRegistry,
    gateway: IngestionGateway,
    reaper: Reaper,
    on_startup=None,
) -> FastAPI:
    app = FastAPI(title="File Drop")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.registry = registry
    app.state.gateway = gateway
    app.state.blob_store = registry.blob_store
    app.state.reaper = reaper

    # reject before the multipart body is spooled to disk
    @app.middleware("http")
    async def upload_size_guard(request: Request, call_next):
        if request.method == "POST" and request.url.path == "/upload":
            length = request.headers.get("content-length")
            if length and length.isdigit() and int(length) > gateway.max_size + MULTIPART_OVERHEAD:
                return message(413, f"File exceeds {gateway.max_size} bytes")
        return await call_next(request)

    @app.on_event("startup")
    def startup():
        if on_startup:
            on_startup()
        reaper.start()

    @app.on_event("shutdown")
    def shutdown():
        reaper.stop(timeout=10)

    # =========================
    # Error translation
    # =========================
    @app.exception_handler(NotFoundError)
    def not_found(request: Request, exc: NotFoundError):
        return message(404, "Invalid code")

    @app.exception_handler(ExpiredError)
    def expired(request: Request, exc: ExpiredError):
        return message(400, "Access expired")

    @app.exception_handler(FileMissingError)
    def file_missing(request: Request, exc: FileMissingError):
        logger.error(f"Consistency fault on {request.url.path}: {exc}")
        return message(500, "Internal error")

    @app.exception_handler(UploadTooLargeError)
    def too_large(request: Request, exc: UploadTooLargeError):
        return message(413, f"File exceeds {exc.limit} bytes")

    @app.exception_handler(BadRequestError)
    def bad_request(request: Request, exc: BadRequestError):
        return message(400, str(exc) or "No file provided")

    @app.exception_handler(CodeExhaustedError)
    def exhausted(request: Request, exc: CodeExhaustedError):
        logger.error(f"Upload rejected: {exc}")
        return message(503, "No access code available, try again")

    # =========================
    # Upload
    # =========================
    @app.post("/upload")
    def upload(
        files: Optional[UploadFile] = File(None),
        gw: IngestionGateway = Depends(get_gateway),
    ):
        if files is None:
            raise BadRequestError("No file provided")
        rec, code = gw.ingest(
            files.filename,
            read_chunks(files.file),
            content_type=files.content_type,
        )
        return {
            "access_code": code.code,
            "file_name": rec.file_name,
            "size": rec.size,
            "expires_in_ms": code.ttl_ms,
        }

    # =========================
    # Download (consumes single-use codes)
    # =========================
    @app.get("/download")
    def download(
        token: str = Depends(token_param),
        reg: AccessRegistry = Depends(get_registry),
        store: LocalBlobStore = Depends(get_blob_store),
    ):
        grant = reg.validate(token)
        # hold the blob open so a sweep after consumption cannot pull it away
        try:
            fh = store.open(grant.file.id)
        except BlobNotFoundError:
            raise FileMissingError(grant.file.id, "blob missing")
        try:
            grant = reg.redeem(token)
        except Exception:
            fh.close()
            raise

        def gen():
            with fh:
                for chunk in read_chunks(fh):
                    yield chunk

        f = grant.file
        return StreamingResponse(
            gen(),
            media_type=f.mime_type,
            headers={
                "Content-Disposition": content_disposition(f.file_name),
                "Content-Length": str(f.size),
            },
        )

    # =========================
    # File info (never consumes)
    # =========================
    @app.get("/files")
    def file_info(
        token: str = Depends(token_param),
        reg: AccessRegistry = Depends(get_registry),
    ):
        grant = reg.validate(token)
        return {
            "file": grant.file.to_dict(),
            "kind": grant.kind,
            "expires_in_ms": max(0, grant.expires_at_ms - reg.clock()),
        }

    # =========================
    # Link minting
    # =========================
    @app.post("/files/{file_id}/link")
    def mint_link(
        file_id: str,
        reg: AccessRegistry = Depends(get_registry),
    ):
        try:
            link = reg.mint_link(file_id)
        except NotFoundError:
            return message(404, "Invalid file")
        return {
            "link": link.code,
            "url": f"{config.BASE_URL}/download?link={link.code}",
            "expires_in_ms": link.ttl_ms,
        }

    # =========================
    # Health
    # =========================
    @app.get("/api/ping")
    def ping():
        return JSONResponse({"ok": True})

    return app


def create_default_app() -> FastAPI:
    blob_store = LocalBlobStore(config.FILES_PATH)
    registry = AccessRegistry(SessionLocal, blob_store)
    gateway = IngestionGateway(SessionLocal, blob_store, registry)
    reaper = Reaper(SessionLocal, blob_store)
    return build_app(
        registry, gateway, reaper,
        on_startup=lambda: init_db(engine),
    )


app = create_default_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=config.PORT)
