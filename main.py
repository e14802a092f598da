from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

import uvicorn
from fastapi import FastAPI, File, Form, Header, HTTPException, Request, UploadFile
from fastapi.responses import PlainTextResponse, RedirectResponse, Response, StreamingResponse

from app.models.records import Kind, ObjectRecord, Role, ShortLinkRecord
from app.services.admission import AdmissionPipeline
from app.services.blob_store import BlobStore
from app.services.errors import CDNError, MissingFieldError, NotFoundError, StorageFailure, humanize_bytes
from app.services.metadata_store import MetadataStore, RedisMetadataStore
from app.services.notifier import DiscordNotifier, PageviewEvent, PlausibleTracker, extract_client_ips
from app.services.resolver import Content, Redirect, Resolution, Resolver, strip_extension
from app.services.retention import RetentionScheduler, remove_object
from config import Settings
from logger_config import setup_logger

UPLOAD_CHUNK_SIZE = 64 * 1024
INLINE_PREFIXES = ("image/", "video/", "audio/", "text/")

# Logger setup
logger = setup_logger()


def configure_services(
    app: FastAPI,
    settings: Settings,
    metadata_store: MetadataStore,
    blob_store: BlobStore,
    notifier: Optional[DiscordNotifier] = None,
    tracker: Optional[PlausibleTracker] = None,
) -> None:
    """Wire the core services onto ``app.state``."""
    app.state.settings = settings
    app.state.metadata_store = metadata_store
    app.state.blob_store = blob_store
    app.state.notifier = notifier
    app.state.tracker = tracker
    app.state.admission = AdmissionPipeline(settings, metadata_store, blob_store, notifier)
    app.state.resolver = Resolver(metadata_store, blob_store)
    app.state.retention = RetentionScheduler(settings, metadata_store, blob_store)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = Settings.from_env()

    logger.info("Loading Redis database...")
    metadata_store = RedisMetadataStore(settings.redis_url)
    await metadata_store.ping()
    logger.info("Connected to Redis")

    blob_store = BlobStore(Path(settings.data_dir), Path(settings.temp_dir))
    await blob_store.initialize()

    notifier = DiscordNotifier(settings)
    tracker = PlausibleTracker(settings)
    configure_services(app, settings, metadata_store, blob_store, notifier, tracker)
    app.state.retention.start()
    yield
    logger.info("Shutting down task scheduler...")
    app.state.retention.shutdown()
    await notifier.aclose()
    await tracker.aclose()
    await metadata_store.close()


# Create FastAPI app with lifespan
app = FastAPI(title="pastecdn", lifespan=lifespan)


@app.exception_handler(CDNError)
async def cdn_error_handler(request: Request, exc: CDNError):
    if isinstance(exc, StorageFailure) and exc.status_code >= 500:
        logger.error(f"Storage failure on {request.method} {request.url.path}: {exc.detail}")
    return PlainTextResponse(exc.detail, status_code=exc.status_code)


@app.exception_handler(HTTPException)
async def http_error_handler(request: Request, exc: HTTPException):
    return PlainTextResponse(str(exc.detail), status_code=exc.status_code)


def get_role(settings: Settings, admin_key: Optional[str]) -> Role:
    return Role.ADMIN if settings.verify_admin_password(admin_key) else Role.NORMAL


@app.get("/", response_class=PlainTextResponse)
async def index(request: Request):
    """Usage summary."""
    settings: Settings = request.app.state.settings
    limit = settings.limit_bytes(Role.NORMAL)
    lines = [
        f"pastecdn at {settings.make_url('')}",
        "",
        f"Upload:  curl -F \"file=@yourfile.png\" {settings.make_url('upload')}",
        f"Shorten: curl -F \"url=https://example.com\" {settings.make_url('short')}",
        "",
        f"Maximum file size: {humanize_bytes(limit) if limit is not None else 'unlimited'}",
        f"Blocked extensions: {', '.join(settings.blocked_extensions) or 'none'}",
        f"Blocked content types: {', '.join(settings.blocked_content_types) or 'none'}",
    ]
    if settings.retention_enabled:
        lines.append(
            f"Files are kept between {settings.retention_min_age} and {settings.retention_max_age} days depending on size"
        )
    return "\n".join(lines) + "\n"


@app.get("/_/health", response_class=PlainTextResponse)
async def health():
    return "OK"


@app.post("/upload", response_class=PlainTextResponse)
async def upload_file(
    request: Request,
    file: Optional[UploadFile] = File(None),
    x_admin_key: Optional[str] = Header(None),
):
    """Store an uploaded file and return its public address as plain text."""
    if file is None:
        raise MissingFieldError("file")
    role = get_role(request.app.state.settings, x_admin_key)
    logger.info(f"Receiving upload request for {file.filename!r} (role={role.value})")

    async def file_chunks():
        while chunk := await file.read(UPLOAD_CHUNK_SIZE):
            yield chunk

    return await request.app.state.admission.admit_stream(
        file_chunks(),
        file.filename,
        role,
        declared_size=getattr(file, "size", None),
        declared_content_type=file.content_type,
        client_ips=extract_client_ips(request.headers),
    )


@app.post("/short", response_class=PlainTextResponse)
async def shorten_url(
    request: Request,
    url: Optional[str] = Form(None),
    x_admin_key: Optional[str] = Header(None),
):
    """Register a short link and return its public address as plain text."""
    if url is None:
        raise MissingFieldError("url")
    role = get_role(request.app.state.settings, x_admin_key)
    return await request.app.state.admission.shorten(
        url, role, client_ips=extract_client_ips(request.headers)
    )


async def build_response(resolution: Resolution, method: str, id_path: str, attachment: bool = False) -> Response:
    if isinstance(resolution, Redirect):
        return RedirectResponse(resolution.target_url, status_code=307)
    if not isinstance(resolution, Content):
        raise NotFoundError(id_path)

    disposition = "inline" if not attachment and resolution.content_type.startswith(INLINE_PREFIXES) else "attachment"
    headers = {
        "content-length": str(resolution.size_bytes),
        "content-disposition": f'{disposition}; filename="{resolution.filename}"',
    }
    if method == "HEAD":
        await resolution.chunks.aclose()
        return Response(status_code=200, media_type=resolution.content_type, headers=headers)
    return StreamingResponse(resolution.chunks, media_type=resolution.content_type, headers=headers)


def track_pageview(request: Request, resolution: Resolution) -> None:
    tracker: Optional[PlausibleTracker] = getattr(request.app.state, "tracker", None)
    if tracker is None or request.method != "GET":
        return
    if isinstance(resolution, Redirect):
        kind = "short"
    elif isinstance(resolution, Content):
        kind = "code" if resolution.kind is Kind.TEXT else "file"
    else:
        return
    tracker.track(
        PageviewEvent(
            url=str(request.url),
            kind=kind,
            is_admin_upload=resolution.is_admin,
            client_ips=tuple(extract_client_ips(request.headers)),
            referrer=request.headers.get("referer"),
            user_agent=request.headers.get("user-agent"),
        )
    )


@app.api_route("/{id_path}", methods=["GET", "HEAD"])
async def file_reader(id_path: str, request: Request):
    """Stream a stored object, or redirect a short link."""
    logger.info(f"Receiving download request for {id_path}")
    resolution = await request.app.state.resolver.resolve(id_path)
    track_pageview(request, resolution)
    return await build_response(resolution, request.method, id_path)


@app.api_route("/{id_path}/raw", methods=["GET", "HEAD"])
async def file_reader_raw(id_path: str, request: Request):
    """Download a text object as an attachment."""
    resolution = await request.app.state.resolver.resolve_raw(id_path)
    track_pageview(request, resolution)
    return await build_response(resolution, request.method, id_path, attachment=True)


@app.delete("/{id_path}", response_class=PlainTextResponse)
async def delete_object(id_path: str, request: Request, x_admin_key: Optional[str] = Header(None)):
    """Admin-only delete of an object or short link."""
    if get_role(request.app.state.settings, x_admin_key) is not Role.ADMIN:
        raise HTTPException(status_code=403, detail="Admin key required")

    metadata_store = request.app.state.metadata_store
    identifier = strip_extension(id_path)
    record = await metadata_store.get(identifier)
    if isinstance(record, ObjectRecord):
        await remove_object(identifier, metadata_store, request.app.state.blob_store)
    elif isinstance(record, ShortLinkRecord):
        await metadata_store.delete(identifier)
    else:
        raise NotFoundError(id_path)

    logger.info(f"Successfully deleted {identifier}")
    return f"Deleted {identifier}"


if __name__ == "__main__":
    settings = Settings.from_env()
    logger.info("Starting pastecdn...")
    logger.info(f"Data directory: {settings.data_dir}")
    logger.info(f"Temporary directory: {settings.temp_dir}")
    uvicorn.run(app, host=settings.host, port=settings.port)
