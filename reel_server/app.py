import asyncio
import base64
import binascii
import logging
from contextlib import asynccontextmanager
from typing import Callable

from fastapi import APIRouter, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import FileResponse, JSONResponse

from .cleanup import CleanupScheduler
from .config import Settings
from .engine import Engine
from .errors import EngineNotFoundError, ReelServerError, ValidationError
from .fetcher import Fetcher
from .fonts import FontCache
from .models import ProbeRequest, ProcessRequest, UploadRequest
from .orchestrator import Orchestrator
from .probe import Prober
from .uploads import UploadStore

logger = logging.getLogger(__name__)

router = APIRouter()


class JobFileResponse(FileResponse):
    """FileResponse that always runs ``on_close`` once sending stops, even if
    the client goes away mid-stream."""

    def __init__(self, path, *, on_close: Callable[[], None], **kwargs):
        super().__init__(path, **kwargs)
        self.on_close = on_close

    async def __call__(self, scope, receive, send):
        try:
            await super().__call__(scope, receive, send)
        finally:
            self.on_close()


async def handle_service_error(request: Request, exc: ReelServerError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


async def handle_request_validation_error(request: Request, exc: RequestValidationError):
    """Malformed bodies get the same 400 ``{error}`` shape as other rejections."""
    errors = exc.errors()
    message = "Invalid request body"
    if errors:
        first = errors[0]
        loc = ".".join(str(x) for x in first.get("loc", ()) if x != "body")
        msg = first.get("msg", "invalid value")
        message = f"{loc}: {msg}" if loc else msg
    err = ValidationError(message)
    return JSONResponse(status_code=err.status_code, content=err.to_payload())


# ----------------- API endpoints -----------------

@router.get("/health")
def health(request: Request):
    state = request.app.state
    try:
        version = state.engine.version()
    except EngineNotFoundError:
        return JSONResponse(status_code=500, content={"status": "error", "message": "FFmpeg not found"})
    return {
        "status": "ok",
        "engine_version": version,
        "cached_fonts": state.fonts.cached_names(),
        "active_jobs": state.orchestrator.slots.active,
        "max_jobs": state.orchestrator.slots.limit,
    }


@router.get("/fonts")
def list_fonts(request: Request):
    fonts = request.app.state.fonts
    return {"fonts": fonts.list(), "default": fonts.default_font}


@router.post("/upload")
async def upload(req: UploadRequest, request: Request):
    if not req.data:
        raise ValidationError('Missing "data" (base64 encoded file)')
    loop = asyncio.get_event_loop()
    try:
        payload = await loop.run_in_executor(None, base64.b64decode, req.data)
    except (binascii.Error, ValueError) as e:
        raise ValidationError('"data" is not valid base64') from e

    store = request.app.state.uploads
    asset = store.add(await loop.run_in_executor(None, store.write, payload, req.filename))

    proto = request.headers.get("x-forwarded-proto") or request.url.scheme
    host = request.headers.get("x-forwarded-host") or request.headers.get("host") or request.url.netloc
    return {
        "id": asset.id,
        "filename": asset.filename,
        "url": f"{proto}://{host}/files/{asset.filename}",
        "size_kb": asset.size_kb,
        "expires_in": store.expires_in,
    }


@router.get("/files/{filename}")
def serve_file(filename: str, request: Request):
    path = request.app.state.uploads.resolve(filename)
    return FileResponse(path)


@router.post("/process")
async def process(req: ProcessRequest, request: Request):
    orchestrator: Orchestrator = request.app.state.orchestrator
    audio = orchestrator.validate(req)
    job = orchestrator.admit()
    result = await orchestrator.render(job, req, audio)
    return JobFileResponse(
        result.path,
        media_type="video/mp4",
        filename=f"output_{job.id}.mp4",
        headers={"X-Video-Duration": f"{result.duration:.2f}"},
        on_close=lambda: orchestrator.finish(job),
    )


@router.post("/probe")
async def probe(req: ProbeRequest, request: Request):
    try:
        return await request.app.state.orchestrator.probe_url(str(req.url))
    except ReelServerError:
        raise
    except Exception as e:
        logger.exception("probe failed")
        return JSONResponse(status_code=500, content={"error": str(e)})


# ----------------- app factory -----------------

def create_app(settings: Settings = None, *, fetcher=None, engine=None, prober=None) -> FastAPI:
    settings = settings or Settings.from_env()
    settings.ensure_dirs()

    fetcher = fetcher or Fetcher(timeout=settings.fetch_timeout, max_redirects=settings.max_redirects)
    engine = engine or Engine(settings.ffmpeg_path, timeout=settings.engine_timeout)
    prober = prober or Prober(settings.ffprobe_path, timeout=settings.probe_timeout)
    cleanup = CleanupScheduler(settings.cleanup_delay)
    fonts = FontCache(settings.font_cache_dir, settings.default_font, fetcher)
    uploads = UploadStore(settings.upload_dir, settings.upload_retention, cleanup)
    orchestrator = Orchestrator(settings, fetcher, engine, prober, fonts, cleanup)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Endpoints: GET /health, GET /fonts, POST /process, POST /probe, POST /upload, GET /files/:id")
        logger.info("Concurrency limit: %d jobs", settings.max_jobs)
        yield
        await cleanup.run_now()

    app = FastAPI(title="Reel render server", lifespan=lifespan)
    app.state.settings = settings
    app.state.engine = engine
    app.state.prober = prober
    app.state.cleanup = cleanup
    app.state.fonts = fonts
    app.state.uploads = uploads
    app.state.orchestrator = orchestrator
    app.add_exception_handler(ReelServerError, handle_service_error)
    app.add_exception_handler(RequestValidationError, handle_request_validation_error)
    app.include_router(router)
    return app
