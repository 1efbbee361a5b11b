# services/caption_api/app/main.py
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from core.config import settings
from core.errors import ServiceError
from core.gemini_client import GeminiVisionClient
from core.models import ApiResponse
import httpx
import logging
from contextlib import asynccontextmanager

# Use logger configured in core.config
logger = logging.getLogger("ICS_Core").getChild("CaptionAPI")


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup: shared HTTP client for image fetches and the vision client
    logger.info("Caption API lifespan startup: Initializing HTTPX and Gemini clients.")
    try:
        app.state.http_client = httpx.AsyncClient(timeout=settings.IMAGE_FETCH_TIMEOUT, follow_redirects=True)
    except Exception as e:
        logger.error(f"Failed to initialize HTTPX client during startup: {e}", exc_info=True)
        app.state.http_client = None
    app.state.vision_client = GeminiVisionClient(
        api_key=settings.GEMINI_API_KEY,
        model_name=settings.GEMINI_VISION_MODEL,
        http_client=app.state.http_client,
        fetch_timeout=settings.IMAGE_FETCH_TIMEOUT,
    )

    yield # Application runs here

    logger.info("Caption API lifespan shutdown: Cleaning up resources.")
    if getattr(app.state, 'http_client', None):
        await app.state.http_client.aclose()
        app.state.http_client = None
        logger.info("HTTPX Client closed.")
    else:
        logger.warning("HTTPX Client was not available in app.state during shutdown.")
    app.state.vision_client = None


app = FastAPI(
    title="Image Caption API",
    description="Uploads images to private storage, captions them with Gemini and keeps per-user records.",
    version="1.0.0",
    lifespan=lifespan
)


# --- Error Handling ---
@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError):
    log = logger.warning if exc.status_code < 500 else logger.error
    log(f"{request.method} {request.url.path} -> {exc.status_code} {type(exc).__name__}: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content=ApiResponse(status="error", message=exc.message, data=exc.details).model_dump(),
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content=ApiResponse(status="error", message="Internal server error").model_dump(),
    )


# --- Health Check ---
@app.get("/health", response_model=ApiResponse, tags=["Meta"])
async def health_check(request: Request):
    vision_client = getattr(request.app.state, 'vision_client', None)
    vision_status = "configured" if vision_client is not None and vision_client.configured else "not_configured"
    storage_status = "configured" if settings.SUPABASE_URL and settings.SUPABASE_KEY else "not_configured"
    return ApiResponse(
        status="success",
        message="Caption API is running",
        data={"vision": vision_status, "supabase": storage_status, "bucket": settings.STORAGE_BUCKET},
    )


# --- Routing ---
# Import routers AFTER app is defined
from .routers import files, uploads

app.include_router(uploads.router, prefix="/upload", tags=["Upload"])
app.include_router(files.router, prefix="/files", tags=["Files"])


@app.get("/", response_model=ApiResponse, tags=["Meta"])
async def read_root():
    return ApiResponse(status="success", message="Welcome to the Image Caption API")
