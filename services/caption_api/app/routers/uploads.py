# services/caption_api/app/routers/uploads.py
from fastapi import APIRouter, Body, Depends, File, Form, UploadFile
from fastapi.responses import JSONResponse
from core.config import settings
from core.errors import InvalidRequestError
from core.models import AnalyzeRequest, ApiResponse, AuthContext, IncomingFile
from ..dependencies import get_auth_context, get_upload_service
from ..upload_service import UploadService
import logging
import time
from typing import List, Optional

logger = logging.getLogger("ICS_Core").getChild("CaptionAPI").getChild("UploadRouter")
security_logger = logging.getLogger("ICS_Core").getChild("Security")

router = APIRouter()


def _too_large(upload: UploadFile, max_bytes: int) -> InvalidRequestError:
    security_logger.warning(f"rejected_file_size: '{upload.filename}' exceeds {max_bytes} bytes")
    return InvalidRequestError(
        "File is empty or exceeds size limit",
        {"max_size": f"{settings.MAX_UPLOAD_SIZE_MB}MB", "filename": upload.filename},
    )


async def _to_incoming(upload: UploadFile) -> IncomingFile:
    """Reads at most one byte past the size limit, so oversized parts are never buffered whole."""
    max_bytes = settings.MAX_UPLOAD_SIZE_MB * 1024 * 1024
    if upload.size is not None and upload.size > max_bytes:
        raise _too_large(upload, max_bytes)

    content = await upload.read(max_bytes + 1)
    if len(content) > max_bytes:
        raise _too_large(upload, max_bytes)

    return IncomingFile(
        original_name=upload.filename or "upload",
        content=content,
        mime_type=upload.content_type or "application/octet-stream",
    )


@router.post("/image", response_model=ApiResponse)
async def upload_image(
    image: Optional[UploadFile] = File(None),
    tag_style: str = Form("neutral"),
    auth: AuthContext = Depends(get_auth_context),
    upload_service: UploadService = Depends(get_upload_service),
):
    """Store an image without analysing it."""
    if image is None:
        raise InvalidRequestError("No image file provided")

    outcome = await upload_service.upload_and_analyze(
        await _to_incoming(image), auth.user_id, tag_style, analyze=False
    )
    return ApiResponse(status="success", message="Image uploaded successfully", data=outcome.file.to_api())


@router.post("/upload-and-analyze", response_model=ApiResponse)
async def upload_and_analyze(
    image: Optional[UploadFile] = File(None),
    tag_style: str = Form("neutral"),
    auth: AuthContext = Depends(get_auth_context),
    upload_service: UploadService = Depends(get_upload_service),
):
    """Store an image and caption it straight away."""
    if image is None:
        raise InvalidRequestError("No image file provided")

    logger.info(f"[user:{auth.user_id}] Upload-and-analyze request for '{image.filename}' (style: {tag_style})")
    outcome = await upload_service.upload_and_analyze(
        await _to_incoming(image), auth.user_id, tag_style, analyze=True
    )
    message = "Image uploaded and analyzed successfully" if outcome.analysis_succeeded \
        else "Image uploaded but AI analysis failed"
    return ApiResponse(status="success", message=message, data=outcome.to_api())


@router.post("/bulk-upload-and-analyze")
async def bulk_upload_and_analyze(
    images: Optional[List[UploadFile]] = File(None),
    tag_style: str = Form("neutral"),
    auth: AuthContext = Depends(get_auth_context),
    upload_service: UploadService = Depends(get_upload_service),
):
    """Upload and caption several images; each one succeeds or fails on its own."""
    if not images:
        raise InvalidRequestError("No image files provided")
    if len(images) > settings.MAX_BULK_UPLOAD:
        raise InvalidRequestError(f"Maximum {settings.MAX_BULK_UPLOAD} images allowed per request")

    start_time = time.monotonic()
    incoming = [await _to_incoming(image) for image in images]
    bulk = await upload_service.bulk_upload_and_analyze(incoming, auth.user_id, tag_style)
    processing_time = round(time.monotonic() - start_time, 2)

    status_code = (207 if bulk.results else 500) if bulk.errors else 200
    body = ApiResponse(
        status="success" if bulk.results else "error",
        message=f"Processed {len(bulk.results)} of {len(images)} images",
        data={
            "successful_uploads": len(bulk.results),
            "total_attempts": len(images),
            "processing_time_seconds": processing_time,
            "results": [outcome.to_api() for outcome in bulk.results],
            "errors": [error.model_dump(exclude_none=True) for error in bulk.errors],
        },
    )
    return JSONResponse(status_code=status_code, content=body.model_dump())


@router.post("/analyze/{file_id}", response_model=ApiResponse)
async def analyze_file(
    file_id: str,
    payload: Optional[AnalyzeRequest] = Body(None),
    auth: AuthContext = Depends(get_auth_context),
    upload_service: UploadService = Depends(get_upload_service),
):
    """Caption an already uploaded image again, with a freshly signed URL."""
    tag_style = payload.tag_style if payload else "neutral"
    outcome = await upload_service.reanalyze(file_id, auth.user_id, tag_style)
    return ApiResponse(status="success", message="Image analyzed successfully", data=outcome.to_api())
