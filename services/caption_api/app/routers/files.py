# services/caption_api/app/routers/files.py
from fastapi import APIRouter, Body, Depends, Query
from fastapi.responses import JSONResponse, Response
from core.config import settings
from core.errors import InvalidRequestError, ServiceError
from core.models import (
    AnalyzeRequest, ApiResponse, AuthContext, BulkFileUpdateRequest,
    BulkIdsRequest, BulkRegenerateRequest, FileUpdateRequest,
)
from core.storage import StorageProvider
from core.utils import sanitize_filename
from ..crud import FileRepository
from ..dependencies import get_auth_context, get_file_repository, get_storage_provider, get_upload_service
from ..upload_service import UploadService
import datetime
import io
import logging
import math
import time
import zipfile
from collections import Counter
from typing import Any, Dict, Optional
from urllib.parse import quote

logger = logging.getLogger("ICS_Core").getChild("CaptionAPI").getChild("FilesRouter")

router = APIRouter()


def _pagination(page: int, per_page: int, total: int) -> Dict[str, Any]:
    total_pages = math.ceil(total / per_page) if per_page else 0
    return {
        "current_page": page,
        "per_page": per_page,
        "total_items": total,
        "total_pages": total_pages,
        "has_next_page": page < total_pages,
        "has_prev_page": page > 1,
        "next_page": page + 1 if page < total_pages else None,
        "prev_page": page - 1 if page > 1 else None,
    }


def _build_update(payload: FileUpdateRequest) -> Dict[str, Any]:
    """Validated column updates from a PATCH body."""
    if payload.filename is None and payload.description is None and payload.tags is None:
        raise InvalidRequestError("No updates provided")

    updates: Dict[str, Any] = {"updated_at": datetime.datetime.now(datetime.timezone.utc)}
    if payload.filename is not None:
        filename = payload.filename.strip()
        if not filename:
            raise InvalidRequestError("Filename cannot be empty")
        updates["filename"] = filename
    if payload.description is not None:
        updates["description"] = payload.description
    if payload.tags is not None:
        updates["tags"] = payload.tags
    return updates


def _archive_name(filename: str, used: set) -> str:
    """Flattens the name to a safe basename, then suffixes -1, -2, ... before the extension until unused."""
    filename = sanitize_filename(filename) or "file"
    candidate = filename
    counter = 1
    while candidate in used:
        stem, dot, ext = filename.rpartition(".")
        if dot and stem:
            candidate = f"{stem}-{counter}.{ext}"
        else:
            candidate = f"{filename}-{counter}"
        counter += 1
    used.add(candidate)
    return candidate


@router.get("", response_model=ApiResponse)
async def list_files(
    page: int = Query(1, ge=1),
    per_page: int = Query(20, ge=1, le=100),
    status: Optional[str] = None,
    sort_by: str = "uploaded_at",
    sort_order: str = "desc",
    auth: AuthContext = Depends(get_auth_context),
    repository: FileRepository = Depends(get_file_repository),
):
    files, total = await repository.find_by_user(
        auth.user_id, status=status, sort_by=sort_by, sort_order=sort_order, page=page, per_page=per_page
    )
    return ApiResponse(status="success", data={
        "files": [f.to_api() for f in files],
        "pagination": _pagination(page, per_page, total),
        "filters": {"status": status or "all", "sort_by": sort_by, "sort_order": sort_order},
        "summary": {
            "total_files": total,
            "page_count": len(files),
            "files_with_ai": sum(1 for f in files if f.has_ai_analysis()),
            "image_files": sum(1 for f in files if f.is_image()),
        },
    })


@router.get("/images", response_model=ApiResponse)
async def list_images(
    page: int = Query(1, ge=1),
    per_page: int = Query(20, ge=1, le=100),
    sort_by: str = "uploaded_at",
    sort_order: str = "desc",
    auth: AuthContext = Depends(get_auth_context),
    repository: FileRepository = Depends(get_file_repository),
):
    files, total = await repository.find_by_user(
        auth.user_id, sort_by=sort_by, sort_order=sort_order, page=page, per_page=per_page
    )
    images = [f for f in files if f.is_image()]
    return ApiResponse(status="success", data={
        "files": [f.to_api() for f in images],
        "pagination": _pagination(page, per_page, total),
        "summary": {
            "total_images": total,
            "page_count": len(images),
            "images_with_ai": sum(1 for f in images if f.has_ai_analysis()),
        },
    })


@router.get("/stats", response_model=ApiResponse)
async def get_stats(
    auth: AuthContext = Depends(get_auth_context),
    repository: FileRepository = Depends(get_file_repository),
):
    files, _ = await repository.find_by_user(auth.user_id)
    status_counts = Counter(str(f.status or "uploaded") for f in files)
    type_counts = Counter((f.mime_type or "unknown").split("/")[0] for f in files)
    total_bytes = sum(f.file_size or 0 for f in files)
    total_mb = round(total_bytes / (1024 * 1024), 2)
    total_gb = round(total_bytes / (1024 * 1024 * 1024), 2)

    return ApiResponse(status="success", data={
        "total_files": len(files),
        "files_with_ai_analysis": sum(1 for f in files if f.has_ai_analysis()),
        "status_distribution": dict(status_counts),
        "file_type_distribution": dict(type_counts),
        "storage_usage": {
            "total_bytes": total_bytes,
            "total_mb": total_mb,
            "total_gb": total_gb,
            "human_readable": f"{total_gb} GB" if total_gb > 1 else f"{total_mb} MB",
        },
        "timestamp": datetime.datetime.now(datetime.timezone.utc).isoformat(),
    })


@router.get("/search", response_model=ApiResponse)
async def search_files(
    q: Optional[str] = None,
    page: int = Query(1, ge=1),
    per_page: int = Query(20, ge=1, le=100),
    auth: AuthContext = Depends(get_auth_context),
    repository: FileRepository = Depends(get_file_repository),
):
    if not q or not q.strip():
        raise InvalidRequestError("Search query (q) parameter is required")

    matches = await repository.search(auth.user_id, q.strip())
    offset = (page - 1) * per_page
    return ApiResponse(status="success", data={
        "files": [f.to_api() for f in matches[offset:offset + per_page]],
        "search": {"query": q, "results_found": len(matches)},
        "pagination": _pagination(page, per_page, len(matches)),
    })


@router.post("/regenerate")
async def bulk_regenerate(
    payload: BulkRegenerateRequest = Body(...),
    auth: AuthContext = Depends(get_auth_context),
    upload_service: UploadService = Depends(get_upload_service),
):
    """Re-caption several files; partial success answers 207."""
    if not payload.ids:
        raise InvalidRequestError("Invalid or empty ids array")
    if len(payload.ids) > settings.MAX_BULK_REGENERATE:
        raise InvalidRequestError(f"Maximum {settings.MAX_BULK_REGENERATE} files can be regenerated at once")

    start_time = time.monotonic()
    bulk = await upload_service.bulk_reanalyze(payload.ids, auth.user_id, payload.tag_style)
    processing_time = round(time.monotonic() - start_time, 2)

    status_code = (207 if bulk.results else 400) if bulk.errors else 200
    body = ApiResponse(
        status="success" if bulk.results else "error",
        message=f"{len(bulk.results)} of {len(payload.ids)} files regenerated successfully",
        data={
            "regenerated": [outcome.file.to_api() for outcome in bulk.results],
            "errors": [error.model_dump(exclude_none=True) for error in bulk.errors],
            "total_regenerated": len(bulk.results),
            "total_failed": len(bulk.errors),
            "total_requested": len(payload.ids),
            "processing_time_seconds": processing_time,
        },
    )
    return JSONResponse(status_code=status_code, content=body.model_dump())


@router.post("/refresh-urls", response_model=ApiResponse)
async def refresh_urls(
    payload: BulkIdsRequest = Body(...),
    auth: AuthContext = Depends(get_auth_context),
    repository: FileRepository = Depends(get_file_repository),
    upload_service: UploadService = Depends(get_upload_service),
):
    if not payload.ids:
        raise InvalidRequestError("Invalid or empty ids array")

    files = []
    for file_id in payload.ids:
        try:
            files.append(await repository.find_by_id(file_id, auth.user_id))
        except ServiceError as e:
            logger.warning(f"[{file_id}] Skipping URL refresh: {e.message}")
    refreshed = await upload_service.refresh_file_urls(files, auth.user_id)
    return ApiResponse(
        status="success",
        message=f"{len(refreshed)} of {len(payload.ids)} URLs refreshed",
        data=[f.to_api() for f in refreshed],
    )


@router.post("/download")
async def bulk_download(
    payload: BulkIdsRequest = Body(...),
    auth: AuthContext = Depends(get_auth_context),
    repository: FileRepository = Depends(get_file_repository),
    storage_provider: StorageProvider = Depends(get_storage_provider),
):
    """Zip several files; files that cannot be fetched are listed in download-errors.txt."""
    if not payload.ids:
        raise InvalidRequestError("File IDs array is required")
    if len(payload.ids) > settings.MAX_BULK_DOWNLOAD:
        raise InvalidRequestError(f"Maximum {settings.MAX_BULK_DOWNLOAD} files allowed per download")

    files = []
    for file_id in payload.ids:
        try:
            files.append(await repository.find_by_id(file_id, auth.user_id))
        except ServiceError:
            continue
    if not files:
        raise InvalidRequestError("No valid files found to download")

    buffer = io.BytesIO()
    errors = []
    used_names: set = set()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED, compresslevel=9) as archive:
        for record in files:
            try:
                content = await storage_provider.download(record.file_path)
            except ServiceError as e:
                errors.append(f"- {record.filename}: {e.message}")
                continue
            archive.writestr(_archive_name(record.filename, used_names), content)

        if errors:
            summary = (
                f"Download Summary:\n\nSuccessful: {len(files) - len(errors)} files\n"
                f"Failed: {len(errors)} files\n\nErrors:\n" + "\n".join(errors)
            )
            archive.writestr("download-errors.txt", summary)

    zip_name = f"files-{datetime.date.today().isoformat()}.zip"
    return Response(
        content=buffer.getvalue(),
        media_type="application/zip",
        headers={"Content-Disposition": f'attachment; filename="{zip_name}"'},
    )


@router.patch("", response_model=ApiResponse)
async def bulk_update(
    payload: BulkFileUpdateRequest = Body(...),
    auth: AuthContext = Depends(get_auth_context),
    repository: FileRepository = Depends(get_file_repository),
):
    if not payload.files:
        raise InvalidRequestError("Invalid or empty files array")
    if len(payload.files) > settings.MAX_BULK_UPDATE:
        raise InvalidRequestError(f"Maximum {settings.MAX_BULK_UPDATE} files can be updated at once")

    updated, errors = [], []
    for item in payload.files:
        if not item.id:
            errors.append({"id": None, "error": "File ID is required"})
            continue
        try:
            record = await repository.update(item.id, auth.user_id, _build_update(item))
            updated.append(record.to_api())
        except ServiceError as e:
            errors.append({"id": item.id, "error": e.message})

    return ApiResponse(
        status="success" if updated else "error",
        message=f"{len(updated)} of {len(payload.files)} files updated",
        data={"updated": updated, "errors": errors},
    )


@router.delete("", response_model=ApiResponse)
async def bulk_delete(
    payload: BulkIdsRequest = Body(...),
    auth: AuthContext = Depends(get_auth_context),
    upload_service: UploadService = Depends(get_upload_service),
):
    if not payload.ids:
        raise InvalidRequestError("Invalid or empty ids array")
    if len(payload.ids) > settings.MAX_BULK_DELETE:
        raise InvalidRequestError(f"Maximum {settings.MAX_BULK_DELETE} files can be deleted at once")

    deleted_count = await upload_service.bulk_delete_files(payload.ids, auth.user_id)
    return ApiResponse(
        status="success",
        message=f"{deleted_count} files deleted successfully",
        data={"deleted_count": deleted_count, "requested_count": len(payload.ids)},
    )


@router.get("/{file_id}", response_model=ApiResponse)
async def get_file(
    file_id: str,
    auth: AuthContext = Depends(get_auth_context),
    repository: FileRepository = Depends(get_file_repository),
):
    record = await repository.find_by_id(file_id, auth.user_id)
    return ApiResponse(status="success", data=record.to_api())


@router.get("/{file_id}/download")
async def download_file(
    file_id: str,
    auth: AuthContext = Depends(get_auth_context),
    repository: FileRepository = Depends(get_file_repository),
    storage_provider: StorageProvider = Depends(get_storage_provider),
):
    record = await repository.find_by_id(file_id, auth.user_id)
    content = await storage_provider.download(record.file_path)
    return Response(
        content=content,
        media_type=record.mime_type or "application/octet-stream",
        headers={"Content-Disposition": f'attachment; filename="{quote(record.filename)}"'},
    )


@router.post("/{file_id}/regenerate", response_model=ApiResponse)
async def regenerate(
    file_id: str,
    payload: Optional[AnalyzeRequest] = Body(None),
    auth: AuthContext = Depends(get_auth_context),
    upload_service: UploadService = Depends(get_upload_service),
):
    tag_style = payload.tag_style if payload else "neutral"
    outcome = await upload_service.reanalyze(file_id, auth.user_id, tag_style)
    return ApiResponse(status="success", message="AI analysis regenerated successfully", data=outcome.file.to_api())


@router.post("/{file_id}/refresh-url", response_model=ApiResponse)
async def refresh_url(
    file_id: str,
    auth: AuthContext = Depends(get_auth_context),
    upload_service: UploadService = Depends(get_upload_service),
):
    record = await upload_service.refresh_file_url(file_id, auth.user_id)
    return ApiResponse(status="success", message="Signed URL refreshed", data=record.to_api())


@router.patch("/{file_id}", response_model=ApiResponse)
async def update_file(
    file_id: str,
    payload: FileUpdateRequest = Body(...),
    auth: AuthContext = Depends(get_auth_context),
    repository: FileRepository = Depends(get_file_repository),
):
    updates = _build_update(payload)
    await repository.find_by_id(file_id, auth.user_id)
    record = await repository.update(file_id, auth.user_id, updates)
    return ApiResponse(status="success", message="File metadata updated successfully", data=record.to_api())


@router.delete("/{file_id}", response_model=ApiResponse)
async def delete_file(
    file_id: str,
    auth: AuthContext = Depends(get_auth_context),
    upload_service: UploadService = Depends(get_upload_service),
):
    await upload_service.delete_file(file_id, auth.user_id)
    return ApiResponse(status="success", message="File deleted successfully", data={"id": file_id})
