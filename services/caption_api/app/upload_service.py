# services/caption_api/app/upload_service.py
"""
Upload and analysis orchestration.

Ordering for a new upload: bytes go to storage first, then the row is
inserted, then the vision model is asked for a caption, then the row is
updated. Nothing is compensated: an AI failure leaves the object and a
'failed' row behind, and a failed row insert leaves an orphaned object.
"""
import asyncio
import datetime
import logging
from typing import List, Optional

from core.config import StorageConfig, settings
from core.errors import AnalysisError, InvalidRequestError, ServiceError
from core.gemini_client import GeminiVisionClient, resolve_tag_style
from core.models import (
    BulkItemError, BulkOutcome, FileStatus, ImageAnalysis, IncomingFile,
    TagStyle, UploadedFileRecord, UploadOptions, UploadOutcome,
)
from core.storage import StorageProvider
from core.utils import generate_storage_path, validate_file_extension, validate_file_size

from .crud import FileRepository

logger = logging.getLogger("ICS_Core").getChild("CaptionAPI").getChild("UploadService")
security_logger = logging.getLogger("ICS_Core").getChild("Security")
audit_logger = logging.getLogger("ICS_Core").getChild("Audit")


def _now() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


class UploadService:
    def __init__(
        self,
        storage_provider: StorageProvider,
        vision_client: GeminiVisionClient,
        file_repository: FileRepository,
        config: StorageConfig,
        max_upload_size_mb: int = settings.MAX_UPLOAD_SIZE_MB,
        allowed_extensions: Optional[List[str]] = None,
    ):
        self.storage_provider = storage_provider
        self.vision_client = vision_client
        self.file_repository = file_repository
        self.config = config
        self.max_upload_size_mb = max_upload_size_mb
        self.allowed_extensions = allowed_extensions or settings.ALLOWED_IMAGE_EXTENSIONS

    def _url_expiry(self) -> datetime.datetime:
        return _now() + datetime.timedelta(seconds=self.config.signed_url_expiry)

    def _validate(self, incoming: IncomingFile, user_id: str):
        storage_path = generate_storage_path(incoming.original_name, user_id)

        if not (incoming.mime_type or "").startswith("image/"):
            security_logger.warning(f"[user:{user_id}] rejected_mime_type: '{incoming.mime_type}'")
            raise InvalidRequestError("Only image files are allowed", {"mime_type": incoming.mime_type})

        if not validate_file_extension(storage_path.extension, self.allowed_extensions):
            security_logger.warning(f"[user:{user_id}] invalid_file_extension: '{storage_path.extension}'")
            raise InvalidRequestError("Invalid file extension", {"extension": storage_path.extension})

        if not validate_file_size(incoming.size, self.max_upload_size_mb):
            security_logger.warning(f"[user:{user_id}] rejected_file_size: {incoming.size} bytes")
            raise InvalidRequestError(
                "File is empty or exceeds size limit",
                {"max_size": f"{self.max_upload_size_mb}MB", "size": incoming.size},
            )
        return storage_path

    async def upload_and_analyze(
        self,
        incoming: IncomingFile,
        user_id: str,
        tag_style: str | TagStyle = TagStyle.NEUTRAL,
        analyze: bool = True,
    ) -> UploadOutcome:
        """Stores one file, records it, and (for images) captions it."""
        style = resolve_tag_style(tag_style)
        storage_path = self._validate(incoming, user_id)
        job_prefix = f"[user:{user_id}]"
        security_logger.info(
            f"{job_prefix} file_upload_attempt: {storage_path.filename} "
            f"({incoming.size} bytes, {incoming.mime_type})"
        )

        stored = await self.storage_provider.upload(
            incoming.content,
            storage_path.path,
            UploadOptions(content_type=incoming.mime_type, cache_control=self.config.cache_control),
        )

        record = await self.file_repository.create(UploadedFileRecord(
            filename=incoming.original_name,
            file_path=stored.path,
            file_size=incoming.size,
            mime_type=incoming.mime_type,
            signed_url=stored.url,
            signed_url_expires_at=stored.expires_at or self._url_expiry(),
            user_id=user_id,
            status=FileStatus.PROCESSING if analyze else FileStatus.UPLOADED,
            uploaded_at=_now(),
        ))
        security_logger.info(f"{job_prefix} file_upload_success: file {record.id} at '{stored.path}'")

        if not analyze or not record.is_image():
            return UploadOutcome(file=record)

        try:
            analysis = await self.vision_client.analyze_image(stored.url, style)
        except AnalysisError as e:
            logger.error(f"[{record.id}] AI analysis failed after upload; object kept at '{stored.path}': {e.message}")
            failed = await self.file_repository.update(record.id, user_id, {
                "status": FileStatus.FAILED,
                "updated_at": _now(),
            })
            return UploadOutcome(file=failed, analysis_error=e.message)

        completed = await self.file_repository.update(record.id, user_id, {
            "description": analysis.description,
            "tags": analysis.tags,
            "tag_style": style,
            "status": FileStatus.COMPLETED,
            "updated_at": _now(),
        })
        return UploadOutcome(file=completed, analysis=analysis)

    async def bulk_upload_and_analyze(
        self,
        files: List[IncomingFile],
        user_id: str,
        tag_style: str | TagStyle = TagStyle.NEUTRAL,
    ) -> BulkOutcome:
        """Runs each file independently; one failure never rolls back the others."""

        async def process(index: int, incoming: IncomingFile):
            try:
                return await self.upload_and_analyze(incoming, user_id, tag_style, analyze=True)
            except ServiceError as e:
                logger.error(f"[user:{user_id}] Bulk upload item {index} ('{incoming.original_name}') failed: {e.message}")
                return BulkItemError(filename=incoming.original_name, error=e.message)
            except Exception as e:
                logger.error(f"[user:{user_id}] Bulk upload item {index} ('{incoming.original_name}') failed unexpectedly: {e}", exc_info=True)
                return BulkItemError(filename=incoming.original_name, error=str(e))

        outcomes = await asyncio.gather(*(process(i, f) for i, f in enumerate(files)))
        bulk = BulkOutcome()
        for outcome in outcomes:
            if isinstance(outcome, BulkItemError):
                bulk.errors.append(outcome)
            else:
                bulk.results.append(outcome)
        logger.info(f"[user:{user_id}] Bulk upload finished: {len(bulk.results)} ok, {len(bulk.errors)} failed.")
        return bulk

    async def reanalyze(
        self,
        file_id: str,
        user_id: str,
        tag_style: str | TagStyle = TagStyle.NEUTRAL,
    ) -> UploadOutcome:
        """
        Captions an existing file again.

        The stored URL may have expired, so a fresh signed URL is issued first
        and persisted together with the new analysis.
        """
        style = resolve_tag_style(tag_style)
        record = await self.file_repository.find_by_id(file_id, user_id)
        if not record.is_image():
            raise InvalidRequestError("File is not an image")

        audit_logger.info(f"[user:{user_id}] ai_analysis_requested: file {file_id}")
        fresh_url = await self.storage_provider.url_for(record.file_path)

        try:
            analysis: ImageAnalysis = await self.vision_client.analyze_image(fresh_url, style)
        except AnalysisError as e:
            await self.file_repository.update(file_id, user_id, {
                "status": FileStatus.FAILED,
                "updated_at": _now(),
            })
            logger.error(f"[{file_id}] AI analysis failed: {e.message}")
            raise

        updated = await self.file_repository.update(file_id, user_id, {
            "description": analysis.description,
            "tags": analysis.tags,
            "tag_style": style,
            "signed_url": fresh_url,
            "signed_url_expires_at": self._url_expiry(),
            "status": FileStatus.COMPLETED,
            "updated_at": _now(),
        })
        audit_logger.info(f"[user:{user_id}] ai_analysis_success: file {file_id}")
        return UploadOutcome(file=updated, analysis=analysis)

    async def bulk_reanalyze(
        self,
        file_ids: List[str],
        user_id: str,
        tag_style: str | TagStyle = TagStyle.NEUTRAL,
    ) -> BulkOutcome:

        async def process(file_id: str):
            try:
                return await self.reanalyze(file_id, user_id, tag_style)
            except ServiceError as e:
                return BulkItemError(id=file_id, error=e.message)
            except Exception as e:
                logger.error(f"[{file_id}] Bulk re-analysis failed unexpectedly: {e}", exc_info=True)
                return BulkItemError(id=file_id, error=str(e))

        outcomes = await asyncio.gather(*(process(file_id) for file_id in file_ids))
        bulk = BulkOutcome()
        for outcome in outcomes:
            if isinstance(outcome, BulkItemError):
                bulk.errors.append(outcome)
            else:
                bulk.results.append(outcome)
        return bulk

    async def refresh_file_url(self, file_id: str, user_id: str) -> UploadedFileRecord:
        record = await self.file_repository.find_by_id(file_id, user_id)
        fresh_url = await self.storage_provider.url_for(record.file_path)
        return await self.file_repository.update(file_id, user_id, {
            "signed_url": fresh_url,
            "signed_url_expires_at": self._url_expiry(),
            "updated_at": _now(),
        })

    async def refresh_file_urls(self, files: List[UploadedFileRecord], user_id: str) -> List[UploadedFileRecord]:
        """Refreshes each file's URL; files whose refresh fails are left out."""
        refreshed = []
        for record in files:
            try:
                fresh_url = await self.storage_provider.url_for(record.file_path)
                refreshed.append(await self.file_repository.update(record.id, user_id, {
                    "signed_url": fresh_url,
                    "signed_url_expires_at": self._url_expiry(),
                    "updated_at": _now(),
                }))
            except ServiceError as e:
                logger.error(f"[{record.id}] Failed to refresh URL: {e.message}")
        return refreshed

    async def delete_file(self, file_id: str, user_id: str) -> bool:
        """Removes the object, then the row. A failure in between is not reconciled."""
        record = await self.file_repository.find_by_id(file_id, user_id)
        await self.storage_provider.delete(record.file_path)
        await self.file_repository.delete(file_id, user_id)
        audit_logger.info(f"[user:{user_id}] file_deleted: file {file_id} ('{record.filename}')")
        return True

    async def bulk_delete_files(self, file_ids: List[str], user_id: str) -> int:
        async def lookup(file_id: str) -> Optional[UploadedFileRecord]:
            try:
                return await self.file_repository.find_by_id(file_id, user_id)
            except ServiceError:
                return None

        found = await asyncio.gather(*(lookup(file_id) for file_id in file_ids))
        valid = [record for record in found if record is not None]
        if not valid:
            raise InvalidRequestError("No valid files to delete")

        await self.storage_provider.delete_many([record.file_path for record in valid])
        await self.file_repository.bulk_delete([record.id for record in valid], user_id)
        audit_logger.info(f"[user:{user_id}] bulk_delete: {len(valid)} files")
        return len(valid)
