# services/caption_api/app/crud.py
import asyncio
import datetime
from enum import Enum
from core.config import settings, logger as core_logger
from core.errors import AuthorizationError, DatabaseError, RecordNotFoundError
from core.models import UploadedFileRecord
from typing import Any, Dict, List, Optional, Tuple
from supabase import Client, PostgrestAPIError
from postgrest import APIResponse

logger = core_logger.getChild("CaptionAPI").getChild("CRUD")

ID_COLUMN = "id"
OWNER_COLUMN = "user_id"
SORTABLE_COLUMNS = {"uploaded_at", "updated_at", "filename", "file_size", "status"}
RLS_VIOLATION_CODE = "42501"


def _translate_db_error(e: PostgrestAPIError, job_prefix: str, action: str) -> Exception:
    """RLS rejections become AuthorizationError, anything else DatabaseError."""
    message = e.message or str(e)
    if e.code == RLS_VIOLATION_CODE or "row-level security" in message.lower():
        logger.warning(f"{job_prefix} RLS rejected {action}: {message}")
        return AuthorizationError(f"Not allowed to {action}")
    logger.error(f"{job_prefix} Supabase API error during {action}: {message} (Code: {e.code}, Details: {e.details})", exc_info=False)
    return DatabaseError(f"Database error during {action}: {message}")


def _serialize(updates: Dict[str, Any]) -> Dict[str, Any]:
    serialized = {}
    for key, value in updates.items():
        if isinstance(value, datetime.datetime):
            value = value.isoformat()
        elif isinstance(value, Enum):
            value = value.value
        serialized[key] = value
    return serialized


class FileRepository:
    """
    Database access for the uploaded_files table.

    Always built around a request-scoped client, so every query runs under the
    caller's RLS identity. The explicit owner filter mirrors the policies.
    """

    def __init__(self, client: Client, table: str = settings.FILES_TABLE):
        self.client = client
        self.table = table

    async def _execute(self, build_query, job_prefix: str, action: str) -> APIResponse:
        try:
            return await asyncio.to_thread(lambda: build_query().execute())
        except PostgrestAPIError as e:
            raise _translate_db_error(e, job_prefix, action) from e

    async def create(self, record: UploadedFileRecord) -> UploadedFileRecord:
        job_prefix = f"[user:{record.user_id}]"
        row = record.model_dump(mode="json", exclude_none=True)
        logger.debug(f"{job_prefix} Inserting file record for '{record.file_path}'.")

        response = await self._execute(
            lambda: self.client.table(self.table).insert(row),
            job_prefix, "create file record",
        )
        if not response.data:
            logger.error(f"{job_prefix} Insert returned no data for '{record.file_path}'.")
            raise DatabaseError("Failed to save file metadata to database: no record created")
        created = UploadedFileRecord(**response.data[0])
        logger.info(f"{job_prefix} Created file record {created.id}.")
        return created

    async def find_by_id(self, file_id: str, user_id: str) -> UploadedFileRecord:
        """Returns the caller's row or raises RecordNotFoundError."""
        job_prefix = f"[{file_id}]"
        response = await self._execute(
            lambda: self.client.table(self.table)
                .select("*")
                .eq(ID_COLUMN, file_id)
                .eq(OWNER_COLUMN, user_id)
                .limit(1),
            job_prefix, "read file record",
        )
        if not response.data:
            logger.warning(f"{job_prefix} File not visible to user {user_id}.")
            raise RecordNotFoundError()

        record = UploadedFileRecord(**response.data[0])
        if record.user_id != user_id:
            # Only reachable when policies are looser than the owner filter
            raise AuthorizationError("File belongs to another user")
        return record

    async def find_by_user(
        self,
        user_id: str,
        status: Optional[str] = None,
        sort_by: str = "uploaded_at",
        sort_order: str = "desc",
        page: Optional[int] = None,
        per_page: Optional[int] = None,
    ) -> Tuple[List[UploadedFileRecord], int]:
        job_prefix = f"[user:{user_id}]"
        if sort_by not in SORTABLE_COLUMNS:
            sort_by = "uploaded_at"
        descending = sort_order.lower() != "asc"

        def build_query():
            query = self.client.table(self.table)\
                .select("*", count="exact")\
                .eq(OWNER_COLUMN, user_id)
            if status:
                query = query.eq("status", status)
            query = query.order(sort_by, desc=descending)
            if page and per_page:
                offset = (page - 1) * per_page
                query = query.range(offset, offset + per_page - 1)
            return query

        response = await self._execute(build_query, job_prefix, "list files")
        files = [UploadedFileRecord(**row) for row in response.data or []]
        total = response.count if response.count is not None else len(files)
        logger.debug(f"{job_prefix} Listed {len(files)} of {total} files.")
        return files, total

    async def update(self, file_id: str, user_id: str, updates: Dict[str, Any]) -> UploadedFileRecord:
        job_prefix = f"[{file_id}]"
        payload = _serialize(updates)
        response = await self._execute(
            lambda: self.client.table(self.table)
                .update(payload)
                .eq(ID_COLUMN, file_id)
                .eq(OWNER_COLUMN, user_id),
            job_prefix, "update file record",
        )
        if not response.data:
            logger.warning(f"{job_prefix} Update matched no rows visible to user {user_id}.")
            raise RecordNotFoundError()
        logger.debug(f"{job_prefix} Updated fields: {sorted(payload)}")
        return UploadedFileRecord(**response.data[0])

    async def delete(self, file_id: str, user_id: str) -> bool:
        job_prefix = f"[{file_id}]"
        await self._execute(
            lambda: self.client.table(self.table)
                .delete()
                .eq(ID_COLUMN, file_id)
                .eq(OWNER_COLUMN, user_id),
            job_prefix, "delete file record",
        )
        logger.info(f"{job_prefix} Deleted file record.")
        return True

    async def bulk_delete(self, file_ids: List[str], user_id: str) -> bool:
        if not file_ids:
            return True
        job_prefix = f"[user:{user_id}]"
        await self._execute(
            lambda: self.client.table(self.table)
                .delete()
                .in_(ID_COLUMN, list(file_ids))
                .eq(OWNER_COLUMN, user_id),
            job_prefix, "delete file records",
        )
        logger.info(f"{job_prefix} Deleted {len(file_ids)} file records.")
        return True

    async def search(self, user_id: str, search_query: str) -> List[UploadedFileRecord]:
        """Case-insensitive match over filename, description and tags."""
        job_prefix = f"[user:{user_id}]"
        response = await self._execute(
            lambda: self.client.table(self.table)
                .select("*")
                .eq(OWNER_COLUMN, user_id),
            job_prefix, "search files",
        )
        needle = search_query.lower()
        matches = []
        for row in response.data or []:
            record = UploadedFileRecord(**row)
            if (needle in (record.filename or "").lower()
                    or needle in (record.description or "").lower()
                    or any(needle in tag.lower() for tag in record.tags)):
                matches.append(record)
        logger.debug(f"{job_prefix} Search '{search_query}' matched {len(matches)} files.")
        return matches
