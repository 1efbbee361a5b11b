# core/storage.py
"""
Core Storage Utilities.

`StorageProvider` is the capability interface the upload service depends on:
upload, delete (single/bulk), existence check, signed URL issuance and
download for a binary object keyed by path. `SupabaseStorageProvider` backs it
with a Supabase Storage bucket reached through a request-scoped client.

The bucket is private, so every URL handed out is a signed, time-limited URL.
Callers must not assume it is permanent; `url_for` issues a fresh one.
"""
import abc
import asyncio
import datetime
import logging
from typing import List, Optional

from supabase import Client

from core.config import StorageConfig
from core.errors import StorageError
from core.models import StoredObject, UploadOptions
from core.utils import split_path

logger = logging.getLogger("ICS_Core").getChild("Storage")


class StorageProvider(abc.ABC):
    """Storage backend contract used by the upload service."""

    @abc.abstractmethod
    async def upload(self, data: bytes, path: str, options: Optional[UploadOptions] = None) -> StoredObject:
        """Stores bytes at `path` and returns the path with a signed URL."""

    @abc.abstractmethod
    async def delete(self, path: str) -> bool:
        ...

    @abc.abstractmethod
    async def delete_many(self, paths: List[str]) -> bool:
        ...

    @abc.abstractmethod
    async def url_for(self, path: str) -> str:
        """Issues a fresh signed URL for an existing object."""

    @abc.abstractmethod
    async def exists(self, path: str) -> bool:
        ...

    @abc.abstractmethod
    async def download(self, path: str) -> bytes:
        ...


class SupabaseStorageProvider(StorageProvider):
    def __init__(self, client: Client, config: StorageConfig):
        self.client = client
        self.config = config

    def _bucket(self):
        return self.client.storage.from_(self.config.bucket)

    def url_expiry(self, issued_at: Optional[datetime.datetime] = None) -> datetime.datetime:
        issued_at = issued_at or datetime.datetime.now(datetime.timezone.utc)
        return issued_at + datetime.timedelta(seconds=self.config.signed_url_expiry)

    async def _create_signed_url(self, path: str) -> str:
        def storage_call():
            return self._bucket().create_signed_url(path, self.config.signed_url_expiry)

        response = await asyncio.to_thread(storage_call)
        # storage3 has used both key spellings across releases
        signed_url = (response or {}).get("signedURL") or (response or {}).get("signedUrl")
        if not signed_url:
            raise StorageError(f"Signed URL creation returned no URL for '{path}'")
        return signed_url

    async def upload(self, data: bytes, path: str, options: Optional[UploadOptions] = None) -> StoredObject:
        options = options or UploadOptions()
        file_options = {
            "content-type": options.content_type,
            "cache-control": options.cache_control or self.config.cache_control,
            "upsert": "true" if options.upsert else "false",
        }
        logger.info(f"Uploading {len(data)} bytes to bucket '{self.config.bucket}' at '{path}'.")

        def storage_call():
            return self._bucket().upload(path=path, file=data, file_options=file_options)

        try:
            response = await asyncio.to_thread(storage_call)
            stored_path = getattr(response, "path", None) or path
            signed_url = await self._create_signed_url(stored_path)
        except StorageError:
            raise
        except Exception as e:
            logger.error(f"Storage upload failed for '{path}': {e}", exc_info=False)
            raise StorageError(f"Storage upload failed: {e}") from e

        logger.debug(f"Upload of '{stored_path}' complete, signed URL issued.")
        return StoredObject(path=stored_path, url=signed_url, expires_at=self.url_expiry())

    async def delete(self, path: str) -> bool:
        def storage_call():
            return self._bucket().remove([path])

        try:
            await asyncio.to_thread(storage_call)
        except Exception as e:
            logger.error(f"Storage delete failed for '{path}': {e}", exc_info=False)
            raise StorageError(f"Storage delete failed: {e}") from e
        logger.info(f"Deleted '{path}' from bucket '{self.config.bucket}'.")
        return True

    async def delete_many(self, paths: List[str]) -> bool:
        if not paths:
            logger.debug("Bulk delete called with no paths; nothing to do.")
            return True

        def storage_call():
            return self._bucket().remove(list(paths))

        try:
            await asyncio.to_thread(storage_call)
        except Exception as e:
            logger.error(f"Bulk storage delete of {len(paths)} objects failed: {e}", exc_info=False)
            raise StorageError(f"Bulk storage delete failed: {e}") from e
        logger.info(f"Deleted {len(paths)} objects from bucket '{self.config.bucket}'.")
        return True

    async def url_for(self, path: str) -> str:
        try:
            return await self._create_signed_url(path)
        except StorageError:
            raise
        except Exception as e:
            logger.error(f"Signed URL creation failed for '{path}': {e}", exc_info=False)
            raise StorageError(f"Signed URL creation failed: {e}") from e

    async def exists(self, path: str) -> bool:
        """
        Lists the containing directory and checks for the filename.

        Any fault yields False, so False means "absent or could not check".
        """
        directory, filename = split_path(path)

        def storage_call():
            return self._bucket().list(directory)

        try:
            entries = await asyncio.to_thread(storage_call)
            return any(entry.get("name") == filename for entry in entries or [])
        except Exception as e:
            logger.warning(f"Existence check for '{path}' failed, reporting absent: {e}")
            return False

    async def download(self, path: str) -> bytes:
        def storage_call():
            return self._bucket().download(path)

        try:
            return await asyncio.to_thread(storage_call)
        except Exception as e:
            logger.error(f"Storage download failed for '{path}': {e}", exc_info=False)
            raise StorageError(f"Storage download failed: {e}") from e
