# services/caption_api/app/dependencies.py
import asyncio
import logging
from typing import Optional

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from supabase import Client

from core.config import settings
from core.errors import AuthenticationError, ExternalServiceError
from core.gemini_client import GeminiVisionClient
from core.models import AuthContext
from core.storage import StorageProvider, SupabaseStorageProvider
from core.supabase_client import client_for, get_supabase_client

from .crud import FileRepository
from .upload_service import UploadService

logger = logging.getLogger("ICS_Core").getChild("CaptionAPI").getChild("Auth")

bearer_scheme = HTTPBearer(auto_error=False)


async def get_auth_context(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> AuthContext:
    """Verifies the bearer token with Supabase Auth and returns the caller's identity."""
    if not credentials or not credentials.credentials:
        raise AuthenticationError("No authentication token provided")
    token = credentials.credentials

    try:
        supabase = await get_supabase_client()
    except (ValueError, RuntimeError) as e:
        logger.error(f"Auth client unavailable: {e}")
        raise ExternalServiceError("Auth", "Authentication service unavailable") from e

    try:
        response = await asyncio.to_thread(supabase.auth.get_user, token)
    except Exception as e:
        logger.warning(f"Token verification failed: {e}")
        raise AuthenticationError("Invalid or expired token") from e

    user = getattr(response, "user", None)
    if user is None:
        raise AuthenticationError("Invalid or expired token")

    return AuthContext(
        user_id=str(user.id),
        email=user.email,
        email_confirmed=bool(getattr(user, "email_confirmed_at", None) or getattr(user, "confirmed_at", None)),
        token=token,
    )


def get_scoped_client(auth: AuthContext = Depends(get_auth_context)) -> Client:
    """One client per request, bound to the caller's token. FastAPI caches it for the request only."""
    return client_for(auth.token)


def get_vision_client(request: Request) -> GeminiVisionClient:
    client = getattr(request.app.state, "vision_client", None)
    if client is None:
        logger.error("Vision client dependency not met: client not available in application state.")
        raise ExternalServiceError("AI", "Vision client not ready")
    return client


def get_file_repository(client: Client = Depends(get_scoped_client)) -> FileRepository:
    return FileRepository(client, table=settings.FILES_TABLE)


def get_storage_provider(client: Client = Depends(get_scoped_client)) -> StorageProvider:
    return SupabaseStorageProvider(client, settings.storage_config())


def get_upload_service(
    storage_provider: StorageProvider = Depends(get_storage_provider),
    file_repository: FileRepository = Depends(get_file_repository),
    vision_client: GeminiVisionClient = Depends(get_vision_client),
) -> UploadService:
    return UploadService(
        storage_provider=storage_provider,
        vision_client=vision_client,
        file_repository=file_repository,
        config=settings.storage_config(),
        max_upload_size_mb=settings.MAX_UPLOAD_SIZE_MB,
        allowed_extensions=settings.ALLOWED_IMAGE_EXTENSIONS,
    )
