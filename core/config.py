# core/config.py
import os
from pydantic import BaseModel
from pydantic_settings import BaseSettings
from dotenv import load_dotenv
import logging
from typing import List

# Load variables from .env file located in the project root directory
dotenv_path = os.path.join(os.path.dirname(os.path.dirname(__file__)), '.env')
if os.path.exists(dotenv_path):
    load_dotenv(dotenv_path=dotenv_path)
else:
    load_dotenv() # Fallback


class StorageConfig(BaseModel):
    """Immutable storage settings handed to the storage provider and the upload service."""
    bucket: str
    signed_url_expiry: int = 31_536_000 # seconds, ~1 year
    cache_control: str = "3600"

    class Config:
        frozen = True


class Settings(BaseSettings):
    """Loads configuration settings from environment variables and .env file."""

    GEMINI_API_KEY: str = "YOUR_GEMINI_API_KEY_HERE"
    GEMINI_VISION_MODEL: str = "gemini-1.5-flash-latest"

    # --- Supabase Configuration ---
    SUPABASE_URL: str | None = None
    SUPABASE_KEY: str | None = None # ANON key only; user data is reached with the caller's token

    # --- Storage Configuration ---
    STORAGE_BUCKET: str = "uploads"
    SIGNED_URL_EXPIRY_SECONDS: int = 31_536_000
    UPLOAD_CACHE_CONTROL: str = "3600"

    # --- Database ---
    FILES_TABLE: str = "uploaded_files"

    # --- Upload Validation ---
    MAX_UPLOAD_SIZE_MB: int = 10
    ALLOWED_IMAGE_EXTENSIONS: List[str] = ["jpg", "jpeg", "png", "gif", "webp"]

    # --- Bulk Limits ---
    MAX_BULK_UPLOAD: int = 10
    MAX_BULK_REGENERATE: int = 20
    MAX_BULK_UPDATE: int = 50
    MAX_BULK_DELETE: int = 100
    MAX_BULK_DOWNLOAD: int = 100

    # --- Vision Client ---
    IMAGE_FETCH_TIMEOUT: float = 60.0

    class Config:
        env_file = '.env'
        env_file_encoding = 'utf-8'
        extra = 'ignore'

    def storage_config(self) -> StorageConfig:
        return StorageConfig(
            bucket=self.STORAGE_BUCKET,
            signed_url_expiry=self.SIGNED_URL_EXPIRY_SECONDS,
            cache_control=self.UPLOAD_CACHE_CONTROL,
        )

# Instantiate settings once for import
settings = Settings()

# --- Logging Setup ---
log_level_str = os.getenv("LOG_LEVEL", "INFO").upper(); log_level = getattr(logging, log_level_str, logging.INFO)
logging.basicConfig(level=log_level, format='%(asctime)s - %(name)s - [%(levelname)s] - %(message)s', datefmt='%Y-%m-%d %H:%M:%S')
logger = logging.getLogger("ICS_Core")
logging.getLogger("httpx").setLevel(logging.WARNING); logging.getLogger("supabase").setLevel(logging.WARNING)
logging.getLogger("watchfiles").setLevel(logging.WARNING)

# --- Configuration Validation Checks ---
logger.info(f"Core Settings loaded. Log Level: {log_level_str}")
if not settings.SUPABASE_URL or not settings.SUPABASE_KEY: logger.warning("Supabase URL/Key missing.")
if not settings.GEMINI_API_KEY or settings.GEMINI_API_KEY == "YOUR_GEMINI_API_KEY_HERE": logger.warning("GEMINI_API_KEY missing.")
if not settings.STORAGE_BUCKET: logger.warning("STORAGE_BUCKET missing, using default.")
else: logger.info(f"Using Supabase Storage Bucket: {settings.STORAGE_BUCKET}")

try: assert settings.SIGNED_URL_EXPIRY_SECONDS > 0; logger.info(f"Signed URL expiry: {settings.SIGNED_URL_EXPIRY_SECONDS}s")
except (AssertionError, ValueError): logger.error(f"Invalid SIGNED_URL_EXPIRY_SECONDS: {settings.SIGNED_URL_EXPIRY_SECONDS}.")
logger.info(f"Upload Config: Max Size={settings.MAX_UPLOAD_SIZE_MB}MB, Extensions={settings.ALLOWED_IMAGE_EXTENSIONS}")
