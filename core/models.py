# core/models.py
from pydantic import BaseModel, Field, field_validator
from typing import List, Optional, Any
from enum import Enum
import datetime


class TagStyle(str, Enum):
    NEUTRAL = "neutral"
    PLAYFUL = "playful"
    SEO = "seo"


class FileStatus(str, Enum):
    UPLOADED = "uploaded"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


# --- Storage Models ---

class UploadOptions(BaseModel):
    """Options for a single storage upload."""
    content_type: str = "application/octet-stream"
    cache_control: Optional[str] = None # Falls back to StorageConfig.cache_control
    upsert: bool = False

class StoredObject(BaseModel):
    """Result of a storage upload: the object key and a signed URL for it."""
    path: str = Field(..., description="Object path inside the bucket")
    url: str = Field(..., description="Signed URL with limited TTL")
    expires_at: Optional[datetime.datetime] = Field(None, description="When the signed URL stops working")


# --- Core Data Models ---

class UploadedFileRecord(BaseModel):
    """Represents a row of the uploaded_files table."""
    id: Optional[str] = None
    filename: str = Field(..., description="Original filename as uploaded")
    file_path: str = Field(..., description="Object path inside the bucket")
    file_size: Optional[int] = None
    mime_type: Optional[str] = None
    signed_url: Optional[str] = None
    signed_url_expires_at: Optional[datetime.datetime] = None
    user_id: str
    status: FileStatus = FileStatus.UPLOADED
    description: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    tag_style: Optional[TagStyle] = None
    uploaded_at: Optional[datetime.datetime] = None
    updated_at: Optional[datetime.datetime] = None

    class Config:
        from_attributes = True
        use_enum_values = True

    @field_validator("tags", mode="before")
    @classmethod
    def none_tags_to_empty(cls, value):
        return value or []

    def is_image(self) -> bool:
        return bool(self.mime_type and self.mime_type.startswith("image/"))

    def has_ai_analysis(self) -> bool:
        return bool(self.description or self.tags)

    def size_mb(self) -> Optional[float]:
        return round(self.file_size / (1024 * 1024), 2) if self.file_size else None

    def url_expired(self, now: Optional[datetime.datetime] = None) -> bool:
        """True when the stored signed URL is missing or past its expiry."""
        if not self.signed_url or not self.signed_url_expires_at:
            return True
        now = now or datetime.datetime.now(datetime.timezone.utc)
        expires_at = self.signed_url_expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=datetime.timezone.utc)
        return now >= expires_at

    def to_api(self) -> dict:
        """Row plus computed properties, as returned by the API."""
        data = self.model_dump(mode="json")
        data["is_image"] = self.is_image()
        data["has_ai_analysis"] = self.has_ai_analysis()
        data["file_size_mb"] = self.size_mb()
        data["url_expired"] = self.url_expired()
        return data


class ImageAnalysis(BaseModel):
    """Description and tags produced by the vision model."""
    description: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    tag_style: TagStyle = TagStyle.NEUTRAL

    class Config:
        use_enum_values = True


class AuthContext(BaseModel):
    """Caller identity attached to a request by the auth dependency."""
    user_id: str
    email: Optional[str] = None
    email_confirmed: bool = False
    token: str = Field(..., repr=False)


class IncomingFile(BaseModel):
    """An uploaded file as received from the client, before validation."""
    original_name: str
    content: bytes = Field(..., repr=False)
    mime_type: str = "application/octet-stream"

    @property
    def size(self) -> int:
        return len(self.content)


# --- Orchestrator Results ---

class UploadOutcome(BaseModel):
    file: UploadedFileRecord
    analysis: Optional[ImageAnalysis] = None
    analysis_error: Optional[str] = None

    @property
    def analysis_succeeded(self) -> bool:
        return self.analysis is not None and self.analysis_error is None

    def to_api(self) -> dict:
        data = self.file.to_api()
        data["analysis"] = {"success": self.analysis_succeeded, "error": self.analysis_error}
        return data

class BulkItemError(BaseModel):
    filename: Optional[str] = None
    id: Optional[str] = None
    error: str

class BulkOutcome(BaseModel):
    results: List[UploadOutcome] = Field(default_factory=list)
    errors: List[BulkItemError] = Field(default_factory=list)


# --- API Request Models ---

class AnalyzeRequest(BaseModel):
    tag_style: TagStyle = TagStyle.NEUTRAL

class BulkIdsRequest(BaseModel):
    ids: List[str] = Field(default_factory=list)

class BulkRegenerateRequest(BulkIdsRequest):
    tag_style: TagStyle = TagStyle.NEUTRAL

class FileUpdateRequest(BaseModel):
    filename: Optional[str] = None
    description: Optional[str] = None
    tags: Optional[List[str]] = None

class BulkFileUpdateItem(FileUpdateRequest):
    id: Optional[str] = None

class BulkFileUpdateRequest(BaseModel):
    files: List[BulkFileUpdateItem] = Field(default_factory=list)


# --- API Response Model ---

class ApiResponse(BaseModel):
    """Standard response wrapper for the caption API."""
    status: str = Field(description="'success' or 'error'")
    data: Any | None = Field(default=None, description="The primary data payload (depends on the endpoint)")
    message: Optional[str] = Field(default=None, description="Optional status message or error details")
