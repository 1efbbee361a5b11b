# core/utils.py
"""
Upload path and validation helpers shared by the caption API.
"""
import re
import secrets
import time
from typing import Iterable, NamedTuple, Optional

_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9._-]")
_RANDOM_ALPHABET = "abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789"


class StoragePath(NamedTuple):
    filename: str
    path: str
    extension: str


def sanitize_filename(filename: str) -> str:
    """Drops any directory part and replaces characters outside [A-Za-z0-9._-]."""
    basename = re.sub(r"^.*[\\/]", "", filename or "")
    return _UNSAFE_CHARS.sub("_", basename)


def file_extension(filename: str) -> str:
    sanitized = sanitize_filename(filename)
    if "." not in sanitized:
        return ""
    return sanitized.rsplit(".", 1)[-1].lower()


def generate_storage_path(original_name: str, user_id: str, now_ms: Optional[int] = None) -> StoragePath:
    """Builds images/{user_id}/{timestamp}-{random}.{ext} for a new upload."""
    timestamp = now_ms if now_ms is not None else int(time.time() * 1000)
    random_part = "".join(secrets.choice(_RANDOM_ALPHABET) for _ in range(6))
    extension = file_extension(original_name)
    filename = f"{timestamp}-{random_part}.{extension}"
    return StoragePath(filename=filename, path=f"images/{user_id}/{filename}", extension=extension)


def validate_file_extension(extension: str, allowed: Iterable[str]) -> bool:
    return bool(extension) and extension.lower() in {a.lower() for a in allowed}


def validate_file_size(size: int, max_size_mb: int = 10) -> bool:
    return 0 < size <= max_size_mb * 1024 * 1024


def split_path(path: str) -> tuple[str, str]:
    """Splits an object path into (directory, filename); directory is '' at the bucket root."""
    if "/" not in path:
        return "", path
    directory, name = path.rsplit("/", 1)
    return directory, name
