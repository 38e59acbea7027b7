"""Image uploads for map backgrounds. Rejections never touch the scene."""
import re
import uuid
from pathlib import Path
from typing import Optional

from fastapi import UploadFile

from errors import ValidationError
from logger import setup_logger

logger = setup_logger("uploads")

UPLOADS_URL_PREFIX = "/uploads"
MAX_UPLOAD_BYTES = 10 * 1024 * 1024

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]")


def safe_filename(name: Optional[str]) -> str:
    name = Path(name or "image").name
    return _UNSAFE_CHARS.sub("_", name) or "image"


class ImageUploads:
    """Stores uploaded images and hands back the URL the map keeps."""

    def __init__(self, uploads_dir: Path, max_bytes: int = MAX_UPLOAD_BYTES):
        self.uploads_dir = Path(uploads_dir)
        self.max_bytes = max_bytes
        self.uploads_dir.mkdir(parents=True, exist_ok=True)

    def check(self, content_type: Optional[str], size: int):
        if not (content_type or "").startswith("image/"):
            raise ValidationError("Only image files are allowed!")
        if size > self.max_bytes:
            raise ValidationError(f"Image exceeds the {self.max_bytes // (1024 * 1024)}MB limit")

    def save_bytes(self, filename: Optional[str], content_type: Optional[str], content: bytes) -> str:
        self.check(content_type, len(content))
        stored_name = f"{uuid.uuid4()}-{safe_filename(filename)}"
        (self.uploads_dir / stored_name).write_bytes(content)
        logger.info(f"Stored upload {stored_name} ({len(content)} bytes)")
        return f"{UPLOADS_URL_PREFIX}/{stored_name}"

    async def store(self, upload: UploadFile) -> str:
        """Validate and store an uploaded image, returning its URL."""
        # Read one byte past the cap so oversized files are detected without buffering them whole.
        content = await upload.read(self.max_bytes + 1)
        return self.save_bytes(upload.filename, upload.content_type, content)
