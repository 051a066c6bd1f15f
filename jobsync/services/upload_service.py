# jobsync/services/upload_service.py
import os
import re
from pathlib import Path

from fastapi import UploadFile

from jobsync.core.config import Settings
from jobsync.core.exceptions import UploadError, ValidationError
from jobsync.core.logging import LoggerMixin

CHUNK_BYTES = 1024 * 1024
_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


class UploadService(LoggerMixin):
    """Streams multipart uploads into the upload directory."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.upload_dir = Path(settings.UPLOAD_DIR)

    def validate_filename(self, filename: str) -> str:
        ext = Path(filename).suffix.lower().lstrip(".")
        if ext not in self.settings.ALLOWED_EXTENSIONS:
            raise ValidationError(
                f"Unsupported file type: {ext or 'none'}. "
                f"Allowed: {', '.join(sorted(self.settings.ALLOWED_EXTENSIONS))}",
                {"filename": filename},
            )
        return ext

    async def save(self, owner_id: str, file: UploadFile) -> str:
        """Persist the upload and return its path."""
        if not file or not file.filename:
            raise ValidationError("File is required")
        self.validate_filename(file.filename)

        target_dir = self.upload_dir / _UNSAFE_CHARS.sub("_", owner_id)
        target_dir.mkdir(parents=True, exist_ok=True)
        safe_name = _UNSAFE_CHARS.sub("_", Path(file.filename).name)
        target = target_dir / f"upload_{os.urandom(6).hex()}_{safe_name}"

        written = 0
        try:
            with open(target, "wb") as f:
                while True:
                    chunk = await file.read(CHUNK_BYTES)
                    if not chunk:
                        break
                    written += len(chunk)
                    if written > self.settings.MAX_UPLOAD_BYTES:
                        raise ValidationError(
                            "File size exceeds the upload limit",
                            {"limit": self.settings.MAX_UPLOAD_BYTES},
                        )
                    f.write(chunk)
        except ValidationError:
            target.unlink(missing_ok=True)
            raise
        except OSError as e:
            target.unlink(missing_ok=True)
            raise UploadError(f"Failed to store upload: {e}") from e

        self.logger.info(
            "Upload stored", owner_id=owner_id, path=str(target), size=written
        )
        return str(target)
