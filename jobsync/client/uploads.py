# jobsync/client/uploads.py
import os
import time
from typing import BinaryIO, Callable, Optional

import httpx

from jobsync.client.estimator import UploadSession
from jobsync.core.config import ClientSettings, get_client_settings
from jobsync.core.exceptions import ErrorCode
from jobsync.core.logging import LoggerMixin
from jobsync.schemas.job import UploadResponse


class ProgressReader:
    """File wrapper reporting every read to a callback; httpx streams from it."""

    def __init__(self, raw: BinaryIO, on_read: Callable[[int], None]) -> None:
        self._raw = raw
        self._on_read = on_read

    def read(self, size: int = -1) -> bytes:
        chunk = self._raw.read(size)
        if chunk:
            self._on_read(len(chunk))
        return chunk

    def seek(self, offset: int, whence: int = os.SEEK_SET) -> int:
        return self._raw.seek(offset, whence)

    def tell(self) -> int:
        return self._raw.tell()

    def fileno(self) -> int:
        return self._raw.fileno()


class UploadClient(LoggerMixin):
    """Multipart upload with byte-level progress tracked in an UploadSession."""

    def __init__(
        self,
        http: httpx.AsyncClient,
        owner_id: str,
        settings: Optional[ClientSettings] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.http = http
        self.owner_id = owner_id
        self.settings = settings or get_client_settings()
        self.clock = clock

    def select(self, path: str) -> UploadSession:
        return UploadSession.select(os.path.getsize(path))

    def expire(self, session: UploadSession) -> bool:
        """Reset a success banner that has been shown long enough."""
        if session.is_expired(self.clock(), self.settings.UPLOAD_SUCCESS_RESET_SECONDS):
            session.reset()
            return True
        return False

    async def upload(self, path: str, session: Optional[UploadSession] = None) -> UploadSession:
        """Send the file; the returned session ends in complete or error."""
        session = session or self.select(path)
        session.begin()
        filename = os.path.basename(path)
        self.logger.info(
            "Uploading file",
            filename=filename,
            size=session.file_size_bytes,
            estimated_seconds=session.estimated_processing_seconds,
        )

        try:
            with open(path, "rb") as raw:
                reader = ProgressReader(raw, session.record_bytes)
                response = await self.http.post(
                    "/uploads",
                    params={"ownerId": self.owner_id},
                    files={"file": (filename, reader, "text/csv")},
                    timeout=self.settings.UPLOAD_TIMEOUT_SECONDS,
                )
        except httpx.TimeoutException:
            session.fail("Upload timed out. Please try again.", ErrorCode.TIMEOUT)
            return session
        except httpx.HTTPError as e:
            session.fail(f"Network error during upload: {e}", ErrorCode.NETWORK)
            return session
        except OSError as e:
            session.fail(f"Could not read file: {e}", ErrorCode.UPLOAD_FAILED)
            return session

        try:
            body = UploadResponse.model_validate(response.json())
        except ValueError:
            session.fail(
                f"Invalid response from server (status {response.status_code})",
                ErrorCode.INTERNAL,
            )
            return session

        if body.success and body.file_path:
            session.complete(body.file_path, self.clock())
            self.logger.info("Upload complete", filename=filename, file_path=body.file_path)
        else:
            session.fail(
                body.error or f"Upload failed with status {response.status_code}",
                body.code or ErrorCode.UPLOAD_FAILED,
            )
            self.logger.warning(
                "Upload failed", filename=filename, error=session.error, code=session.error_code
            )
        return session
