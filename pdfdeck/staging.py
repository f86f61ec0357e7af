"""Signed upload and download handles for staged objects."""

import asyncio
import re
import secrets
from datetime import timedelta

import structlog

from pdfdeck.config import Settings
from pdfdeck.errors import BadRequestError, PdfTooLargeError, UpstreamError
from pdfdeck.models import UploadHandle, utcnow
from pdfdeck.storage import ObjectStorage

logger = structlog.get_logger()

PDF_CONTENT_TYPE = "application/pdf"

_SHA256_HEX = re.compile(r"[a-f0-9]{64}")
_UPLOAD_ID = re.compile(r"[A-Za-z0-9_-]+")


def new_upload_id() -> str:
    return f"upl_{secrets.token_hex(12)}"


def source_object_path(upload_id: str) -> str:
    """Object key of an uploaded PDF in the uploads bucket."""
    if not _UPLOAD_ID.fullmatch(upload_id):
        raise BadRequestError("Invalid uploadId")
    return f"uploads/{upload_id}/source.pdf"


def result_object_path(job_id: str) -> str:
    """Object key of a job's result in the jobs bucket."""
    return f"results/{job_id}/result.json"


class ObjectStagingService:
    """Issues write handles for PDF uploads and read handles for results."""

    def __init__(self, settings: Settings, storage: ObjectStorage) -> None:
        self._storage = storage
        self._uploads_bucket = settings.uploads_bucket
        self._jobs_bucket = settings.jobs_bucket
        self._ttl_seconds = settings.signed_url_ttl_seconds
        self._max_bytes = settings.pdf_max_bytes
        self._max_pages = settings.pdf_max_pages

    @property
    def max_bytes(self) -> int:
        return self._max_bytes

    @property
    def max_pages(self) -> int:
        return self._max_pages

    async def issue_upload_handle(
        self,
        file_name: str,
        content_type: str,
        content_length: int,
        content_hash: str,
    ) -> UploadHandle:
        """
        Validate an upload request and issue a write-scoped handle.

        Args:
            file_name: Client-side file name (informational)
            content_type: Must be application/pdf
            content_length: Declared size in bytes
            content_hash: Lowercase hex SHA-256 of the content

        Returns:
            UploadHandle scoped to uploads/{uploadId}/source.pdf

        Raises:
            BadRequestError: Malformed input
            PdfTooLargeError: content_length exceeds the configured ceiling
            UpstreamError: Signing failed
        """
        if not file_name or not file_name.strip():
            raise BadRequestError("fileName is required")
        if content_type != PDF_CONTENT_TYPE:
            raise BadRequestError("contentType must be application/pdf")
        if content_length <= 0:
            raise BadRequestError("contentLength must be a positive integer")
        if not _SHA256_HEX.fullmatch(content_hash or ""):
            raise BadRequestError("contentSha256 must be a lowercase hex SHA-256")
        if content_length > self._max_bytes:
            logger.info(
                "Upload rejected, file too large",
                content_length=content_length,
                max_bytes=self._max_bytes,
            )
            raise PdfTooLargeError(self._max_bytes)

        upload_id = new_upload_id()
        object_path = source_object_path(upload_id)
        expires_at = utcnow() + timedelta(seconds=self._ttl_seconds)

        try:
            write_url = await asyncio.to_thread(
                self._storage.presign_put,
                self._uploads_bucket,
                object_path,
                PDF_CONTENT_TYPE,
                self._ttl_seconds,
            )
        except Exception as e:
            logger.error("Failed to sign upload URL",
                         upload_id=upload_id, error=str(e))
            raise UpstreamError("STORAGE_SIGN", "Failed to sign upload URL")

        logger.info(
            "Upload handle issued",
            upload_id=upload_id,
            file_name=file_name,
            content_length=content_length,
        )

        return UploadHandle(
            upload_id=upload_id,
            staging_object_path=object_path,
            write_url=write_url,
            expires_at=expires_at,
            content_type_constraint=PDF_CONTENT_TYPE,
            max_bytes=self._max_bytes,
        )

    async def issue_download_handle(self, object_path: str) -> str:
        """
        Issue a time-boxed read URL for an object in the jobs bucket.

        Raises:
            UpstreamError: Signing failed
        """
        try:
            return await asyncio.to_thread(
                self._storage.presign_get,
                self._jobs_bucket,
                object_path,
                self._ttl_seconds,
            )
        except Exception as e:
            logger.error("Failed to sign download URL",
                         object_path=object_path, error=str(e))
            raise UpstreamError("STORAGE_SIGN", "Failed to sign download URL")
