"""Python client for the signed pdfdeck API."""

import json
import random
import time
import uuid
from typing import Any, Callable
from urllib.parse import urlparse

import requests
import structlog

from pdfdeck.auth import (
    KEY_ID_HEADER,
    NONCE_HEADER,
    SIGNATURE_HEADER,
    TIMESTAMP_HEADER,
    now_ms,
    sign,
)
from pdfdeck.models import (
    CreateJobResponse,
    JobOptions,
    JobStatusResponse,
    SignedUrlResponse,
)

logger = structlog.get_logger()


class ApiClientError(Exception):
    """The API answered with a non-2xx status."""

    def __init__(self, status: int, code: str | None, message: str) -> None:
        self.status = status
        self.code = code
        self.message = message
        super().__init__(f"{status} {code or ''}: {message}")


class PollTimeout(Exception):
    """The job did not reach a terminal status within the allowed number of polls."""


def poll_delay(
    attempt: int,
    base_seconds: float = 1.2,
    factor: float = 1.6,
    cap_seconds: float = 8.0,
    jitter: float = 0.25,
    rand: Callable[[], float] = random.random,
) -> float:
    """Delay before the next poll after the given (0-based) attempt."""
    delay = min(base_seconds * factor**attempt, cap_seconds)
    return delay * (1 - jitter + 2 * jitter * rand())


class PdfDeckClient:
    """
    Signs and sends requests the way RequestAuthenticator verifies them.

    The body that is signed is the exact byte string that is sent.
    """

    def __init__(
        self,
        base_url: str,
        secret: str,
        key_id: str | None = None,
        timeout_seconds: float = 30.0,
        session: requests.Session | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._path_prefix = urlparse(self._base_url).path
        self._secret = secret
        self._key_id = key_id
        self._timeout = timeout_seconds
        self._session = session or requests.Session()
        self._sleep = sleep

    def signed_headers(self, method: str, path: str, body: bytes = b"") -> dict[str, str]:
        timestamp = str(now_ms())
        nonce = uuid.uuid4().hex
        headers = {
            TIMESTAMP_HEADER: timestamp,
            NONCE_HEADER: nonce,
            SIGNATURE_HEADER: sign(self._secret, method, path, timestamp, body, nonce),
        }
        if self._key_id:
            headers[KEY_ID_HEADER] = self._key_id
        return headers

    def _request(self, method: str, path: str, payload: dict | None = None) -> Any:
        body = json.dumps(payload).encode("utf-8") if payload is not None else b""
        headers = self.signed_headers(method, self._path_prefix + path, body)
        if payload is not None:
            headers["Content-Type"] = "application/json"

        response = self._session.request(
            method,
            f"{self._base_url}{path}",
            data=body or None,
            headers=headers,
            timeout=self._timeout,
        )
        if not response.ok:
            try:
                error = response.json().get("error") or {}
            except ValueError:
                error = {}
            raise ApiClientError(
                response.status_code,
                error.get("code"),
                error.get("message", response.text),
            )
        return response.json()

    def request_upload(
        self, file_name: str, content_length: int, content_sha256: str
    ) -> SignedUrlResponse:
        data = self._request("POST", "/uploads/signed-url", {
            "fileName": file_name,
            "contentType": "application/pdf",
            "contentLength": content_length,
            "contentSha256": content_sha256,
        })
        return SignedUrlResponse.model_validate(data)

    def upload(self, handle: SignedUrlResponse, content: bytes) -> None:
        """PUT the file to the write URL with exactly the headers that were signed."""
        response = self._session.put(
            handle.uploadUrl,
            data=content,
            headers=handle.headers,
            timeout=self._timeout,
        )
        if not response.ok:
            raise ApiClientError(response.status_code, "UPLOAD_FAILED", response.text)
        logger.info("PDF uploaded", upload_id=handle.uploadId, size_bytes=len(content))

    def create_job(
        self,
        upload_id: str,
        pdf_name: str,
        options: JobOptions | None = None,
    ) -> str:
        payload: dict[str, Any] = {"uploadId": upload_id, "pdfName": pdf_name}
        if options is not None:
            payload["options"] = options.model_dump(exclude_none=True)
        return CreateJobResponse.model_validate(
            self._request("POST", "/jobs", payload)).jobId

    def get_job(self, job_id: str) -> JobStatusResponse:
        return JobStatusResponse.model_validate(self._request("GET", f"/jobs/{job_id}"))

    def wait_for_job(
        self,
        job_id: str,
        max_attempts: int = 30,
        base_seconds: float = 1.2,
        factor: float = 1.6,
        cap_seconds: float = 8.0,
    ) -> JobStatusResponse:
        """
        Poll until the job is terminal.

        Raises:
            PollTimeout: Still running after max_attempts polls
            ApiClientError: A poll was rejected
        """
        for attempt in range(max_attempts):
            status = self.get_job(job_id)
            if status.status.is_terminal:
                return status
            if attempt + 1 < max_attempts:
                self._sleep(poll_delay(attempt, base_seconds, factor, cap_seconds))
        raise PollTimeout(f"Job {job_id} still running after {max_attempts} polls")
