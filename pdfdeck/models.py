"""Pydantic models for request/response schemas and internal data structures."""

from datetime import datetime, timezone
from enum import Enum
from typing import Literal

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobStatus(str, Enum):
    """Possible states of a conversion job."""

    QUEUED = "queued"
    PROCESSING = "processing"
    DONE = "done"
    ERROR = "error"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({JobStatus.DONE, JobStatus.ERROR, JobStatus.CANCELLED})


# ============================================================================
# Shared wire models
# ============================================================================


class JobOptions(BaseModel):
    """Caller options for a conversion job."""

    maxSlides: int | None = Field(default=None, ge=1, le=200)
    language: str | None = None
    theme: Literal["DEFAULT", "LIGHT", "DARK"] | None = None


class JobErrorInfo(BaseModel):
    """Error captured into a failed job."""

    code: str
    message: str


class JobMetrics(BaseModel):
    """Per-job processing metrics recorded by the worker."""

    promptTokens: int | None = Field(default=None, ge=0)
    completionTokens: int | None = Field(default=None, ge=0)
    pageCount: int | None = Field(default=None, ge=0)
    imageCount: int | None = Field(default=None, ge=0)
    slideCount: int | None = Field(default=None, ge=0)
    generationAttempts: int | None = Field(default=None, ge=0)
    costUsd: float | None = Field(default=None, ge=0)
    durationsMs: dict[str, int] = Field(default_factory=dict)


# ============================================================================
# API Request/Response Models
# ============================================================================


class SignedUrlRequest(BaseModel):
    """Request body for POST /uploads/signed-url."""

    fileName: str
    contentType: str
    contentLength: int
    contentSha256: str


class UploadLimits(BaseModel):
    maxBytes: int
    maxPages: int


class SignedUrlResponse(BaseModel):
    """Response for POST /uploads/signed-url."""

    uploadId: str
    uploadUrl: str
    headers: dict[str, str]
    expiresAt: datetime
    limits: UploadLimits


class CreateJobRequest(BaseModel):
    """Request body for POST /jobs."""

    uploadId: str = Field(..., min_length=1, pattern=r"^[A-Za-z0-9_-]+$")
    pdfName: str = Field(..., min_length=1)
    options: JobOptions | None = None


class CreateJobResponse(BaseModel):
    """Response for POST /jobs."""

    jobId: str


class JobResultRef(BaseModel):
    resultJsonUrl: str


class JobStatusResponse(BaseModel):
    """Response for GET /jobs/{jobId}."""

    status: JobStatus
    result: JobResultRef | None = None
    error: JobErrorInfo | None = None
    metrics: JobMetrics | None = None


class HealthResponse(BaseModel):
    ok: bool = True


# ============================================================================
# Queue Messages
# ============================================================================


class StartJobMessage(BaseModel):
    """Payload published to the job queue when a job is created."""

    jobId: str
    uploadId: str
    sourceObjectPath: str
    options: JobOptions = Field(default_factory=JobOptions)


# ============================================================================
# Internal State
# ============================================================================


class UploadHandle(BaseModel):
    """Time-limited, write-scoped upload capability for one object."""

    upload_id: str
    staging_object_path: str
    write_url: str
    expires_at: datetime
    content_type_constraint: str
    max_bytes: int

    model_config = {"frozen": True}


class Job(BaseModel):
    """Durable record of one PDF to deck conversion."""

    job_id: str
    status: JobStatus
    upload_id: str
    pdf_name: str
    source_object_path: str
    options: JobOptions = Field(default_factory=JobOptions)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    attempts: int = 0
    result_object_path: str | None = None
    error: JobErrorInfo | None = None
    metrics: JobMetrics | None = None


class RenderedPage(BaseModel):
    """One page image produced by the renderer (1-based index)."""

    index: int = Field(..., ge=1)
    image_object_path: str
    width_px: int | None = None
    height_px: int | None = None


class PageText(BaseModel):
    """Extracted text for one page-like unit."""

    index: int
    text: str


class PageImage(BaseModel):
    """Readable URL of a rendered page image."""

    page: int
    url: str
