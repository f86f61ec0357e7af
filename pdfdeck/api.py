"""HTTP API endpoints for uploads and jobs."""

from fastapi import APIRouter, Depends

from pdfdeck.auth import SignedRoute
from pdfdeck.dependencies import Services, get_services
from pdfdeck.models import (
    CreateJobRequest,
    CreateJobResponse,
    JobStatusResponse,
    SignedUrlRequest,
    SignedUrlResponse,
    UploadLimits,
)

# Every route here is authenticated before its body is parsed
router = APIRouter(tags=["jobs"], route_class=SignedRoute)


@router.post("/uploads/signed-url", response_model=SignedUrlResponse)
async def create_signed_upload(
    request: SignedUrlRequest,
    services: Services = Depends(get_services),
) -> SignedUrlResponse:
    """
    Issue a write-scoped URL for uploading a PDF directly to storage.

    The client PUTs the file to uploadUrl with the returned headers, then
    submits a job referencing uploadId.
    """
    handle = await services.staging.issue_upload_handle(
        file_name=request.fileName,
        content_type=request.contentType,
        content_length=request.contentLength,
        content_hash=request.contentSha256,
    )
    return SignedUrlResponse(
        uploadId=handle.upload_id,
        uploadUrl=handle.write_url,
        headers={"Content-Type": handle.content_type_constraint},
        expiresAt=handle.expires_at,
        limits=UploadLimits(
            maxBytes=handle.max_bytes,
            maxPages=services.staging.max_pages,
        ),
    )


@router.post("/jobs", response_model=CreateJobResponse)
async def create_job(
    request: CreateJobRequest,
    services: Services = Depends(get_services),
) -> CreateJobResponse:
    """
    Start a new conversion job.

    The job runs asynchronously. Poll GET /jobs/{jobId} until the status is
    'done', 'error' or 'cancelled'.
    """
    job = await services.jobs.create_job(
        upload_id=request.uploadId,
        display_name=request.pdfName,
        options=request.options,
    )
    return CreateJobResponse(jobId=job.job_id)


@router.get(
    "/jobs/{job_id}",
    response_model=JobStatusResponse,
    response_model_exclude_none=True,
)
async def get_job(
    job_id: str,
    services: Services = Depends(get_services),
) -> JobStatusResponse:
    """
    Get the status of a conversion job.

    'result.resultJsonUrl' is a fresh read URL, present once the job is done.
    """
    return await services.jobs.get_job_status(job_id)
