"""Job submission and status lookup."""

import re
import secrets

import structlog

from pdfdeck.errors import BadRequestError, NotFoundError, UpstreamError
from pdfdeck.jobqueue import JobQueue
from pdfdeck.jobstore import JobStore
from pdfdeck.models import (
    Job,
    JobOptions,
    JobResultRef,
    JobStatus,
    JobStatusResponse,
    StartJobMessage,
)
from pdfdeck.staging import ObjectStagingService, source_object_path

logger = structlog.get_logger()

_JOB_ID = re.compile(r"[A-Za-z0-9_-]{1,128}")


def new_job_id() -> str:
    return f"job_{secrets.token_hex(12)}"


class JobService:
    """Creates jobs and projects their state for polling clients."""

    def __init__(
        self,
        job_store: JobStore,
        queue: JobQueue,
        staging: ObjectStagingService,
    ) -> None:
        self._job_store = job_store
        self._queue = queue
        self._staging = staging

    async def create_job(
        self,
        upload_id: str,
        display_name: str,
        options: JobOptions | None = None,
    ) -> Job:
        """
        Record a queued job and publish its start message.

        Raises:
            UpstreamError: JOB_STORE_WRITE when the record cannot be written,
                PUBLISH_FAILED when the message cannot be enqueued
        """
        options = options or JobOptions()
        job = Job(
            job_id=new_job_id(),
            status=JobStatus.QUEUED,
            upload_id=upload_id,
            pdf_name=display_name,
            source_object_path=source_object_path(upload_id),
            options=options,
        )

        logger.info(
            "Received job creation request",
            job_id=job.job_id,
            upload_id=upload_id,
            pdf_name=display_name,
        )

        try:
            await self._job_store.create(job)
        except Exception as e:
            logger.error("Failed to write job record", job_id=job.job_id, error=str(e))
            raise UpstreamError("JOB_STORE_WRITE", "Failed to create job")

        message = StartJobMessage(
            jobId=job.job_id,
            uploadId=upload_id,
            sourceObjectPath=job.source_object_path,
            options=options,
        )
        try:
            await self._queue.publish(message)
        except Exception as e:
            # The record stays queued with nothing to deliver it
            logger.error("Failed to publish job message", job_id=job.job_id, error=str(e))
            raise UpstreamError("PUBLISH_FAILED", "Failed to enqueue job")

        logger.info("Job queued for processing", job_id=job.job_id)
        return job

    async def get_job_status(self, job_id: str) -> JobStatusResponse:
        """
        Current projection of a job.

        When the job is done, a fresh read handle for its result is issued.

        Raises:
            BadRequestError: Malformed job id
            NotFoundError: Unknown job
            UpstreamError: JOB_STORE_READ or STORAGE_SIGN
        """
        if not _JOB_ID.fullmatch(job_id):
            raise BadRequestError("Invalid jobId")

        try:
            job = await self._job_store.get(job_id)
        except Exception as e:
            logger.error("Failed to read job record", job_id=job_id, error=str(e))
            raise UpstreamError("JOB_STORE_READ", "Failed to read job")

        if not job:
            raise NotFoundError()

        response = JobStatusResponse(
            status=job.status,
            error=job.error,
            metrics=job.metrics,
        )
        if job.status == JobStatus.DONE and job.result_object_path:
            url = await self._staging.issue_download_handle(job.result_object_path)
            response.result = JobResultRef(resultJsonUrl=url)
        return response
