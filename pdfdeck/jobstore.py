"""Durable job records and their lifecycle transitions."""

import asyncio
from decimal import Decimal

import structlog
from botocore.exceptions import ClientError

from pdfdeck.models import (
    Job,
    JobErrorInfo,
    JobMetrics,
    JobStatus,
    utcnow,
)

logger = structlog.get_logger()

_RUNNABLE = (JobStatus.QUEUED, JobStatus.PROCESSING)


class JobStore:
    """
    Job record storage.

    Transitions out of queued/processing are conditional: once a job is
    terminal, later writes from redelivered messages are refused.
    """

    async def create(self, job: Job) -> None:
        raise NotImplementedError

    async def get(self, job_id: str) -> Job | None:
        raise NotImplementedError

    async def mark_processing(self, job_id: str) -> Job | None:
        """
        Move a queued or processing job to processing and count the attempt.

        Returns:
            Updated job, or None if the job is missing or already terminal
        """
        raise NotImplementedError

    async def mark_done(
        self, job_id: str, result_object_path: str, metrics: JobMetrics
    ) -> bool:
        """Move a processing job to done. Returns False if it was not processing."""
        raise NotImplementedError

    async def mark_error(
        self,
        job_id: str,
        code: str,
        message: str,
        metrics: JobMetrics | None = None,
    ) -> bool:
        """Move a non-terminal job to error. Returns False if already terminal."""
        raise NotImplementedError


class InMemoryJobStore(JobStore):
    """
    In-memory job state store.

    Used in local mode and tests; state does not survive the process.
    """

    def __init__(self) -> None:
        self._jobs: dict[str, Job] = {}
        self._lock = asyncio.Lock()

    async def create(self, job: Job) -> None:
        async with self._lock:
            self._jobs[job.job_id] = job.model_copy(deep=True)
            logger.info("Job created", job_id=job.job_id, status=job.status)

    async def get(self, job_id: str) -> Job | None:
        async with self._lock:
            job = self._jobs.get(job_id)
            return job.model_copy(deep=True) if job else None

    async def mark_processing(self, job_id: str) -> Job | None:
        async with self._lock:
            job = self._jobs.get(job_id)
            if not job or job.status not in _RUNNABLE:
                return None
            old_status = job.status
            job.status = JobStatus.PROCESSING
            job.attempts += 1
            job.updated_at = utcnow()
            logger.info("Job status updated", job_id=job_id,
                        old_status=old_status, new_status=job.status)
            return job.model_copy(deep=True)

    async def mark_done(
        self, job_id: str, result_object_path: str, metrics: JobMetrics
    ) -> bool:
        async with self._lock:
            job = self._jobs.get(job_id)
            if not job or job.status != JobStatus.PROCESSING:
                return False
            job.status = JobStatus.DONE
            job.result_object_path = result_object_path
            job.metrics = metrics
            job.updated_at = utcnow()
            logger.info("Job status updated", job_id=job_id,
                        old_status=JobStatus.PROCESSING, new_status=job.status)
            return True

    async def mark_error(
        self,
        job_id: str,
        code: str,
        message: str,
        metrics: JobMetrics | None = None,
    ) -> bool:
        async with self._lock:
            job = self._jobs.get(job_id)
            if not job or job.status not in _RUNNABLE:
                return False
            old_status = job.status
            job.status = JobStatus.ERROR
            job.error = JobErrorInfo(code=code, message=message)
            if metrics is not None:
                job.metrics = metrics
            job.updated_at = utcnow()
            logger.info("Job status updated", job_id=job_id,
                        old_status=old_status, new_status=job.status)
            return True


def _from_dynamo(value):
    """Convert DynamoDB Decimals back to ints, or floats when fractional."""
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, dict):
        return {k: _from_dynamo(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_from_dynamo(v) for v in value]
    return value


def _metrics_item(metrics: JobMetrics) -> dict:
    """Metrics as a DynamoDB map; boto3 rejects floats, so costUsd goes in as Decimal."""
    item = metrics.model_dump(mode="json", exclude_none=True)
    if "costUsd" in item:
        item["costUsd"] = Decimal(str(item["costUsd"]))
    return item


def _is_conditional_failure(error: ClientError) -> bool:
    return error.response["Error"]["Code"] == "ConditionalCheckFailedException"


class DynamoJobStore(JobStore):
    """DynamoDB-backed job store keyed by job_id."""

    def __init__(self, table) -> None:
        self._table = table

    def _create(self, job: Job) -> None:
        self._table.put_item(
            Item=job.model_dump(mode="json", exclude_none=True),
            ConditionExpression="attribute_not_exists(job_id)",
        )

    async def create(self, job: Job) -> None:
        await asyncio.to_thread(self._create, job)
        logger.info("Job created", job_id=job.job_id, status=job.status)

    def _get(self, job_id: str) -> Job | None:
        response = self._table.get_item(
            Key={"job_id": job_id}, ConsistentRead=True)
        item = response.get("Item")
        return Job.model_validate(_from_dynamo(item)) if item else None

    async def get(self, job_id: str) -> Job | None:
        return await asyncio.to_thread(self._get, job_id)

    def _mark_processing(self, job_id: str) -> Job | None:
        try:
            response = self._table.update_item(
                Key={"job_id": job_id},
                UpdateExpression="SET #s = :processing, updated_at = :now ADD attempts :one",
                ConditionExpression="#s IN (:queued, :processing)",
                ExpressionAttributeNames={"#s": "status"},
                ExpressionAttributeValues={
                    ":processing": JobStatus.PROCESSING.value,
                    ":queued": JobStatus.QUEUED.value,
                    ":now": utcnow().isoformat(),
                    ":one": 1,
                },
                ReturnValues="ALL_NEW",
            )
        except ClientError as e:
            if _is_conditional_failure(e):
                return None
            raise
        return Job.model_validate(_from_dynamo(response["Attributes"]))

    async def mark_processing(self, job_id: str) -> Job | None:
        job = await asyncio.to_thread(self._mark_processing, job_id)
        if job:
            logger.info("Job status updated", job_id=job_id,
                        new_status=job.status, attempts=job.attempts)
        return job

    def _conditional_update(
        self,
        job_id: str,
        update: str,
        condition: str,
        values: dict,
        names: dict | None = None,
    ) -> bool:
        try:
            self._table.update_item(
                Key={"job_id": job_id},
                UpdateExpression=update,
                ConditionExpression=condition,
                ExpressionAttributeNames={"#s": "status", **(names or {})},
                ExpressionAttributeValues=values,
            )
            return True
        except ClientError as e:
            if _is_conditional_failure(e):
                return False
            raise

    async def mark_done(
        self, job_id: str, result_object_path: str, metrics: JobMetrics
    ) -> bool:
        updated = await asyncio.to_thread(
            self._conditional_update,
            job_id,
            "SET #s = :done, updated_at = :now, result_object_path = :path, metrics = :metrics",
            "#s = :processing",
            {
                ":done": JobStatus.DONE.value,
                ":processing": JobStatus.PROCESSING.value,
                ":now": utcnow().isoformat(),
                ":path": result_object_path,
                ":metrics": _metrics_item(metrics),
            },
        )
        if updated:
            logger.info("Job status updated", job_id=job_id,
                        new_status=JobStatus.DONE)
        return updated

    async def mark_error(
        self,
        job_id: str,
        code: str,
        message: str,
        metrics: JobMetrics | None = None,
    ) -> bool:
        update = "SET #s = :error, updated_at = :now, #e = :info"
        values = {
            ":error": JobStatus.ERROR.value,
            ":queued": JobStatus.QUEUED.value,
            ":processing": JobStatus.PROCESSING.value,
            ":now": utcnow().isoformat(),
            ":info": {"code": code, "message": message},
        }
        if metrics is not None:
            update += ", metrics = :metrics"
            values[":metrics"] = _metrics_item(metrics)

        updated = await asyncio.to_thread(
            self._conditional_update,
            job_id,
            update,
            "#s IN (:queued, :processing)",
            values,
            {"#e": "error"},
        )
        if updated:
            logger.info("Job status updated", job_id=job_id,
                        new_status=JobStatus.ERROR, error_code=code)
        return updated
