"""Explicit construction of every collaborator from the resolved settings."""

from dataclasses import dataclass

import boto3
from botocore.config import Config
from fastapi import Request

from pdfdeck.auth import RequestAuthenticator
from pdfdeck.config import Settings
from pdfdeck.generator import SlideGenerator, StructuredSlideGenerator, StubSlideGenerator
from pdfdeck.jobqueue import InMemoryJobQueue, JobQueue, SqsJobQueue
from pdfdeck.jobs import JobService
from pdfdeck.jobstore import DynamoJobStore, InMemoryJobStore, JobStore
from pdfdeck.nonces import DynamoNonceStore, InMemoryNonceStore, NonceStore
from pdfdeck.renderer import PageRenderingClient
from pdfdeck.staging import ObjectStagingService
from pdfdeck.storage import ObjectStorage
from pdfdeck.worker import JobWorker


@dataclass
class Services:
    """Everything the API and the worker need, built once at startup."""

    settings: Settings
    storage: ObjectStorage
    staging: ObjectStagingService
    job_store: JobStore
    queue: JobQueue
    jobs: JobService
    authenticator: RequestAuthenticator | None = None
    worker: JobWorker | None = None


def _aws_config(settings: Settings) -> Config:
    return Config(
        region_name=settings.aws_region,
        retries={"max_attempts": 3, "mode": "standard"},
    )


def dynamodb_table(settings: Settings, name: str):
    kwargs: dict = {"config": _aws_config(settings)}
    if settings.dynamodb_endpoint_url:
        kwargs["endpoint_url"] = settings.dynamodb_endpoint_url
    return boto3.resource("dynamodb", **kwargs).Table(name)


def build_job_store(settings: Settings) -> JobStore:
    if settings.state_backend == "memory":
        return InMemoryJobStore()
    return DynamoJobStore(dynamodb_table(settings, settings.jobs_table))


def build_nonce_store(settings: Settings) -> NonceStore | None:
    if not settings.anti_replay_enabled:
        return None
    if settings.state_backend == "memory":
        return InMemoryNonceStore()
    return DynamoNonceStore(dynamodb_table(settings, settings.nonces_table))


def build_queue(settings: Settings) -> JobQueue:
    if settings.queue_backend == "memory":
        return InMemoryJobQueue()
    kwargs: dict = {"config": _aws_config(settings)}
    if settings.sqs_endpoint_url:
        kwargs["endpoint_url"] = settings.sqs_endpoint_url
    return SqsJobQueue(boto3.client("sqs", **kwargs), settings.jobs_queue_url)


def build_generator(settings: Settings) -> SlideGenerator:
    if not settings.generation_enabled:
        return StubSlideGenerator(image_policy=settings.image_attachment)
    return StructuredSlideGenerator.from_settings(settings)


def build_services(
    settings: Settings,
    with_api: bool = True,
    with_worker: bool = True,
) -> Services:
    """
    Wire the service graph. No component reaches for a global.

    The API process skips the worker unless it runs the consumer in-process,
    so it does not need generation credentials; the worker process skips
    request authentication.
    """
    storage = ObjectStorage(settings)
    staging = ObjectStagingService(settings, storage)
    job_store = build_job_store(settings)
    queue = build_queue(settings)
    worker = None
    if with_worker:
        worker = JobWorker(
            settings,
            job_store,
            storage,
            staging,
            PageRenderingClient.from_settings(settings),
            build_generator(settings),
        )
    return Services(
        settings=settings,
        storage=storage,
        staging=staging,
        job_store=job_store,
        queue=queue,
        jobs=JobService(job_store, queue, staging),
        authenticator=(
            RequestAuthenticator.from_settings(settings, build_nonce_store(settings))
            if with_api
            else None
        ),
        worker=worker,
    )


def get_services(request: Request) -> Services:
    return request.app.state.services
