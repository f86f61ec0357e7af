"""Shared fakes and fixtures.

AWS, the renderer and the generation service are replaced by in-process
fakes; everything else runs for real.
"""

import json
import uuid

import pytest
from fastapi.testclient import TestClient

from pdfdeck.auth import (
    KEY_ID_HEADER,
    NONCE_HEADER,
    SIGNATURE_HEADER,
    TIMESTAMP_HEADER,
    RequestAuthenticator,
    now_ms,
    sign,
)
from pdfdeck.config import Settings
from pdfdeck.dependencies import Services
from pdfdeck.generator import StubSlideGenerator
from pdfdeck.jobqueue import InMemoryJobQueue
from pdfdeck.jobs import JobService
from pdfdeck.jobstore import InMemoryJobStore
from pdfdeck.main import create_app
from pdfdeck.nonces import InMemoryNonceStore
from pdfdeck.renderer import PageRenderingClient
from pdfdeck.staging import ObjectStagingService
from pdfdeck.storage import ObjectStorage
from pdfdeck.worker import JobWorker

from fakes import SECRET, FakeS3Client


# =============================================================================
# Fixtures
# =============================================================================


def _settings(**overrides) -> Settings:
    values = {
        "hmac_secret_current": SECRET,
        "uploads_bucket": "uploads",
        "jobs_bucket": "jobs",
        "state_backend": "memory",
        "queue_backend": "memory",
        "generation_enabled": False,
        "renderer_backoff_base_ms": 1,
        "renderer_backoff_cap_ms": 2,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def make_settings():
    return _settings


@pytest.fixture
def settings() -> Settings:
    return _settings()


@pytest.fixture
def s3() -> FakeS3Client:
    return FakeS3Client()


@pytest.fixture
def make_services(s3):
    """Build a fully wired service graph over in-memory backends."""

    def build(settings: Settings | None = None, generator=None, renderer=None) -> Services:
        settings = settings or _settings()
        storage = ObjectStorage(settings, client=s3)
        staging = ObjectStagingService(settings, storage)
        job_store = InMemoryJobStore()
        queue = InMemoryJobQueue()
        return Services(
            settings=settings,
            storage=storage,
            staging=staging,
            job_store=job_store,
            queue=queue,
            jobs=JobService(job_store, queue, staging),
            authenticator=RequestAuthenticator.from_settings(
                settings, InMemoryNonceStore() if settings.anti_replay_enabled else None
            ),
            worker=JobWorker(
                settings,
                job_store,
                storage,
                staging,
                renderer or PageRenderingClient(None),
                generator or StubSlideGenerator(),
            ),
        )

    return build


@pytest.fixture
def services(make_services) -> Services:
    return make_services()


@pytest.fixture
def client(services) -> TestClient:
    return TestClient(create_app(services=services))


@pytest.fixture
def signed_request():
    """Send a request signed the way clients sign them."""

    def send(
        client: TestClient,
        method: str,
        path: str,
        payload: dict | None = None,
        secret: str = SECRET,
        key_id: str | None = None,
        nonce: str | None = None,
        timestamp: int | None = None,
        body: bytes | None = None,
    ):
        if body is None:
            body = json.dumps(payload).encode("utf-8") if payload is not None else b""
        ts = str(timestamp if timestamp is not None else now_ms())
        nonce = nonce or uuid.uuid4().hex
        headers = {
            TIMESTAMP_HEADER: ts,
            NONCE_HEADER: nonce,
            SIGNATURE_HEADER: sign(secret, method, path, ts, body, nonce),
        }
        if key_id:
            headers[KEY_ID_HEADER] = key_id
        if payload is not None or body:
            headers["Content-Type"] = "application/json"
        return client.request(method, path, content=body or None, headers=headers)

    return send
