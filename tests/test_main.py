"""Tests for the Lambda entry point."""

import asyncio
import json

from pdfdeck import main
from pdfdeck.models import JobStatus


def test_warming_ping():
    assert main.handler({"source": "aws.events"}, None) == {"statusCode": 200, "body": "warm"}


def test_sqs_batch_reports_failures(services, monkeypatch):
    job = asyncio.run(services.jobs.create_job("upl_1", "report.pdf"))
    message = services.queue.published[0]
    monkeypatch.setattr(main, "_worker_services", lambda: services)

    async def fail_mark_processing(job_id):
        raise RuntimeError("table unavailable")

    event = {
        "Records": [
            {"messageId": "m1", "eventSource": "aws:sqs", "body": message.model_dump_json()},
            {"messageId": "m2", "eventSource": "aws:sqs", "body": "{not json"},
        ]
    }
    assert main.handler(event, None) == {"batchItemFailures": []}
    assert asyncio.run(services.job_store.get(job.job_id)).status == JobStatus.DONE

    monkeypatch.setattr(services.job_store, "mark_processing", fail_mark_processing)
    event["Records"][0]["body"] = json.dumps({**message.model_dump(), "jobId": "job_other"})
    assert main.handler(event, None) == {"batchItemFailures": [{"itemIdentifier": "m1"}]}
