"""At-least-once delivery of job start messages."""

import asyncio
import uuid
from dataclasses import dataclass

import structlog
from pydantic import ValidationError

from pdfdeck.models import StartJobMessage

logger = structlog.get_logger()


@dataclass(frozen=True)
class QueueDelivery:
    """A received message plus the handle needed to settle it."""

    message: StartJobMessage
    receipt: str


class JobQueue:
    async def publish(self, message: StartJobMessage) -> None:
        raise NotImplementedError

    async def receive(
        self, max_messages: int = 1, wait_seconds: int = 20
    ) -> list[QueueDelivery]:
        raise NotImplementedError

    async def ack(self, delivery: QueueDelivery) -> None:
        """Settle a delivery so it is not redelivered."""
        raise NotImplementedError

    async def nack(self, delivery: QueueDelivery) -> None:
        """Make a delivery visible again for another attempt."""
        raise NotImplementedError


class InMemoryJobQueue(JobQueue):
    """Process-local queue for local mode and tests."""

    def __init__(self) -> None:
        self._queue: asyncio.Queue[StartJobMessage] = asyncio.Queue()
        self._in_flight: dict[str, StartJobMessage] = {}
        self.published: list[StartJobMessage] = []

    async def publish(self, message: StartJobMessage) -> None:
        self.published.append(message)
        await self._queue.put(message)
        logger.info("Job message published", job_id=message.jobId)

    async def receive(
        self, max_messages: int = 1, wait_seconds: int = 20
    ) -> list[QueueDelivery]:
        try:
            message = await asyncio.wait_for(self._queue.get(), timeout=wait_seconds)
        except asyncio.TimeoutError:
            return []
        deliveries = [self._deliver(message)]
        while len(deliveries) < max_messages and not self._queue.empty():
            deliveries.append(self._deliver(self._queue.get_nowait()))
        return deliveries

    def _deliver(self, message: StartJobMessage) -> QueueDelivery:
        receipt = uuid.uuid4().hex
        self._in_flight[receipt] = message
        return QueueDelivery(message=message, receipt=receipt)

    async def ack(self, delivery: QueueDelivery) -> None:
        self._in_flight.pop(delivery.receipt, None)

    async def nack(self, delivery: QueueDelivery) -> None:
        message = self._in_flight.pop(delivery.receipt, None)
        if message is not None:
            await self._queue.put(message)

    @property
    def pending(self) -> int:
        return self._queue.qsize()


class SqsJobQueue(JobQueue):
    """SQS-backed job queue."""

    def __init__(self, client, queue_url: str) -> None:
        self._client = client
        self._queue_url = queue_url

    async def publish(self, message: StartJobMessage) -> None:
        response = await asyncio.to_thread(
            self._client.send_message,
            QueueUrl=self._queue_url,
            MessageBody=message.model_dump_json(),
        )
        logger.info(
            "Job message published",
            job_id=message.jobId,
            message_id=response.get("MessageId"),
        )

    async def receive(
        self, max_messages: int = 1, wait_seconds: int = 20
    ) -> list[QueueDelivery]:
        response = await asyncio.to_thread(
            self._client.receive_message,
            QueueUrl=self._queue_url,
            MaxNumberOfMessages=max_messages,
            WaitTimeSeconds=wait_seconds,
        )
        deliveries: list[QueueDelivery] = []
        for raw in response.get("Messages", []):
            try:
                message = StartJobMessage.model_validate_json(raw["Body"])
            except ValidationError as e:
                # Undecodable messages would be redelivered forever
                logger.error(
                    "Dropping malformed job message",
                    message_id=raw.get("MessageId"),
                    error=str(e),
                )
                await asyncio.to_thread(
                    self._client.delete_message,
                    QueueUrl=self._queue_url,
                    ReceiptHandle=raw["ReceiptHandle"],
                )
                continue
            deliveries.append(QueueDelivery(message=message, receipt=raw["ReceiptHandle"]))
        return deliveries

    async def ack(self, delivery: QueueDelivery) -> None:
        await asyncio.to_thread(
            self._client.delete_message,
            QueueUrl=self._queue_url,
            ReceiptHandle=delivery.receipt,
        )

    async def nack(self, delivery: QueueDelivery) -> None:
        await asyncio.to_thread(
            self._client.change_message_visibility,
            QueueUrl=self._queue_url,
            ReceiptHandle=delivery.receipt,
            VisibilityTimeout=0,
        )
