"""Queue-triggered job worker: render, extract, generate, persist."""

import asyncio
import signal
from time import perf_counter

import structlog

from pdfdeck.config import Settings, load_settings
from pdfdeck.errors import WorkerError
from pdfdeck.extraction import build_page_model, extract_page_texts
from pdfdeck.generator import SlideGenerator
from pdfdeck.jobqueue import JobQueue
from pdfdeck.jobstore import JobStore
from pdfdeck.log import configure_logging
from pdfdeck.models import Job, JobMetrics, PageImage, RenderedPage, StartJobMessage
from pdfdeck.renderer import PageRenderingClient
from pdfdeck.staging import ObjectStagingService, result_object_path
from pdfdeck.storage import ObjectStorage, build_s3_uri

logger = structlog.get_logger()

MAX_ERROR_MESSAGE_CHARS = 500


def _elapsed_ms(started: float) -> int:
    return int((perf_counter() - started) * 1000)


def estimate_cost_usd(
    prompt_tokens: int,
    completion_tokens: int,
    input_usd_per_1m: float | None,
    output_usd_per_1m: float | None,
) -> float | None:
    """Generation cost from token usage, or None when prices are not configured."""
    if input_usd_per_1m is None or output_usd_per_1m is None:
        return None
    cost = (prompt_tokens * input_usd_per_1m + completion_tokens * output_usd_per_1m) / 1_000_000
    return round(cost, 6)


class JobWorker:
    """
    Orchestrates one conversion per queue message:
    1. Mark the job processing (skip if missing or already terminal)
    2. Download the source PDF (failure degrades to no text)
    3. Extract page text
    4. Render page images (optional, failure degrades to text-only)
    5. Generate the slide deck
    6. Write results/{jobId}/result.json
    7. Mark the job done

    Any failure after step 1 is recorded into the job as an error.
    """

    def __init__(
        self,
        settings: Settings,
        job_store: JobStore,
        storage: ObjectStorage,
        staging: ObjectStagingService,
        renderer: PageRenderingClient,
        generator: SlideGenerator,
    ) -> None:
        self._settings = settings
        self._job_store = job_store
        self._storage = storage
        self._staging = staging
        self._renderer = renderer
        self._generator = generator

    async def handle(self, message: StartJobMessage) -> bool:
        """
        Process one delivery.

        Never raises. Returns True when the delivery can be acknowledged and
        False when it should be redelivered (the job state could not be
        recorded).
        """
        with structlog.contextvars.bound_contextvars(job_id=message.jobId):
            try:
                job = await self._job_store.mark_processing(message.jobId)
            except Exception:
                logger.exception("Failed to mark job processing")
                return False

            if job is None:
                logger.info("Job missing or already terminal, skipping delivery")
                return True

            metrics = JobMetrics()
            try:
                await self._process(job, metrics)
                return True
            except WorkerError as e:
                code, error_message = e.code, e.message
                logger.error("Job failed", error_code=code, error_message=error_message)
            except Exception as e:
                code, error_message = "WORKER_ERROR", str(e) or type(e).__name__
                logger.exception("Job failed with unexpected error")

            try:
                await self._job_store.mark_error(
                    job.job_id,
                    code,
                    error_message[:MAX_ERROR_MESSAGE_CHARS],
                    metrics,
                )
                return True
            except Exception:
                logger.exception("Failed to record job error")
                return False

    async def _process(self, job: Job, metrics: JobMetrics) -> None:
        started = perf_counter()
        settings = self._settings
        source_key = job.source_object_path

        logger.info("Starting job", attempt=job.attempts, source_key=source_key)

        # Step 2: download source PDF
        step = perf_counter()
        pdf_bytes: bytes | None = None
        try:
            pdf_bytes = await asyncio.to_thread(
                self._storage.get_bytes, settings.uploads_bucket, source_key
            )
        except Exception as e:
            logger.warning("Source download failed, continuing without text", error=str(e))
        metrics.durationsMs["download"] = _elapsed_ms(step)

        # Step 3: extract text
        step = perf_counter()
        page_texts = await asyncio.to_thread(
            extract_page_texts, pdf_bytes, settings.pdf_max_pages
        )
        metrics.durationsMs["extract"] = _elapsed_ms(step)

        # Step 4: render pages (optional)
        rendered: list[RenderedPage] = []
        if self._renderer.enabled:
            step = perf_counter()
            try:
                rendered = await self._renderer.render(
                    build_s3_uri(settings.uploads_bucket, source_key),
                    settings.render_dpi,
                    settings.pdf_max_pages,
                    job.job_id,
                )
            except Exception as e:
                logger.warning("Rendering failed, continuing text-only", error=str(e))
            metrics.durationsMs["render"] = _elapsed_ms(step)

        pages = build_page_model(page_texts, len(rendered))
        images = await self._page_images(rendered)

        # Step 5: generate
        step = perf_counter()
        result = await self._generator.generate(
            pages,
            images,
            max_slides=job.options.maxSlides,
            language=job.options.language,
            theme=job.options.theme,
        )
        metrics.durationsMs["generate"] = _elapsed_ms(step)
        metrics.promptTokens = result.prompt_tokens
        metrics.completionTokens = result.completion_tokens
        metrics.generationAttempts = result.attempts
        metrics.costUsd = estimate_cost_usd(
            result.prompt_tokens,
            result.completion_tokens,
            settings.openai_input_usd_per_1m_tokens,
            settings.openai_output_usd_per_1m_tokens,
        )
        metrics.pageCount = len(pages)
        metrics.imageCount = len(images)
        metrics.slideCount = len(result.deck.slides)

        # Step 6: persist result
        step = perf_counter()
        result_key = result_object_path(job.job_id)
        await asyncio.to_thread(
            self._storage.put_json,
            result.deck.to_json(),
            settings.jobs_bucket,
            result_key,
        )
        metrics.durationsMs["persist"] = _elapsed_ms(step)
        metrics.durationsMs["total"] = _elapsed_ms(started)

        # Step 7: mark done
        if not await self._job_store.mark_done(job.job_id, result_key, metrics):
            logger.warning("Job was settled by another delivery, result not recorded")
            return

        logger.info(
            "Job completed successfully",
            slide_count=metrics.slideCount,
            image_count=metrics.imageCount,
            duration_ms=metrics.durationsMs["total"],
        )

    async def _page_images(self, rendered: list[RenderedPage]) -> list[PageImage]:
        """Readable URLs for rendered pages; these are the only URLs a deck may use."""
        images: list[PageImage] = []
        try:
            for page in rendered:
                url = await self._staging.issue_download_handle(page.image_object_path)
                images.append(PageImage(page=page.index, url=url))
        except Exception as e:
            logger.warning("Could not sign page images, continuing without them",
                           error=str(e))
            return []
        return images

    async def run(
        self,
        queue: JobQueue,
        stop_event: asyncio.Event | None = None,
        wait_seconds: int = 20,
    ) -> None:
        """Consume messages one at a time until stop_event is set."""
        logger.info("Worker started")
        while not (stop_event and stop_event.is_set()):
            try:
                deliveries = await queue.receive(max_messages=1, wait_seconds=wait_seconds)
            except Exception:
                logger.exception("Queue receive failed")
                await asyncio.sleep(1)
                continue

            for delivery in deliveries:
                settled = await self.handle(delivery.message)
                try:
                    if settled:
                        await queue.ack(delivery)
                    else:
                        await queue.nack(delivery)
                except Exception:
                    logger.exception("Failed to settle delivery",
                                     job_id=delivery.message.jobId)
        logger.info("Worker stopped")


async def _serve(settings: Settings) -> None:
    from pdfdeck.dependencies import build_services

    services = build_services(settings, with_api=False)
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    await services.worker.run(
        services.queue,
        stop_event=stop_event,
        wait_seconds=settings.queue_wait_seconds,
    )


def main() -> None:
    """Entry point for `python -m pdfdeck.worker`."""
    settings = load_settings()
    configure_logging(settings)
    settings.require_worker()
    asyncio.run(_serve(settings))


if __name__ == "__main__":
    main()
