"""HTTP client for the external page-rendering service."""

import asyncio
import time
from typing import Callable

import requests
import structlog
from pydantic import ValidationError

from pdfdeck.config import Settings
from pdfdeck.errors import WorkerError
from pdfdeck.models import RenderedPage

logger = structlog.get_logger()


class RendererError(WorkerError):
    """Exception raised when the renderer fails or cannot be reached."""

    def __init__(self, message: str, status: int | None = None) -> None:
        self.status = status
        super().__init__("RENDERER_ERROR", message)


def backoff_delay(attempt: int, base_ms: int = 200, cap_ms: int = 2000) -> float:
    """Seconds to wait after the given (1-based) failed attempt."""
    return min(base_ms * (2 ** (attempt - 1)), cap_ms) / 1000


class PageRenderingClient:
    """
    Turns a stored PDF into an ordered list of page images.

    Transport failures and timeouts are retried with exponential backoff
    inside an overall time limit. Renderer-reported HTTP errors are not
    retried; their body is surfaced verbatim.
    """

    def __init__(
        self,
        base_url: str | None,
        timeout_seconds: float = 30.0,
        max_attempts: int = 3,
        backoff_base_ms: int = 200,
        backoff_cap_ms: int = 2000,
        session: requests.Session | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._base_url = base_url.rstrip("/") if base_url else None
        self._timeout = timeout_seconds
        self._max_attempts = max(1, max_attempts)
        self._backoff_base_ms = backoff_base_ms
        self._backoff_cap_ms = backoff_cap_ms
        self._session = session or requests.Session()
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings: Settings) -> "PageRenderingClient":
        return cls(
            settings.renderer_url,
            timeout_seconds=settings.renderer_timeout_seconds,
            max_attempts=settings.renderer_max_attempts,
            backoff_base_ms=settings.renderer_backoff_base_ms,
            backoff_cap_ms=settings.renderer_backoff_cap_ms,
        )

    @property
    def enabled(self) -> bool:
        return self._base_url is not None

    async def render(
        self,
        source_uri: str,
        dpi: int,
        max_pages: int,
        job_id: str | None = None,
    ) -> list[RenderedPage]:
        """
        Render a PDF into page images.

        Args:
            source_uri: s3:// URI of the source PDF
            dpi: Rendering resolution
            max_pages: Upper bound on returned pages
            job_id: Used by the renderer to place page images

        Returns:
            Pages sorted by 1-based index; empty when no renderer is configured

        Raises:
            RendererError: Renderer unreachable, timed out or reported an error
        """
        if not self.enabled:
            return []
        payload = {
            "sourceUri": source_uri,
            "dpi": dpi,
            "maxPages": max_pages,
            "jobId": job_id,
        }
        return await asyncio.to_thread(self._render_blocking, payload, max_pages)

    def _render_blocking(self, payload: dict, max_pages: int) -> list[RenderedPage]:
        url = f"{self._base_url}/render"
        deadline = time.monotonic() + self._timeout
        attempt = 0

        while True:
            attempt += 1
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise RendererError(
                    f"Renderer timed out after {self._timeout} seconds")
            try:
                response = self._session.post(url, json=payload, timeout=remaining)
            except (requests.ConnectionError, requests.Timeout) as e:
                delay = backoff_delay(
                    attempt, self._backoff_base_ms, self._backoff_cap_ms)
                if attempt >= self._max_attempts or time.monotonic() + delay >= deadline:
                    raise RendererError(
                        f"Renderer unreachable after {attempt} attempts: {e}")
                logger.warning(
                    "Renderer request failed, retrying",
                    attempt=attempt,
                    delay_seconds=delay,
                    error=str(e),
                )
                self._sleep(delay)
                continue

            if not response.ok:
                raise RendererError(
                    f"Renderer error {response.status_code}: {response.text}",
                    status=response.status_code,
                )
            return self._parse(response, max_pages)

    @staticmethod
    def _parse(response: requests.Response, max_pages: int) -> list[RenderedPage]:
        try:
            body = response.json()
            pages = [
                RenderedPage(
                    index=row["index"],
                    image_object_path=row["objectPath"],
                    width_px=row.get("widthPx"),
                    height_px=row.get("heightPx"),
                )
                for row in body.get("pages", [])
            ]
        except (ValueError, KeyError, TypeError, AttributeError, ValidationError) as e:
            raise RendererError(f"Malformed renderer response: {e}")

        by_index: dict[int, RenderedPage] = {}
        for page in pages:
            by_index.setdefault(page.index, page)
        ordered = [by_index[i] for i in sorted(by_index)][:max_pages]

        logger.info("Renderer returned pages", page_count=len(ordered))
        return ordered
