"""Structured slide generation with a bounded repair protocol."""

import asyncio
import json
import re
from dataclasses import dataclass
from time import perf_counter
from typing import Any, Literal

import structlog
from openai import OpenAI
from pydantic import ValidationError

from pdfdeck.config import Settings
from pdfdeck.deck import (
    DEFAULT_THEME,
    GeneratedDeck,
    IMAGE_PLACEMENT,
    SLIDE_DECK_JSON_SCHEMA,
    Slide,
    SlideDeck,
    SlideImage,
)
from pdfdeck.errors import WorkerError
from pdfdeck.models import PageImage, PageText

logger = structlog.get_logger()

ImagePolicy = Literal["deterministic", "model"]

LOW_TEXT_CHARS = 500
ATTEMPT_TEMPERATURE = 0.1
REPAIR_TEMPERATURE = 0.0

SYSTEM_PROMPT = " ".join([
    "You convert PDF content into a slide deck JSON that must strictly match the provided JSON Schema.",
    "You will receive a JSON payload describing extracted page text and constraints, and possibly a sequence of page images.",
    "Rules:",
    "- Output JSON only (no prose).",
    "- Produce exactly targetSlideCount slides, one per source page, in page order.",
    "- Use short headings and concise bullets; put extra detail in notes.",
    "- Page images are context only. If you include images, use ONLY URLs from allowedImageUrls. External URLs are forbidden.",
    "- If the text is sparse, rely on the page images to infer slide content.",
])

REPAIR_INSTRUCTION = (
    "Your previous output did not validate. Return a single JSON object that "
    "validates strictly against the schema. IMPORTANT: All images[].url MUST be "
    "chosen only from allowedImageUrls; external URLs are forbidden."
)


class GenerationError(WorkerError):
    """Both generation attempts failed to produce a valid deck."""

    def __init__(self, message: str) -> None:
        super().__init__("GENERATION_SCHEMA_INVALID", message)


@dataclass
class GenerationResult:
    deck: SlideDeck
    attempts: int
    prompt_tokens: int = 0
    completion_tokens: int = 0


def target_slide_count(
    page_count: int, image_count: int, max_slides: int | None = None
) -> int:
    """One slide per source page, capped by the caller's maxSlides."""
    n = max(image_count, page_count) if image_count > 0 else page_count
    return max(1, min(max_slides or n, n))


def assign_images(images: list[PageImage], count: int) -> list[PageImage | None]:
    """Attach at most one image per slide, by ascending page order."""
    ordered = sorted(images, key=lambda image: image.page)
    return [ordered[i] if i < len(ordered) else None for i in range(count)]


def normalize_deck(
    deck: GeneratedDeck | SlideDeck,
    target: int,
    images: list[PageImage],
    policy: ImagePolicy = "deterministic",
) -> SlideDeck:
    """
    Reconcile a generated deck with what is verifiably available.

    The slide list is truncated or padded to exactly target slides, the
    theme is pinned and image references come from the rendered pages only.
    """
    slides = [slide.model_copy(deep=True) for slide in deck.slides[:target]]
    for n in range(len(slides) + 1, target + 1):
        slides.append(Slide(title=f"Page {n}"))

    allowed = {image.url for image in images}
    for slide, image in zip(slides, assign_images(images, target)):
        if policy == "model":
            kept = [im for im in slide.images or [] if im.url in allowed]
            slide.images = kept or None
        else:
            slide.images = (
                [SlideImage(url=image.url, placement=IMAGE_PLACEMENT)] if image else None
            )

    return SlideDeck(title=deck.title, theme=DEFAULT_THEME, slides=slides)


def _preview_text(text: str, limit: int = 220) -> str:
    raw = str(text or "").replace("\r", " ").replace("\n", " ").strip()
    if len(raw) <= limit:
        return raw
    return raw[:limit].rstrip() + " ..."


def _image_parts(images: list[PageImage], label: str) -> list[dict[str, Any]]:
    if not images:
        return []
    parts: list[dict[str, Any]] = [{"type": "text", "text": label}]
    parts.extend({"type": "image_url", "image_url": {"url": image.url}} for image in images)
    return parts


class SlideGenerator:
    name = "base"

    async def generate(
        self,
        pages: list[PageText],
        images: list[PageImage],
        max_slides: int | None = None,
        language: str | None = None,
        theme: str | None = None,
    ) -> GenerationResult:
        raise NotImplementedError


class StructuredSlideGenerator(SlideGenerator):
    """
    Generates a SlideDeck through the OpenAI chat completions API.

    Attempt 1 asks for strict JSON-schema output. If the call fails or the
    output does not validate, attempt 2 sends the invalid output back with
    the schema at temperature 0 in plain JSON mode. There is no third
    attempt and the client itself does not retry.
    """

    name = "openai"

    def __init__(
        self,
        client: OpenAI,
        model: str = "gpt-4o-mini",
        max_tokens: int = 6000,
        image_policy: ImagePolicy = "deterministic",
    ) -> None:
        self._client = client
        self._model = model
        self._max_tokens = max_tokens
        self._image_policy = image_policy

    @classmethod
    def from_settings(cls, settings: Settings) -> "StructuredSlideGenerator":
        client = OpenAI(
            api_key=settings.openai_api_key,
            timeout=settings.openai_timeout_seconds,
            max_retries=0,
        )
        return cls(
            client,
            model=settings.openai_model,
            max_tokens=settings.openai_max_tokens,
            image_policy=settings.image_attachment,
        )

    async def generate(
        self,
        pages: list[PageText],
        images: list[PageImage],
        max_slides: int | None = None,
        language: str | None = None,
        theme: str | None = None,
    ) -> GenerationResult:
        ordered_images = sorted(images, key=lambda image: image.page)
        target = target_slide_count(len(pages), len(ordered_images), max_slides)
        allowed_urls = [image.url for image in ordered_images]
        total_chars = sum(len(page.text) for page in pages)
        low_text = total_chars < LOW_TEXT_CHARS

        if theme and theme != DEFAULT_THEME:
            logger.info("Requested theme ignored, deck theme is pinned",
                        requested_theme=theme)

        payload = {
            "constraints": {
                "targetSlideCount": target,
                "language": language or "auto",
                "theme": DEFAULT_THEME,
            },
            "document": {
                "pages": [page.model_dump() for page in pages],
            },
            "allowedImageUrls": allowed_urls,
            "guidelines": [
                "Short headings, concise bullets",
                "One slide per page, in page order",
                "No extraneous text",
            ],
            "hints": {"lowText": low_text, "preferVisualUnderstanding": low_text},
        }
        usage = {"prompt_tokens": 0, "completion_tokens": 0}

        logger.info(
            "Generating slides",
            pages=len(pages),
            images=len(ordered_images),
            target_slides=target,
            low_text=low_text,
        )

        # Attempt 1: strict JSON schema response format
        raw = "{}"
        try:
            raw = await self._complete(
                user_content=[{"type": "text", "text": json.dumps(payload)}]
                + _image_parts(
                    ordered_images,
                    f"Below are {len(ordered_images)} page images in reading order:",
                ),
                response_format={
                    "type": "json_schema",
                    "json_schema": {
                        "name": "SlideDeck",
                        "schema": SLIDE_DECK_JSON_SCHEMA,
                        "strict": True,
                    },
                },
                temperature=ATTEMPT_TEMPERATURE,
                usage=usage,
                label="attempt1",
            )
            deck = GeneratedDeck.model_validate_json(raw)
            return self._result(deck, target, ordered_images, 1, usage)
        except Exception as e:
            logger.warning(
                "Generation attempt failed, trying repair",
                error=_preview_text(str(e)),
                raw_preview=_preview_text(raw),
            )

        # Attempt 2: repair with the schema and the previous output
        repair_payload = {
            "instruction": REPAIR_INSTRUCTION,
            "schema": SLIDE_DECK_JSON_SCHEMA,
            "previous": raw,
            "targetSlideCount": target,
            "allowedImageUrls": allowed_urls,
        }
        try:
            raw = await self._complete(
                user_content=[{"type": "text", "text": json.dumps(repair_payload)}]
                + _image_parts(
                    ordered_images,
                    f"Reference page images again ({len(ordered_images)}):",
                ),
                response_format={"type": "json_object"},
                temperature=REPAIR_TEMPERATURE,
                usage=usage,
                label="attempt2",
            )
            deck = GeneratedDeck.model_validate_json(raw)
        except ValidationError as e:
            raise GenerationError(
                f"LLM response did not match schema after repair: "
                f"{_preview_text(str(e), 400)}"
            )
        except Exception as e:
            raise GenerationError(f"LLM repair attempt failed: {_preview_text(str(e), 400)}")

        return self._result(deck, target, ordered_images, 2, usage)

    def _result(
        self,
        deck: GeneratedDeck,
        target: int,
        images: list[PageImage],
        attempts: int,
        usage: dict[str, int],
    ) -> GenerationResult:
        normalized = normalize_deck(deck, target, images, self._image_policy)
        logger.info(
            "Slides generated",
            attempts=attempts,
            model_slides=len(deck.slides),
            slides=len(normalized.slides),
        )
        return GenerationResult(
            deck=normalized,
            attempts=attempts,
            prompt_tokens=usage["prompt_tokens"],
            completion_tokens=usage["completion_tokens"],
        )

    async def _complete(
        self,
        *,
        user_content: list[dict[str, Any]],
        response_format: dict[str, Any],
        temperature: float,
        usage: dict[str, int],
        label: str,
    ) -> str:
        started = perf_counter()
        completion = await asyncio.to_thread(
            self._client.chat.completions.create,
            model=self._model,
            response_format=response_format,
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": user_content},
            ],
            temperature=temperature,
            max_tokens=self._max_tokens,
        )
        if completion.usage is not None:
            usage["prompt_tokens"] += completion.usage.prompt_tokens or 0
            usage["completion_tokens"] += completion.usage.completion_tokens or 0

        content = completion.choices[0].message.content if completion.choices else None
        text = (content or "").strip() or "{}"
        logger.info(
            "LLM request done",
            label=label,
            model=self._model,
            duration_sec=round(perf_counter() - started, 2),
            output_chars=len(text),
        )
        return text


_SENTENCE_BREAK = re.compile(r"\n|\.\s+")


class StubSlideGenerator(SlideGenerator):
    """Builds a deck straight from page text. Used when generation is disabled."""

    name = "stub"

    def __init__(self, image_policy: ImagePolicy = "deterministic") -> None:
        self._image_policy = image_policy

    async def generate(
        self,
        pages: list[PageText],
        images: list[PageImage],
        max_slides: int | None = None,
        language: str | None = None,
        theme: str | None = None,
    ) -> GenerationResult:
        target = target_slide_count(len(pages), len(images), max_slides)
        slides = []
        for page in pages[:target]:
            lines = [part.strip() for part in _SENTENCE_BREAK.split(page.text) if part.strip()]
            slides.append(
                Slide(
                    title=(lines[0][:120] if lines else f"Page {page.index}"),
                    bullets=[line[:200] for line in lines[1:6]] or None,
                )
            )
        if not slides:
            slides = [Slide(title="Page 1")]
        deck = SlideDeck(title="Generated Deck", slides=slides)
        return GenerationResult(
            deck=normalize_deck(deck, target, images, self._image_policy),
            attempts=0,
        )
