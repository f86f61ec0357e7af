"""Tests for slide generation, repair and normalization."""

import asyncio
import json

import pytest

from pdfdeck.deck import (
    SLIDE_DECK_JSON_SCHEMA,
    GeneratedDeck,
    Slide,
    SlideDeck,
    SlideImage,
)
from pdfdeck.generator import (
    GenerationError,
    StructuredSlideGenerator,
    StubSlideGenerator,
    assign_images,
    normalize_deck,
    target_slide_count,
)
from pdfdeck.models import PageImage, PageText

from fakes import FakeOpenAI, deck_json


def page_images(count: int) -> list[PageImage]:
    return [
        PageImage(page=n, url=f"https://jobs.s3.test/renders/page-{n}.png?sig=x")
        for n in range(1, count + 1)
    ]


def pages(count: int, text: str = "Heading\nFirst point") -> list[PageText]:
    return [PageText(index=n, text=text) for n in range(1, count + 1)]


def generate(generator, page_count=5, image_count=5, **kwargs):
    return asyncio.run(
        generator.generate(pages(page_count), page_images(image_count), **kwargs)
    )


class TestTargetSlideCount:
    def test_one_slide_per_page(self):
        assert target_slide_count(5, 5) == 5

    def test_images_drive_count_when_present(self):
        assert target_slide_count(3, 5) == 5

    def test_text_only(self):
        assert target_slide_count(4, 0) == 4

    def test_capped_by_max_slides(self):
        assert target_slide_count(5, 5, max_slides=2) == 2

    def test_max_slides_above_pages_does_not_pad(self):
        assert target_slide_count(3, 0, max_slides=10) == 3

    def test_at_least_one(self):
        assert target_slide_count(0, 0) == 1


class TestNormalizeDeck:
    def test_truncates_to_target(self):
        deck = SlideDeck.model_validate_json(deck_json(7))
        result = normalize_deck(deck, 5, page_images(5))
        assert len(result.slides) == 5

    def test_pads_with_page_titles(self):
        deck = SlideDeck.model_validate_json(deck_json(2))
        result = normalize_deck(deck, 4, [])
        assert [s.title for s in result.slides] == ["Slide 1", "Slide 2", "Page 3", "Page 4"]

    def test_images_attached_in_page_order(self):
        deck = SlideDeck.model_validate_json(deck_json(3, image_url="https://evil.example/x.png"))
        images = list(reversed(page_images(2)))
        result = normalize_deck(deck, 3, images)

        first, second, third = result.slides
        assert first.images == [SlideImage(url=images[1].url, placement="RIGHT")]
        assert second.images == [SlideImage(url=images[0].url, placement="RIGHT")]
        assert third.images is None

    def test_model_policy_keeps_only_allowed_urls(self):
        allowed = page_images(1)[0].url
        deck = SlideDeck(
            title="Deck",
            slides=[
                Slide(title="A", images=[
                    SlideImage(url=allowed),
                    SlideImage(url="https://evil.example/x.png"),
                ]),
                Slide(title="B", images=[SlideImage(url="https://evil.example/y.png")]),
            ],
        )
        result = normalize_deck(deck, 2, page_images(1), policy="model")
        assert [im.url for im in result.slides[0].images] == [allowed]
        assert result.slides[1].images is None

    def test_assign_images_pads_with_none(self):
        assigned = assign_images(page_images(1), 3)
        assert assigned[0].page == 1
        assert assigned[1:] == [None, None]


class TestStructuredSlideGenerator:
    def test_first_attempt_success(self):
        client = FakeOpenAI([deck_json(5)])
        result = generate(StructuredSlideGenerator(client))

        assert result.attempts == 1
        assert len(result.deck.slides) == 5
        assert result.deck.theme == "DEFAULT"
        assert result.prompt_tokens == 100
        assert result.completion_tokens == 40

        call = client.calls[0]
        assert call["response_format"]["type"] == "json_schema"
        assert call["response_format"]["json_schema"]["strict"] is True
        assert call["temperature"] == 0.1
        assert call["max_tokens"] == 6000
        user_parts = call["messages"][1]["content"]
        payload = json.loads(user_parts[0]["text"])
        assert payload["constraints"]["targetSlideCount"] == 5
        assert len(payload["allowedImageUrls"]) == 5
        assert [p["type"] for p in user_parts[2:]] == ["image_url"] * 5

    def test_max_slides_respected(self):
        client = FakeOpenAI([deck_json(5)])
        result = generate(StructuredSlideGenerator(client), max_slides=2)
        assert len(result.deck.slides) == 2

    def test_external_image_urls_replaced(self):
        client = FakeOpenAI([deck_json(5, image_url="https://evil.example/x.png")])
        result = generate(StructuredSlideGenerator(client))

        allowed = {image.url for image in page_images(5)}
        urls = [im.url for s in result.deck.slides for im in s.images or []]
        assert urls and set(urls) <= allowed

    def test_invalid_output_repaired(self):
        client = FakeOpenAI(['{"title": "Deck", "slides": []}', deck_json(5)])
        result = generate(StructuredSlideGenerator(client))

        assert result.attempts == 2
        assert result.prompt_tokens == 200
        repair = client.calls[1]
        assert repair["response_format"] == {"type": "json_object"}
        assert repair["temperature"] == 0.0
        payload = json.loads(repair["messages"][1]["content"][0]["text"])
        assert payload["previous"] == '{"title": "Deck", "slides": []}'
        assert payload["targetSlideCount"] == 5
        assert "schema" in payload

    def test_service_error_falls_through_to_repair(self):
        client = FakeOpenAI([RuntimeError("schema not supported"), deck_json(5)])
        assert generate(StructuredSlideGenerator(client)).attempts == 2

    def test_both_attempts_invalid(self):
        client = FakeOpenAI(["not json", '{"slides": "nope"}'])
        with pytest.raises(GenerationError) as exc:
            generate(StructuredSlideGenerator(client))
        assert exc.value.code == "GENERATION_SCHEMA_INVALID"
        assert len(client.calls) == 2

    def test_repair_call_failure(self):
        client = FakeOpenAI(["not json", RuntimeError("timeout")])
        with pytest.raises(GenerationError):
            generate(StructuredSlideGenerator(client))

    def test_text_only_sends_no_images(self):
        client = FakeOpenAI([deck_json(2)])
        result = generate(StructuredSlideGenerator(client), page_count=2, image_count=0)

        assert all(slide.images is None for slide in result.deck.slides)
        assert len(client.calls[0]["messages"][1]["content"]) == 1
        payload = json.loads(client.calls[0]["messages"][1]["content"][0]["text"])
        assert payload["hints"]["lowText"] is True


class TestStubSlideGenerator:
    def test_builds_slides_from_text(self):
        result = asyncio.run(StubSlideGenerator().generate(
            [PageText(index=1, text="Quarterly results\nRevenue up\nCosts down")],
            page_images(1),
        ))
        [slide] = result.deck.slides
        assert slide.title == "Quarterly results"
        assert slide.bullets == ["Revenue up", "Costs down"]
        assert slide.images[0].placement == "RIGHT"
        assert result.attempts == 0

    def test_blank_pages_get_page_titles(self):
        result = asyncio.run(StubSlideGenerator().generate(
            [PageText(index=1, text=""), PageText(index=2, text="  ")], []))
        assert [s.title for s in result.deck.slides] == ["Page 1", "Page 2"]


def schema_objects(schema: dict):
    """Every object node in a JSON schema, depth first."""
    if schema.get("type") == "object":
        yield schema
        for prop in schema["properties"].values():
            yield from schema_objects(prop)
    elif "items" in schema:
        yield from schema_objects(schema["items"])


class TestSlideDeckSchema:
    def test_every_property_is_required(self):
        objects = list(schema_objects(SLIDE_DECK_JSON_SCHEMA))
        assert len(objects) == 3
        for node in objects:
            assert node["required"] == list(node["properties"])
            assert node["additionalProperties"] is False

    def test_no_keywords_rejected_by_strict_mode(self):
        text = json.dumps(SLIDE_DECK_JSON_SCHEMA)
        for keyword in ("minLength", "minItems", "format", "minimum"):
            assert f'"{keyword}"' not in text

    def test_theme_enum_lists_generation_themes(self):
        assert SLIDE_DECK_JSON_SCHEMA["properties"]["theme"]["enum"] == ["DEFAULT", "LIGHT", "DARK"]

    def test_strict_output_with_nulls_validates(self):
        raw = json.dumps({
            "title": "Deck",
            "theme": "DEFAULT",
            "slides": [
                {"title": "One", "bullets": None, "notes": None, "images": None},
                {
                    "title": "Two",
                    "bullets": ["b"],
                    "notes": None,
                    "images": [{"url": "https://evil.example/x.png", "placement": None, "widthPx": None}],
                },
            ],
        })
        client = FakeOpenAI([raw])
        result = generate(StructuredSlideGenerator(client), page_count=2, image_count=2)
        assert result.attempts == 1
        assert [s.title for s in result.deck.slides] == ["One", "Two"]
        assert "null" not in result.deck.to_json()


class TestThemeNormalization:
    @pytest.mark.parametrize("theme", ["LIGHT", "DARK"])
    def test_generated_theme_pinned_to_default(self, theme):
        raw = json.dumps({"title": "Deck", "theme": theme, "slides": [{"title": "a"}]})
        client = FakeOpenAI([raw])
        result = generate(StructuredSlideGenerator(client), page_count=1, image_count=0)
        assert result.attempts == 1
        assert result.deck.theme == "DEFAULT"

    def test_repaired_theme_pinned_to_default(self):
        raw = json.dumps({"title": "Deck", "theme": "DARK", "slides": [{"title": "a"}]})
        client = FakeOpenAI(["not json", raw])
        result = generate(StructuredSlideGenerator(client), page_count=1, image_count=0)
        assert result.attempts == 2
        assert result.deck.theme == "DEFAULT"

    def test_unknown_theme_still_invalid(self):
        raw = json.dumps({"title": "Deck", "theme": "NEON", "slides": [{"title": "a"}]})
        client = FakeOpenAI([raw, raw])
        with pytest.raises(GenerationError):
            generate(StructuredSlideGenerator(client), page_count=1, image_count=0)

    def test_normalize_accepts_generated_deck(self):
        deck = GeneratedDeck(title="Deck", theme="LIGHT", slides=[Slide(title="a")])
        normalized = normalize_deck(deck, 1, [])
        assert isinstance(normalized, SlideDeck)
        assert normalized.theme == "DEFAULT"
