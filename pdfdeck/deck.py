"""The SlideDeck contract shared by the generator, the worker and result.json."""

from typing import Literal
from urllib.parse import urlparse

from pydantic import BaseModel, Field, field_validator

DEFAULT_THEME = "DEFAULT"
IMAGE_PLACEMENT = "RIGHT"
GENERATION_THEMES = ("DEFAULT", "LIGHT", "DARK")


class SlideImage(BaseModel):
    url: str
    placement: Literal["RIGHT"] | None = None
    widthPx: int | None = Field(default=None, ge=0)

    model_config = {"extra": "forbid"}

    @field_validator("url")
    @classmethod
    def _absolute_uri(cls, value: str) -> str:
        parsed = urlparse(value)
        if not parsed.scheme or not parsed.netloc:
            raise ValueError("url must be an absolute URI")
        return value


class Slide(BaseModel):
    title: str = Field(..., min_length=1)
    bullets: list[str] | None = None
    notes: str | None = None
    images: list[SlideImage] | None = None

    model_config = {"extra": "forbid"}


class SlideDeck(BaseModel):
    title: str = Field(..., min_length=1)
    theme: Literal["DEFAULT"] = DEFAULT_THEME
    slides: list[Slide] = Field(..., min_length=1)

    model_config = {"extra": "forbid"}

    def to_json(self) -> str:
        """Serialize for result.json, omitting absent optional fields."""
        return self.model_dump_json(exclude_none=True, indent=2)


class GeneratedDeck(BaseModel):
    """
    A deck as returned by the generation service, before normalization.

    The service may pick any theme it knows about; normalization pins the
    stored deck to DEFAULT_THEME.
    """

    title: str = Field(..., min_length=1)
    theme: Literal["DEFAULT", "LIGHT", "DARK"] = DEFAULT_THEME
    slides: list[Slide] = Field(..., min_length=1)

    model_config = {"extra": "forbid"}


# Hand-written JSON Schema sent to the generation service. Strict structured
# outputs need every property listed in "required" (optional values are
# nullable instead) and reject minLength, minItems and format, so those
# checks live in GeneratedDeck.
SLIDE_DECK_JSON_SCHEMA: dict = {
    "type": "object",
    "additionalProperties": False,
    "required": ["title", "theme", "slides"],
    "properties": {
        "title": {"type": "string"},
        "theme": {"type": "string", "enum": list(GENERATION_THEMES)},
        "slides": {
            "type": "array",
            "items": {
                "type": "object",
                "additionalProperties": False,
                "required": ["title", "bullets", "notes", "images"],
                "properties": {
                    "title": {"type": "string"},
                    "bullets": {"type": ["array", "null"], "items": {"type": "string"}},
                    "notes": {"type": ["string", "null"]},
                    "images": {
                        "type": ["array", "null"],
                        "items": {
                            "type": "object",
                            "additionalProperties": False,
                            "required": ["url", "placement", "widthPx"],
                            "properties": {
                                "url": {"type": "string"},
                                "placement": {
                                    "type": ["string", "null"],
                                    "enum": [IMAGE_PLACEMENT, None],
                                },
                                "widthPx": {"type": ["integer", "null"]},
                            },
                        },
                    },
                },
            },
        },
    },
}
