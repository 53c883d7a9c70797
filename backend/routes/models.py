"""Pydantic request/response models for API endpoints."""

from typing import Literal

from pydantic import BaseModel

from microscope.models import EntityKind, PaletteCategory, Placement, Tone


class CreateGame(BaseModel):
    name: str = "New Game"


class CreatePeriodBody(BaseModel):
    title: str
    description: str = ""
    tone: Tone = "light"
    placement: Placement | None = None
    bookend: Literal["start", "end"] | None = None


class CreateEventBody(BaseModel):
    period_id: str
    title: str
    description: str = ""
    tone: Tone = "light"
    placement: Placement | None = None


class CreateSceneBody(BaseModel):
    event_id: str
    question: str
    answer: str | None = None
    tone: Tone = "light"
    title: str | None = None
    placement: Placement | None = None


class UpdateEntity(BaseModel):
    title: str | None = None
    description: str | None = None
    tone: Tone | None = None
    question: str | None = None
    answer: str | None = None


class FreezeBody(BaseModel):
    kind: EntityKind
    id: str


class BigPictureBody(BaseModel):
    big_picture: str


class PaletteItemBody(BaseModel):
    category: PaletteCategory
    text: str


class PaletteBody(BaseModel):
    yes: list[str] = []
    no: list[str] = []


class SelectionBody(BaseModel):
    type: Literal["meta", "period", "event", "scene"]
    id: str | None = None


class SendMessageBody(BaseModel):
    content: str
    message_id: str | None = None


class ParseBody(BaseModel):
    text: str


class SettingsBody(BaseModel):
    provider: Literal["claude", "openai", "echo"] | None = None
    api_key: str | None = None
    model: str | None = None
    base_url: str | None = None
    temperature: float | None = None
    max_tokens: int | None = None
    recent_message_count: int | None = None
