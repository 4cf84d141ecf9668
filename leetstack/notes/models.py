from __future__ import annotations

import uuid
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def new_card_id() -> str:
    return f'card-{uuid.uuid4()}'


def optional_text(value) -> Optional[str]:
    if not isinstance(value, str):
        return None
    trimmed = value.strip()
    return trimmed or None


def clean_tags(value) -> List[str]:
    if not isinstance(value, list):
        return []
    return [tag.strip() for tag in value if isinstance(tag, str) and tag.strip()]


class CardRecord(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str = Field(default_factory=new_card_id)
    front: str = Field(..., min_length=1)
    back: str = Field(..., min_length=1)
    extra: Optional[str] = None
    tags: List[str] = Field(default_factory=list)


class NoteRecord(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    note_id: str
    owner_id: str
    source_url: str
    topic: Optional[str] = None
    summary: Optional[str] = None
    cards: List[CardRecord] = Field(default_factory=list)
    request_payload: Optional[dict] = None
    created_at: datetime
    updated_at: datetime
    last_reviewed_at: Optional[datetime] = None
    last_review_status: Optional[str] = None
    review_interval_seconds: Optional[int] = None
    review_ease_factor: Optional[float] = None
    review_repetitions: Optional[int] = None
    next_review_date: Optional[datetime] = None


class NoteView(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    note_id: str
    url: str
    topic: Optional[str] = None
    summary: Optional[str] = None
    cards: List[CardRecord] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime
    last_reviewed_at: Optional[datetime] = None
    last_review_status: Optional[str] = None
    review_interval_seconds: Optional[int] = None
    review_ease_factor: Optional[float] = None
    review_repetitions: Optional[int] = None
    next_review_date: Optional[datetime] = None

    @classmethod
    def from_record(cls, note: NoteRecord) -> 'NoteView':
        return cls(
            url=note.source_url,
            **note.model_dump(exclude={'owner_id', 'source_url', 'request_payload', 'cards'}),
            cards=note.cards,
        )


class NoteSummaryView(BaseModel):
    """List entry for a note: no cards, just their count and merged tags."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    note_id: str
    url: str
    topic: Optional[str] = None
    summary: Optional[str] = None
    created_at: datetime
    last_reviewed_at: Optional[datetime] = None
    last_review_status: Optional[str] = None
    card_count: int = 0
    tags: List[str] = Field(default_factory=list)

    @classmethod
    def from_record(cls, note: NoteRecord) -> 'NoteSummaryView':
        tags: List[str] = []
        for card in note.cards:
            for tag in clean_tags(card.tags):
                if tag not in tags:
                    tags.append(tag)
        return cls(
            note_id=note.note_id,
            url=note.source_url,
            topic=note.topic,
            summary=note.summary,
            created_at=note.created_at,
            last_reviewed_at=note.last_reviewed_at,
            last_review_status=note.last_review_status,
            card_count=len(note.cards),
            tags=tags,
        )
