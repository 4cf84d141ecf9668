from __future__ import annotations

import json
import re
from typing import Any, List, Optional

from pydantic import BaseModel, Field, ValidationError

from leetstack.notes.models import CardRecord, clean_tags, optional_text
from leetstack.utils import get_logger, UpstreamFailure

LOG = get_logger()

DEFAULT_TOPIC = 'Interview study stack'

_FENCE = re.compile(r'```(?:json)?', re.IGNORECASE)


class GeneratedStack(BaseModel):
    topic: str
    summary: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    cards: List[CardRecord] = Field(default_factory=list)


def _unwrap(raw: str) -> str:
    text = raw.strip()
    if len(text) >= 2 and text[0] == text[-1] and text[0] in ('"', "'"):
        text = text[1:-1]
    return _FENCE.sub('', text).strip()


def normalize_card(card: Any) -> Optional[CardRecord]:
    """Return a clean card, or None when front/back are missing or blank."""
    if not isinstance(card, dict):
        return None
    front = optional_text(card.get('front'))
    back = optional_text(card.get('back'))
    if not front or not back:
        return None
    fields = {'front': front, 'back': back, 'extra': optional_text(card.get('extra')), 'tags': clean_tags(card.get('tags'))}
    card_id = optional_text(card.get('id'))
    if card_id:
        fields['id'] = card_id
    try:
        return CardRecord(**fields)
    except ValidationError:
        return None


def parse_card_payload(raw: Optional[str], fallback_topic: Optional[str] = None) -> GeneratedStack:
    """Parse a generation response into a stack of valid cards.

    Raises UpstreamFailure when the text is not a JSON object with a ``cards``
    array, or when no card in it survives validation.
    """
    if not isinstance(raw, str) or not raw.strip():
        raise UpstreamFailure('Generation response was empty')
    cleaned = _unwrap(raw)
    try:
        parsed = json.loads(cleaned)
    except json.JSONDecodeError as e:
        LOG.error('card_payload_parse_failed', extra={'error': str(e), 'preview': cleaned[:200]})
        raise UpstreamFailure('Generation response was not valid JSON') from e

    if not isinstance(parsed, dict) or not isinstance(parsed.get('cards'), list):
        raise UpstreamFailure('Generation response did not contain a cards array')

    cards = [c for c in (normalize_card(item) for item in parsed['cards']) if c is not None]
    dropped = len(parsed['cards']) - len(cards)
    if dropped:
        LOG.warning('card_payload_cards_dropped', extra={'dropped': dropped, 'kept': len(cards)})
    if not cards:
        raise UpstreamFailure('Generation response contained no valid cards')

    topic = optional_text(parsed.get('title')) or optional_text(parsed.get('topic')) or optional_text(fallback_topic) or DEFAULT_TOPIC
    return GeneratedStack(
        topic=topic,
        summary=optional_text(parsed.get('summary')),
        tags=clean_tags(parsed.get('tags')),
        cards=cards,
    )
