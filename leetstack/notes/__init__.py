"""Notes (ordered card stacks) produced by the generation pipeline."""

from .models import CardRecord, NoteRecord, NoteView, NoteSummaryView, new_card_id, optional_text, clean_tags
from .note_store import NoteStore, INSERT_AT_END

__all__ = [
	'CardRecord',
	'NoteRecord',
	'NoteView',
	'NoteSummaryView',
	'NoteStore',
	'INSERT_AT_END',
	'new_card_id',
	'optional_text',
	'clean_tags',
]
