"""Card generation: the external chat-completions collaborator and its response parser."""

from .card_generator import CardGenerator, build_messages, build_summary_messages
from .payload_parser import GeneratedStack, parse_card_payload, normalize_card, DEFAULT_TOPIC

__all__ = [
	'CardGenerator',
	'build_messages',
	'build_summary_messages',
	'GeneratedStack',
	'parse_card_payload',
	'normalize_card',
	'DEFAULT_TOPIC',
]
