"""LeetStack core: card generation pipeline and spaced-repetition scheduling."""

__version__ = '1.0.0'
