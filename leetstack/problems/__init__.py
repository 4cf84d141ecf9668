"""Coding problems tracked for review alongside generated notes."""

from .models import ProblemRecord, ProblemView
from .problem_store import ProblemStore, normalize_question_index

__all__ = [
	'ProblemRecord',
	'ProblemView',
	'ProblemStore',
	'normalize_question_index',
]
