"""
Spaced-repetition scheduling (SM-2 style) and the client-side review state
store that reconciles local grades with the server of record.
"""

from .scheduler import (
	SpacedRepetitionScheduler,
	SchedulerConfig,
	SchedulingSnapshot,
	ReviewGrade,
	ReviewState,
	ScheduleResult,
)
from .review_store import (
	ReviewStateStore,
	CardKey,
	SourceType,
	RemoteSnapshot,
	Reviewable,
	GradeOutcome,
	InMemoryReviewBackend,
	RedisReviewBackend,
)
from .review_sync import ReviewSyncClient, ReviewSyncPayload, ReviewSyncError, ReviewSyncRejected

__all__ = [
	'SpacedRepetitionScheduler',
	'SchedulerConfig',
	'SchedulingSnapshot',
	'ReviewGrade',
	'ReviewState',
	'ScheduleResult',
	'ReviewStateStore',
	'CardKey',
	'SourceType',
	'RemoteSnapshot',
	'Reviewable',
	'GradeOutcome',
	'InMemoryReviewBackend',
	'RedisReviewBackend',
	'ReviewSyncClient',
	'ReviewSyncPayload',
	'ReviewSyncError',
	'ReviewSyncRejected',
]
