"""Utility subpackage: logging, errors, identity and Redis wiring"""

from .logger import (
	get_logger,
	log_request,
	log_error,
	log_llm_call,
	set_request_context,
	get_request_context,
	log_job_transition,
	log_card_generation,
	log_review_sync,
)
from .errors import (
	LeetStackError,
	InvalidArgument,
	Unauthorized,
	NotFound,
	PreconditionFailed,
	AlreadyExists,
	InvalidTransition,
	UpstreamFailure,
	PersistenceFailure,
)
from .identity import ApiKeyIdentityProvider, hash_api_key
from .redis_client import connect_redis, backend_for

__all__ = [
	'get_logger',
	'log_request',
	'log_error',
	'log_llm_call',
	'set_request_context',
	'get_request_context',
	'log_job_transition',
	'log_card_generation',
	'log_review_sync',
	'LeetStackError',
	'InvalidArgument',
	'Unauthorized',
	'NotFound',
	'PreconditionFailed',
	'AlreadyExists',
	'InvalidTransition',
	'UpstreamFailure',
	'PersistenceFailure',
	'ApiKeyIdentityProvider',
	'hash_api_key',
	'connect_redis',
	'backend_for',
]
