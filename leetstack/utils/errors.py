"""Error taxonomy shared by the job pipeline, the stores and the HTTP layer.

Each error carries a stable ``code`` and the HTTP status the API maps it to.
``PersistenceFailure`` keeps its cause for logs but exposes a generic
``public_message`` so store internals never leak to callers.
"""


class LeetStackError(Exception):
    code = 'internal_error'
    http_status = 500

    def __init__(self, message: str = '', **context):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.context = context

    @property
    def public_message(self) -> str:
        return self.message


class InvalidArgument(LeetStackError):
    code = 'invalid_argument'
    http_status = 400


class Unauthorized(LeetStackError):
    code = 'unauthorized'
    http_status = 401


class NotFound(LeetStackError):
    code = 'not_found'
    http_status = 404


class PreconditionFailed(LeetStackError):
    code = 'precondition_failed'
    http_status = 409


class AlreadyExists(LeetStackError):
    code = 'already_exists'
    http_status = 409


class InvalidTransition(LeetStackError):
    code = 'invalid_transition'
    http_status = 409


class UpstreamFailure(LeetStackError):
    code = 'upstream_failure'
    http_status = 502


class PersistenceFailure(LeetStackError):
    code = 'persistence_failure'
    http_status = 500

    @property
    def public_message(self) -> str:
        return 'Storage is temporarily unavailable'
