"""
Error taxonomy for the sync engine.

Incremental push/pull convert these into a failed SyncOutcome; full
backup, restore, merge and clear let them reach the caller.
"""


class SyncError(Exception):
    """Base class for every expected sync failure."""

    default_code = 'sync_error'

    def __init__(self, message, code=None, original_error=None):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.original_error = original_error

    def __str__(self):
        return f'{self.__class__.__name__}: {self.message}'


class NetworkError(SyncError):
    """No connectivity, DNS failure, socket error or deadline exceeded."""

    default_code = 'network'


class AuthError(SyncError):
    """Not signed in, or the credential expired or was rejected."""

    default_code = 'auth'


class DataError(SyncError):
    """A remote document is malformed or misses a required field."""

    default_code = 'data'


class QuestionLookupError(SyncError):
    """Question content is unavailable for rehydration."""

    default_code = 'lookup'


class QuestionNotFound(QuestionLookupError):
    default_code = 'lookup_not_found'


class QuotaError(SyncError):
    """Batch size or rate limit exceeded."""

    default_code = 'quota'
