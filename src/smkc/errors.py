"""
Errors raised by the match lifecycle engine.

Every error carries the HTTP status and a short machine code the web layer
turns into a JSON response. ``StorageUnavailable`` is different: it marks a
transient storage failure and never leaves the concurrency controller.
"""


class TournamentError(Exception):
    """Base class for all client-visible tournament errors."""
    status = 500
    code = 'error'

    def __init__(self, message: str = None):
        self.message = message or self.__class__.__doc__.strip().rstrip('.')
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {'error': self.message, 'code': self.code}


class ValidationError(TournamentError):
    """Invalid request data."""
    status = 400
    code = 'validation_error'

    def __init__(self, message: str, field: str = None):
        self.field = field
        super().__init__(message)

    def to_dict(self) -> dict:
        data = super().to_dict()
        if self.field:
            data['field'] = self.field
        return data


class AuthorizationError(TournamentError):
    """Not authorized for this match."""
    status = 403
    code = 'forbidden'


class NotFound(TournamentError):
    """Resource not found."""
    status = 404
    code = 'not_found'


class OptimisticLockConflict(TournamentError):
    """Match was modified by someone else."""
    status = 409
    code = 'version_conflict'

    def __init__(self, current_version: int, message: str = None):
        self.current_version = current_version
        super().__init__(message or f'Match was modified by another user (current version {current_version})')

    def to_dict(self) -> dict:
        data = super().to_dict()
        data['current_version'] = self.current_version
        return data


class MatchAlreadyCompleted(TournamentError):
    """Match is already completed."""
    status = 409
    code = 'match_completed'


class UnsupportedBracketSize(TournamentError):
    """Unsupported bracket size."""
    status = 400
    code = 'unsupported_bracket_size'

    def __init__(self, size):
        self.size = size
        super().__init__(f'Only 8-player brackets are supported (got {size})')


class InternalStorageError(TournamentError):
    """Internal storage error."""
    status = 500
    code = 'storage_error'


class StorageUnavailable(Exception):
    """Transient storage failure (lock timeout, I/O hiccup); safe to retry."""
