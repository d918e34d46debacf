"""
Error taxonomy for the claim lifecycle.
Every user-facing failure carries a stable code and the HTTP status the API layer returns.
"""


class ClaimError(Exception):
    """Base class for recoverable, user-facing lifecycle failures"""
    code = 'CLAIM_ERROR'
    status_code = 400

    def __init__(self, message: str, code: str = None, status_code: int = None, details: dict = None):
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self):
        payload = {'error': self.message, 'code': self.code}
        payload.update(self.details)
        return payload


class ValidationError(ClaimError):
    code = 'VALIDATION_FAILED'
    status_code = 400


class NotFoundError(ClaimError):
    code = 'NOT_FOUND'
    status_code = 404


class ForbiddenError(ClaimError):
    code = 'FORBIDDEN'
    status_code = 403


class ConflictError(ClaimError):
    code = 'CONFLICT'
    status_code = 409


class InvalidStateError(ClaimError):
    code = 'INVALID_STATE'
    status_code = 409


class RateLimitedError(ClaimError):
    code = 'RATE_LIMITED'
    status_code = 429


class ExpiredError(ClaimError):
    code = 'EXPIRED'
    status_code = 410


class InvalidCodeError(ClaimError):
    code = 'INVALID_CODE'
    status_code = 400


class AlreadyRedeemedError(ClaimError):
    code = 'ALREADY_REDEEMED'
    status_code = 409


class StorageError(Exception):
    """Raised when the document store fails or a transaction cannot commit."""


class DocumentExistsError(StorageError):
    """Raised when a transactional create() targets a document that already exists."""
