"""SpriteGate error hierarchy.

All custom exceptions inherit from SpriteGateError, enabling callers
to catch the base class for blanket error handling or specific
subclasses for targeted recovery.  Each class carries a caller-facing
``status_code`` so outer layers can map failures without string matching.
"""


class SpriteGateError(Exception):
    """Base exception for all SpriteGate errors."""

    status_code: int = 500


class ConfigError(SpriteGateError):
    """Raised when configuration loading or validation fails."""


class RequestValidationError(SpriteGateError):
    """Raised when a generation request is malformed. No attempt is made."""

    status_code = 400


class BudgetExceededError(SpriteGateError):
    """Raised when the estimated generation cost exceeds the USD ceiling."""

    status_code = 402


class GenerationNotFoundError(SpriteGateError):
    """Raised when a generation id does not resolve to a record."""

    status_code = 404


class InvalidTransitionError(SpriteGateError):
    """Raised when a terminal generation record would change status."""

    status_code = 409


class BackendError(SpriteGateError):
    """Raised when the image-generation backend fails."""

    status_code = 502


class BackendAuthError(BackendError):
    """Backend rejected the API credentials."""

    status_code = 502


class BackendBillingLimitError(BackendError):
    """Backend billing hard limit or quota has been reached."""

    status_code = 402


class BackendRateLimitedError(BackendError):
    """Backend rate limit hit."""

    status_code = 429


class BackendVerificationPendingError(BackendError):
    """Organization access to the requested model is still being verified."""

    status_code = 403


class BackendServerError(BackendError):
    """Backend answered with a 5xx status."""

    status_code = 503
