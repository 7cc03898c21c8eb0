"""
Ghost Mode error taxonomy.

Every failure a Ghost operation can surface is a GhostError carrying an
HTTP status, a stable code and a user-safe message. Credential failures
share one generic message so responses cannot be used as an oracle.
"""

from fastapi import status


class GhostError(Exception):
    """Base class for all Ghost Mode failures."""

    status_code: int = status.HTTP_400_BAD_REQUEST
    code: str = "GHOST_ERROR"
    message: str = "Ghost mode request failed"

    def __init__(self, message: str | None = None):
        self.message = message or self.message
        super().__init__(self.message)


# ==========================================================================
# Taxonomy
# ==========================================================================

class AuthenticationFailure(GhostError):
    status_code = status.HTTP_401_UNAUTHORIZED
    code = "AUTHENTICATION_FAILED"
    message = "Invalid credentials"


class AuthorizationFailure(GhostError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "FORBIDDEN"
    message = "Access denied"


class NotFoundError(GhostError):
    """Absent and expired entities are reported identically."""

    status_code = status.HTTP_404_NOT_FOUND
    code = "NOT_FOUND"
    message = "Session has been terminated or does not exist"


class ValidationFailure(GhostError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "VALIDATION_FAILED"
    message = "Invalid request"


class CryptoFailure(GhostError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    code = "CRYPTO_FAILED"
    message = "Unable to process encrypted content"


# ==========================================================================
# PinCredentialStore
# ==========================================================================

class AlreadyConfigured(ValidationFailure):
    status_code = status.HTTP_409_CONFLICT
    code = "ALREADY_CONFIGURED"
    message = "Ghost mode already set up"


class InvalidPinFormat(ValidationFailure):
    code = "INVALID_PIN_FORMAT"
    message = "PIN must be 4-8 digits"


class NotConfigured(NotFoundError):
    code = "NOT_CONFIGURED"
    message = "Ghost mode not set up"


class InvalidCredential(AuthenticationFailure):
    code = "INVALID_CREDENTIAL"


class InvalidSession(AuthenticationFailure):
    code = "INVALID_SESSION"
    message = "Invalid session"


class SessionExpired(AuthenticationFailure):
    code = "SESSION_EXPIRED"
    message = "Session expired"


class GhostLocked(AuthenticationFailure):
    code = "GHOST_LOCKED"
    message = "Ghost mode is locked"


# ==========================================================================
# Sessions, grants and messages
# ==========================================================================

class DisclaimerRequired(ValidationFailure):
    code = "DISCLAIMER_REQUIRED"
    message = "You must agree to the Ghost Mode disclaimer"


class InvalidOrExpiredPin(AuthenticationFailure):
    code = "INVALID_OR_EXPIRED_PIN"
    message = "Invalid or expired PIN"


class NoAccess(AuthorizationFailure):
    code = "NO_ACCESS"
    message = "No active access to this session"


class NotAParticipant(AuthorizationFailure):
    code = "NOT_A_PARTICIPANT"
    message = "Not a participant"


class NotRecipient(AuthorizationFailure):
    code = "NOT_RECIPIENT"
    message = "Not the recipient"


class NotFound(NotFoundError):
    pass


class SessionNotFound(NotFoundError):
    code = "SESSION_NOT_FOUND"


class MessageNotFound(NotFoundError):
    code = "MESSAGE_NOT_FOUND"
    message = "Message not found"


class DecryptionFailed(CryptoFailure):
    code = "DECRYPTION_FAILED"
    message = "Unable to decrypt content"
