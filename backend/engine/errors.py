"""
Error taxonomy shared by the session state machine and the media cache.

Every error carries the HTTP status and a stable machine-readable code so the
API layer can render "only the host can do this" differently from "this phase
has already ended". main.py installs the handler that serialises them.
"""
from typing import Optional


class GameError(Exception):
    status_code: int = 400
    error_code: str = "GAME_ERROR"

    def __init__(self, message: str, *, session_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.session_id = session_id

    def to_dict(self) -> dict:
        return {"detail": self.message, "error_code": self.error_code}


class NotFound(GameError):
    status_code = 404
    error_code = "NOT_FOUND"


class PermissionDenied(GameError):
    status_code = 403
    error_code = "PERMISSION_DENIED"


class InvalidPhase(GameError):
    status_code = 409
    error_code = "INVALID_PHASE"


class NotAParticipant(GameError):
    status_code = 403
    error_code = "NOT_A_PARTICIPANT"


class InsufficientPlayers(GameError):
    status_code = 409
    error_code = "INSUFFICIENT_PLAYERS"


class InvalidVote(GameError):
    """Vote for a pass, or a self-vote outside the small-group exception."""
    status_code = 400
    error_code = "INVALID_VOTE"


class SessionFull(GameError):
    status_code = 409
    error_code = "SESSION_FULL"


class ProviderUnavailable(GameError):
    """External search quota exhausted, timed out, or not configured. Retryable."""
    status_code = 503
    error_code = "PROVIDER_UNAVAILABLE"


class QuotaExceededError(ProviderUnavailable):
    error_code = "PROVIDER_QUOTA_EXCEEDED"


class NotResolvable(GameError):
    """No cached lookup exists for the requested track."""
    status_code = 404
    error_code = "NOT_RESOLVABLE"


class VersionConflict(GameError):
    """Optimistic write lost the race; the session service reloads and retries."""
    status_code = 409
    error_code = "VERSION_CONFLICT"


class InvalidSubmission(GameError):
    """Real submission missing song fields."""
    status_code = 400
    error_code = "INVALID_SUBMISSION"
