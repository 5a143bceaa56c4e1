"""
Domain errors raised by the service layer.

Every error carries a stable `code` and the HTTP status it maps to; the
application turns them into `{"success": false, "error": ..., "code": ...}`.
"""

from fastapi import status


class ExamError(Exception):
    code = "ERROR"
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "Request failed"

    def __init__(self, message: str = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"success": False, "error": self.message, "code": self.code}


class Unauthorized(ExamError):
    code = "UNAUTHORIZED"
    status_code = status.HTTP_401_UNAUTHORIZED
    default_message = "Unauthorized"


class NotFound(ExamError):
    code = "NOT_FOUND"
    status_code = status.HTTP_404_NOT_FOUND
    default_message = "Not found"


class ValidationError(ExamError):
    code = "VALIDATION_ERROR"
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "Invalid input"


class StateConflict(ExamError):
    code = "STATE_CONFLICT"
    status_code = status.HTTP_409_CONFLICT
    default_message = "Conflicting state"


class Expired(ExamError):
    code = "EXPIRED"
    status_code = status.HTTP_410_GONE
    default_message = "Exam time has expired"


# ─── Start-attempt specifics ───────────────────────────────────────────────────

class NotPublished(StateConflict):
    code = "NOT_PUBLISHED"
    default_message = "Exam is not published"


class WrongPassword(ValidationError):
    code = "WRONG_PASSWORD"
    status_code = status.HTTP_403_FORBIDDEN
    default_message = "Incorrect exam password"


class OutsideSchedule(StateConflict):
    code = "OUTSIDE_SCHEDULE"
    default_message = "Exam is not available at this time"


class AttemptLimitReached(StateConflict):
    code = "ATTEMPT_LIMIT_REACHED"
    default_message = "Maximum attempts limit reached"
