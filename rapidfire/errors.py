"""
Типизированные ошибки Rapid Fire.

Каждая ошибка несет машинно-читаемый ``code``: сервер отдает его в теле
ответа или в кадре ``error``, клиент по нему восстанавливает исключение.
"""

from __future__ import annotations


class RapidFireError(Exception):
    """Base class for every failure the engine reports."""

    code = "RapidFireError"
    status_code = 400
    default_message = "Rapid fire error"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_payload(self) -> dict:
        return {"detail": self.message, "code": self.code}


class Unauthenticated(RapidFireError):
    code = "Unauthenticated"
    status_code = 401
    default_message = "Not authenticated"


class UsernameTaken(RapidFireError):
    code = "UsernameTaken"
    status_code = 400
    default_message = "Username is already taken"


class RoomNotFound(RapidFireError):
    code = "RoomNotFound"
    status_code = 404
    default_message = "Room not found or already started"


class RoomFull(RapidFireError):
    code = "RoomFull"
    status_code = 409
    default_message = "Room is full"


class AlreadyInSession(RapidFireError):
    code = "AlreadyInSession"
    status_code = 409
    default_message = "Player is already in an open session"


class SessionNotFound(RapidFireError):
    code = "SessionNotFound"
    status_code = 404
    default_message = "Rapid fire session not found"


class NotInSession(RapidFireError):
    code = "NotInSession"
    status_code = 403
    default_message = "You are not in this session"


class QuestionBankExhausted(RapidFireError):
    code = "QuestionBankExhausted"
    status_code = 503
    default_message = "Not enough active questions"


class SubmissionRejected(RapidFireError):
    """Answer refused without touching any score."""

    status_code = 409


class SessionNotOngoing(SubmissionRejected):
    code = "SessionNotOngoing"
    default_message = "Session is not ongoing"


class DuplicateSubmission(SubmissionRejected):
    code = "DuplicateSubmission"
    default_message = "Question already answered"


class QuestionIndexOutOfRange(SubmissionRejected):
    code = "QuestionIndexOutOfRange"
    status_code = 422
    default_message = "Question index out of range"


class ProtocolError(RapidFireError):
    code = "ProtocolError"
    default_message = "Malformed channel message"


class TransportError(RapidFireError):
    code = "TransportError"
    status_code = 503
    default_message = "Connection to the rapid fire server failed"


ERRORS_BY_CODE: dict[str, type[RapidFireError]] = {
    cls.code: cls
    for cls in (
        Unauthenticated,
        UsernameTaken,
        RoomNotFound,
        RoomFull,
        AlreadyInSession,
        SessionNotFound,
        NotInSession,
        QuestionBankExhausted,
        SessionNotOngoing,
        DuplicateSubmission,
        QuestionIndexOutOfRange,
        ProtocolError,
        TransportError,
    )
}


def error_from_payload(payload: dict | None, status_code: int | None = None) -> RapidFireError:
    """Rebuild a typed error from a ``{"detail", "code"}`` body."""
    payload = payload or {}
    detail = payload.get("detail") or payload.get("message")
    cls = ERRORS_BY_CODE.get(payload.get("code", ""))
    if cls is None:
        if status_code == 401:
            cls = Unauthenticated
        else:
            error = RapidFireError(detail if isinstance(detail, str) else None)
            if status_code:
                error.status_code = status_code
            return error
    return cls(detail if isinstance(detail, str) else None)
