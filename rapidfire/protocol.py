"""Names and framing of the messages exchanged over a session channel."""

from typing import Any

# client -> server
JOIN_SESSION = "joinSession"
SUBMIT_ANSWER = "submitAnswer"
SESSION_TIMEOUT = "sessionTimeout"
LEAVE_SESSION = "leaveSession"
PING = "ping"

# server -> client
SESSION_STATE = "sessionState"
SESSION_STARTED = "sessionStarted"
PLAYER_JOINED = "playerJoined"
ANSWER_RESULT = "answerResult"
OPPONENT_PROGRESS = "opponentProgress"
SESSION_FINISHED = "sessionFinished"
OPPONENT_LEFT = "opponentLeft"
ERROR = "error"
PONG = "pong"

CLIENT_MESSAGES = frozenset({JOIN_SESSION, SUBMIT_ANSWER, SESSION_TIMEOUT, LEAVE_SESSION, PING})
SERVER_EVENTS = frozenset(
    {
        SESSION_STATE,
        SESSION_STARTED,
        PLAYER_JOINED,
        ANSWER_RESULT,
        OPPONENT_PROGRESS,
        SESSION_FINISHED,
        OPPONENT_LEFT,
        ERROR,
        PONG,
    }
)


def frame(message_type: str, data: dict[str, Any] | None = None) -> dict[str, Any]:
    return {"type": message_type, "data": data or {}}
