"""Схемы данных для приложения Rapid Fire."""

import re
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field, field_validator

DISALLOWED_INPUT_CHARS_RE = re.compile(r"[<>]")
SQLI_PATTERN_RE = re.compile(r"(?i)(--|/\*|\*/|;|\b(select|union|insert|update|delete|drop|alter|truncate)\b)")
ROOM_CODE_RE = re.compile(r"^[A-Z0-9]{6}$")


def _validate_safe_text(value: str, field_name: str) -> str:
    cleaned = value.strip()
    if not cleaned:
        raise ValueError(f"{field_name} is empty")
    if DISALLOWED_INPUT_CHARS_RE.search(cleaned):
        raise ValueError(f"{field_name} contains forbidden characters")
    if SQLI_PATTERN_RE.search(cleaned):
        raise ValueError(f"{field_name} contains suspicious SQL patterns")
    return cleaned


def normalize_room_code(value: str) -> str:
    code = value.strip().upper()
    if not ROOM_CODE_RE.match(code):
        raise ValueError("room code must be 6 letters or digits")
    return code


class SessionStatus(str, Enum):
    WAITING = "waiting"
    ONGOING = "ongoing"
    FINISHED = "finished"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionStatus.FINISHED, SessionStatus.CANCELLED)

    @property
    def rank(self) -> int:
        # both terminal states share the last position in the progression
        return {"waiting": 0, "ongoing": 1, "finished": 2, "cancelled": 2}[self.value]


class GameMode(str, Enum):
    RANDOM = "random"
    ROOM = "room"


class GameResult(str, Enum):
    WIN = "win"
    DRAW = "draw"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    OPPONENT_LEFT = "opponent_left"


class RegisterRequest(BaseModel):
    username: str = Field(min_length=3, max_length=50)
    password: str = Field(min_length=6, max_length=128)

    @field_validator("username")
    @classmethod
    def validate_username(cls, value: str) -> str:
        return _validate_safe_text(value, "username")


class LoginRequest(BaseModel):
    username: str = Field(min_length=3, max_length=50)
    password: str = Field(min_length=6, max_length=128)

    @field_validator("username")
    @classmethod
    def validate_username(cls, value: str) -> str:
        return _validate_safe_text(value, "username")


class AuthResponse(BaseModel):
    user_id: int
    username: str
    access_token: str
    token_type: str = "bearer"
    rating: int


class Player(BaseModel):
    user_id: int
    username: str
    rating_before: int


class PlayerState(BaseModel):
    user: Player
    status: str = "waiting"
    score: float = 0.0
    correct_answers: int = 0
    wrong_answers: int = 0
    questions_answered: int = 0
    answered_question_indices: list[int] = Field(default_factory=list)
    rating_after: int | None = None
    rating_change: int | None = None


class QuestionPublic(BaseModel):
    """Вопрос без отметки правильного варианта."""

    id: int
    text: str
    options: list[str]
    domain: str
    difficulty: str


class GameSession(BaseModel):
    session_id: str
    room_code: str | None = None
    game_mode: GameMode
    status: SessionStatus
    players: list[PlayerState] = Field(default_factory=list, max_length=2)
    question_set: list[QuestionPublic] = Field(default_factory=list)
    total_questions: int
    time_limit_seconds: int
    time_remaining_seconds: int | None = None
    started_at: datetime | None = None
    ended_at: datetime | None = None
    winner_user_id: int | None = None
    result: GameResult | None = None

    def player(self, user_id: int) -> PlayerState | None:
        for state in self.players:
            if state.user.user_id == user_id:
                return state
        return None

    def opponent_of(self, user_id: int) -> PlayerState | None:
        for state in self.players:
            if state.user.user_id != user_id:
                return state
        return None

    def progress(self) -> int:
        return sum(state.questions_answered for state in self.players)


class JoinSessionMessage(BaseModel):
    session_id: str


class AnswerSubmission(BaseModel):
    session_id: str
    question_index: int = Field(ge=0)
    selected_option_index: int = Field(ge=0)
    client_elapsed_ms: int = Field(default=0, ge=0)


class AnswerResult(BaseModel):
    question_index: int
    is_correct: bool
    score_delta: float
    correct_option_index: int
    updated_score: float
    questions_answered: int
    explanation: str | None = None


class OpponentProgress(BaseModel):
    user_id: int
    questions_answered: int
    score: float
    correct_answers: int
    wrong_answers: int


class SessionFinished(BaseModel):
    winner_user_id: int | None = None
    result: GameResult | None = None
    final_snapshot: GameSession


class OpponentLeft(BaseModel):
    message: str
    user_id: int | None = None


class ErrorEvent(BaseModel):
    message: str
    code: str | None = None


class LeaderboardRow(BaseModel):
    rank: int
    user_id: int
    username: str
    rating: int
    total_games: int = 0
    wins: int = 0
    win_rate: float = 0.0


class LeaderboardResponse(BaseModel):
    page: int = 1
    limit: int = 50
    rows: list[LeaderboardRow]
