"""Pytest configuration and shared fixtures."""

import os

os.environ["RAPIDFIRE_DATABASE_URL"] = "sqlite://"
os.environ["RAPIDFIRE_RATE_LIMIT"] = "100000"
os.environ["RAPIDFIRE_SECRET_KEY"] = "test-secret"
os.environ["RAPIDFIRE_RESUME_FILE"] = os.path.join(os.path.dirname(__file__), ".resume-unused.json")

import pytest
from fastapi.testclient import TestClient

from rapidfire.database import Base, SessionLocal, engine
from rapidfire.models import User
from rapidfire.routers import REQUEST_LOGS
from rapidfire.schemas import GameMode, GameSession, Player, PlayerState, SessionStatus
from rapidfire.security import hash_password
from rapidfire.services.game_service import game_service
from rapidfire.services.question_bank import seed_question_bank


class MockWebSocket:
    """Lightweight stand-in for fastapi.WebSocket."""

    def __init__(self):
        self.sent_messages: list[dict] = []
        self.closed = False

    async def send_json(self, data: dict):
        self.sent_messages.append(data)

    async def close(self, code: int = 1000):
        self.closed = True

    def of_type(self, msg_type: str) -> list[dict]:
        return [m for m in self.sent_messages if m.get("type") == msg_type]

    def last(self, msg_type: str) -> dict | None:
        found = self.of_type(msg_type)
        return found[-1] if found else None


@pytest.fixture(autouse=True)
def reset_database():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        seed_question_bank(db)
    finally:
        db.close()
    REQUEST_LOGS.clear()
    game_service.manager.connections.clear()
    yield
    for task in list(game_service.timer_tasks.values()):
        if not task.done() and not task.get_loop().is_closed():
            task.cancel()
    game_service.timer_tasks.clear()
    game_service.manager.connections.clear()


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


def make_user(db, username: str, rating: int = 1200) -> User:
    user = User(username=username, password_hash=hash_password("secret-pass"), rapid_fire_rating=rating)
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def alice(db):
    return make_user(db, "alice")


@pytest.fixture
def bob(db):
    return make_user(db, "bob")


@pytest.fixture
def client():
    from rapidfire.main import app

    with TestClient(app) as test_client:
        yield test_client


def build_session(
    status: SessionStatus = SessionStatus.ONGOING,
    session_id: str = "s1",
    local_answered: int = 0,
    opponent_answered: int = 0,
    total_questions: int = 10,
    time_remaining: int | None = 60,
    local_score: float | None = None,
) -> GameSession:
    """A two-player snapshot for user 1 (local) against user 2."""
    return GameSession(
        session_id=session_id,
        game_mode=GameMode.RANDOM,
        status=status,
        players=[
            PlayerState(
                user=Player(user_id=1, username="alice", rating_before=1200),
                status="playing",
                score=float(local_answered) if local_score is None else local_score,
                questions_answered=local_answered,
                correct_answers=local_answered,
                answered_question_indices=list(range(local_answered)),
            ),
            PlayerState(
                user=Player(user_id=2, username="bob", rating_before=1200),
                status="playing",
                score=float(opponent_answered),
                questions_answered=opponent_answered,
                correct_answers=opponent_answered,
                answered_question_indices=list(range(opponent_answered)),
            ),
        ],
        total_questions=total_questions,
        time_limit_seconds=60,
        time_remaining_seconds=time_remaining,
    )
