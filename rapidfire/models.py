"""
Модели данных для приложения Rapid Fire.

Определяет структуру данных для пользователей, банка вопросов, сессий,
участников сессий и их ответов, используя SQLAlchemy ORM.
"""

from datetime import datetime, timezone

from sqlalchemy import JSON, Boolean, DateTime, Float, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .database import Base
from .scoring import DEFAULT_RATING


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class User(Base):
    """
    Модель пользователя.

    Атрибуты:
        id (int): Уникальный идентификатор пользователя
        username (str): Уникальное имя пользователя
        password_hash (str): Хэш пароля пользователя
        rapid_fire_rating (int): Текущий рейтинг в режиме Rapid Fire
        created_at (datetime): Дата и время создания пользователя
    """

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    username: Mapped[str] = mapped_column(String(50), unique=True, index=True)
    password_hash: Mapped[str] = mapped_column(String(255))
    rapid_fire_rating: Mapped[int] = mapped_column(Integer, default=DEFAULT_RATING)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class Question(Base):
    """
    Вопрос из банка вопросов.

    Атрибуты:
        id (int): Уникальный идентификатор вопроса
        domain (str): Категория (dsa, system-design, aiml, aptitude)
        difficulty (str): Сложность (easy, medium, hard)
        text (str): Текст вопроса
        options (list[str]): Варианты ответа в фиксированном порядке
        correct_option (int): Индекс правильного варианта (с нуля)
        explanation (str): Пояснение к ответу
        is_active (bool): Участвует ли вопрос в подборе
    """

    __tablename__ = "questions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    domain: Mapped[str] = mapped_column(String(32), index=True)
    difficulty: Mapped[str] = mapped_column(String(16), default="medium")
    text: Mapped[str] = mapped_column(Text)
    options: Mapped[list] = mapped_column(JSON)
    correct_option: Mapped[int] = mapped_column(Integer)
    explanation: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)


class RapidFireGame(Base):
    """
    Модель сессии Rapid Fire.

    Атрибуты:
        session_id (str): Непрозрачный идентификатор, никогда не переиспользуется
        room_code (str): 6-символьный код комнаты (только для режима room)
        game_mode (str): random или room
        status (str): waiting, ongoing, finished, cancelled
        question_ids (list[int]): Упорядоченный набор вопросов сессии
        started_at / ended_at (datetime): Выставляются сервером ровно один раз
        winner_user_id (int): Победитель, только для finished
        result (str): win, draw, timeout, cancelled, opponent_left
    """

    __tablename__ = "rapidfire_sessions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    session_id: Mapped[str] = mapped_column(String(32), unique=True, index=True)
    room_code: Mapped[str | None] = mapped_column(String(6), nullable=True, index=True)
    game_mode: Mapped[str] = mapped_column(String(16))
    status: Mapped[str] = mapped_column(String(16), default="waiting", index=True)
    total_questions: Mapped[int] = mapped_column(Integer)
    time_limit_seconds: Mapped[int] = mapped_column(Integer)
    question_ids: Mapped[list] = mapped_column(JSON)
    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    ended_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    winner_user_id: Mapped[int | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    result: Mapped[str | None] = mapped_column(String(16), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    # Связи
    players: Mapped[list["SessionPlayer"]] = relationship(
        back_populates="game", cascade="all, delete-orphan", order_by="SessionPlayer.id"
    )


class SessionPlayer(Base):
    """
    Участник сессии.

    Атрибуты:
        username_snapshot (str): Имя на момент входа в сессию
        rating_before (int): Снимок рейтинга, не меняется во время сессии
        status (str): waiting, playing, finished, left
        score (float): Сумма примененных изменений счета
    """

    __tablename__ = "rapidfire_players"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    game_id: Mapped[int] = mapped_column(
        ForeignKey("rapidfire_sessions.id", ondelete="CASCADE"), index=True
    )
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True)
    username_snapshot: Mapped[str] = mapped_column(String(50))
    rating_before: Mapped[int] = mapped_column(Integer)
    status: Mapped[str] = mapped_column(String(16), default="waiting")
    score: Mapped[float] = mapped_column(Float, default=0.0)
    correct_answers: Mapped[int] = mapped_column(Integer, default=0)
    wrong_answers: Mapped[int] = mapped_column(Integer, default=0)
    questions_answered: Mapped[int] = mapped_column(Integer, default=0)
    rating_after: Mapped[int | None] = mapped_column(Integer, nullable=True)
    rating_change: Mapped[int | None] = mapped_column(Integer, nullable=True)
    joined_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    left_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # Связи
    game: Mapped[RapidFireGame] = relationship(back_populates="players")
    answers: Mapped[list["PlayerAnswer"]] = relationship(
        back_populates="player", cascade="all, delete-orphan", order_by="PlayerAnswer.question_index"
    )


class PlayerAnswer(Base):
    """Принятый ответ игрока; не более одного на позицию вопроса."""

    __tablename__ = "rapidfire_answers"
    __table_args__ = (UniqueConstraint("player_id", "question_index", name="uq_answer_per_question"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    player_id: Mapped[int] = mapped_column(
        ForeignKey("rapidfire_players.id", ondelete="CASCADE"), index=True
    )
    question_index: Mapped[int] = mapped_column(Integer)
    selected_option: Mapped[int] = mapped_column(Integer)
    is_correct: Mapped[bool] = mapped_column(Boolean)
    score_delta: Mapped[float] = mapped_column(Float)
    client_elapsed_ms: Mapped[int] = mapped_column(Integer, default=0)
    answered_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    # Связи
    player: Mapped[SessionPlayer] = relationship(back_populates="answers")
