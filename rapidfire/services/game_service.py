import asyncio
import logging
import math
import random
import string
import uuid
from collections import defaultdict

from fastapi import WebSocket
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from rapidfire import protocol
from rapidfire.config import get_settings
from rapidfire.database import SessionLocal
from rapidfire.errors import (
    AlreadyInSession,
    DuplicateSubmission,
    NotInSession,
    QuestionIndexOutOfRange,
    RoomFull,
    RoomNotFound,
    SessionNotFound,
    SessionNotOngoing,
)
from rapidfire.models import PlayerAnswer, RapidFireGame, SessionPlayer, User, utcnow
from rapidfire.schemas import (
    AnswerResult,
    AnswerSubmission,
    GameMode,
    GameResult,
    GameSession,
    LeaderboardResponse,
    LeaderboardRow,
    OpponentLeft,
    OpponentProgress,
    Player,
    PlayerState,
    QuestionPublic,
    SessionFinished,
    SessionStatus,
)
from rapidfire.scoring import apply_rating, elo_change, score_delta
from rapidfire.services.question_bank import load_questions, pick_question_set

logger = logging.getLogger(__name__)

OPEN_STATUSES = (SessionStatus.WAITING.value, SessionStatus.ONGOING.value)
ROOM_CODE_ALPHABET = string.ascii_uppercase + string.digits
ROOM_CODE_LENGTH = 6


class ConnectionManager:
    def __init__(self) -> None:
        self.connections: dict[str, dict[int, set[WebSocket]]] = defaultdict(lambda: defaultdict(set))

    def connect(self, session_id: str, user_id: int, websocket: WebSocket) -> None:
        self.connections[session_id][user_id].add(websocket)

    def disconnect(self, session_id: str, user_id: int, websocket: WebSocket) -> None:
        players = self.connections.get(session_id)
        if players is None:
            return
        sockets = players.get(user_id)
        if sockets is not None:
            sockets.discard(websocket)
            if not sockets:
                players.pop(user_id, None)
        if not players:
            self.connections.pop(session_id, None)

    def connected_users(self, session_id: str) -> set[int]:
        return set(self.connections.get(session_id, {}))

    async def send_to(self, session_id: str, user_id: int, payload: dict) -> None:
        sockets = list(self.connections.get(session_id, {}).get(user_id, set()))
        for ws in sockets:
            try:
                await ws.send_json(payload)
            except Exception:
                logger.warning("Dropping dead socket of user %s in session %s", user_id, session_id)
                self.disconnect(session_id, user_id, ws)

    async def broadcast(self, session_id: str, payload: dict, exclude_user_id: int | None = None) -> None:
        for user_id in list(self.connections.get(session_id, {})):
            if user_id != exclude_user_id:
                await self.send_to(session_id, user_id, payload)


def determine_winner(players: list[SessionPlayer]) -> SessionPlayer | None:
    """Higher score wins; equal scores are a draw."""
    if len(players) < 2:
        return None
    ranked = sorted(players, key=lambda p: p.score, reverse=True)
    if ranked[0].score == ranked[1].score:
        return None
    return ranked[0]


class GameService:
    def __init__(self, session_factory=SessionLocal) -> None:
        self.session_factory = session_factory
        self.manager = ConnectionManager()
        self.timer_tasks: dict[str, asyncio.Task] = {}
        self.rng = random.Random()

    # matchmaking

    def generate_room_code(self, db: Session) -> str:
        while True:
            code = "".join(self.rng.choices(ROOM_CODE_ALPHABET, k=ROOM_CODE_LENGTH))
            existing = (
                db.query(RapidFireGame)
                .filter(RapidFireGame.room_code == code, RapidFireGame.status.in_(OPEN_STATUSES))
                .first()
            )
            if not existing:
                return code

    def find_open_session(self, db: Session, user_id: int) -> RapidFireGame | None:
        return (
            db.query(RapidFireGame)
            .join(SessionPlayer, SessionPlayer.game_id == RapidFireGame.id)
            .filter(
                SessionPlayer.user_id == user_id,
                SessionPlayer.status != "left",
                RapidFireGame.status.in_(OPEN_STATUSES),
            )
            .order_by(RapidFireGame.created_at.desc(), RapidFireGame.id.desc())
            .first()
        )

    def _add_player(self, game: RapidFireGame, user: User) -> SessionPlayer:
        player = SessionPlayer(
            user_id=user.id,
            username_snapshot=user.username,
            rating_before=user.rapid_fire_rating,
        )
        game.players.append(player)
        return player

    def _new_game(self, db: Session, mode: GameMode, user: User) -> RapidFireGame:
        question_ids = pick_question_set(db, self.rng)
        game = RapidFireGame(
            session_id=uuid.uuid4().hex,
            room_code=self.generate_room_code(db) if mode == GameMode.ROOM else None,
            game_mode=mode.value,
            status=SessionStatus.WAITING.value,
            total_questions=len(question_ids),
            time_limit_seconds=get_settings().time_limit_seconds,
            question_ids=question_ids,
        )
        db.add(game)
        self._add_player(game, user)
        db.commit()
        db.refresh(game)
        logger.info("Created %s session %s for user %s", mode.value, game.session_id, user.id)
        return game

    def find_random_match(self, db: Session, user: User) -> tuple[RapidFireGame, bool]:
        """Возвращает (сессия, заполнен ли только что второй слот)."""
        existing = self.find_open_session(db, user.id)
        if existing:
            logger.info("User %s already in session %s", user.id, existing.session_id)
            return existing, False

        waiting = (
            db.query(RapidFireGame)
            .filter(
                RapidFireGame.game_mode == GameMode.RANDOM.value,
                RapidFireGame.status == SessionStatus.WAITING.value,
            )
            .order_by(RapidFireGame.created_at.asc(), RapidFireGame.id.asc())
            .all()
        )
        for game in waiting:
            if len(game.players) == 1:
                self._add_player(game, user)
                db.commit()
                db.refresh(game)
                logger.info("Paired user %s into session %s", user.id, game.session_id)
                return game, True

        return self._new_game(db, GameMode.RANDOM, user), False

    def create_room(self, db: Session, user: User) -> RapidFireGame:
        if self.find_open_session(db, user.id):
            raise AlreadyInSession()
        return self._new_game(db, GameMode.ROOM, user)

    def join_room(self, db: Session, user: User, room_code: str) -> tuple[RapidFireGame, bool]:
        game = (
            db.query(RapidFireGame)
            .filter(
                RapidFireGame.room_code == room_code.upper(),
                RapidFireGame.game_mode == GameMode.ROOM.value,
                RapidFireGame.status.in_(OPEN_STATUSES),
            )
            .order_by(RapidFireGame.created_at.desc())
            .first()
        )
        if not game:
            raise RoomNotFound()
        if any(p.user_id == user.id and p.status != "left" for p in game.players):
            return game, False
        if len(game.players) >= 2:
            raise RoomFull()
        if game.status != SessionStatus.WAITING.value:
            raise RoomNotFound()
        if self.find_open_session(db, user.id):
            raise AlreadyInSession()

        self._add_player(game, user)
        db.commit()
        db.refresh(game)
        logger.info("User %s joined room %s", user.id, game.room_code)
        return game, True

    def get_game(self, db: Session, session_id: str) -> RapidFireGame:
        game = db.query(RapidFireGame).filter(RapidFireGame.session_id == session_id).first()
        if not game:
            raise SessionNotFound()
        return game

    def require_player(self, game: RapidFireGame, user_id: int) -> SessionPlayer:
        for player in game.players:
            if player.user_id == user_id:
                return player
        raise NotInSession()

    # snapshots

    def time_remaining(self, game: RapidFireGame) -> int:
        if game.status == SessionStatus.WAITING.value:
            return game.time_limit_seconds
        if game.status != SessionStatus.ONGOING.value or game.started_at is None:
            return 0
        elapsed = (utcnow() - game.started_at).total_seconds()
        return max(0, math.ceil(game.time_limit_seconds - elapsed))

    def _player_state(self, player: SessionPlayer) -> PlayerState:
        return PlayerState(
            user=Player(user_id=player.user_id, username=player.username_snapshot, rating_before=player.rating_before),
            status=player.status,
            score=player.score,
            correct_answers=player.correct_answers,
            wrong_answers=player.wrong_answers,
            questions_answered=player.questions_answered,
            answered_question_indices=[answer.question_index for answer in player.answers],
            rating_after=player.rating_after,
            rating_change=player.rating_change,
        )

    def to_state(self, db: Session, game: RapidFireGame) -> GameSession:
        questions = load_questions(db, game.question_ids)
        return GameSession(
            session_id=game.session_id,
            room_code=game.room_code,
            game_mode=GameMode(game.game_mode),
            status=SessionStatus(game.status),
            players=[self._player_state(p) for p in game.players],
            question_set=[
                QuestionPublic(
                    id=q.id,
                    text=q.text,
                    options=list(q.options),
                    domain=q.domain,
                    difficulty=q.difficulty,
                )
                for q in questions
            ],
            total_questions=game.total_questions,
            time_limit_seconds=game.time_limit_seconds,
            time_remaining_seconds=self.time_remaining(game),
            started_at=game.started_at,
            ended_at=game.ended_at,
            winner_user_id=game.winner_user_id,
            result=GameResult(game.result) if game.result else None,
        )

    async def broadcast_event(
        self, session_id: str, event_type: str, data: dict, exclude_user_id: int | None = None
    ) -> None:
        await self.manager.broadcast(session_id, protocol.frame(event_type, data), exclude_user_id=exclude_user_id)

    async def send_event(self, session_id: str, user_id: int, event_type: str, data: dict) -> None:
        await self.manager.send_to(session_id, user_id, protocol.frame(event_type, data))

    async def announce_player_joined(self, db: Session, game: RapidFireGame) -> None:
        await self.broadcast_event(game.session_id, protocol.PLAYER_JOINED, self.to_state(db, game).model_dump(mode="json"))

    # channel lifecycle

    async def attach(self, db: Session, session_id: str, user_id: int, websocket: WebSocket) -> RapidFireGame:
        game = self.get_game(db, session_id)
        self.require_player(game, user_id)
        self.manager.connect(session_id, user_id, websocket)
        await websocket.send_json(protocol.frame(protocol.SESSION_STATE, self.to_state(db, game).model_dump(mode="json")))
        logger.info("User %s attached to session %s", user_id, session_id)

        player_ids = {p.user_id for p in game.players}
        if (
            game.status == SessionStatus.WAITING.value
            and len(player_ids) == 2
            and player_ids <= self.manager.connected_users(session_id)
        ):
            await self.start_session(db, game)
        return game

    def handle_disconnect(self, session_id: str, user_id: int, websocket: WebSocket) -> None:
        # the session survives a dropped channel; the player may reattach
        self.manager.disconnect(session_id, user_id, websocket)
        logger.info("User %s disconnected from session %s", user_id, session_id)

    async def start_session(self, db: Session, game: RapidFireGame) -> None:
        game.status = SessionStatus.ONGOING.value
        game.started_at = utcnow()
        for player in game.players:
            player.status = "playing"
        db.commit()
        db.refresh(game)
        logger.info("Session %s started", game.session_id)

        await self.broadcast_event(game.session_id, protocol.SESSION_STARTED, self.to_state(db, game).model_dump(mode="json"))
        self.schedule_end(game.session_id, game.time_limit_seconds)

    def schedule_end(self, session_id: str, delay: float) -> None:
        self._cancel_timer(session_id)

        async def timer_coroutine() -> None:
            try:
                await asyncio.sleep(delay)
                local_db = self.session_factory()
                try:
                    game = self.get_game(local_db, session_id)
                    if game.status != SessionStatus.ONGOING.value:
                        return
                    logger.info("Session %s ran out of time", session_id)
                    await self.finish_session(local_db, game)
                finally:
                    local_db.close()
            except asyncio.CancelledError:
                return

        self.timer_tasks[session_id] = asyncio.create_task(timer_coroutine())

    def _cancel_timer(self, session_id: str) -> None:
        task = self.timer_tasks.pop(session_id, None)
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def restore_timers(self, db: Session) -> int:
        """Перезапускает таймеры идущих сессий после рестарта сервера."""
        ongoing = db.query(RapidFireGame).filter(RapidFireGame.status == SessionStatus.ONGOING.value).all()
        for game in ongoing:
            self.schedule_end(game.session_id, self.time_remaining(game))
        return len(ongoing)

    # gameplay

    async def submit_answer(
        self, db: Session, session_id: str, user_id: int, submission: AnswerSubmission
    ) -> AnswerResult:
        game = self.get_game(db, session_id)
        player = self.require_player(game, user_id)
        if game.status != SessionStatus.ONGOING.value:
            raise SessionNotOngoing()
        if self.time_remaining(game) <= 0:
            await self.finish_session(db, game)
            raise SessionNotOngoing("Time is up")

        index = submission.question_index
        if not 0 <= index < game.total_questions:
            raise QuestionIndexOutOfRange()
        if any(answer.question_index == index for answer in player.answers):
            raise DuplicateSubmission()

        questions = load_questions(db, [game.question_ids[index]])
        if not questions:
            raise QuestionIndexOutOfRange("Question is no longer available")
        question = questions[0]

        is_correct = submission.selected_option_index == question.correct_option
        delta = score_delta(is_correct)
        player.answers.append(
            PlayerAnswer(
                question_index=index,
                selected_option=submission.selected_option_index,
                is_correct=is_correct,
                score_delta=delta,
                client_elapsed_ms=submission.client_elapsed_ms,
            )
        )
        player.score += delta
        if is_correct:
            player.correct_answers += 1
        else:
            player.wrong_answers += 1
        player.questions_answered += 1
        if player.questions_answered >= game.total_questions:
            player.status = "finished"

        try:
            db.commit()
        except IntegrityError as exc:
            db.rollback()
            raise DuplicateSubmission() from exc
        db.refresh(game)

        result = AnswerResult(
            question_index=index,
            is_correct=is_correct,
            score_delta=delta,
            correct_option_index=question.correct_option,
            updated_score=player.score,
            questions_answered=player.questions_answered,
            explanation=question.explanation,
        )
        await self.send_event(session_id, user_id, protocol.ANSWER_RESULT, result.model_dump(mode="json"))

        progress = OpponentProgress(
            user_id=user_id,
            questions_answered=player.questions_answered,
            score=player.score,
            correct_answers=player.correct_answers,
            wrong_answers=player.wrong_answers,
        )
        await self.broadcast_event(
            session_id, protocol.OPPONENT_PROGRESS, progress.model_dump(mode="json"), exclude_user_id=user_id
        )

        if len(game.players) == 2 and all(p.questions_answered >= game.total_questions for p in game.players):
            await self.finish_session(db, game)
        return result

    async def request_timeout(self, db: Session, session_id: str, user_id: int) -> RapidFireGame:
        """Клиентский сигнал таймаута учитывается только по часам сервера."""
        game = self.get_game(db, session_id)
        self.require_player(game, user_id)
        if game.status != SessionStatus.ONGOING.value or game.started_at is None:
            return game

        elapsed = (utcnow() - game.started_at).total_seconds()
        if game.time_limit_seconds - elapsed > get_settings().timeout_grace_seconds:
            logger.info("Ignoring early timeout from user %s in session %s", user_id, session_id)
            return game
        return await self.finish_session(db, game)

    async def leave_session(self, db: Session, session_id: str, user_id: int) -> RapidFireGame:
        game = self.get_game(db, session_id)
        player = self.require_player(game, user_id)
        if SessionStatus(game.status).is_terminal:
            return game

        player.status = "left"
        player.left_at = utcnow()

        if game.status == SessionStatus.WAITING.value:
            game.status = SessionStatus.CANCELLED.value
            game.result = GameResult.CANCELLED.value
            game.ended_at = utcnow()
            db.commit()
            db.refresh(game)
            self._cancel_timer(session_id)
            logger.info("Session %s cancelled by user %s", session_id, user_id)
            notice = OpponentLeft(message="Opponent left before the match started", user_id=user_id)
            await self.broadcast_event(session_id, protocol.OPPONENT_LEFT, notice.model_dump(), exclude_user_id=user_id)
            await self.broadcast_event(session_id, protocol.SESSION_STATE, self.to_state(db, game).model_dump(mode="json"))
            return game

        db.commit()
        notice = OpponentLeft(message="Opponent left the match", user_id=user_id)
        await self.broadcast_event(session_id, protocol.OPPONENT_LEFT, notice.model_dump(), exclude_user_id=user_id)
        return await self.finish_session(db, game, left_user_id=user_id)

    async def finish_session(
        self, db: Session, game: RapidFireGame, left_user_id: int | None = None
    ) -> RapidFireGame:
        if SessionStatus(game.status).is_terminal:
            return game
        self._cancel_timer(game.session_id)

        if left_user_id is not None:
            remaining = [p for p in game.players if p.user_id != left_user_id]
            winner = remaining[0] if remaining else None
            result = GameResult.OPPONENT_LEFT
        else:
            winner = determine_winner(game.players)
            if winner is not None:
                result = GameResult.WIN
            elif all(p.questions_answered == 0 for p in game.players):
                result = GameResult.TIMEOUT
            else:
                result = GameResult.DRAW

        game.status = SessionStatus.FINISHED.value
        game.ended_at = utcnow()
        game.winner_user_id = winner.user_id if winner else None
        game.result = result.value
        for player in game.players:
            if player.status != "left":
                player.status = "finished"
        if len(game.players) == 2:
            self.settle_ratings(db, game)

        db.commit()
        db.refresh(game)
        logger.info(
            "Session %s finished: result=%s winner=%s", game.session_id, game.result, game.winner_user_id
        )

        finished = SessionFinished(
            winner_user_id=game.winner_user_id,
            result=result,
            final_snapshot=self.to_state(db, game),
        )
        await self.broadcast_event(game.session_id, protocol.SESSION_FINISHED, finished.model_dump(mode="json"))
        return game

    def settle_ratings(self, db: Session, game: RapidFireGame) -> None:
        first, second = game.players
        if game.winner_user_id is None:
            outcomes = ("draw", "draw")
        elif game.winner_user_id == first.user_id:
            outcomes = ("win", "lose")
        else:
            outcomes = ("lose", "win")

        for player, opponent, outcome in ((first, second, outcomes[0]), (second, first, outcomes[1])):
            change = elo_change(player.rating_before, opponent.rating_before, outcome)
            player.rating_change = change
            player.rating_after = apply_rating(player.rating_before, change)
            user = db.get(User, player.user_id)
            if user:
                user.rapid_fire_rating = player.rating_after
        logger.info(
            "Ratings settled for %s: %s -> %s, %s -> %s",
            game.session_id,
            first.rating_before,
            first.rating_after,
            second.rating_before,
            second.rating_after,
        )

    def get_leaderboard(self, db: Session, page: int = 1, limit: int = 50) -> LeaderboardResponse:
        """Рейтинг игроков с числом завершённых матчей и побед."""
        offset = (page - 1) * limit
        users = (
            db.query(User)
            .order_by(User.rapid_fire_rating.desc(), User.id.asc())
            .offset(offset)
            .limit(limit)
            .all()
        )
        user_ids = [u.id for u in users]
        finished = RapidFireGame.status == SessionStatus.FINISHED.value
        games = dict(
            db.query(SessionPlayer.user_id, func.count(SessionPlayer.id))
            .join(RapidFireGame, SessionPlayer.game_id == RapidFireGame.id)
            .filter(finished, SessionPlayer.user_id.in_(user_ids))
            .group_by(SessionPlayer.user_id)
            .all()
        )
        wins = dict(
            db.query(RapidFireGame.winner_user_id, func.count(RapidFireGame.id))
            .filter(finished, RapidFireGame.winner_user_id.in_(user_ids))
            .group_by(RapidFireGame.winner_user_id)
            .all()
        )

        rows = []
        for rank, user in enumerate(users, start=offset + 1):
            total = games.get(user.id, 0)
            won = wins.get(user.id, 0)
            rows.append(
                LeaderboardRow(
                    rank=rank,
                    user_id=user.id,
                    username=user.username,
                    rating=user.rapid_fire_rating,
                    total_games=total,
                    wins=won,
                    win_rate=round(won / total * 100, 1) if total else 0.0,
                )
            )
        return LeaderboardResponse(page=page, limit=limit, rows=rows)


game_service = GameService()
