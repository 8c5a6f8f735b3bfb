"""Маршруты API для приложения Rapid Fire."""

import json
import logging
import time
from collections import defaultdict, deque

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from pydantic import ValidationError
from sqlalchemy.orm import Session

from rapidfire import protocol
from rapidfire.config import get_settings
from rapidfire.database import SessionLocal, get_db
from rapidfire.errors import ProtocolError, RapidFireError, RoomNotFound
from rapidfire.models import User
from rapidfire.schemas import (
    AnswerSubmission,
    AuthResponse,
    ErrorEvent,
    GameSession,
    JoinSessionMessage,
    LeaderboardResponse,
    LoginRequest,
    RegisterRequest,
    normalize_room_code,
)
from rapidfire.security import bearer_token, create_access_token, verify_access_token
from rapidfire.services.auth_service import auth_service
from rapidfire.services.game_service import game_service

logger = logging.getLogger(__name__)

router = APIRouter()
REQUEST_LOGS: dict[str, deque] = defaultdict(deque)


def enforce_rate_limit(request: Request) -> None:
    settings = get_settings()
    ip = request.client.host if request.client else "unknown"
    now = time.time()
    bucket = REQUEST_LOGS[ip]
    while bucket and now - bucket[0] > settings.rate_window_seconds:
        bucket.popleft()
    if len(bucket) >= settings.rate_limit:
        raise HTTPException(status_code=429, detail="Too many requests")
    bucket.append(now)


def get_current_user(
    authorization: str | None = Header(default=None),
    db: Session = Depends(get_db),
) -> User:
    return auth_service.user_from_token(db, bearer_token(authorization))


def _auth_response(user: User) -> AuthResponse:
    return AuthResponse(
        user_id=user.id,
        username=user.username,
        access_token=create_access_token(user.id),
        rating=user.rapid_fire_rating,
    )


@router.get("/health")
def health() -> dict:
    return {"status": "ok"}


@router.post("/auth/register", response_model=AuthResponse)
def register(payload: RegisterRequest, request: Request, db: Session = Depends(get_db)):
    enforce_rate_limit(request)
    user = auth_service.register(db, payload.username.strip(), payload.password)
    return _auth_response(user)


@router.post("/auth/login", response_model=AuthResponse)
def login(payload: LoginRequest, request: Request, db: Session = Depends(get_db)):
    enforce_rate_limit(request)
    user = auth_service.login(db, payload.username.strip(), payload.password)
    return _auth_response(user)


@router.get("/rapidfire/leaderboard", response_model=LeaderboardResponse)
def leaderboard(
    request: Request,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=200),
    db: Session = Depends(get_db),
):
    enforce_rate_limit(request)
    return game_service.get_leaderboard(db, page=page, limit=limit)


@router.post("/rapidfire/random", response_model=GameSession)
async def random_match(
    request: Request,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    enforce_rate_limit(request)
    game, paired = game_service.find_random_match(db, current_user)
    if paired:
        await game_service.announce_player_joined(db, game)
    return game_service.to_state(db, game)


@router.post("/rapidfire/room", response_model=GameSession)
def create_room(
    request: Request,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    enforce_rate_limit(request)
    game = game_service.create_room(db, current_user)
    return game_service.to_state(db, game)


@router.post("/rapidfire/room/{room_code}/join", response_model=GameSession)
async def join_room(
    room_code: str,
    request: Request,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    enforce_rate_limit(request)
    try:
        code = normalize_room_code(room_code)
    except ValueError as exc:
        raise RoomNotFound() from exc
    game, joined = game_service.join_room(db, current_user, code)
    if joined:
        await game_service.announce_player_joined(db, game)
    return game_service.to_state(db, game)


@router.get("/rapidfire/{session_id}", response_model=GameSession)
def get_session(
    session_id: str,
    request: Request,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    enforce_rate_limit(request)
    game = game_service.get_game(db, session_id)
    game_service.require_player(game, current_user.id)
    return game_service.to_state(db, game)


@router.post("/rapidfire/{session_id}/leave", response_model=GameSession)
async def leave_session(
    session_id: str,
    request: Request,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    enforce_rate_limit(request)
    game = await game_service.leave_session(db, session_id, current_user.id)
    return game_service.to_state(db, game)


def _decode_frame(raw: str) -> dict:
    try:
        return json.loads(raw)
    except ValueError as exc:
        raise ProtocolError(f"Malformed frame: {exc}") from exc


async def _handle_message(db: Session, websocket: WebSocket, session_id: str, user_id: int, message: dict, attached: bool) -> bool:
    """Обрабатывает один кадр канала. Возвращает, привязан ли сокет к сессии."""
    if not isinstance(message, dict):
        raise ProtocolError()
    message_type = message.get("type")
    data = message.get("data") or {}
    if not isinstance(data, dict):
        raise ProtocolError()

    if message_type == protocol.PING:
        await websocket.send_json(protocol.frame(protocol.PONG))
        return attached

    if message_type == protocol.JOIN_SESSION:
        if JoinSessionMessage.model_validate(data).session_id != session_id:
            raise ProtocolError("joinSession does not match the channel session")
        if not attached:
            await game_service.attach(db, session_id, user_id, websocket)
        else:
            game = game_service.get_game(db, session_id)
            await websocket.send_json(
                protocol.frame(protocol.SESSION_STATE, game_service.to_state(db, game).model_dump(mode="json"))
            )
        return True

    if not attached:
        raise ProtocolError("Send joinSession before any other message")

    if message_type == protocol.SUBMIT_ANSWER:
        submission = AnswerSubmission.model_validate({**data, "session_id": data.get("session_id", session_id)})
        if submission.session_id != session_id:
            raise ProtocolError("Answer addressed to another session")
        await game_service.submit_answer(db, session_id, user_id, submission)
    elif message_type == protocol.SESSION_TIMEOUT:
        await game_service.request_timeout(db, session_id, user_id)
    elif message_type == protocol.LEAVE_SESSION:
        await game_service.leave_session(db, session_id, user_id)
    else:
        raise ProtocolError(f"Unknown message type: {message_type}")
    return attached


@router.websocket("/ws/rapidfire/{session_id}")
async def session_socket(websocket: WebSocket, session_id: str, token: str | None = Query(default=None)):
    db = SessionLocal()
    attached = False
    try:
        user_id = verify_access_token(token)
        game_service.get_game(db, session_id)
    except RapidFireError as exc:
        logger.info("Rejected channel for session %s: %s", session_id, exc)
        db.close()
        await websocket.close(code=1008)
        return

    await websocket.accept()
    try:
        while True:
            raw = await websocket.receive_text()
            # другие соединения меняют ту же сессию
            db.expire_all()
            try:
                message = _decode_frame(raw)
                attached = await _handle_message(db, websocket, session_id, user_id, message, attached)
            except ValidationError as exc:
                db.rollback()
                error = ErrorEvent(message=str(exc.errors()[0].get("msg", "Invalid message")), code=ProtocolError.code)
                await websocket.send_json(protocol.frame(protocol.ERROR, error.model_dump()))
            except RapidFireError as exc:
                db.rollback()
                error = ErrorEvent(message=exc.message, code=exc.code)
                await websocket.send_json(protocol.frame(protocol.ERROR, error.model_dump()))
    except WebSocketDisconnect:
        pass
    finally:
        if attached:
            game_service.handle_disconnect(session_id, user_id, websocket)
        db.close()
