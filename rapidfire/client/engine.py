from __future__ import annotations

import asyncio
import logging
from typing import Callable

from rapidfire import protocol
from rapidfire.client.connection import ConnectionManager, ConnectionStatus, Handler, WebSocketTransport
from rapidfire.client.gateway import MatchmakingGateway
from rapidfire.client.resume import ResumeManager, ResumeStore
from rapidfire.client.settlement import MatchOutcome, settle
from rapidfire.client.submission import AnswerSubmissionPipeline
from rapidfire.client.synchronizer import SessionStateSynchronizer
from rapidfire.client.timer import TimerAuthority
from rapidfire.config import get_settings
from rapidfire.errors import RapidFireError, TransportError
from rapidfire.schemas import (
    AnswerResult,
    ErrorEvent,
    GameSession,
    OpponentLeft,
    OpponentProgress,
    SessionFinished,
    SessionStatus,
)

logger = logging.getLogger(__name__)


class RapidFireClient:
    """
    Client side of one Rapid Fire match.

    Matchmaking returns a session, the session id is persisted, a channel is
    attached and server events drive the state; the timer and the answer
    pipeline act on that state until the server settles the match.
    """

    def __init__(
        self,
        local_user_id: int,
        auth_token: str,
        gateway: MatchmakingGateway,
        connections: ConnectionManager,
        resume: ResumeManager,
        timer: TimerAuthority | None = None,
    ) -> None:
        self.local_user_id = local_user_id
        self.auth_token = auth_token
        self.gateway = gateway
        self.connections = connections
        self.resume = resume
        self.synchronizer = SessionStateSynchronizer(local_user_id)
        self.pipeline = AnswerSubmissionPipeline(self.synchronizer, self._send)
        self.timer = timer or TimerAuthority()
        self.timer.on_timeout = self._on_local_timeout
        self.outcome: MatchOutcome | None = None
        self.timeout_sent = False
        self._background: set[asyncio.Task] = set()

    @classmethod
    def from_settings(cls, local_user_id: int, auth_token: str, on_status: Callable | None = None) -> "RapidFireClient":
        settings = get_settings()
        return cls(
            local_user_id=local_user_id,
            auth_token=auth_token,
            gateway=MatchmakingGateway(settings.api_url, token=auth_token),
            connections=ConnectionManager(
                WebSocketTransport(settings.api_url),
                max_attempts=settings.reconnect_attempts,
                base_delay=settings.reconnect_base_delay,
                max_delay=settings.reconnect_max_delay,
                on_status=on_status,
            ),
            resume=ResumeManager(ResumeStore(settings.resume_file)),
        )

    # read side

    @property
    def state(self) -> GameSession | None:
        return self.synchronizer.snapshot()

    @property
    def cursor(self) -> int:
        return self.synchronizer.cursor

    @property
    def connection_status(self) -> ConnectionStatus:
        return self.connections.status

    def subscribe(self, callback) -> Callable[[], None]:
        return self.synchronizer.subscribe(callback)

    # matchmaking

    async def find_random_match(self) -> GameSession:
        return await self._acquire(await self.gateway.find_random_match())

    async def create_room(self) -> GameSession:
        return await self._acquire(await self.gateway.create_room())

    async def join_room(self, room_code: str) -> GameSession:
        return await self._acquire(await self.gateway.join_room(room_code))

    async def _acquire(self, session: GameSession) -> GameSession:
        if self.synchronizer.session_id not in (None, session.session_id):
            await self._teardown()
        self.resume.remember(session.session_id)
        self._apply_snapshot(session)
        await self._attach(session.session_id)
        return self.synchronizer.snapshot()

    async def resume_session(self) -> GameSession | None:
        """Reattaches to the match persisted by a previous run, if it is still open."""
        snapshot = await self.resume.restore(self.gateway)
        if snapshot is None:
            return None
        logger.info("Resuming session %s", snapshot.session_id)
        self._apply_snapshot(snapshot)
        await self._attach(snapshot.session_id)
        return self.synchronizer.snapshot()

    async def retry_connection(self) -> None:
        session_id = self.synchronizer.session_id
        if session_id is None:
            return
        await self._attach(session_id)

    async def _attach(self, session_id: str) -> None:
        await self.connections.connect(session_id, self.auth_token, self._handlers())

    def _handlers(self) -> dict[str, Handler]:
        return {
            protocol.SESSION_STATE: self._on_session_state,
            protocol.SESSION_STARTED: self._on_session_started,
            protocol.PLAYER_JOINED: self._on_player_joined,
            protocol.ANSWER_RESULT: self._on_answer_result,
            protocol.OPPONENT_PROGRESS: self._on_opponent_progress,
            protocol.SESSION_FINISHED: self._on_session_finished,
            protocol.OPPONENT_LEFT: self._on_opponent_left,
            protocol.ERROR: self._on_error,
            protocol.PONG: lambda data: None,
        }

    # gameplay

    async def submit(self, question_index: int, option_index: int) -> bool:
        return await self.pipeline.submit(question_index, option_index)

    async def submit_current(self, option_index: int) -> bool:
        return await self.pipeline.submit(self.synchronizer.cursor, option_index)

    async def leave(self) -> None:
        """Explicit leave: notify the server, then drop every local trace of the match."""
        session = self.synchronizer.session
        try:
            if session is not None and not session.status.is_terminal:
                await self._notify_leave(session.session_id)
        finally:
            await self._teardown()

    async def _notify_leave(self, session_id: str) -> None:
        try:
            await self.connections.send(protocol.LEAVE_SESSION, {"session_id": session_id})
        except TransportError:
            try:
                await self.gateway.leave_session(session_id)
            except RapidFireError as exc:
                logger.warning("Leave notice for session %s not delivered: %s", session_id, exc)

    async def _teardown(self) -> None:
        self.timer.stop()
        self.pipeline.freeze()
        await self.connections.disconnect()
        self.resume.forget()
        for task in list(self._background):
            task.cancel()
        self.synchronizer.reset()
        self.pipeline.reset()
        self.outcome = None
        self.timeout_sent = False

    async def _send(self, message_type: str, data: dict) -> None:
        await self.connections.send(message_type, data)

    # state transitions

    def _apply_snapshot(self, snapshot: GameSession) -> None:
        if not self.synchronizer.apply_session_state(snapshot):
            return
        self._sync_side_effects()

    def _sync_side_effects(self) -> None:
        session = self.synchronizer.session
        if session is None:
            return
        if session.status.is_terminal:
            self._on_terminal()
        elif session.status == SessionStatus.ONGOING:
            self.pipeline.reconcile()
            remaining = session.time_remaining_seconds
            self.timer.rearm(session.time_limit_seconds if remaining is None else remaining)
            self.pipeline.question_shown()

    def _on_terminal(self) -> None:
        self.timer.stop()
        self.pipeline.freeze()
        self.resume.forget()
        session = self.synchronizer.session
        if session is not None and session.status == SessionStatus.FINISHED:
            self.outcome = settle(session, self.local_user_id)

    def _on_session_state(self, data: dict) -> None:
        self._apply_snapshot(GameSession.model_validate(data))

    def _on_session_started(self, data: dict) -> None:
        if self.synchronizer.apply_session_started(GameSession.model_validate(data)):
            self._sync_side_effects()

    def _on_player_joined(self, data: dict) -> None:
        self.synchronizer.apply_player_joined(GameSession.model_validate(data))

    def _on_answer_result(self, data: dict) -> None:
        self.pipeline.handle_result(AnswerResult.model_validate(data))

    def _on_opponent_progress(self, data: dict) -> None:
        self.synchronizer.apply_opponent_progress(OpponentProgress.model_validate(data))

    def _on_session_finished(self, data: dict) -> None:
        # server state wins over any local timeout still in flight
        self.timer.stop()
        self.pipeline.freeze()
        if self.synchronizer.apply_session_finished(SessionFinished.model_validate(data)):
            self._on_terminal()

    def _on_opponent_left(self, data: dict) -> None:
        self.synchronizer.apply_opponent_left(OpponentLeft.model_validate(data))

    def _on_error(self, data: dict) -> None:
        self.synchronizer.apply_error(ErrorEvent.model_validate(data))

    def _on_local_timeout(self) -> None:
        session = self.synchronizer.session
        if session is None or session.status != SessionStatus.ONGOING or self.timeout_sent:
            return
        self.timeout_sent = True
        task = asyncio.get_running_loop().create_task(self._send_timeout(session.session_id))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _send_timeout(self, session_id: str) -> None:
        try:
            await self.connections.send(protocol.SESSION_TIMEOUT, {"session_id": session_id})
        except TransportError as exc:
            logger.warning("Timeout notice for session %s not sent: %s", session_id, exc)
