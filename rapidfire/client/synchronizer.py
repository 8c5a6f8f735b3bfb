"""
Session State Synchronizer.

Holds the single in-memory ``GameSession`` of the client. Only this module
and the answer-result path write to it; the display layer subscribes and
receives deep copies.
"""

from __future__ import annotations

import logging
from typing import Callable

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

Subscriber = Callable[[GameSession | None], None]


class SessionStateSynchronizer:
    def __init__(self, local_user_id: int) -> None:
        self.local_user_id = local_user_id
        self.session: GameSession | None = None
        self.cursor = 0
        self.last_error: ErrorEvent | None = None
        self.notices: list[str] = []
        self._subscribers: list[Subscriber] = []

    # read side

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        self._subscribers.append(callback)
        callback(self.snapshot())

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def snapshot(self) -> GameSession | None:
        return self.session.model_copy(deep=True) if self.session else None

    @property
    def status(self) -> SessionStatus | None:
        return self.session.status if self.session else None

    @property
    def session_id(self) -> str | None:
        return self.session.session_id if self.session else None

    def local_player(self):
        return self.session.player(self.local_user_id) if self.session else None

    def opponent(self):
        return self.session.opponent_of(self.local_user_id) if self.session else None

    def _publish(self) -> None:
        view = self.snapshot()
        for callback in list(self._subscribers):
            callback(view)

    # write side

    def reset(self) -> None:
        self.session = None
        self.cursor = 0
        self.last_error = None
        self.notices.clear()
        self._publish()

    def apply_session_state(self, snapshot: GameSession) -> bool:
        """
        Full replace, applied only when it does not move the session backwards.

        Returns ``True`` when the local state changed.
        """
        current = self.session
        if current is not None and current.session_id == snapshot.session_id:
            if snapshot.status.rank < current.status.rank:
                logger.debug("Ignoring stale snapshot: %s behind %s", snapshot.status, current.status)
                return False
            if current.status.is_terminal and snapshot.status != current.status:
                return False
            if snapshot.status == current.status and snapshot.progress() < current.progress():
                logger.debug("Ignoring stale snapshot with progress %s", snapshot.progress())
                return False
            if snapshot == current:
                return False

        self.session = snapshot.model_copy(deep=True)
        local = self.session.player(self.local_user_id)
        answered = local.questions_answered if local else 0
        if current is None or current.session_id != snapshot.session_id:
            self.cursor = answered
        else:
            self.cursor = max(self.cursor, answered)
        self.cursor = min(self.cursor, self.session.total_questions)
        self._publish()
        return True

    def apply_session_started(self, snapshot: GameSession) -> bool:
        current = self.session
        if (
            current is not None
            and current.session_id == snapshot.session_id
            and current.status.rank >= SessionStatus.ONGOING.rank
        ):
            # a repeated start is only a catch-up snapshot
            return self.apply_session_state(snapshot)

        self.session = snapshot.model_copy(deep=True)
        self.session.status = SessionStatus.ONGOING
        self.cursor = 0
        logger.info("Session %s started", snapshot.session_id)
        self._publish()
        return True

    def apply_player_joined(self, snapshot: GameSession) -> bool:
        if self.session is None or self.session.session_id != snapshot.session_id:
            return self.apply_session_state(snapshot)

        changed = False
        for incoming in snapshot.players:
            if self.session.player(incoming.user.user_id) is None and len(self.session.players) < 2:
                self.session.players.append(incoming.model_copy(deep=True))
                changed = True
        if changed:
            logger.info("Opponent joined session %s", self.session.session_id)
            self._publish()
        return changed

    def apply_opponent_progress(self, progress: OpponentProgress) -> bool:
        if self.session is None or progress.user_id == self.local_user_id:
            return False
        opponent = self.session.player(progress.user_id)
        if opponent is None:
            return False
        if progress.questions_answered < opponent.questions_answered:
            return False
        opponent.questions_answered = min(progress.questions_answered, self.session.total_questions)
        opponent.score = progress.score
        opponent.correct_answers = progress.correct_answers
        opponent.wrong_answers = progress.wrong_answers
        self._publish()
        return True

    def apply_answer_result(self, result: AnswerResult) -> bool:
        """Applies the local player's verdict; the cursor moves by exactly one."""
        if self.session is None or self.session.status.is_terminal:
            return False
        local = self.session.player(self.local_user_id)
        if local is None or result.question_index in local.answered_question_indices:
            return False

        local.score += result.score_delta
        if result.is_correct:
            local.correct_answers += 1
        else:
            local.wrong_answers += 1
        local.questions_answered = min(local.questions_answered + 1, self.session.total_questions)
        local.answered_question_indices.append(result.question_index)
        if abs(local.score - result.updated_score) > 1e-9:
            logger.warning("Local score %s differs from server score %s", local.score, result.updated_score)
        self.cursor = min(self.cursor + 1, self.session.total_questions)
        self._publish()
        return True

    def apply_session_finished(self, finished: SessionFinished) -> bool:
        snapshot = finished.final_snapshot
        if self.session is not None and self.session.session_id != snapshot.session_id:
            return False
        if self.session is not None and self.session.status.is_terminal:
            return False

        self.session = snapshot.model_copy(deep=True)
        self.session.status = SessionStatus.FINISHED
        self.session.winner_user_id = finished.winner_user_id
        self.session.result = finished.result
        local = self.session.player(self.local_user_id)
        if local is not None:
            self.cursor = max(self.cursor, min(local.questions_answered, self.session.total_questions))
        logger.info(
            "Session %s finished: result=%s winner=%s",
            self.session.session_id,
            finished.result,
            finished.winner_user_id,
        )
        self._publish()
        return True

    def apply_opponent_left(self, notice: OpponentLeft) -> bool:
        self.notices.append(notice.message)
        self._publish()
        return True

    def apply_error(self, error: ErrorEvent) -> bool:
        self.last_error = error
        logger.warning("Server error: %s (%s)", error.message, error.code)
        self._publish()
        return True
