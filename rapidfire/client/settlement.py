"""Scoring checks and the end-of-match view shown to the player."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from rapidfire.schemas import AnswerResult, GameResult, GameSession, PlayerState
from rapidfire.scoring import score_delta

logger = logging.getLogger(__name__)


def validate_score_delta(result: AnswerResult) -> bool:
    """The server verdict is applied either way; a mismatch is only logged."""
    expected = score_delta(result.is_correct)
    if result.score_delta != expected:
        logger.warning(
            "Server delta %s for question %s differs from the scoring rule (%s)",
            result.score_delta,
            result.question_index,
            expected,
        )
        return False
    return True


@dataclass(frozen=True)
class PlayerSettlement:
    user_id: int
    username: str
    score: float
    correct_answers: int
    wrong_answers: int
    rating_before: int
    rating_after: int | None
    rating_change: int | None


@dataclass(frozen=True)
class MatchOutcome:
    session_id: str
    result: GameResult | None
    winner_user_id: int | None
    local_user_id: int
    players: tuple[PlayerSettlement, ...]

    @property
    def is_draw(self) -> bool:
        return self.winner_user_id is None

    @property
    def local_won(self) -> bool:
        return self.winner_user_id == self.local_user_id

    def for_user(self, user_id: int) -> PlayerSettlement | None:
        for player in self.players:
            if player.user_id == user_id:
                return player
        return None


def _settlement(state: PlayerState) -> PlayerSettlement:
    return PlayerSettlement(
        user_id=state.user.user_id,
        username=state.user.username,
        score=state.score,
        correct_answers=state.correct_answers,
        wrong_answers=state.wrong_answers,
        rating_before=state.user.rating_before,
        rating_after=state.rating_after,
        rating_change=state.rating_change,
    )


def settle(session: GameSession, local_user_id: int) -> MatchOutcome:
    """
    Builds the final view from a terminal snapshot.

    The winner is taken from the server's ``winner_user_id`` and never from
    comparing the scores held locally.
    """
    return MatchOutcome(
        session_id=session.session_id,
        result=session.result,
        winner_user_id=session.winner_user_id,
        local_user_id=local_user_id,
        players=tuple(_settlement(state) for state in session.players),
    )
