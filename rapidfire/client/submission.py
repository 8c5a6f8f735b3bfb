from __future__ import annotations

import logging
import time
from typing import Awaitable, Callable

from rapidfire import protocol
from rapidfire.client.settlement import validate_score_delta
from rapidfire.client.synchronizer import SessionStateSynchronizer
from rapidfire.errors import (
    DuplicateSubmission,
    QuestionIndexOutOfRange,
    SessionNotOngoing,
    SubmissionRejected,
    TransportError,
)
from rapidfire.schemas import AnswerResult, AnswerSubmission, SessionStatus

logger = logging.getLogger(__name__)

Sender = Callable[[str, dict], Awaitable[None]]


class AnswerSubmissionPipeline:
    """
    Guards and sends answers; applies the server verdict.

    At most one answer per question index is ever sent: an index stays in
    ``pending`` until its ``answerResult`` arrives and in ``acknowledged``
    afterwards.
    """

    def __init__(
        self,
        synchronizer: SessionStateSynchronizer,
        send: Sender,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.synchronizer = synchronizer
        self._send = send
        self._clock = clock
        self.pending: set[int] = set()
        self.acknowledged: set[int] = set()
        self.frozen = False
        self.last_reveal: tuple[int, int] | None = None
        self.last_result: AnswerResult | None = None
        self._shown_at: float | None = None

    def question_shown(self) -> None:
        """Marks the moment the current question was displayed."""
        self._shown_at = self._clock()

    def check(self, question_index: int) -> None:
        session = self.synchronizer.session
        if self.frozen or session is None or session.status != SessionStatus.ONGOING:
            raise SessionNotOngoing()
        if not 0 <= question_index < session.total_questions:
            raise QuestionIndexOutOfRange()
        local = self.synchronizer.local_player()
        answered = set(local.answered_question_indices) if local else set()
        if question_index in self.pending or question_index in self.acknowledged or question_index in answered:
            raise DuplicateSubmission()

    async def submit(self, question_index: int, option_index: int) -> bool:
        """Returns ``False`` when the answer was rejected locally; state is then unchanged."""
        try:
            self.check(question_index)
        except SubmissionRejected as exc:
            logger.debug("Submission for question %s rejected: %s", question_index, exc.code)
            return False

        self.pending.add(question_index)
        elapsed_ms = 0
        if self._shown_at is not None:
            elapsed_ms = max(0, int((self._clock() - self._shown_at) * 1000))
        submission = AnswerSubmission(
            session_id=self.synchronizer.session_id,
            question_index=question_index,
            selected_option_index=option_index,
            client_elapsed_ms=elapsed_ms,
        )
        try:
            await self._send(protocol.SUBMIT_ANSWER, submission.model_dump())
        except TransportError:
            # never delivered, so the question may be answered again
            self.pending.discard(question_index)
            logger.warning("Answer for question %s was not sent", question_index)
            return False
        return True

    def handle_result(self, result: AnswerResult) -> bool:
        if result.question_index in self.acknowledged:
            logger.debug("Duplicate answer result for question %s", result.question_index)
            return False
        self.pending.discard(result.question_index)
        self.acknowledged.add(result.question_index)
        validate_score_delta(result)
        applied = self.synchronizer.apply_answer_result(result)
        self.last_result = result
        self.last_reveal = (result.question_index, result.correct_option_index)
        self.question_shown()
        return applied

    def reconcile(self) -> None:
        """
        Aligns local bookkeeping with a fresh snapshot after (re)attachment.

        Answers the server recorded become acknowledged; other pending
        answers were lost with the old connection and are released.
        """
        local = self.synchronizer.local_player()
        answered = set(local.answered_question_indices) if local else set()
        self.acknowledged |= answered
        released = self.pending - answered
        if released:
            logger.info("Releasing unconfirmed answers for questions %s", sorted(released))
        self.pending.clear()

    def freeze(self) -> None:
        self.frozen = True
        self.pending.clear()

    def reset(self) -> None:
        self.pending.clear()
        self.acknowledged.clear()
        self.frozen = False
        self.last_reveal = None
        self.last_result = None
        self._shown_at = None
