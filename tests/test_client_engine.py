"""
End-to-end tests for the client session engine.
The server side is played by a fake gateway and a fake channel transport.
"""
import pytest

from conftest import build_session
from rapidfire import protocol
from rapidfire.client.connection import ConnectionManager, ConnectionStatus
from rapidfire.client.engine import RapidFireClient
from rapidfire.client.resume import ResumeManager, ResumeStore
from rapidfire.client.timer import TimerAuthority
from rapidfire.errors import TransportError
from rapidfire.schemas import AnswerResult, GameResult, OpponentProgress, SessionFinished, SessionStatus
from test_client_connection import FakeSleep, FakeTransport, settle_loop


class FakeGateway:
    def __init__(self, snapshot):
        self.snapshot = snapshot
        self.left: list[str] = []
        self.leave_error: Exception | None = None

    async def find_random_match(self):
        return self.snapshot

    async def create_room(self):
        return self.snapshot

    async def join_room(self, room_code):
        return self.snapshot

    async def get_session(self, session_id):
        return self.snapshot

    async def leave_session(self, session_id):
        self.left.append(session_id)
        if self.leave_error is not None:
            raise self.leave_error
        return None


@pytest.fixture
async def make_client(tmp_path):
    clients = []

    def factory(snapshot):
        transport = FakeTransport()
        client = RapidFireClient(
            local_user_id=1,
            auth_token="tok",
            gateway=FakeGateway(snapshot),
            connections=ConnectionManager(transport, sleep=FakeSleep()),
            resume=ResumeManager(ResumeStore(tmp_path / "active.json")),
            timer=TimerAuthority(autotick=False),
        )
        clients.append(client)
        return client, transport

    yield factory
    for client in clients:
        await client.connections.disconnect()


def sent_types(transport):
    return [m["type"] for socket in transport.opened for m in socket.sent]


def finished_payload(winner, local_answered=5, opponent_answered=2, result=GameResult.WIN):
    final = build_session(status=SessionStatus.FINISHED, local_answered=local_answered, opponent_answered=opponent_answered)
    return SessionFinished(winner_user_id=winner, result=result, final_snapshot=final).model_dump(mode="json")


async def test_random_match_then_start(make_client):
    client, transport = make_client(build_session(status=SessionStatus.WAITING))
    state = await client.find_random_match()
    assert state.status == SessionStatus.WAITING
    assert client.resume.pending_session_id() == "s1"
    assert client.connection_status == ConnectionStatus.CONNECTED
    assert sent_types(transport) == [protocol.JOIN_SESSION]
    assert client.timer.running is False

    transport.opened[0].push(protocol.SESSION_STARTED, build_session().model_dump(mode="json"))
    await settle_loop()
    assert client.state.status == SessionStatus.ONGOING
    assert client.timer.running is True
    assert client.timer.remaining == 60
    await client.leave()


async def test_resume_rearms_timer_from_server(make_client):
    client, transport = make_client(build_session(local_answered=4, time_remaining=22))
    client.resume.remember("s1")
    state = await client.resume_session()
    assert state.session_id == "s1"
    assert client.timer.remaining == 22
    assert client.cursor == 4
    assert sent_types(transport) == [protocol.JOIN_SESSION]
    await client.leave()


async def test_resume_without_saved_session(make_client):
    client, transport = make_client(build_session())
    assert await client.resume_session() is None
    assert transport.opened == []


async def test_double_submit_sends_one_answer(make_client):
    client, transport = make_client(build_session(local_answered=3))
    await client.find_random_match()
    assert await client.submit(3, 1) is True
    assert await client.submit(3, 1) is False
    assert sent_types(transport).count(protocol.SUBMIT_ANSWER) == 1
    await client.leave()


async def test_answer_result_and_opponent_progress(make_client):
    client, transport = make_client(build_session())
    await client.find_random_match()
    await client.submit_current(2)
    socket = transport.opened[0]
    socket.push(
        protocol.ANSWER_RESULT,
        AnswerResult(
            question_index=0, is_correct=True, score_delta=1.0, correct_option_index=2,
            updated_score=1.0, questions_answered=1,
        ).model_dump(),
    )
    socket.push(
        protocol.OPPONENT_PROGRESS,
        OpponentProgress(user_id=2, questions_answered=2, score=0.5, correct_answers=1, wrong_answers=1).model_dump(),
    )
    await settle_loop()
    state = client.state
    assert client.cursor == 1
    assert state.player(1).score == 1.0
    assert state.player(2).questions_answered == 2
    assert client.pipeline.last_reveal == (0, 2)
    await client.leave()


def assert_settled(client, winner):
    state = client.state
    assert state.status == SessionStatus.FINISHED
    assert state.player(1).score == 5.0
    assert state.player(2).score == 2.0
    assert client.outcome.winner_user_id == winner
    assert client.timer.running is False
    assert client.resume.pending_session_id() is None


async def test_local_timeout_then_server_finish(make_client):
    client, transport = make_client(build_session(time_remaining=1))
    await client.find_random_match()
    client.timer.tick()
    await settle_loop()
    assert sent_types(transport).count(protocol.SESSION_TIMEOUT) == 1
    assert client.state.status == SessionStatus.ONGOING
    assert await client.submit(0, 0) is True

    transport.opened[0].push(protocol.SESSION_FINISHED, finished_payload(winner=1))
    await settle_loop()
    assert_settled(client, winner=1)
    assert await client.submit(1, 0) is False


async def test_server_finish_before_local_timeout(make_client):
    client, transport = make_client(build_session(time_remaining=1))
    await client.find_random_match()
    transport.opened[0].push(protocol.SESSION_FINISHED, finished_payload(winner=1))
    await settle_loop()
    client.timer.tick()
    await settle_loop()
    assert protocol.SESSION_TIMEOUT not in sent_types(transport)
    assert_settled(client, winner=1)
    assert await client.submit(1, 0) is False


async def test_winner_comes_from_server_not_local_scores(make_client):
    client, transport = make_client(build_session(local_answered=5, opponent_answered=2))
    await client.find_random_match()
    transport.opened[0].push(protocol.SESSION_FINISHED, finished_payload(winner=2))
    await settle_loop()
    outcome = client.outcome
    assert outcome.for_user(1).score > outcome.for_user(2).score
    assert outcome.winner_user_id == 2
    assert outcome.local_won is False
    assert outcome.is_draw is False


async def test_snapshot_after_finish_is_ignored(make_client):
    client, transport = make_client(build_session())
    await client.find_random_match()
    socket = transport.opened[0]
    socket.push(protocol.SESSION_FINISHED, finished_payload(winner=None, result=GameResult.DRAW))
    socket.push(protocol.SESSION_STATE, build_session().model_dump(mode="json"))
    await settle_loop()
    assert client.state.status == SessionStatus.FINISHED
    assert client.outcome.is_draw is True


async def test_cancelled_snapshot_forgets_session(make_client):
    client, transport = make_client(build_session(status=SessionStatus.WAITING))
    await client.find_random_match()
    transport.opened[0].push(protocol.OPPONENT_LEFT, {"message": "Opponent left before the match started", "user_id": 2})
    transport.opened[0].push(protocol.SESSION_STATE, build_session(status=SessionStatus.CANCELLED).model_dump(mode="json"))
    await settle_loop()
    assert client.state.status == SessionStatus.CANCELLED
    assert client.synchronizer.notices == ["Opponent left before the match started"]
    assert client.resume.pending_session_id() is None
    assert client.outcome is None


async def test_leave_notifies_server_and_clears_state(make_client):
    client, transport = make_client(build_session())
    await client.find_random_match()
    await client.leave()
    assert sent_types(transport)[-1] == protocol.LEAVE_SESSION
    assert client.state is None
    assert client.connection_status == ConnectionStatus.DISCONNECTED
    assert client.resume.pending_session_id() is None


async def test_leave_falls_back_to_request_when_offline(make_client):
    client, _ = make_client(build_session())
    await client.find_random_match()
    await client.connections.disconnect()
    await client.leave()
    assert client.gateway.left == ["s1"]
    assert client.state is None


async def test_reconnect_reconciles_pending_answers(make_client):
    client, transport = make_client(build_session())
    await client.find_random_match()
    await client.submit(0, 1)
    await client.submit(1, 1)

    transport.opened[0].drop()
    await settle_loop()
    second = transport.opened[1]
    assert [m["type"] for m in second.sent] == [protocol.JOIN_SESSION]

    # the server recorded only the first answer
    second.push(protocol.SESSION_STATE, build_session(local_answered=1).model_dump(mode="json"))
    await settle_loop()
    assert client.cursor == 1
    assert client.pipeline.pending == set()
    assert await client.submit(0, 1) is False
    assert await client.submit(1, 1) is True
    await client.leave()


async def test_leave_clears_state_when_server_unreachable(make_client):
    client, _ = make_client(build_session(local_answered=2))
    await client.find_random_match()
    await client.connections.disconnect()
    client.gateway.leave_error = TransportError("server unreachable")
    await client.leave()
    assert client.gateway.left == ["s1"]
    assert client.state is None
    assert client.timer.running is False
    assert client.resume.pending_session_id() is None
    assert await client.submit(2, 0) is False


async def test_client_owns_timer_timeout_callback(make_client):
    client, _ = make_client(build_session())
    assert client.timer.on_timeout == client._on_local_timeout
