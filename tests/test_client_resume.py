from conftest import build_session
from rapidfire.client.resume import ResumeManager, ResumeStore
from rapidfire.errors import NotInSession, SessionNotFound
from rapidfire.schemas import SessionStatus


class FakeGateway:
    def __init__(self, outcome):
        self.outcome = outcome
        self.requested: list[str] = []

    async def get_session(self, session_id):
        self.requested.append(session_id)
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return self.outcome


def test_store_round_trip(tmp_path):
    store = ResumeStore(tmp_path / "nested" / "active.json")
    assert store.load() is None
    store.save("abc")
    assert store.load() == "abc"
    store.clear()
    assert store.load() is None
    store.clear()


def test_corrupt_file_is_discarded(tmp_path):
    path = tmp_path / "active.json"
    path.write_text("{not json", encoding="utf-8")
    store = ResumeStore(path)
    assert store.load() is None
    assert not path.exists()


async def test_restore_returns_open_session(tmp_path):
    manager = ResumeManager(ResumeStore(tmp_path / "active.json"))
    manager.remember("s1")
    gateway = FakeGateway(build_session(local_answered=4, time_remaining=22))
    snapshot = await manager.restore(gateway)
    assert snapshot.time_remaining_seconds == 22
    assert gateway.requested == ["s1"]
    assert manager.pending_session_id() == "s1"


async def test_restore_forgets_finished_session(tmp_path):
    manager = ResumeManager(ResumeStore(tmp_path / "active.json"))
    manager.remember("s1")
    assert await manager.restore(FakeGateway(build_session(status=SessionStatus.FINISHED))) is None
    assert manager.pending_session_id() is None


async def test_restore_forgets_missing_session(tmp_path):
    manager = ResumeManager(ResumeStore(tmp_path / "active.json"))
    for error in (SessionNotFound(), NotInSession()):
        manager.remember("s1")
        assert await manager.restore(FakeGateway(error)) is None
        assert manager.pending_session_id() is None


async def test_restore_without_saved_id_makes_no_request(tmp_path):
    manager = ResumeManager(ResumeStore(tmp_path / "active.json"))
    gateway = FakeGateway(build_session())
    assert await manager.restore(gateway) is None
    assert gateway.requested == []
