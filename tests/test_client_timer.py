import asyncio

from rapidfire.client.timer import TimerAuthority


def make_timer(**kwargs):
    ticks, timeouts = [], []
    timer = TimerAuthority(on_tick=ticks.append, on_timeout=lambda: timeouts.append(True), autotick=False, **kwargs)
    return timer, ticks, timeouts


def test_counts_down_and_fires_once():
    timer, ticks, timeouts = make_timer()
    timer.start(3)
    for _ in range(5):
        timer.tick()
    assert ticks == [2, 1, 0]
    assert timeouts == [True]
    assert timer.expired is True
    assert timer.running is False


def test_rearm_uses_server_remaining_time():
    timer, ticks, timeouts = make_timer()
    timer.start(60)
    timer.tick()
    timer.rearm(22)
    assert timer.remaining == 22
    assert timer.running is True
    assert timeouts == []


def test_rearm_at_zero_expires_immediately():
    timer, _, timeouts = make_timer()
    timer.rearm(0)
    assert timeouts == [True]
    assert timer.running is False


def test_stop_prevents_timeout():
    timer, _, timeouts = make_timer()
    timer.start(1)
    timer.stop()
    timer.tick()
    assert timeouts == []


def test_each_arming_can_expire_once():
    timer, _, timeouts = make_timer()
    timer.start(1)
    timer.tick()
    timer.start(1)
    timer.tick()
    assert timeouts == [True, True]


async def test_autotick_task_runs_to_zero():
    sleeps = []

    async def fast_sleep(delay):
        sleeps.append(delay)
        await asyncio.sleep(0)

    done = asyncio.Event()
    timer = TimerAuthority(on_timeout=done.set, sleep=fast_sleep)
    timer.start(3)
    await asyncio.wait_for(done.wait(), timeout=1)
    assert timer.remaining == 0
    assert sleeps == [1.0, 1.0, 1.0]


async def test_stop_cancels_autotick_task():
    timer = TimerAuthority()
    timer.start(30)
    task = timer._task
    timer.stop()
    await asyncio.sleep(0)
    assert task.cancelled() or task.done()
