import asyncio
import time

import pytest

from services.deadlines import Deadline, DeadlineExceeded


def test_child_deadline_never_outlives_parent(clock):
    parent = Deadline.after(10, clock=clock)

    assert parent.child(60).remaining() == pytest.approx(10)
    assert parent.child(3).remaining() == pytest.approx(3)

    clock.advance(10)
    assert parent.expired()
    with pytest.raises(DeadlineExceeded, match="upload captions"):
        parent.check("upload captions")


@pytest.mark.asyncio
async def test_run_cancels_awaitable_past_budget():
    deadline = Deadline.after(0.05)

    with pytest.raises(DeadlineExceeded) as exc_info:
        await deadline.run(asyncio.sleep(5), "transcribe text")

    assert exc_info.value.stage == "transcribe text"


@pytest.mark.asyncio
async def test_run_on_expired_deadline_does_not_start_work(clock):
    deadline = Deadline.after(0, clock=clock)
    started = []

    async def _work():
        started.append(True)

    with pytest.raises(DeadlineExceeded):
        await deadline.run(_work(), "fetch media")
    assert started == []


@pytest.mark.asyncio
async def test_run_in_thread_returns_result_within_budget():
    deadline = Deadline.after(5)
    assert await deadline.run_in_thread("probe", lambda value: value * 2, 21) == 42


@pytest.mark.asyncio
async def test_run_in_thread_stops_waiting_on_expiry():
    deadline = Deadline.after(0.05)

    with pytest.raises(DeadlineExceeded):
        await deadline.run_in_thread("transcribe chunk", time.sleep, 0.3)
