"""
Tests for the injected capability and the off-thread detection runner.

The event loop is driven with asyncio.run; passes are plain functions so
no image processing happens here.
"""

import asyncio
import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from lines import BaseLine
from runner import Capability, DetectionRunner
from session import CalibrationSession
from test_session import tape_ruler


class FakeResult:
    def __init__(self, label):
        self.label = label
        self.x_ruler = None
        self.y_ruler = tape_ruler()
        self.base_line = BaseLine(500)
        self.objects = []


def test_capability_loads_once():
    calls = []

    def loader():
        calls.append(1)
        return "toolkit"

    cap = Capability(loader)
    assert not cap.ready
    f1 = cap.start()
    f2 = cap.start()
    assert f1 is f2
    assert cap.get(timeout=5) == "toolkit"
    assert cap.ready
    assert calls == [1]


def test_capability_failure_propagates():
    def loader():
        raise RuntimeError("no OpenCV")

    cap = Capability(loader)
    with pytest.raises(RuntimeError, match="no OpenCV"):
        cap.get(timeout=5)
    assert not cap.ready


def test_capability_close_shuts_down_own_worker():
    with Capability(lambda: "toolkit") as cap:
        assert cap.get(timeout=5) == "toolkit"
        worker = cap._executor
    with pytest.raises(RuntimeError):
        worker.submit(lambda: None)
    assert cap.get(timeout=5) == "toolkit"
    cap.close()


def test_capability_close_leaves_caller_executor():
    pool = ThreadPoolExecutor(max_workers=1)
    try:
        cap = Capability(lambda: "toolkit", executor=pool)
        assert cap.get(timeout=5) == "toolkit"
        cap.close()
        assert pool.submit(lambda: 7).result(timeout=5) == 7
    finally:
        pool.shutdown()


def test_runner_applies_result():
    session = CalibrationSession()
    seen = []

    def fake_pass(image, snapshot):
        seen.append((image, snapshot.y_ruler))
        return FakeResult("only")

    runner = DetectionRunner(session, Capability(lambda: fake_pass))
    result = asyncio.run(runner.run("img"))
    assert result.label == "only"
    assert seen == [("img", None)]
    assert session.active_scale() == pytest.approx(0.5)
    assert session.base_line.pixel_y == 500
    assert not runner.busy


def test_runner_refuses_retrigger_while_busy():
    release = threading.Event()

    def slow_pass(image, snapshot):
        release.wait(5)
        return FakeResult(image)

    runner = DetectionRunner(CalibrationSession(), Capability(lambda: slow_pass))

    async def scenario():
        first = asyncio.ensure_future(runner.run("first"))
        while not runner.busy:
            await asyncio.sleep(0)
        with pytest.raises(RuntimeError):
            await runner.run("second")
        release.set()
        return await first

    assert asyncio.run(scenario()).label == "first"


def test_stale_results_are_discarded():
    session = CalibrationSession()
    runner = DetectionRunner(session, Capability(lambda: None))
    newer, older = FakeResult("newer"), FakeResult("older")
    older.y_ruler = None
    assert runner.deliver(newer, requested_at=10.0) is newer
    assert runner.deliver(older, requested_at=5.0) is None
    assert session.y_ruler is newer.y_ruler


def test_cancel_discards_inflight_pass():
    session = CalibrationSession()

    def cancelling_pass(image, snapshot):
        runner.cancel()
        return FakeResult("cancelled")

    runner = DetectionRunner(session, Capability(lambda: cancelling_pass))
    assert asyncio.run(runner.run("img")) is None
    assert session.y_ruler is None
    assert session.last_pass_at is None


def test_pass_errors_reset_busy():
    def broken_pass(image, snapshot):
        raise ValueError("boom")

    runner = DetectionRunner(CalibrationSession(), Capability(lambda: broken_pass))
    with pytest.raises(ValueError):
        asyncio.run(runner.run("img"))
    assert not runner.busy
