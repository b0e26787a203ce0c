"""Pytest configuration and fakes for thermalscan tests."""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
from collections import deque
from typing import Any, Callable, Deque, List, Optional, Tuple

import numpy as np
import pytest

# Keep the runtime log out of the checkout; must be set before thermalscan.main is imported.
TEST_LOG_DIRECTORY = tempfile.mkdtemp(prefix="thermalscan-test-logs-")
os.environ["LOG_DIRECTORY"] = TEST_LOG_DIRECTORY

from thermalscan.errors import AcquisitionFailure, ModelLoadFailure
from thermalscan.sensors.camera import RawFrame
from thermalscan.state import ScanStatus

logging.getLogger("thermalscan").setLevel(logging.DEBUG)


def pytest_sessionfinish(session, exitstatus):
    shutil.rmtree(TEST_LOG_DIRECTORY, ignore_errors=True)


class FakeClock:
    def __init__(self, now: float = 0.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class FakeTimerHandle:
    def __init__(self, when: float, callback: Callable[..., Any], args: Tuple[Any, ...]) -> None:
        self.when = when
        self.callback = callback
        self.args = args
        self.cancelled = False
        self.fired = False

    def cancel(self) -> None:
        self.cancelled = True

    def fire(self) -> None:
        self.callback(*self.args)


class FakeScheduler:
    """``call_later`` on a fake clock; ``run_until`` fires due handles in order."""

    def __init__(self, clock: FakeClock) -> None:
        self.clock = clock
        self.handles: List[FakeTimerHandle] = []

    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> FakeTimerHandle:
        handle = FakeTimerHandle(self.clock.now + delay, callback, args)
        self.handles.append(handle)
        return handle

    def pending(self) -> List[FakeTimerHandle]:
        return [h for h in self.handles if not h.cancelled and not h.fired]

    def run_until(self, target: float) -> None:
        while True:
            due = [h for h in self.pending() if h.when <= target]
            if not due:
                break
            handle = min(due, key=lambda h: h.when)
            self.clock.now = max(self.clock.now, handle.when)
            handle.fired = True
            handle.fire()
        self.clock.now = target


class FakeStream:
    def __init__(self) -> None:
        self.frames: Deque[RawFrame] = deque()
        self.closed = False
        self.close_calls = 0

    def next_frame(self) -> Optional[RawFrame]:
        if self.closed or not self.frames:
            return None
        return self.frames.popleft()

    def close(self) -> None:
        self.close_calls += 1
        self.closed = True


class FakeCameraSource:
    def __init__(self, failure: Optional[str] = None) -> None:
        self.failure = failure
        self.streams: List[FakeStream] = []
        self.open_calls: List[Tuple[int, int, str]] = []

    def open(self, preferred_width: int, preferred_height: int, facing: str) -> FakeStream:
        self.open_calls.append((preferred_width, preferred_height, facing))
        if self.failure:
            raise AcquisitionFailure(self.failure)
        stream = FakeStream()
        self.streams.append(stream)
        return stream


class FakeModel:
    def __init__(self, present: bool = False) -> None:
        self.present = present
        self.calls: List[int] = []
        self.closed = False

    def infer(self, frame: np.ndarray, timestamp_ms: int) -> List[Any]:
        self.calls.append(timestamp_ms)
        return [["landmark"]] if self.present else []

    def close(self) -> None:
        self.closed = True


def failing_loader(settings: Any) -> Any:
    raise ModelLoadFailure("load error")


class CollectingRenderTarget:
    def __init__(self) -> None:
        self.frames: List[Tuple[np.ndarray, ScanStatus]] = []
        self.statuses: List[ScanStatus] = []

    def publish(self, frame: Optional[np.ndarray], status: ScanStatus) -> None:
        self.statuses.append(status)
        if frame is not None:
            self.frames.append((frame, status))


def make_frame(width: int = 32, height: int = 18, timestamp: float = 0.0, seed: int = 0) -> RawFrame:
    rng = np.random.default_rng(seed)
    pixels = rng.integers(0, 256, size=(height, width, 3), dtype=np.uint8)
    return RawFrame(width=width, height=height, pixels=pixels, timestamp=timestamp)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def scheduler(clock: FakeClock) -> FakeScheduler:
    return FakeScheduler(clock)
