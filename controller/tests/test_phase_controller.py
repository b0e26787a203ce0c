"""Unit tests for the scan phase state machine."""

import pytest

from conftest import FakeClock, FakeScheduler
from thermalscan.config import OutcomeSettings, PhaseDurations
from thermalscan.phase_controller import PhaseController, ease_out_quart
from thermalscan.state import DetectionSignal, ScanPhase

pytestmark = pytest.mark.unit

TIMELINE = [
    (3.5, ScanPhase.SCAN_DOWN),
    (6.5, ScanPhase.THERMAL_HOLD_DOWN),
    (9.5, ScanPhase.SCAN_UP),
    (12.5, ScanPhase.THERMAL_HOLD_UP),
    (15.5, ScanPhase.RESULT),
    (20.5, ScanPhase.IDLE),
]


class StubRandom:
    def __init__(self, value: float) -> None:
        self.value = value

    def random(self) -> float:
        return self.value


def make_controller(clock, scheduler=None, rng_value=0.5, **duration_overrides):
    return PhaseController(
        PhaseDurations(**duration_overrides),
        OutcomeSettings(),
        clock=clock,
        rng=StubRandom(rng_value),
        scheduler=scheduler,
    )


def test_starts_idle_with_zero_progress(clock):
    controller = make_controller(clock)
    assert controller.phase is ScanPhase.IDLE
    assert controller.progress() == 0.0
    assert controller.outcome is None


def test_scenario_a_timeline_with_injected_clock(clock):
    controller = make_controller(clock)
    assert controller.handle_presence(True)
    assert controller.phase is ScanPhase.COUNTDOWN

    assert controller.advance(3.499) is ScanPhase.COUNTDOWN
    for when, expected in TIMELINE:
        assert controller.advance(when) is expected, when

    # first thermal ramp reaches ~1 just before its deadline
    controller = make_controller(clock)
    controller.handle_presence(True)
    controller.advance(6.5)
    assert controller.progress(6.5) == 0.0
    assert controller.progress(9.4999) == pytest.approx(1.0, abs=1e-3)


def test_scenario_a_timeline_with_timers(clock, scheduler):
    controller = make_controller(clock, scheduler)
    seen = []
    controller.register_phase_callback(lambda old, new: seen.append((clock.now, new)))

    controller.handle_presence(True)
    scheduler.run_until(25.0)

    assert seen == [(0.0, ScanPhase.COUNTDOWN)] + TIMELINE
    assert controller.phase is ScanPhase.IDLE
    assert controller.outcome is None
    assert scheduler.pending() == []


def test_clock_jump_chains_phases_from_deadlines(clock):
    controller = make_controller(clock)
    controller.handle_presence(True)
    assert controller.advance(11.0) is ScanPhase.SCAN_UP
    assert controller.phase_started_at == 9.5
    assert controller.elapsed(11.0) == pytest.approx(1.5)


@pytest.mark.parametrize(
    "phase_start, phase, duration",
    [
        (0.0, ScanPhase.COUNTDOWN, 3.5),
        (3.5, ScanPhase.SCAN_DOWN, 3.0),
        (6.5, ScanPhase.THERMAL_HOLD_DOWN, 3.0),
        (9.5, ScanPhase.SCAN_UP, 3.0),
        (12.5, ScanPhase.THERMAL_HOLD_UP, 3.0),
        (15.5, ScanPhase.RESULT, 5.0),
    ],
)
def test_progress_bounded_and_monotonic_within_phase(clock, phase_start, phase, duration):
    controller = make_controller(clock)
    controller.handle_presence(True)
    controller.advance(phase_start)
    assert controller.phase is phase

    samples = [controller.progress(phase_start + duration * i / 50) for i in range(50)]
    assert all(0.0 <= p <= 1.0 for p in samples)
    pairs = list(zip(samples, samples[1:]))
    if phase is ScanPhase.RESULT:
        # fade-out: 1 -> 0 over the first second, then 0
        assert samples[0] == 1.0
        assert all(b <= a for a, b in pairs)
        assert controller.progress(phase_start + 1.0) == 0.0
    else:
        assert all(b >= a for a, b in pairs)

    assert controller.advance(phase_start + duration) is not phase


def test_scan_up_holds_full_thermal(clock):
    controller = make_controller(clock)
    controller.handle_presence(True)
    controller.advance(9.5)
    assert controller.progress(9.5) == 1.0
    assert controller.progress(12.4) == 1.0


def test_trigger_only_accepted_in_idle(clock):
    controller = make_controller(clock)
    assert not controller.handle_presence(False)
    assert controller.phase is ScanPhase.IDLE

    assert controller.handle_presence(True)
    started = controller.phase_started_at
    clock.now = 1.0
    assert not controller.handle_presence(True)
    assert controller.phase is ScanPhase.COUNTDOWN
    assert controller.phase_started_at == started

    for when, phase in TIMELINE[:-1]:
        controller.advance(when)
        assert not controller.handle_presence(True)
        assert controller.phase is phase


def test_stale_presence_signal_is_discarded(clock):
    controller = make_controller(clock)
    generation = controller.generation
    controller.handle_presence(True)
    controller.reset("test")

    assert not controller.handle_presence(DetectionSignal(present=True, generation=generation))
    assert controller.phase is ScanPhase.IDLE
    assert controller.handle_presence(DetectionSignal(present=True, generation=controller.generation))


def test_countdown_completion_event_wins_over_timer(clock, scheduler):
    controller = make_controller(clock, scheduler)
    controller.handle_presence(True)
    countdown_timer = scheduler.pending()[0]

    scheduler.run_until(1.0)
    assert controller.complete_countdown()
    assert controller.phase is ScanPhase.SCAN_DOWN
    assert countdown_timer.cancelled

    # A late callback from the superseded countdown must not move the machine.
    countdown_timer.fire()
    assert controller.phase is ScanPhase.SCAN_DOWN
    assert controller.phase_started_at == 1.0

    scheduler.run_until(4.0)
    assert controller.phase is ScanPhase.THERMAL_HOLD_DOWN


def test_complete_countdown_ignored_outside_countdown(clock):
    controller = make_controller(clock)
    assert not controller.complete_countdown()
    assert controller.phase is ScanPhase.IDLE


def test_reset_cancels_pending_timers(clock, scheduler):
    controller = make_controller(clock, scheduler)
    controller.handle_presence(True)
    scheduler.run_until(13.0)
    assert controller.phase is ScanPhase.THERMAL_HOLD_UP
    assert controller.pending_timers == 2
    stale = scheduler.pending()

    controller.reset("teardown")
    assert controller.phase is ScanPhase.IDLE
    assert controller.pending_timers == 0
    assert all(h.cancelled for h in stale)
    assert controller.outcome is None

    for handle in stale:
        handle.fire()
    assert controller.phase is ScanPhase.IDLE


def test_close_leaves_no_live_timers(clock, scheduler):
    controller = make_controller(clock, scheduler)
    controller.handle_presence(True)
    handle = scheduler.pending()[0]
    controller.close()
    assert handle.cancelled
    handle.fire()
    assert controller.phase is ScanPhase.COUNTDOWN


def test_scenario_b_favorable_outcome(clock):
    controller = make_controller(clock, rng_value=0.5)
    controller.handle_presence(True)
    controller.advance(12.0)
    assert controller.outcome is None

    controller.advance(12.5)
    outcome = controller.outcome
    assert outcome.favorable is True
    assert 80.0 <= outcome.display_value < 90.0
    assert outcome.label == "cool"

    controller.advance(15.5)
    assert controller.outcome is outcome
    assert controller.status(15.5).message == OutcomeSettings().favorable_message


def test_unfavorable_outcome_range(clock):
    controller = make_controller(clock, rng_value=0.95)
    controller.handle_presence(True)
    controller.advance(12.5)
    assert controller.outcome.favorable is False
    assert 90.0 <= controller.outcome.display_value < 100.0


def test_outcome_probability_is_configurable(clock):
    controller = PhaseController(
        PhaseDurations(),
        OutcomeSettings(favorable_probability=0.0),
        clock=clock,
        rng=StubRandom(0.0),
    )
    controller.handle_presence(True)
    controller.advance(12.5)
    assert controller.outcome.favorable is False


def test_temperature_reveal_animation(clock, scheduler):
    controller = make_controller(clock, scheduler, rng_value=0.5)
    reveals = []
    controller.register_reveal_callback(reveals.append)
    controller.handle_presence(True)

    scheduler.run_until(13.0)
    assert controller.displayed_value() is None
    assert reveals == []

    scheduler.run_until(13.5)
    assert reveals == [controller.outcome]
    assert controller.displayed_value() == 10.0

    target = controller.outcome.display_value
    scheduler.run_until(14.5)
    expected = round(10.0 + (target - 10.0) * ease_out_quart(0.5), 1)
    assert controller.displayed_value() == expected

    scheduler.run_until(15.5)
    assert controller.phase is ScanPhase.RESULT
    assert controller.displayed_value() == target


def test_reveal_announced_when_clock_jumps(clock):
    controller = make_controller(clock)
    reveals = []
    controller.register_reveal_callback(reveals.append)
    controller.handle_presence(True)
    controller.advance(16.0)
    assert len(reveals) == 1


def test_status_overlay_fields(clock):
    controller = make_controller(clock)
    assert controller.status(0.0).countdown is None

    controller.handle_presence(True)
    assert controller.status(0.0).countdown == 3
    assert controller.status(2.6).countdown == 1

    controller.advance(5.0)
    status = controller.status(5.0)
    assert status.scan_line_direction == "down"
    assert status.scan_line_position == pytest.approx(0.5)

    controller.advance(11.0)
    status = controller.status(11.0)
    assert status.scan_line_direction == "up"
    assert status.scan_line_position == pytest.approx(0.5)


def test_failing_phase_callback_does_not_block_transition(clock):
    controller = make_controller(clock)

    def broken(old, new):
        raise RuntimeError("boom")

    controller.register_phase_callback(broken)
    assert controller.handle_presence(True)
    assert controller.phase is ScanPhase.COUNTDOWN


def test_ease_out_quart_endpoints():
    assert ease_out_quart(0.0) == 0.0
    assert ease_out_quart(1.0) == 1.0
    assert ease_out_quart(2.0) == 1.0
    assert ease_out_quart(0.5) == pytest.approx(0.9375)


def test_countdown_reads_three_two_one(clock):
    controller = make_controller(clock)
    controller.handle_presence(True)
    shown = [controller.countdown_value(t) for t in (0.0, 0.4, 1.0, 1.6, 2.6, 3.4)]
    assert shown == [3, 3, 3, 2, 1, 1]
