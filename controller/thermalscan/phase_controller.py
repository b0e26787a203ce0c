"""Scan phase state machine.

Everything the renderer needs (phase, blend progress, countdown digit,
scan-line position, revealed temperature) is derived from
``(phase, phase_started_at, now)``; nothing accumulates per frame. Timed
transitions are driven by cancelable timers on an injected scheduler, and
``advance()`` catches up on any deadlines that have already passed, so the
machine behaves identically with a real event loop or a fake clock.
"""
from __future__ import annotations

import logging
import math
import random
import time
from typing import Any, Callable, Dict, List, Optional, Protocol

from .config import OutcomeSettings, PhaseDurations
from .state import DetectionSignal, Outcome, ScanPhase, ScanStatus

logger = logging.getLogger(__name__)

PhaseCallback = Callable[[ScanPhase, ScanPhase], None]
RevealCallback = Callable[[Outcome], None]

_NEXT_PHASE: Dict[ScanPhase, ScanPhase] = {
    ScanPhase.COUNTDOWN: ScanPhase.SCAN_DOWN,
    ScanPhase.SCAN_DOWN: ScanPhase.THERMAL_HOLD_DOWN,
    ScanPhase.THERMAL_HOLD_DOWN: ScanPhase.SCAN_UP,
    ScanPhase.SCAN_UP: ScanPhase.THERMAL_HOLD_UP,
    ScanPhase.THERMAL_HOLD_UP: ScanPhase.RESULT,
    ScanPhase.RESULT: ScanPhase.IDLE,
}


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    """Anything with ``call_later`` semantics, e.g. an asyncio event loop."""

    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> TimerHandle: ...


def ease_out_quart(x: float) -> float:
    x = min(max(x, 0.0), 1.0)
    return 1 - (1 - x) ** 4


class PhaseController:
    """Owns the scan phase, its start time and the session outcome."""

    def __init__(
        self,
        durations: Optional[PhaseDurations] = None,
        outcome_settings: Optional[OutcomeSettings] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        rng: Optional[random.Random] = None,
        scheduler: Optional[Scheduler] = None,
    ) -> None:
        self.durations = durations or PhaseDurations()
        self.outcome_settings = outcome_settings or OutcomeSettings()
        self._clock = clock
        self._rng = rng or random.Random()
        self._scheduler = scheduler

        self._phase: ScanPhase = ScanPhase.IDLE
        self._phase_started_at: float = clock()
        self._generation: int = 0
        self._outcome: Optional[Outcome] = None
        self._outcome_sampled_at: Optional[float] = None
        self._reveal_announced = False
        self._timers: List[TimerHandle] = []
        self._phase_callbacks: List[PhaseCallback] = []
        self._reveal_callbacks: List[RevealCallback] = []

    # ------------------------------------------------------------------
    # Read-only state
    # ------------------------------------------------------------------

    @property
    def phase(self) -> ScanPhase:
        return self._phase

    @property
    def phase_started_at(self) -> float:
        return self._phase_started_at

    @property
    def generation(self) -> int:
        """Incremented on every transition; stale callbacks compare against it."""
        return self._generation

    @property
    def outcome(self) -> Optional[Outcome]:
        return self._outcome

    @property
    def pending_timers(self) -> int:
        return len(self._timers)

    def duration_of(self, phase: ScanPhase) -> Optional[float]:
        """Fixed duration of a timed phase; ``None`` for IDLE."""
        d = self.durations
        return {
            ScanPhase.COUNTDOWN: d.countdown,
            ScanPhase.SCAN_DOWN: d.scan_down,
            ScanPhase.THERMAL_HOLD_DOWN: d.thermal_hold_down,
            ScanPhase.SCAN_UP: d.scan_up,
            ScanPhase.THERMAL_HOLD_UP: d.thermal_hold_up,
            ScanPhase.RESULT: d.result,
        }.get(phase)

    def elapsed(self, now: Optional[float] = None) -> float:
        now = self._clock() if now is None else now
        return max(0.0, now - self._phase_started_at)

    def progress(self, now: Optional[float] = None) -> float:
        """Blend progress for the current phase, always within [0, 1]."""
        elapsed = self.elapsed(now)
        phase = self._phase
        if phase in (ScanPhase.THERMAL_HOLD_DOWN, ScanPhase.THERMAL_HOLD_UP):
            return min(1.0, elapsed / self.duration_of(phase))
        if phase is ScanPhase.SCAN_UP:
            return 1.0
        if phase is ScanPhase.RESULT:
            return max(0.0, 1.0 - elapsed / self.durations.result_fade)
        return 0.0

    def countdown_value(self, now: Optional[float] = None) -> Optional[int]:
        if self._phase is not ScanPhase.COUNTDOWN:
            return None
        remaining = self.durations.countdown - self.elapsed(now)
        return min(self.durations.countdown_from, max(1, math.ceil(remaining)))

    def scan_line(self, now: Optional[float] = None) -> Optional[tuple[str, float]]:
        """Scan-line direction and vertical position (0 = top, 1 = bottom)."""
        if self._phase is ScanPhase.SCAN_DOWN:
            return "down", min(1.0, self.elapsed(now) / self.durations.scan_down)
        if self._phase is ScanPhase.SCAN_UP:
            return "up", max(0.0, 1.0 - self.elapsed(now) / self.durations.scan_up)
        return None

    def displayed_value(self, now: Optional[float] = None) -> Optional[float]:
        """Temperature shown on screen: hidden, counting up, then the outcome value."""
        if self._outcome is None or self._outcome_sampled_at is None:
            return None
        now = self._clock() if now is None else now
        since_reveal = now - self._outcome_sampled_at - self.durations.reveal_delay
        if since_reveal < 0:
            return None
        fraction = since_reveal / self.durations.reveal_animation
        if fraction >= 1.0:
            return self._outcome.display_value
        start = self.outcome_settings.reveal_start_value
        value = start + (self._outcome.display_value - start) * ease_out_quart(fraction)
        return round(value, 1)

    def status(self, now: Optional[float] = None) -> ScanStatus:
        now = self._clock() if now is None else now
        line = self.scan_line(now)
        message = None
        if self._phase is ScanPhase.RESULT and self._outcome is not None:
            settings = self.outcome_settings
            message = settings.favorable_message if self._outcome.favorable else settings.unfavorable_message
        return ScanStatus(
            phase=self._phase,
            progress=self.progress(now),
            countdown=self.countdown_value(now),
            scan_line_direction=line[0] if line else None,
            scan_line_position=line[1] if line else None,
            outcome=self._outcome,
            displayed_value=self.displayed_value(now),
            message=message,
        )

    # ------------------------------------------------------------------
    # Listeners & scheduler
    # ------------------------------------------------------------------

    def register_phase_callback(self, callback: PhaseCallback) -> None:
        self._phase_callbacks.append(callback)

    def register_reveal_callback(self, callback: RevealCallback) -> None:
        self._reveal_callbacks.append(callback)

    def attach_scheduler(self, scheduler: Optional[Scheduler]) -> None:
        """Swap the timer scheduler and re-arm timers for the current phase."""
        self._cancel_timers()
        self._scheduler = scheduler
        self._schedule_timers()

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def handle_presence(self, signal: DetectionSignal | bool, generation: Optional[int] = None) -> bool:
        """
        Forward a perception verdict. Only a positive verdict received in
        IDLE, for the current generation, starts the countdown.
        """
        if isinstance(signal, DetectionSignal):
            present = signal.present
            generation = signal.generation if generation is None else generation
        else:
            present = bool(signal)

        if self._phase is not ScanPhase.IDLE:
            logger.debug("Presence signal ignored in %s", self._phase.value)
            return False
        if generation is not None and generation != self._generation:
            logger.debug("Discarding stale presence signal (generation %s, current %s)", generation, self._generation)
            return False
        if not present:
            return False

        logger.info("👤 [PHASE] Subject detected - starting countdown")
        self._enter(ScanPhase.COUNTDOWN, self._clock())
        return True

    def complete_countdown(self, generation: Optional[int] = None) -> bool:
        """External countdown-finished event; whichever of it and the timer comes first wins."""
        if self._phase is not ScanPhase.COUNTDOWN:
            return False
        if generation is not None and generation != self._generation:
            logger.debug("Discarding stale countdown completion (generation %s)", generation)
            return False
        self._enter(ScanPhase.SCAN_DOWN, self._clock())
        return True

    def advance(self, now: Optional[float] = None) -> ScanPhase:
        """Apply every timed transition whose deadline is at or before ``now``."""
        now = self._clock() if now is None else now
        while True:
            duration = self.duration_of(self._phase)
            if duration is None:
                break
            deadline = self._phase_started_at + duration
            if now < deadline:
                break
            self._enter(_NEXT_PHASE[self._phase], deadline)
        self._announce_reveal_if_due(now)
        return self._phase

    def reset(self, reason: str = "reset") -> None:
        """Force IDLE from any phase, cancelling everything scheduled."""
        logger.info("🔄 [PHASE] Forced reset from %s (%s)", self._phase.value, reason)
        self._enter(ScanPhase.IDLE, self._clock())

    def close(self) -> None:
        """Teardown: cancel timers without changing phase."""
        self._cancel_timers()
        self._generation += 1

    def _enter(self, phase: ScanPhase, started_at: float) -> None:
        previous = self._phase
        self._cancel_timers()
        self._generation += 1
        self._phase = phase
        self._phase_started_at = started_at

        if phase is ScanPhase.THERMAL_HOLD_UP:
            self._outcome = self._sample_outcome()
            self._outcome_sampled_at = started_at
            self._reveal_announced = False
            logger.info(
                "🌡️ [PHASE] Outcome sampled: %s (%.1f)",
                self._outcome.label,
                self._outcome.display_value,
            )
        elif phase is ScanPhase.IDLE:
            self._outcome = None
            self._outcome_sampled_at = None
            self._reveal_announced = False

        logger.info("[PHASE] %s -> %s (generation %d)", previous.value, phase.value, self._generation)
        self._schedule_timers()
        for callback in list(self._phase_callbacks):
            try:
                callback(previous, phase)
            except Exception:
                logger.exception("Phase callback failed for %s -> %s", previous.value, phase.value)

    def _sample_outcome(self) -> Outcome:
        settings = self.outcome_settings
        favorable = self._rng.random() < settings.favorable_probability
        low, high = settings.favorable_range if favorable else settings.unfavorable_range
        return Outcome(favorable=favorable, display_value=low + (high - low) * self._rng.random())

    # ------------------------------------------------------------------
    # Timers
    # ------------------------------------------------------------------

    def _schedule_timers(self) -> None:
        if self._scheduler is None:
            return
        duration = self.duration_of(self._phase)
        if duration is None:
            return
        now = self._clock()
        generation = self._generation
        delay = max(0.0, self._phase_started_at + duration - now)
        self._timers.append(self._scheduler.call_later(delay, self._on_phase_timer, generation))

        if self._phase is ScanPhase.THERMAL_HOLD_UP and not self._reveal_announced:
            reveal_delay = max(0.0, self._phase_started_at + self.durations.reveal_delay - now)
            self._timers.append(self._scheduler.call_later(reveal_delay, self._on_reveal_timer, generation))

    def _cancel_timers(self) -> None:
        for handle in self._timers:
            handle.cancel()
        self._timers.clear()

    def _on_phase_timer(self, generation: int) -> None:
        if generation != self._generation:
            logger.debug("Discarding stale phase timer (generation %s, current %s)", generation, self._generation)
            return
        # The timer may fire a hair before the deadline by the clock; the
        # deadline itself becomes the next phase's start either way.
        deadline = self._phase_started_at + self.duration_of(self._phase)
        self._enter(_NEXT_PHASE[self._phase], deadline)
        self.advance()

    def _on_reveal_timer(self, generation: int) -> None:
        if generation != self._generation:
            logger.debug("Discarding stale reveal timer (generation %s)", generation)
            return
        self._announce_reveal()

    def _announce_reveal_if_due(self, now: float) -> None:
        if self._reveal_announced or self._outcome_sampled_at is None:
            return
        if now - self._outcome_sampled_at >= self.durations.reveal_delay:
            self._announce_reveal()

    def _announce_reveal(self) -> None:
        if self._reveal_announced or self._outcome is None:
            return
        self._reveal_announced = True
        logger.info("🌡️ [PHASE] Revealing temperature %.1f", self._outcome.display_value)
        for callback in list(self._reveal_callbacks):
            try:
                callback(self._outcome)
            except Exception:
                logger.exception("Reveal callback failed")


__all__ = ["PhaseController", "Scheduler", "TimerHandle", "ease_out_quart"]
