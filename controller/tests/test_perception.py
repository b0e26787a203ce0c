"""Unit tests for the perception gate."""

import numpy as np
import pytest

from conftest import FakeClock, FakeModel, failing_loader
from thermalscan.config import PerceptionSettings
from thermalscan.errors import ModelLoadFailure
from thermalscan.sensors.perception import PerceptionGate, load_perception_model
from thermalscan.state import ScanPhase

pytestmark = pytest.mark.unit

FRAME = np.zeros((16, 8, 3), dtype=np.uint8)


def make_gate(model, clock=None):
    return PerceptionGate(PerceptionSettings(), loader=lambda settings: model, clock=clock or FakeClock(1.0))


def test_reports_presence_from_model():
    model = FakeModel(present=True)
    gate = make_gate(model)
    assert gate.load()
    assert gate.available
    assert gate.check_presence(FRAME)

    model.present = False
    assert not gate.check_presence(FRAME)


@pytest.mark.parametrize("phase", [p for p in ScanPhase if p is not ScanPhase.IDLE])
def test_model_never_invoked_outside_idle(phase):
    model = FakeModel(present=True)
    gate = make_gate(model)
    gate.load()

    assert gate.evaluate(FRAME, phase, generation=3) is None
    assert model.calls == []


def test_idle_evaluation_carries_generation_and_landmarks():
    model = FakeModel(present=True)
    gate = make_gate(model)
    gate.load()

    signal = gate.evaluate(FRAME, ScanPhase.IDLE, generation=7)
    assert signal.present
    assert signal.generation == 7
    assert signal.landmarks == ["landmark"]
    assert len(model.calls) == 1


def test_load_failure_disables_presence_permanently():
    gate = PerceptionGate(PerceptionSettings(), loader=failing_loader)
    assert not gate.load()
    assert not gate.available
    assert gate.error == "load error"
    assert not gate.check_presence(FRAME)
    signal = gate.evaluate(FRAME, ScanPhase.IDLE, generation=0)
    assert signal is not None and not signal.present


def test_inference_error_reads_as_absent():
    class ExplodingModel(FakeModel):
        def infer(self, frame, timestamp_ms):
            raise RuntimeError("graph failure")

    gate = make_gate(ExplodingModel())
    gate.load()
    assert not gate.check_presence(FRAME)


def test_timestamps_strictly_increase_with_a_frozen_clock():
    model = FakeModel()
    gate = make_gate(model, clock=FakeClock(5.0))
    gate.load()
    for _ in range(3):
        gate.check_presence(FRAME)
    assert model.calls == [5000, 5001, 5002]


def test_close_releases_model():
    model = FakeModel()
    gate = make_gate(model)
    gate.load()
    gate.close()
    assert model.closed
    assert not gate.available


def test_missing_landmarker_file_is_a_load_failure(tmp_path):
    settings = PerceptionSettings(backend="landmarker", model_path=tmp_path / "absent.task")
    with pytest.raises(ModelLoadFailure):
        load_perception_model(settings)
