"""PipelineController: per-frame outcomes, lifecycle, reset and error absorption."""
import numpy as np
import pytest

from fusionscan.system.controller import (
    FrameOutcome,
    PhaseEvent,
    PipelineController,
    PipelinePhase,
    next_phase,
)
from fusionscan.system.contracts import PoseFinderDatabase, ReconstructionEngine
from fusionscan.system.errors import EngineError, PipelineInitError
from fusionscan.system.frames import Frame, FrameSource
from fusionscan.system.preferences import VolumeBuilderPreferences
from fusionscan.system.telemetry import Telemetry

from fakes import GEOMETRY, FakeDatabase, FakeEngine, KeepingDatabase, ListSource, fail, make_frame


class RecordingSink:
    def __init__(self):
        self.frames = []
        self.closed = False

    def append(self, frame):
        self.frames.append(frame)

    def close(self):
        self.closed = True


def _controller(frames, engine=None, database=None, recorder=None, **prefs):
    engine = engine or FakeEngine()
    database = database or FakeDatabase()
    ctrl = PipelineController(ListSource(frames), engine, database, VolumeBuilderPreferences(**prefs),
                              recorder=recorder)
    return ctrl, engine, database


# --------------------------------------------------------------------------- #
#  Phases
# --------------------------------------------------------------------------- #

def test_phase_transitions():
    assert next_phase(PipelinePhase.IDLE, PhaseEvent.START) is PipelinePhase.SCANNING
    assert next_phase(PipelinePhase.SCANNING, PhaseEvent.STOP) is PipelinePhase.STOPPED
    assert next_phase(PipelinePhase.IDLE, PhaseEvent.STOP) is PipelinePhase.STOPPED
    with pytest.raises(ValueError):
        next_phase(PipelinePhase.STOPPED, PhaseEvent.START)
    with pytest.raises(ValueError):
        next_phase(PipelinePhase.SCANNING, PhaseEvent.START)


# --------------------------------------------------------------------------- #
#  Construction and reset
# --------------------------------------------------------------------------- #

def test_construction_needs_geometry():
    with pytest.raises(PipelineInitError):
        PipelineController(ListSource([], geometry=None), FakeEngine(), FakeDatabase(), VolumeBuilderPreferences())


def test_construction_rejects_undivisible_geometry():
    with pytest.raises(PipelineInitError):
        PipelineController(ListSource([]), FakeEngine(), FakeDatabase(), VolumeBuilderPreferences(downsample_factor=4))


def test_reset_translates_world_to_volume_by_min_clip():
    w2v = np.diag([256.0, 256.0, 256.0, 1.0])
    w2v[0, 3] = w2v[1, 3] = 192.0
    ctrl, engine, db = _controller([], engine=FakeEngine(w2v=w2v), min_depth_clip=0.35, max_depth_clip=8.0)

    pose, used = engine.resets[-1]
    np.testing.assert_array_equal(pose, np.eye(4))
    expected = w2v.copy()
    expected[2, 3] -= 0.35 * 256.0
    np.testing.assert_allclose(used, expected)
    np.testing.assert_array_equal(ctrl.default_world_to_volume, w2v)
    assert db.resets == 1


def test_reset_without_translation_uses_default():
    ctrl, engine, _ = _controller([], translate_reset_pose_by_min_depth=False)
    np.testing.assert_array_equal(engine.resets[-1][1], engine.w2v)


def test_reset_failure_is_logged_not_raised(caplog):
    engine = FakeEngine()
    ctrl, _, _ = _controller([], engine=engine)
    engine.reset_error = EngineError("device lost")
    ctrl.reset_reconstruction()
    assert "Volume reset failed" in caplog.text


def test_reset_request_is_applied_before_next_frame():
    ctrl, engine, _ = _controller([make_frame(), make_frame(), make_frame()])
    ctrl.tick()
    ctrl.tick()
    assert ctrl.state.processed_frames == 2
    ctrl.request_reset()
    ctrl.tick()
    assert len(engine.resets) == 2
    assert ctrl.state.processed_frames == 1


# --------------------------------------------------------------------------- #
#  Per-frame outcomes
# --------------------------------------------------------------------------- #

def test_no_frame_is_a_no_op():
    ctrl, engine, _ = _controller([])
    assert ctrl.tick() is FrameOutcome.NO_FRAME
    assert engine.aligns == []


def test_tracked_frames_integrate_render_and_count():
    ctrl, engine, _ = _controller([make_frame(ts=t) for t in (0, 33, 66)])
    outcomes = [ctrl.tick() for _ in range(3)]
    assert outcomes == [FrameOutcome.TRACKED] * 3
    assert ctrl.state.processed_frames == 3
    assert len(engine.integrations) == 3
    # one tracking raycast + one display raycast per frame
    assert len(engine.raycasts) == 6
    assert ctrl.phase is PipelinePhase.SCANNING


def test_geometry_mismatch_drops_frame_and_keeps_buffers():
    bad = Frame(color=np.zeros(GEOMETRY.color_shape, np.uint8),
                depth=np.full((GEOMETRY.depth_height, GEOMETRY.depth_width + 1), 4242, np.uint16))
    sink = RecordingSink()
    ctrl, engine, _ = _controller([make_frame(depth_mm=1000), bad, make_frame(depth_mm=1000)], recorder=sink)

    assert ctrl.tick() is FrameOutcome.TRACKED
    assert ctrl.tick() is FrameOutcome.DROPPED
    assert np.all(ctrl.buffers.depth == 1000)
    assert len(engine.aligns) == 1
    assert ctrl.tick() is FrameOutcome.TRACKED
    assert len(sink.frames) == 2
    assert ctrl.telemetry.counts == {"tracked": 2, "dropped": 1}


def test_first_frame_alignment_failure_still_tracks():
    db = KeepingDatabase(poses=[np.eye(4)])
    ctrl, engine, _ = _controller([make_frame()], engine=FakeEngine([fail()]), database=db)
    assert ctrl.tick() is FrameOutcome.TRACKED
    assert not ctrl.state.tracking_failed
    assert db.queries == 0
    assert len(engine.integrations) == 1


def test_lost_frame_does_not_advance_processed_count():
    ctrl, engine, _ = _controller([make_frame(), make_frame()], engine=FakeEngine([None, fail()]))
    assert ctrl.tick() is FrameOutcome.TRACKED
    assert ctrl.tick() is FrameOutcome.LOST
    assert ctrl.state.processed_frames == 1
    assert len(engine.integrations) == 1


def test_engine_error_skips_frame_and_restores_state():
    ctrl, engine, _ = _controller([make_frame(), make_frame()], engine=FakeEngine([None, EngineError("x")]))
    ctrl.tick()
    before = ctrl.state.snapshot()
    assert ctrl.tick() is FrameOutcome.SKIPPED
    assert ctrl.state.consecutive_successes == before.consecutive_successes
    assert ctrl.state.processed_frames == before.processed_frames
    np.testing.assert_array_equal(ctrl.state.pose, before.pose)


def test_auto_reset_after_too_many_failures_with_empty_database():
    frames = [make_frame() for _ in range(4)]
    ctrl, engine, _ = _controller(frames, engine=FakeEngine([None, fail(), fail(), fail()]),
                                  auto_reset_when_lost=True, max_tracking_errors=3)
    outcomes = [ctrl.tick() for _ in range(4)]
    assert outcomes == [FrameOutcome.TRACKED, FrameOutcome.LOST, FrameOutcome.LOST, FrameOutcome.LOST]
    assert len(engine.resets) == 2
    assert ctrl.state.consecutive_failures == 0


# --------------------------------------------------------------------------- #
#  Shutdown
# --------------------------------------------------------------------------- #

def test_stop_request_drops_frame_and_releases():
    sink = RecordingSink()
    ctrl, engine, _ = _controller([make_frame(), make_frame()], recorder=sink)
    ctrl.tick()
    ctrl.request_stop()
    assert ctrl.tick() is FrameOutcome.STOPPED
    assert engine.released and sink.closed
    assert ctrl.phase is PipelinePhase.STOPPED
    assert len(engine.aligns) == 1
    assert ctrl.tick() is FrameOutcome.STOPPED


def test_run_until_exhausted_and_context_manager():
    engine = FakeEngine()
    with PipelineController(ListSource([make_frame() for _ in range(5)]), engine, FakeDatabase(),
                            VolumeBuilderPreferences()) as ctrl:
        summary = ctrl.run()
    assert summary["outcomes"] == {"tracked": 5}
    assert engine.released


def test_run_respects_max_frames():
    ctrl, _, _ = _controller([make_frame() for _ in range(5)])
    ctrl.run(max_frames=2)
    assert ctrl.state.processed_frames == 2


def test_depth_preview_and_telemetry_dump(tmp_path):
    import json

    ctrl, _, _ = _controller([make_frame(depth_mm=8000), make_frame(depth_mm=300)])
    ctrl.tick()
    preview = ctrl.visualizer.depth_preview()
    assert preview.shape == (GEOMETRY.depth_height, GEOMETRY.depth_width, 4)
    assert np.all(preview[..., 0] == 255)
    ctrl.tick()
    assert np.all(ctrl.visualizer.depth_preview()[..., :3] == 0)

    path = tmp_path / "metrics.json"
    ctrl.telemetry.dump(str(path))
    data = json.loads(path.read_text())
    assert data["summary"]["num_frames"] == 2
    assert [f["frame_idx"] for f in data["frames"]] == [0, 1]
    assert data["frames"][0]["outcome"] == "tracked"


def test_source_read_error_drops_frame_and_continues(caplog):
    ctrl, engine, _ = _controller([FileNotFoundError("rgb/0001.png"), make_frame()])
    assert ctrl.tick() is FrameOutcome.DROPPED
    assert "source failed" in caplog.text
    assert engine.aligns == []
    assert ctrl.tick() is FrameOutcome.TRACKED
    assert ctrl.frame_idx == 2
    assert ctrl.telemetry.counts == {"dropped": 1, "tracked": 1}


class BrokenSink(RecordingSink):
    def append(self, frame):
        raise RuntimeError("Timeline writer failed: disk full")


def test_recorder_failure_detaches_recorder_and_keeps_tracking(caplog):
    sink = BrokenSink()
    ctrl, engine, _ = _controller([make_frame(), make_frame()], recorder=sink)
    assert ctrl.tick() is FrameOutcome.TRACKED
    assert ctrl.recorder is None and sink.closed
    assert "Recording stopped" in caplog.text
    assert ctrl.tick() is FrameOutcome.TRACKED
    assert len(engine.integrations) == 2


def test_telemetry_counts_frames_without_keeping_them():
    telemetry = Telemetry(keep_frames=False)
    for i, outcome in enumerate(["tracked", "tracked", "lost", "dropped"]):
        telemetry.log_frame(i, {"outcome": outcome})
    assert telemetry.frames == []
    assert telemetry.summary() == {"num_frames": 4, "outcomes": {"tracked": 2, "lost": 1, "dropped": 1}}


# --------------------------------------------------------------------------- #
#  Contracts
# --------------------------------------------------------------------------- #

def test_contracts_cannot_be_instantiated_incomplete():
    class HalfEngine(ReconstructionEngine):
        def default_world_to_volume(self):
            return np.eye(4)

    with pytest.raises(TypeError):
        HalfEngine()
    with pytest.raises(TypeError):
        ReconstructionEngine()
    with pytest.raises(TypeError):
        PoseFinderDatabase()
    with pytest.raises(TypeError):
        FrameSource()
