"""Tracker behaviour against a scripted engine: acceptance, loss, first-frame guard, relocalization."""
import numpy as np
import pytest

from fusionscan.system.buffers import FrameBuffers
from fusionscan.system.contracts import AlignmentResult
from fusionscan.system.errors import EngineError
from fusionscan.system.preferences import VolumeBuilderPreferences
from fusionscan.system.state import TrackingState
from fusionscan.system.tracker import Tracker

from fakes import GEOMETRY, FakeDatabase, FakeEngine, fail, make_frame, succeed, translation_pose


def _tracker(engine, database, **prefs):
    p = VolumeBuilderPreferences(**prefs)
    buf = FrameBuffers(GEOMETRY, p)
    buf.ingest(make_frame())
    state = TrackingState()
    return Tracker(engine, database, buf, state, p), state, buf


def test_accepted_alignment_commits_pose():
    target = translation_pose(0.01, 0.0, 0.0)
    engine = FakeEngine([succeed(0.001, target)])
    tracker, state, _ = _tracker(engine, FakeDatabase())
    res = tracker.track()
    assert res.tracked and not res.recovered
    np.testing.assert_allclose(state.pose, target)
    assert state.consecutive_successes == 1
    assert engine.raycasts[0][1] == (3, 4)


def test_first_frame_failure_is_not_loss_and_never_relocalizes():
    engine = FakeEngine([fail()])
    database = FakeDatabase(poses=[translation_pose(1.0)])
    tracker, state, _ = _tracker(engine, database)

    res = tracker.track()
    assert res.tracked and res.bootstrap
    assert not state.tracking_failed and not state.failed_previously
    assert state.consecutive_failures == 0
    assert database.queries == 0
    assert len(engine.raycasts) == 1  # the tracking raycast only
    np.testing.assert_array_equal(state.pose, np.eye(4))


def test_loss_with_empty_database_does_not_relocalize():
    engine = FakeEngine([None, fail()])
    database = FakeDatabase()
    tracker, state, _ = _tracker(engine, database)
    tracker.track()
    res = tracker.track()
    assert not res.tracked and not res.relocalized
    assert state.tracking_failed and state.failed_previously
    assert state.consecutive_failures == 1 and state.consecutive_successes == 0
    assert len(engine.raycasts) == 2
    assert database.queries == 0


def test_motion_over_limit_is_rejected():
    jump = translation_pose(0.0, 0.0, 0.5)
    engine = FakeEngine([None, succeed(0.001, jump)])
    tracker, state, _ = _tracker(engine, FakeDatabase(), max_translation_delta=0.3)
    tracker.track()
    res = tracker.track()
    assert not res.tracked
    np.testing.assert_array_equal(state.pose, np.eye(4))


def test_loss_then_relocalization_recovers():
    candidate = translation_pose(0.2)
    refined = translation_pose(0.21)
    engine = FakeEngine([None, fail(), succeed(0.003, refined)])
    database = FakeDatabase(poses=[candidate], min_distance=0.2)
    tracker, state, buf = _tracker(engine, database)
    tracker.track()

    res = tracker.track()
    assert res.tracked and res.recovered and res.relocalized
    np.testing.assert_allclose(state.pose, refined)
    assert state.failed_previously
    assert state.consecutive_successes == 1 and state.consecutive_failures == 0
    assert not state.relocalizing
    assert buf.reference_cloud is None
    # relocalization raycasts at full resolution
    assert engine.raycasts[-1][1] == (6, 8)


def test_delta_image_every_nth_alignment():
    engine = FakeEngine()
    tracker, _, buf = _tracker(engine, FakeDatabase(), delta_frame_calculation_interval=2)
    tracker.track()
    assert np.all(buf.delta_color_full == 7)
    buf.delta_color_full[...] = 0
    tracker.track()
    assert np.all(buf.delta_color_full == 0)
    tracker.track()
    assert np.all(buf.delta_color_full == 7)


def test_engine_error_propagates_before_state_changes():
    engine = FakeEngine([EngineError("invalid operation")])
    tracker, state, _ = _tracker(engine, FakeDatabase())
    with pytest.raises(EngineError):
        tracker.track()
    assert state.consecutive_successes == 0 and state.consecutive_failures == 0


def test_align_iterations_default_and_override():
    seen = []

    class CountingEngine(FakeEngine):
        def align_point_clouds(self, model, observed, max_iterations, pose, compute_delta=False):
            seen.append(max_iterations)
            return AlignmentResult(True, 0.0, np.array(pose, copy=True))

    tracker, _, _ = _tracker(CountingEngine(), FakeDatabase())
    tracker.track()
    tracker, _, _ = _tracker(CountingEngine(), FakeDatabase(), align_iterations=3)
    tracker.track()
    assert seen == [7, 3]
