# src/fusionscan/system/controller.py
from __future__ import annotations

import logging
import math
import time
from enum import Enum

import numpy as np

from .buffers import FrameBuffers
from .contracts import PoseFinderDatabase, ReconstructionEngine
from .errors import EngineError, GeometryMismatchError, PipelineInitError
from .frames import FrameSource
from .integrator import Integrator
from .keyframes import KeyframeUpdater
from .preferences import VolumeBuilderPreferences
from .relocalizer import Relocalizer
from .state import TrackingState
from .telemetry import Telemetry
from .tracker import Tracker
from .visualizer import Visualizer
from ..geom.se3 import identity, translate

logger = logging.getLogger(__name__)


class PipelinePhase(Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    STOPPED = "stopped"


class PhaseEvent(Enum):
    START = "start"
    STOP = "stop"


_TRANSITIONS = {
    (PipelinePhase.IDLE, PhaseEvent.START): PipelinePhase.SCANNING,
    (PipelinePhase.IDLE, PhaseEvent.STOP): PipelinePhase.STOPPED,
    (PipelinePhase.SCANNING, PhaseEvent.STOP): PipelinePhase.STOPPED,
}


def next_phase(phase: PipelinePhase, event: PhaseEvent) -> PipelinePhase:
    try:
        return _TRANSITIONS[(phase, event)]
    except KeyError:
        raise ValueError(f"Invalid pipeline transition: {phase.value} --{event.value}-->") from None


class FrameOutcome(Enum):
    NO_FRAME = "no_frame"
    DROPPED = "dropped"
    SKIPPED = "skipped"
    TRACKED = "tracked"
    RECOVERED = "recovered"
    LOST = "lost"
    STOPPED = "stopped"


def _finite_or_none(x):
    if x is None or not math.isfinite(x):
        return None
    return float(x)


class PipelineController:
    """
    Drives one frame at a time through tracking, integration, keyframing and rendering.

    Owns the tracking state and the working buffers; the frame source, engine,
    database and recorder are handed in by the caller. Per-frame failures are
    absorbed here and reported as a FrameOutcome; only construction fails loudly.
    """

    def __init__(
        self,
        source: FrameSource,
        engine: ReconstructionEngine,
        database: PoseFinderDatabase,
        prefs: VolumeBuilderPreferences,
        *,
        recorder=None,
        telemetry: Telemetry | None = None,
    ):
        geometry = getattr(source, "geometry", None)
        if geometry is None:
            raise PipelineInitError("Frame source reports no geometry; open it before building the pipeline")
        try:
            self.buffers = FrameBuffers(geometry, prefs)
        except ValueError as ex:
            raise PipelineInitError(str(ex)) from ex
        try:
            w2v = engine.default_world_to_volume()
        except EngineError as ex:
            raise PipelineInitError("Reconstruction engine cannot provide a volume") from ex

        self.source = source
        self.engine = engine
        self.database = database
        self.prefs = prefs
        self.recorder = recorder
        self.telemetry = telemetry if telemetry is not None else Telemetry()
        self.default_world_to_volume = np.array(w2v, dtype=np.float64, copy=True)

        self.state = TrackingState()
        self.relocalizer = Relocalizer(engine, database, self.buffers, self.state, prefs)
        self.tracker = Tracker(engine, database, self.buffers, self.state, prefs, self.relocalizer)
        self.integrator = Integrator(engine, self.buffers, self.state, prefs)
        self.keyframes = KeyframeUpdater(database, self.buffers, self.state, prefs)
        self.visualizer = Visualizer(engine, self.buffers, self.state, prefs)

        self.phase = PipelinePhase.IDLE
        self.frame_idx = 0
        self._stop_requested = False
        self._reset_requested = False

        self.reset_reconstruction()

    # ----- lifecycle

    def start(self) -> None:
        self.phase = next_phase(self.phase, PhaseEvent.START)

    def request_stop(self) -> None:
        self._stop_requested = True

    def request_reset(self) -> None:
        self._reset_requested = True

    def reset_world_to_volume(self) -> np.ndarray:
        if not self.prefs.translate_reset_pose_by_min_depth:
            return self.default_world_to_volume.copy()
        shift = min(self.prefs.min_depth_clip, self.prefs.max_depth_clip) * self.prefs.voxels_per_meter
        return translate(self.default_world_to_volume, 0.0, 0.0, -shift)

    def reset_reconstruction(self) -> None:
        self.state.reset()
        self.state.commit_pose(identity())
        self.buffers.reset_reference()
        self.tracker.alignments = 0
        self.database.reset()
        try:
            self.engine.reset(self.state.pose, self.reset_world_to_volume())
        except EngineError:
            logger.exception("Volume reset failed; volume left as is")
            return
        logger.info("Reconstruction reset")

    def close(self) -> None:
        if self.phase is PipelinePhase.STOPPED:
            return
        self.phase = next_phase(self.phase, PhaseEvent.STOP)
        if self.recorder is not None:
            self.recorder.close()
        self.engine.release()
        logger.info("Pipeline stopped after %d frame(s), %d processed",
                    self.frame_idx, self.state.processed_frames)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

    # ----- per frame

    def tick(self) -> FrameOutcome:
        """
        One pipeline step.

        Order:
          1) stop / reset requests
          2) acquire + ingest (a source read error or geometry mismatch drops the frame)
          3) hand the frame to the recorder
          4) track (engine failure restores the previous state and skips the frame)
          5) on success: integrate, keyframes, render, count the frame
        """
        if self.phase is PipelinePhase.STOPPED:
            return FrameOutcome.STOPPED
        if self.phase is PipelinePhase.IDLE:
            self.start()

        # --- 1) requests
        if self._stop_requested:
            self.close()
            return FrameOutcome.STOPPED
        if self._reset_requested:
            self._reset_requested = False
            self.reset_reconstruction()

        # --- 2) acquire
        try:
            frame = self.source.acquire()
        except (OSError, ValueError) as ex:
            idx = self.frame_idx
            self.frame_idx += 1
            logger.error("Frame %d dropped: source failed: %s", idx, ex)
            self._log(idx, 0, FrameOutcome.DROPPED, error=str(ex))
            return FrameOutcome.DROPPED
        if frame is None:
            return FrameOutcome.NO_FRAME
        idx = self.frame_idx
        self.frame_idx += 1

        try:
            self.buffers.ingest(frame)
        except GeometryMismatchError as ex:
            logger.error("Frame %d dropped: %s", idx, ex)
            self._log(idx, frame.timestamp_ms, FrameOutcome.DROPPED)
            return FrameOutcome.DROPPED

        # --- 3) record
        if self.recorder is not None:
            try:
                self.recorder.append(frame)
            except RuntimeError:
                logger.exception("Recording stopped at frame %d", idx)
                failed, self.recorder = self.recorder, None
                failed.close()

        # --- 4) track
        snap = self.state.snapshot()
        try:
            result = self.tracker.track()
        except EngineError:
            logger.exception("Engine failure while tracking frame %d; frame skipped", idx)
            self.state.restore(snap)
            self._log(idx, frame.timestamp_ms, FrameOutcome.SKIPPED)
            return FrameOutcome.SKIPPED

        if not result.tracked:
            self._auto_reset_if_lost()
            self._log(idx, frame.timestamp_ms, FrameOutcome.LOST, energy=result.energy,
                      relocalized=result.relocalized)
            return FrameOutcome.LOST

        # --- 5) integrate, keyframes, render
        integrated = self.integrator.integrate()
        keyframe = self.keyframes.update()
        try:
            self.visualizer.render()
        except EngineError:
            logger.exception("Raycast for display failed on frame %d", idx)

        self.state.processed_frames += 1
        outcome = FrameOutcome.RECOVERED if result.recovered else FrameOutcome.TRACKED
        self._log(idx, frame.timestamp_ms, outcome, energy=result.energy, relocalized=result.relocalized,
                  integrated=integrated, keyframe=keyframe)
        return outcome

    def _auto_reset_if_lost(self) -> None:
        if not self.prefs.auto_reset_when_lost:
            return
        if self.database.stored_count() > 0:
            return
        if self.state.consecutive_failures >= self.prefs.max_tracking_errors:
            logger.warning("Lost for %d frames with no keyframes; resetting reconstruction",
                           self.state.consecutive_failures)
            self.reset_reconstruction()

    def _log(self, idx: int, ts_ms: int, outcome: FrameOutcome, **extra) -> None:
        st = self.state
        rec = {
            "ts_ms": int(ts_ms),
            "outcome": outcome.value,
            "status": st.status.value,
            "consecutive_successes": int(st.consecutive_successes),
            "consecutive_failures": int(st.consecutive_failures),
            "processed_frames": int(st.processed_frames),
            "stored_keyframes": int(self.database.stored_count()),
        }
        for k, v in extra.items():
            rec[k] = _finite_or_none(v) if k == "energy" else v
        logger.debug("frame %d: %s", idx, rec)
        self.telemetry.log_frame(idx, rec)

    def run(self, max_frames: int | None = None, idle_sleep_s: float = 0.001) -> dict:
        """Tick until the source is exhausted, a stop is requested or max_frames frames were acquired."""
        acquired = 0
        while True:
            outcome = self.tick()
            if outcome is FrameOutcome.STOPPED:
                break
            if outcome is FrameOutcome.NO_FRAME:
                if self.source.exhausted:
                    break
                time.sleep(idle_sleep_s)
                continue
            acquired += 1
            if max_frames is not None and acquired >= max_frames:
                break
        return self.telemetry.summary()
