import struct

import numpy as np
import pytest

from fusionscan.recording.timeline import (
    TimelineRecorder,
    TimelineSource,
    decode_record,
    encode_record,
    iter_records,
)
from fusionscan.system.controller import FrameOutcome, PipelineController
from fusionscan.system.preferences import VolumeBuilderPreferences

from fakes import GEOMETRY, FakeDatabase, FakeEngine, ListSource, make_frame


def test_record_layout():
    depth = np.array([1, 0x0203, 65535], dtype=np.uint16)
    blob = encode_record(1500, b"\x01\x02\x03\x04", depth)

    (body_len,) = struct.unpack_from("<I", blob, 0)
    assert body_len == len(blob) - 4 == 12 + 4 + 6
    assert struct.unpack_from("<III", blob, 4) == (1500, 4, 3)
    assert blob[16:20] == b"\x01\x02\x03\x04"
    assert blob[20:] == b"\x01\x00\x03\x02\xff\xff"

    rec = decode_record(blob[4:])
    assert rec.time_ms == 1500
    np.testing.assert_array_equal(rec.depth, depth)


def test_bad_records():
    with pytest.raises(ValueError):
        encode_record(-1, b"", np.zeros(0, np.uint16))
    with pytest.raises(ValueError):
        decode_record(encode_record(0, b"ab", np.zeros(2, np.uint16))[4:-1])


def test_truncated_stream(tmp_path):
    path = tmp_path / "t.bin"
    path.write_bytes(encode_record(0, b"abcd", np.zeros(1, np.uint16))[:-2])
    with pytest.raises(ValueError):
        list(iter_records(str(path)))


def test_recorder_writes_in_order_with_time_offsets(tmp_path):
    path = tmp_path / "scan.bin"
    frames = [make_frame(depth_mm=100 + i, ts=1_700_000_000_000 + 33 * i) for i in range(20)]
    with TimelineRecorder(str(path)) as rec:
        for f in frames:
            rec.append(f)
        # buffers handed to the recorder are its own
        frames[0].depth[...] = 0

    records = list(iter_records(str(path)))
    assert [r.time_ms for r in records] == [33 * i for i in range(20)]
    assert [int(r.depth[0]) for r in records] == [100 + i for i in range(20)]
    assert len(records[0].color) == 4 * GEOMETRY.color_width * GEOMETRY.color_height


def test_recorder_close_without_start_flushes_queue(tmp_path):
    path = tmp_path / "scan.bin"
    rec = TimelineRecorder(str(path), start=False)
    rec.append(make_frame(ts=5))
    rec.append(make_frame(ts=10))
    rec.close()
    assert [r.time_ms for r in iter_records(str(path))] == [0, 5]
    with pytest.raises(RuntimeError):
        rec.append(make_frame())


def test_append_after_writer_failure_raises(tmp_path):
    rec = TimelineRecorder(str(tmp_path / "scan.bin"), start=False)
    rec._file.close()
    rec.append(make_frame(ts=0))
    rec.start()
    rec._thread.join(timeout=5)

    assert isinstance(rec.error, ValueError)
    assert rec.pending == 0
    with pytest.raises(RuntimeError, match="writer failed"):
        rec.append(make_frame(ts=33))
    assert rec.pending == 0
    rec.close()


def test_replay_through_pipeline(tmp_path):
    path = tmp_path / "scan.bin"
    frames = [make_frame(depth_mm=900 + i, ts=40 * i) for i in range(4)]
    recorder = TimelineRecorder(str(path))
    with PipelineController(ListSource(frames), FakeEngine(), FakeDatabase(), VolumeBuilderPreferences(),
                            recorder=recorder) as ctrl:
        ctrl.run()
    assert recorder.records_written == 4

    with TimelineSource(str(path), GEOMETRY) as source:
        replayed = []
        while True:
            f = source.acquire()
            if f is None:
                break
            replayed.append(f)
        assert source.exhausted
    assert [f.timestamp_ms for f in replayed] == [0, 40, 80, 120]
    np.testing.assert_array_equal(replayed[2].depth, frames[2].depth)
    np.testing.assert_array_equal(replayed[2].color, frames[2].color)

    engine = FakeEngine()
    with PipelineController(TimelineSource(str(path), GEOMETRY), engine, FakeDatabase(),
                            VolumeBuilderPreferences()) as ctrl:
        outcomes = [ctrl.tick() for _ in range(5)]
    assert outcomes[:4] == [FrameOutcome.TRACKED] * 4
    assert outcomes[4] is FrameOutcome.NO_FRAME
