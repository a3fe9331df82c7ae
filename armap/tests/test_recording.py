import numpy as np
import pytest

from armap.cam import CameraIntrinsics
from armap.datasets.recording import Frame, FrameRecording, RecordedFramesStreamer


def _get_recording(num_frames: int = 4) -> FrameRecording:
    rng = np.random.default_rng(0)
    recording = FrameRecording(intrinsics=CameraIntrinsics.from_image_shape(48, 64))
    for i in range(num_frames):
        recording.record_frame(Frame(
            image=rng.integers(0, 256, size=(48, 64, 3), dtype=np.uint8),
            frame_idx=i,
            timestamp=1700000000. + i / 30.,
        ))
    return recording


@pytest.mark.parametrize('compress', [False, True])
def test_saved_recording_streams_back(tmp_path, compress):
    recording = _get_recording()
    path = str(tmp_path / 'frames.msgpack')
    recording.save(path, compress=compress)

    streamer = RecordedFramesStreamer.from_path(path, max_frames=3)
    frames = list(streamer.stream())

    assert streamer.get_intrinsics() == recording.intrinsics
    assert [frame.frame_idx for frame in frames] == [0, 1, 2]
    for frame, original in zip(frames, recording.frames):
        assert np.array_equal(frame.image, original.image)
        assert frame.timestamp == original.timestamp
