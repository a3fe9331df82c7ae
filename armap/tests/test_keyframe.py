import numpy as np
import pytest

from armap.interest_point import InterestPoint
from armap.keyframe import Keyframe, KeyframeRingBuffer


def _get_keyframe(frame_id: int, points) -> Keyframe:
    return Keyframe(
        frame_id=frame_id,
        intrinsics=np.eye(3),
        interest_points=points,
        rotation=np.eye(3),
        translation=[frame_id, 0., 0.],
        average_depth=1.0,
    )


def test_ring_buffer_keeps_last_capacity_keyframes():
    buffer = KeyframeRingBuffer(capacity=3)
    assert not buffer
    assert buffer.last() is None
    assert len(buffer) == 0

    for frame_id in range(5):
        logical_index = buffer.push(_get_keyframe(frame_id, ()))
        assert logical_index == frame_id

    assert len(buffer) == 3
    assert buffer.head == 2
    assert buffer.tail == 4
    assert [kf.frame_id for kf in buffer] == [2, 3, 4]
    assert [kf.frame_id for kf in buffer.latest(2)] == [3, 4]
    assert buffer[2].frame_id == 2
    assert buffer.last().frame_id == 4

    with pytest.raises(IndexError):
        buffer[1]
    with pytest.raises(IndexError):
        buffer[5]


def test_overwritten_keyframe_releases_its_points():
    buffer = KeyframeRingBuffer(capacity=2)
    shared = InterestPoint(initial_frame_id=0, max_observations=5)
    only_first = InterestPoint(initial_frame_id=0, max_observations=5)

    buffer.push(_get_keyframe(0, (shared, only_first)))
    buffer.push(_get_keyframe(1, (shared,)))
    assert shared.keyframe_refs == 2
    assert only_first.keyframe_refs == 1

    buffer.push(_get_keyframe(2, ()))
    assert shared.keyframe_refs == 1
    assert only_first.keyframe_refs == 0


def test_bootstrap_keyframe_is_the_world_origin():
    keyframe = Keyframe.bootstrap(0, np.eye(3), ())
    assert np.allclose(keyframe.pose(), np.eye(4))
    assert keyframe.average_depth == 0.0


def test_invalid_capacity():
    with pytest.raises(ValueError):
        KeyframeRingBuffer(capacity=0)
