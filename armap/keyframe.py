from typing import Iterator, List, Optional, Tuple

import attr
import numpy as np

from armap.geometry import make_pose
from armap.interest_point import InterestPoint
from armap.types import FrameId, IntrinsicsMatrix, RotationSO3, Translation3d, TransformSE3


def _as_float_array(x) -> np.ndarray:
    return np.array(x, dtype=np.float64)


@attr.s(auto_attribs=True, frozen=True, eq=False)
class Keyframe:
    """ Keyframe: a frame we estimate the pose of new frames against.
    Pose is camera-in-world, the world being the camera of the very first keyframe. """
    frame_id: FrameId
    intrinsics: IntrinsicsMatrix = attr.ib(converter=_as_float_array, repr=False)
    interest_points: Tuple[InterestPoint, ...] = attr.ib(converter=tuple, repr=False)
    rotation: RotationSO3 = attr.ib(converter=_as_float_array)
    translation: Translation3d = attr.ib(converter=lambda t: _as_float_array(t).reshape(3))
    average_depth: float = 0.0

    @classmethod
    def bootstrap(
        cls,
        frame_id: FrameId,
        intrinsics: IntrinsicsMatrix,
        interest_points: Tuple[InterestPoint, ...],
    ) -> 'Keyframe':
        return cls(
            frame_id=frame_id,
            intrinsics=intrinsics,
            interest_points=interest_points,
            rotation=np.eye(3, dtype=np.float64),
            translation=np.zeros(3, dtype=np.float64),
            average_depth=0.0,
        )

    def pose(self) -> TransformSE3:
        return make_pose(self.rotation, self.translation)


class KeyframeRingBuffer:
    """ Fixed capacity circular buffer of keyframes.

    Keyframes get monotonically increasing logical indices. Only the last `capacity` of them
    are retained, logical index i lives in slot i % capacity. Overwriting a slot releases the
    references the retired keyframe held on its interest points.
    """

    def __init__(self, capacity: int):
        if capacity <= 0:
            raise ValueError(f"{capacity=} has to be positive")
        self.capacity = capacity
        self._slots: List[Optional[Keyframe]] = [None] * capacity
        self._tail = -1    # logical index of the newest keyframe

    def __len__(self) -> int:
        return min(self._tail + 1, self.capacity)

    def __bool__(self) -> bool:
        return self._tail >= 0

    @property
    def tail(self) -> int:
        return self._tail

    @property
    def head(self) -> int:
        """ Logical index of the oldest keyframe still retained. """
        return max(0, self._tail - self.capacity + 1)

    def is_valid_index(self, logical_index: int) -> bool:
        return self.head <= logical_index <= self._tail

    def __getitem__(self, logical_index: int) -> Keyframe:
        if not self.is_valid_index(logical_index):
            raise IndexError(f"keyframe {logical_index} is not retained, valid range is [{self.head}, {self._tail}]")
        return self._slots[logical_index % self.capacity]

    def push(self, keyframe: Keyframe) -> int:
        self._tail += 1
        slot = self._tail % self.capacity
        retired = self._slots[slot]
        if retired is not None:
            for point in retired.interest_points:
                point.keyframe_refs -= 1
        for point in keyframe.interest_points:
            point.keyframe_refs += 1
        self._slots[slot] = keyframe
        return self._tail

    def last(self) -> Optional[Keyframe]:
        return self[self._tail] if self else None

    def latest(self, n: int) -> List[Keyframe]:
        """ Up to n newest keyframes, oldest first. """
        start = max(self.head, self._tail - n + 1)
        return [self[i] for i in range(start, self._tail + 1)]

    def __iter__(self) -> Iterator[Keyframe]:
        return iter(self.latest(self.capacity))
