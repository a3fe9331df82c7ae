""" Interest points are the landmarks we track from frame to frame by descriptor matching.

Every processed frame appends exactly one Observation to every live point, visible or not,
so that the history of all the points stays aligned with the frame clock.
The history is bounded. When it is full, the oldest Observation is evicted and the running
average descriptor is corrected for it, so that it never has to be recomputed from scratch.
"""
from collections import deque
from typing import Deque, Optional

import attr
import numpy as np

from armap.types import Point2d, FrameId, PointId, Vector3d
from utils.custom_types import FloatDescriptor


@attr.s(auto_attribs=True, frozen=True, eq=False)
class Observation:
    """ A single sighting of an interest point in one frame. """
    location: Optional[Point2d] = attr.ib(default=None, repr=False)
    descriptor: Optional[FloatDescriptor] = attr.ib(default=None, repr=False)
    visible: bool = False

    @classmethod
    def seen(cls, location: Point2d, descriptor: FloatDescriptor) -> 'Observation':
        return cls(
            location=np.asarray(location, dtype=np.float64),
            descriptor=np.asarray(descriptor, dtype=np.float32),
            visible=True
        )

    @classmethod
    def invisible(cls) -> 'Observation':
        """ Placeholder for a frame in which the point could not be matched. """
        return _INVISIBLE


_INVISIBLE = Observation()


class InterestPoint:
    def __init__(
        self,
        initial_frame_id: FrameId,
        max_observations: int,
        point_id: PointId = -1,
        initial_observation: Optional[Observation] = None,
    ):
        if max_observations <= 0:
            raise ValueError(f"{max_observations=} has to be positive")

        self.point_id = point_id
        self.initial_frame_id = initial_frame_id
        self.max_observations = max_observations

        self._history: Deque[Observation] = deque()
        self._visible_count = 0
        self._descriptor_sum: Optional[np.ndarray] = None
        self.total_observations = 0

        # number of keyframes holding this point in their snapshot
        self.keyframe_refs = 0
        # estimated location in world coordinates, None until triangulated
        self.position: Optional[Vector3d] = None
        # bumped on every position write, lets background refinement detect stale results
        self.position_generation = 0

        if initial_observation is not None:
            self.add_observation(initial_observation)

    def __repr__(self):
        return (f"InterestPoint(point_id={self.point_id}, initial_frame_id={self.initial_frame_id}, "
                f"visible_count={self._visible_count}, total_observations={self.total_observations})")

    @property
    def history(self) -> tuple:
        return tuple(self._history)

    @property
    def visible_count(self) -> int:
        return self._visible_count

    @property
    def average_descriptor(self) -> Optional[FloatDescriptor]:
        if self._visible_count == 0:
            return None
        return (self._descriptor_sum / self._visible_count).astype(np.float32)

    @property
    def last_frame_id(self) -> FrameId:
        return self.initial_frame_id + self.total_observations - 1

    @property
    def last_observation(self) -> Optional[Observation]:
        return self._history[-1] if self._history else None

    def _account_added(self, obs: Observation):
        if not obs.visible:
            return
        desc = obs.descriptor.astype(np.float64)
        if self._descriptor_sum is None or self._visible_count == 0:
            self._descriptor_sum = desc.copy()
        else:
            self._descriptor_sum += desc
        self._visible_count += 1

    def _account_removed(self, obs: Observation):
        if not obs.visible:
            return
        self._visible_count -= 1
        if self._visible_count == 0:
            self._descriptor_sum = None
        else:
            self._descriptor_sum -= obs.descriptor.astype(np.float64)

    def add_observation(self, obs: Observation):
        if len(self._history) == self.max_observations:
            # remove first, then add, so the average always covers exactly the retained visible descriptors
            self._account_removed(self._history.popleft())
        self._history.append(obs)
        self._account_added(obs)
        self.total_observations += 1

    def remove_early_observations(self, count: int):
        """ Forget the `count` oldest observations. The frame clock is not rewound. """
        count = min(count, len(self._history))
        for _ in range(count):
            self._account_removed(self._history.popleft())

    def to_discard(self) -> bool:
        """ True once none of the retained observations is visible. """
        return self._visible_count == 0

    def is_decayed(self) -> bool:
        """ Tracked for longer than the history holds, and not seen in any of it. """
        return self.total_observations > self.max_observations and self.to_discard()

    def observation_at(self, frame_id: FrameId) -> Optional[Observation]:
        """ The observation recorded at `frame_id`, None if it is outside of the retained history. """
        frames_ago = self.last_frame_id - frame_id
        if frames_ago < 0 or frames_ago >= len(self._history):
            return None
        return self._history[len(self._history) - 1 - frames_ago]

    def is_visible_at(self, frame_id: FrameId) -> bool:
        obs = self.observation_at(frame_id)
        return obs is not None and obs.visible
