""" The mapping engine: owns the interest points and the keyframes, and keeps them up to date
as frames come in. A background worker refines the map in the meantime.

Frames have to be fed one at a time. All the map mutations happen under a single lock,
the background worker only ever touches the map under the same lock, through a snapshot.
"""
import contextlib
import logging
import threading
from typing import List, Optional, Sequence, Tuple, Union

import attr
import numpy as np

from armap.cam import CameraIntrinsics
from armap.interest_point import InterestPoint, Observation
from armap.keyframe import Keyframe, KeyframeRingBuffer
from armap.params import MappingParams
from armap.pose_recovery import KeyframeDecision, KeyframeSelector, PoseRecoveryDebugData
from armap.refinement import MapRefinementWorker, MapSnapshot, RefinedLandmark, RefinementState
from armap.status import ErrorCode, FeedResult
from armap.tracker import FeatureDetections, FeatureTracker, OrbFeatureTracker
from armap.types import IntrinsicsMatrix, Point2d, Vector3d
from utils.custom_types import ImageArray
from utils.profiling import just_time

logger = logging.getLogger(__name__)


@attr.define
class MotionSample:
    """ One reading of the motion sensors. Buffered, not fused into the pose estimate yet. """
    timestamp: float
    acceleration: Vector3d = attr.ib(converter=lambda x: np.asarray(x, dtype=np.float64).reshape(3))
    angular_velocity: Vector3d = attr.ib(converter=lambda x: np.asarray(x, dtype=np.float64).reshape(3))


class MappingEngine:
    def __init__(
        self,
        tracker: FeatureTracker,
        intrinsics: Union[CameraIntrinsics, IntrinsicsMatrix],
        params: Optional[MappingParams] = None,
        start_refinement: bool = True,
        verbose: bool = False,
    ):
        self.tracker = tracker
        self.params = params if params is not None else MappingParams.from_defaults()
        self.verbose = verbose

        if isinstance(intrinsics, CameraIntrinsics):
            intrinsics = intrinsics.to_matrix()
        self._K = CameraIntrinsics.from_matrix(intrinsics).to_matrix()

        self._interest_points: List[InterestPoint] = []
        self._keyframes = KeyframeRingBuffer(self.params.max_keyframes)
        self._keyframe_selector = KeyframeSelector(self.params)
        self._frame_id = -1
        self._next_point_id = 0
        self._motion_samples: List[MotionSample] = []

        self.tracking_degraded = False
        self.consecutive_geometry_failures = 0
        self.last_pose_recovery_debug_data: Optional[PoseRecoveryDebugData] = None

        self._map_lock = threading.RLock()
        self.map_changed = threading.Condition(self._map_lock)
        self._ingest_lock = threading.Lock()
        self.map_version = 0
        self.terminate_requested = False
        self._live_workers = 0
        self._shut_down = False

        self._worker: Optional[MapRefinementWorker] = None
        if start_refinement:
            self._worker = MapRefinementWorker(self, self.params, verbose=verbose)
            self._live_workers += 1
            self._worker.start()

    @classmethod
    def from_params(
        cls,
        intrinsics: Union[CameraIntrinsics, IntrinsicsMatrix],
        params: Optional[MappingParams] = None,
        max_features: int = 1000,
        max_descriptor_distance: float = 6.0,
        start_refinement: bool = True,
        verbose: bool = False,
    ) -> 'MappingEngine':
        return cls(
            tracker=OrbFeatureTracker.build(
                max_features=max_features,
                max_descriptor_distance=max_descriptor_distance,
            ),
            intrinsics=intrinsics,
            params=params,
            start_refinement=start_refinement,
            verbose=verbose,
        )

    def __enter__(self) -> 'MappingEngine':
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.shutdown()

    ################################### read accessors ###################################

    @property
    def frame_id(self) -> int:
        return self._frame_id

    @property
    def intrinsics(self) -> IntrinsicsMatrix:
        return self._K.copy()

    @property
    def interest_points(self) -> Tuple[InterestPoint, ...]:
        with self._map_lock:
            return tuple(self._interest_points)

    @property
    def keyframes(self) -> Tuple[Keyframe, ...]:
        with self._map_lock:
            return tuple(self._keyframes)

    @property
    def last_keyframe(self) -> Optional[Keyframe]:
        with self._map_lock:
            return self._keyframes.last()

    @property
    def pending_motion_samples(self) -> Tuple[MotionSample, ...]:
        with self._map_lock:
            return tuple(self._motion_samples)

    @property
    def refinement_state(self) -> Optional[RefinementState]:
        return self._worker.state if self._worker is not None else None

    @property
    def live_workers(self) -> int:
        return self._live_workers

    def has_interest_points(self) -> bool:
        return len(self._interest_points) > 0

    def find_interest_points_near(self, location: Point2d, radius: float) -> List[InterestPoint]:
        """ Interest points seen in the last processed frame within `radius` px of `location`, closest first. """
        location = np.asarray(location, dtype=np.float64).reshape(2)
        with self._map_lock:
            found = []
            for point in self._interest_points:
                obs = point.observation_at(self._frame_id)
                if obs is None or not obs.visible:
                    continue
                distance = float(np.linalg.norm(obs.location - location))
                if distance <= radius:
                    found.append((distance, point))
        return [point for _, point in sorted(found, key=lambda pair: pair[0])]

    ################################### ingestion ###################################

    def feed_motion_sample(self, sample: MotionSample):
        with self._map_lock:
            self._motion_samples.append(sample)

    def feed_frame(self, image: ImageArray) -> FeedResult:
        """ Process the next frame of the stream. """
        with self._exclusive_ingestion():
            with just_time('detect and describe', verbose=self.verbose):
                detections = self.tracker.detect_and_describe(image)
            return self._ingest(detections)

    def feed_detections(self, detections: FeatureDetections) -> FeedResult:
        """ Same as feed_frame, for callers which already ran the detector. """
        with self._exclusive_ingestion():
            return self._ingest(detections)

    @contextlib.contextmanager
    def _exclusive_ingestion(self):
        if self._shut_down or self.terminate_requested:
            raise RuntimeError("Mapping engine was shut down, it does not accept frames anymore")
        if not self._ingest_lock.acquire(blocking=False):
            raise RuntimeError("Frames have to be fed one at a time, another frame is being ingested")
        try:
            yield
        finally:
            self._ingest_lock.release()

    def _ingest(self, detections: FeatureDetections) -> FeedResult:
        with self._map_lock:
            self._frame_id += 1
            frame_id = self._frame_id

            num_motion_samples = len(self._motion_samples)
            self._motion_samples.clear()

            num_matched, unmatched_new = self._update_interest_points(frame_id, detections)
            num_pruned = self._reduce_interest_points()
            num_new_points = self._add_new_interest_points(frame_id, detections, unmatched_new)

            with just_time('keyframe decision', verbose=self.verbose):
                decision, debug_data = self._keyframe_selector.decide(
                    frame_id, self._K, self._keyframes, self._interest_points
                )
            self.last_pose_recovery_debug_data = debug_data
            self._handle_keyframe_decision(decision)

            self.map_version += 1
            self.map_changed.notify_all()

            result = FeedResult(
                frame_id=frame_id,
                num_detections=len(detections),
                num_matched=num_matched,
                num_new_points=num_new_points,
                num_pruned=num_pruned,
                num_live_points=len(self._interest_points),
                num_motion_samples=num_motion_samples,
                decision=decision,
            )

        logger.debug(f"{result}")
        return result

    def _update_interest_points(
        self,
        frame_id: int,
        detections: FeatureDetections
    ) -> Tuple[int, List[int]]:
        """ Match the detections to the stored interest points and extend the history of every stored point.
        Returns the number of matches and the indices of the detections nobody matched. """
        points = self._interest_points
        # points with nothing visible in their history have no average descriptor to match against
        matchable = [i for i, point in enumerate(points) if point.visible_count > 0]

        matches = []
        if len(detections) > 0 and matchable:
            stored_descriptors = np.stack([points[i].average_descriptor for i in matchable])
            matches = self.tracker.match(detections.descriptors, stored_descriptors)

        matched_new = np.zeros(len(detections), dtype=bool)
        matched_stored = np.zeros(len(points), dtype=bool)
        for new_idx, stored_idx in matches:
            point_idx = matchable[stored_idx]
            matched_new[new_idx] = True
            matched_stored[point_idx] = True
            points[point_idx].add_observation(
                Observation.seen(detections.locations[new_idx], detections.descriptors[new_idx])
            )

        # these are not visible in this frame
        for point_idx in np.flatnonzero(~matched_stored):
            points[point_idx].add_observation(Observation.invisible())

        return len(matches), np.flatnonzero(~matched_new).tolist()

    def _reduce_interest_points(self) -> int:
        """ Drop the points that decayed. Points held by a keyframe stay.
        Swaps the removed point with the last one, so the order is not preserved. """
        points = self._interest_points
        new_size = len(points)
        i = 0
        while i < new_size:
            if points[i].keyframe_refs == 0 and points[i].is_decayed():
                new_size -= 1
                points[i] = points[new_size]
            else:
                i += 1
        num_pruned = len(points) - new_size
        del points[new_size:]
        return num_pruned

    def _add_new_interest_points(
        self,
        frame_id: int,
        detections: FeatureDetections,
        unmatched_new: Sequence[int]
    ) -> int:
        capacity_left = max(0, self.params.max_interest_points - len(self._interest_points))
        admitted = unmatched_new[:capacity_left]
        if len(admitted) < len(unmatched_new):
            logger.debug(f"Interest point capacity reached, dropping {len(unmatched_new) - len(admitted)} detections")

        for new_idx in admitted:
            self._interest_points.append(InterestPoint(
                initial_frame_id=frame_id,
                max_observations=self.params.max_observations,
                point_id=self._next_point_id,
                initial_observation=Observation.seen(detections.locations[new_idx], detections.descriptors[new_idx]),
            ))
            self._next_point_id += 1
        return len(admitted)

    def _handle_keyframe_decision(self, decision):
        match decision:
            case KeyframeDecision.Bootstrap(keyframe=keyframe):
                self._keyframes.push(keyframe)
                self._mark_tracking_healthy()
                logger.info(f"Bootstrapped the map at frame {keyframe.frame_id} "
                            f"with {len(keyframe.interest_points)} interest points")
            case KeyframeDecision.Accepted(keyframe=keyframe, landmarks=landmarks, landmark_positions=positions):
                for point, position in zip(landmarks, positions):
                    point.position = position
                    point.position_generation += 1
                self._keyframes.push(keyframe)
                self._mark_tracking_healthy()
                logger.info(f"New keyframe at frame {keyframe.frame_id}: moved {decision.translation_magnitude:.3f} "
                            f"> {decision.threshold:.3f}, average depth {keyframe.average_depth:.3f}")
            case KeyframeDecision.BelowThreshold() | KeyframeDecision.InsufficientParallax():
                self._mark_tracking_healthy()
            case KeyframeDecision.GeometryFailure(reason=reason):
                self.tracking_degraded = True
                self.consecutive_geometry_failures += 1
                logger.warning(f"No pose for frame {self._frame_id}: {reason} "
                               f"({self.consecutive_geometry_failures} frames in a row)")
            case _:
                raise ValueError("Unhandled KeyframeDecision", decision)

    def _mark_tracking_healthy(self):
        self.tracking_degraded = False
        self.consecutive_geometry_failures = 0

    ################################### background refinement ###################################

    def capture_snapshot(self) -> MapSnapshot:
        with self._map_lock:
            return MapSnapshot.capture(self.map_version, self._keyframes, self.params)

    def apply_refined_landmarks(self, refined: Sequence[RefinedLandmark]) -> int:
        """ Write back refined positions, skipping the ones that were overwritten since the snapshot. """
        applied = 0
        with self._map_lock:
            for landmark in refined:
                if landmark.point.position_generation != landmark.position_generation:
                    continue
                landmark.point.position = landmark.position
                landmark.point.position_generation += 1
                applied += 1
        logger.debug(f"Applied {applied} out of {len(refined)} refined landmarks")
        return applied

    def worker_finished(self):
        with self.map_changed:
            self._live_workers -= 1
            self.map_changed.notify_all()

    def shutdown(self):
        """ Ask the background worker to stop and wait until it did. Idempotent. """
        with self.map_changed:
            if self._shut_down:
                return
            self.terminate_requested = True
            self.map_changed.notify_all()
            self.map_changed.wait_for(lambda: self._live_workers == 0)
            self._shut_down = True
        if self._worker is not None:
            self._worker.join()
        logger.info("Mapping engine shut down")

    ################################### extension points ###################################

    def relocalize(self, image: ImageArray) -> ErrorCode:
        logger.warning("Relocalization is not implemented")
        return ErrorCode.UNIMPLEMENTED

    def close_loops(self) -> ErrorCode:
        logger.warning("Loop closure is not implemented")
        return ErrorCode.UNIMPLEMENTED
