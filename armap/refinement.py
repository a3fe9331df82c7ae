""" Background map refinement.

The refinement works on a snapshot of the map taken under the engine lock, so that it never reads
a half updated map. Its result is written back under the lock too, and only for the landmarks
whose position did not change in the meantime.

What is refined right now: landmark positions, with the keyframe poses held fixed
(structure-only bundle adjustment). Refining the poses as well is the natural next step.
"""
import enum
import logging
import threading
from typing import TYPE_CHECKING, Iterable, List

import attr
import numpy as np
from scipy.optimize import least_squares
from scipy.sparse import lil_matrix

from armap.geometry import invert_pose, projection_matrix
from armap.interest_point import InterestPoint
from armap.keyframe import Keyframe
from armap.params import MappingParams
from armap.triangulation import points_in_front
from armap.types import Points2d, ProjectionMatrix, Vector3d
from utils.profiling import just_time

if TYPE_CHECKING:
    from armap.engine import MappingEngine

logger = logging.getLogger(__name__)


@attr.define
class LandmarkTrack:
    point: InterestPoint = attr.ib(repr=False)
    position_generation: int
    position: Vector3d
    view_indices: List[int]
    points_2d: Points2d = attr.ib(repr=False)


@attr.define
class MapSnapshot:
    version: int
    projections: List[ProjectionMatrix] = attr.ib(repr=False)
    extrinsics: List[tuple] = attr.ib(repr=False)   # world -> camera, one per keyframe
    tracks: List[LandmarkTrack] = attr.ib(repr=False)

    @classmethod
    def capture(cls, version: int, keyframes: Iterable[Keyframe], params: MappingParams) -> 'MapSnapshot':
        """ Copy out what refinement needs. Has to be called with the map lock held. """
        keyframes = list(keyframes)
        projections = []
        extrinsics = []
        for keyframe in keyframes:
            R, t = invert_pose(keyframe.rotation, keyframe.translation)
            extrinsics.append((R, t))
            projections.append(projection_matrix(keyframe.intrinsics, R, t))

        seen = set()
        tracks = []
        for keyframe in keyframes:
            for point in keyframe.interest_points:
                if id(point) in seen or point.position is None:
                    continue
                seen.add(id(point))
                view_indices = [i for i, kf in enumerate(keyframes) if point.is_visible_at(kf.frame_id)]
                if len(view_indices) < params.refinement_min_views:
                    continue
                tracks.append(LandmarkTrack(
                    point=point,
                    position_generation=point.position_generation,
                    position=np.array(point.position, dtype=np.float64),
                    view_indices=view_indices,
                    points_2d=np.array(
                        [point.observation_at(keyframes[i].frame_id).location for i in view_indices],
                        dtype=np.float64
                    ),
                ))

        # best observed first
        tracks.sort(key=lambda track: len(track.view_indices), reverse=True)
        return cls(
            version=version,
            projections=projections,
            extrinsics=extrinsics,
            tracks=tracks[:params.refinement_max_points],
        )


@attr.define
class RefinedLandmark:
    point: InterestPoint = attr.ib(repr=False)
    position_generation: int
    position: Vector3d


def _reprojection_residuals(
    x: np.ndarray,
    projections: np.ndarray,
    track_idx: np.ndarray,
    view_idx: np.ndarray,
    observed: Points2d
) -> np.ndarray:
    points_3d = x.reshape(-1, 3)
    homo = np.column_stack([points_3d, np.ones(len(points_3d))])[track_idx]
    projected = np.einsum('mij,mj->mi', projections[view_idx], homo)
    return (projected[:, :2] / projected[:, 2:3] - observed).ravel()


def refine_landmarks(snapshot: MapSnapshot, params: MappingParams) -> List[RefinedLandmark]:
    """ Minimize the reprojection error of the landmarks over all the keyframes seeing them.
    Pure function of the snapshot, an empty result means there was nothing to do. """
    if not snapshot.tracks:
        return []

    track_idx = np.concatenate([np.full(len(track.view_indices), i) for i, track in enumerate(snapshot.tracks)])
    view_idx = np.concatenate([track.view_indices for track in snapshot.tracks])
    observed = np.concatenate([track.points_2d for track in snapshot.tracks])
    projections = np.stack(snapshot.projections)
    x0 = np.concatenate([track.position for track in snapshot.tracks])

    # every residual pair depends on the three coordinates of its own landmark only
    sparsity = lil_matrix((2 * len(track_idx), len(x0)), dtype=int)
    for m, i in enumerate(track_idx):
        sparsity[2 * m:2 * m + 2, 3 * i:3 * i + 3] = 1

    residuals = lambda x: _reprojection_residuals(x, projections, track_idx, view_idx, observed)
    initial_cost = 0.5 * np.sum(residuals(x0) ** 2)
    if not np.isfinite(initial_cost):
        return []

    result = least_squares(
        residuals,
        x0,
        jac_sparsity=sparsity,
        method='trf',
        x_scale='jac',
        max_nfev=params.refinement_max_nfev,
    )
    if not result.cost < initial_cost:
        return []

    refined = []
    for track, position in zip(snapshot.tracks, result.x.reshape(-1, 3)):
        views = [snapshot.extrinsics[i] for i in track.view_indices]
        if not points_in_front(position[None, :], views):
            continue
        refined.append(RefinedLandmark(track.point, track.position_generation, position))
    return refined


class RefinementState(enum.Enum):
    IDLE = 'idle'                 # waiting for the next map version
    REFINING = 'refining'
    TERMINATING = 'terminating'
    STOPPED = 'stopped'


class MapRefinementWorker(threading.Thread):
    """ Refines the map once per new map version, until the engine asks it to stop. """

    def __init__(self, engine: 'MappingEngine', params: MappingParams, verbose: bool = False):
        super().__init__(name='map-refinement', daemon=True)
        self._engine = engine
        self._params = params
        self._verbose = verbose
        self.state = RefinementState.IDLE
        self.cycles = 0
        self.failed_cycles = 0

    def _should_wake_up(self, last_version: int) -> bool:
        engine = self._engine
        return engine.terminate_requested or (engine.has_interest_points() and engine.map_version != last_version)

    def _cycle(self, last_version: int) -> int:
        condition = self._engine.map_changed
        with condition:
            condition.wait_for(lambda: self._should_wake_up(last_version))
            if self._engine.terminate_requested:
                return last_version
            self.state = RefinementState.REFINING
            try:
                snapshot = self._engine.capture_snapshot()
            except Exception:
                self.failed_cycles += 1
                self.state = RefinementState.IDLE
                logger.exception(f"Could not snapshot map version {self._engine.map_version}, skipping it")
                return self._engine.map_version

        try:
            with just_time(f'refining {len(snapshot.tracks)} landmarks', verbose=self._verbose):
                refined = refine_landmarks(snapshot, self._params)
            with condition:
                if not self._engine.terminate_requested:
                    self._engine.apply_refined_landmarks(refined)
            self.cycles += 1
        except Exception:
            # a failed step leaves the map as it was, the next map version gets a fresh attempt
            self.failed_cycles += 1
            logger.exception(f"Refinement of map version {snapshot.version} failed, map left as is")
        finally:
            self.state = RefinementState.IDLE
        return snapshot.version

    def run(self):
        logger.info("Map refinement worker started")
        last_version = -1
        try:
            # the termination flag is checked at the top of every cycle
            while not self._engine.terminate_requested:
                last_version = self._cycle(last_version)
            self.state = RefinementState.TERMINATING
        finally:
            self._engine.worker_finished()
            self.state = RefinementState.STOPPED
            logger.info(f"Map refinement worker stopped after {self.cycles} cycles")
