""" Keyframe pose recovery.

For every frame after the first one we try to answer: how far did we move since the last keyframe?
Fundamental matrix -> essential matrix -> four (R, t) candidates. Each candidate is used to triangulate
the landmarks seen in the last keyframe(s) and in the current frame. Only the candidates which put
every landmark in front of every camera survive (cheirality), the one with the smallest reprojection
error wins. If we moved far enough relative to the scene depth, the frame becomes a keyframe.
"""
import logging
from typing import List, Optional, Sequence, Tuple

import attr
import numpy as np
import pandas as pd

from armap.geometry import (
    PoseCandidate, decompose_essential_matrix, essential_from_fundamental, estimate_fundamental_matrix,
    invert_pose, projection_matrix, transform_points
)
from armap.interest_point import InterestPoint
from armap.keyframe import Keyframe, KeyframeRingBuffer
from armap.params import MappingParams
from armap.triangulation import depths_in_view, multiview_triangulation, points_in_front
from armap.types import FrameId, IntrinsicsMatrix, Points2d, Points3d, RotationSO3, Translation3d

logger = logging.getLogger(__name__)


def select_usable_points(points: Sequence[InterestPoint], frame_ids: Sequence[FrameId]) -> List[InterestPoint]:
    """ Points visible in every one of the frames. """
    return [point for point in points if all(point.is_visible_at(frame_id) for frame_id in frame_ids)]


def locations_at(points: Sequence[InterestPoint], frame_id: FrameId) -> Points2d:
    return np.array([point.observation_at(frame_id).location for point in points], dtype=np.float64).reshape(-1, 2)


@attr.define
class PriorView:
    """ A prior keyframe expressed relative to the last keyframe camera. """
    K: IntrinsicsMatrix = attr.ib(repr=False)
    rotation: RotationSO3     # last keyframe camera -> this camera
    translation: Translation3d
    points_2d: Points2d = attr.ib(repr=False)


def relative_extrinsics(older: Keyframe, last: Keyframe) -> Tuple[RotationSO3, Translation3d]:
    """ Transform taking points from the last keyframe camera to the older keyframe camera. """
    R_o_inv, t_o_inv = invert_pose(older.rotation, older.translation)
    return R_o_inv @ last.rotation, R_o_inv @ last.translation + t_o_inv


@attr.define
class CandidateEvaluation:
    candidate_idx: int
    candidate: PoseCandidate = attr.ib(repr=False)
    valid: bool
    reason: str
    scale: float = np.nan
    mean_error: float = np.inf
    average_depth: float = np.nan
    points_3d: Optional[Points3d] = attr.ib(default=None, repr=False)   # in the last keyframe camera


@attr.define
class PoseRecoveryDebugData:
    num_usable_points: int
    num_views: int
    scale_source: str = 'unit baseline'
    evaluations: List[CandidateEvaluation] = attr.Factory(list)

    def to_df(self) -> pd.DataFrame:
        return pd.DataFrame({
            'candidate_idx': [e.candidate_idx for e in self.evaluations],
            'valid': [e.valid for e in self.evaluations],
            'reason': [e.reason for e in self.evaluations],
            'scale': [e.scale for e in self.evaluations],
            'mean_error': [e.mean_error for e in self.evaluations],
            'average_depth': [e.average_depth for e in self.evaluations],
        })


def _estimate_scale(
    candidate: PoseCandidate,
    K_last: IntrinsicsMatrix,
    K_current: IntrinsicsMatrix,
    points_last: Points2d,
    points_current: Points2d,
    known_depths_in_last: Optional[np.ndarray],
) -> float:
    """ With no known depths, the unit baseline defines the scale.
    Otherwise the scale makes the candidate agree with the known depths, NaN where a depth is not known. """
    if known_depths_in_last is None:
        return 1.0

    unit_points, _ = multiview_triangulation(
        [projection_matrix(K_last, np.eye(3), np.zeros(3)),
         projection_matrix(K_current, candidate.rotation, candidate.translation)],
        [points_last, points_current]
    )
    unit_depths = unit_points[:, 2]
    known = np.isfinite(known_depths_in_last) & (known_depths_in_last > 0)
    ok = known & np.isfinite(unit_depths) & (unit_depths > 0)
    if not np.any(ok):
        return np.nan
    return float(np.median(known_depths_in_last[ok] / unit_depths[ok]))


def evaluate_candidates(
    candidates: Sequence[PoseCandidate],
    K_last: IntrinsicsMatrix,
    K_current: IntrinsicsMatrix,
    points_last: Points2d,
    points_current: Points2d,
    prior_view_or_none: Optional[PriorView] = None,
    known_depths_in_last: Optional[np.ndarray] = None,
) -> List[CandidateEvaluation]:
    """ Triangulate with every candidate and run the cheirality test in all the views involved.
    The scale comes from the prior view when there is one, else from `known_depths_in_last`, else it is 1. """
    if prior_view_or_none is not None:
        prior = prior_view_or_none
        known_points, _ = multiview_triangulation(
            [projection_matrix(prior.K, prior.rotation, prior.translation),
             projection_matrix(K_last, np.eye(3), np.zeros(3))],
            [prior.points_2d, points_last]
        )
        known_depths_in_last = known_points[:, 2]

    evaluations = []
    for idx, candidate in enumerate(candidates):
        scale = _estimate_scale(candidate, K_last, K_current, points_last, points_current, known_depths_in_last)
        if not np.isfinite(scale) or scale <= 0:
            evaluations.append(CandidateEvaluation(idx, candidate, valid=False, reason='scale undetermined'))
            continue

        t_current = scale * candidate.translation
        extrinsics = [(np.eye(3), np.zeros(3)), (candidate.rotation, t_current)]
        projections = [projection_matrix(K_last, *extrinsics[0]), projection_matrix(K_current, *extrinsics[1])]
        observations = [points_last, points_current]
        if prior_view_or_none is not None:
            extrinsics.insert(0, (prior_view_or_none.rotation, prior_view_or_none.translation))
            projections.insert(0, projection_matrix(prior_view_or_none.K, *extrinsics[0]))
            observations.insert(0, prior_view_or_none.points_2d)

        points_3d, errors = multiview_triangulation(projections, observations)
        mean_error = float(np.mean(errors))
        average_depth = float(np.mean(depths_in_view(points_3d, candidate.rotation, t_current)))

        if not np.all(np.isfinite(errors)):
            evaluations.append(CandidateEvaluation(
                idx, candidate, valid=False, reason='points at infinity', scale=scale, mean_error=mean_error
            ))
            continue

        if not points_in_front(points_3d, extrinsics):
            evaluations.append(CandidateEvaluation(
                idx, candidate, valid=False, reason='points behind camera',
                scale=scale, mean_error=mean_error, average_depth=average_depth
            ))
            continue

        evaluations.append(CandidateEvaluation(
            idx, candidate, valid=True, reason='ok',
            scale=scale, mean_error=mean_error, average_depth=average_depth, points_3d=points_3d
        ))

    return evaluations


def select_pose_candidate(evaluations: Sequence[CandidateEvaluation]) -> Optional[CandidateEvaluation]:
    """ The valid candidate with the least triangulation error, None if every candidate failed cheirality. """
    valid = [e for e in evaluations if e.valid]
    if not valid:
        return None
    return min(valid, key=lambda e: e.mean_error)


class KeyframeDecision:
    @attr.define
    class Bootstrap:
        """ Very first frame. Its camera defines the world. """
        keyframe: Keyframe

    @attr.define
    class Accepted:
        keyframe: Keyframe
        translation_magnitude: float
        threshold: float
        landmarks: List[InterestPoint] = attr.ib(repr=False)
        landmark_positions: Points3d = attr.ib(repr=False)   # world coordinates, row i goes with landmarks[i]

    @attr.define
    class BelowThreshold:
        """ We did not move far enough to justify a new keyframe. """
        translation_magnitude: float
        threshold: float

    @attr.define
    class InsufficientParallax:
        """ Landmarks barely moved in the image, we treat the translation as zero. """
        median_parallax_px: float
        translation_magnitude: float = 0.0

    @attr.define
    class GeometryFailure:
        """ No usable pose this frame. The map is left untouched. """
        reason: str


def compose_pose(
    last: Keyframe,
    candidate: PoseCandidate,
    scale: float
) -> Tuple[RotationSO3, Translation3d]:
    """ R_new = R_last @ R_candidate, t_new = t_last + R_last @ t_candidate,
    with the candidate as the current camera pose in the last keyframe camera. """
    R_rel, t_rel = candidate.camera_in_reference(scale)
    return last.rotation @ R_rel, last.translation + last.rotation @ t_rel


@attr.s(auto_attribs=True)
class KeyframeSelector:
    params: MappingParams = attr.Factory(MappingParams.from_defaults)

    def _bootstrap(
        self,
        frame_id: FrameId,
        K_current: IntrinsicsMatrix,
        live_points: Sequence[InterestPoint],
    ) -> KeyframeDecision.Bootstrap:
        snapshot = select_usable_points(live_points, [frame_id])
        return KeyframeDecision.Bootstrap(keyframe=Keyframe.bootstrap(frame_id, K_current, tuple(snapshot)))

    def _prior_view(
        self,
        keyframes: KeyframeRingBuffer,
        live_points: Sequence[InterestPoint],
        frame_id: FrameId,
    ) -> Tuple[List[InterestPoint], Optional[PriorView]]:
        """ Pick the landmarks and, when there are enough of them, the older keyframe for a three view estimate. """
        priors = keyframes.latest(self.params.max_prior_keyframes)
        last = priors[-1]
        two_view_points = select_usable_points(live_points, [last.frame_id, frame_id])
        if len(priors) < 2:
            return two_view_points, None

        older = priors[0]
        three_view_points = select_usable_points(two_view_points, [older.frame_id])
        if len(three_view_points) < self.params.min_points_for_pose:
            return two_view_points, None

        rotation, translation = relative_extrinsics(older, last)
        prior_view = PriorView(
            K=older.intrinsics,
            rotation=rotation,
            translation=translation,
            points_2d=locations_at(three_view_points, older.frame_id),
        )
        return three_view_points, prior_view

    def _known_depths(
        self,
        keyframes: KeyframeRingBuffer,
        usable_points: Sequence[InterestPoint],
    ) -> Tuple[Optional[np.ndarray], Optional[str]]:
        """ Depths in the last keyframe camera fixing the scale of a two view estimate, with where they came from.
        Before the second keyframe the unit baseline is the scale. After it, (None, None) if no depth is known. """
        if keyframes.tail < 1:
            return None, 'unit baseline'

        last = keyframes.last()
        R, t = invert_pose(last.rotation, last.translation)
        depths = np.full(len(usable_points), np.nan)
        for i, point in enumerate(usable_points):
            if point.position is not None:
                depths[i] = depths_in_view(np.asarray(point.position).reshape(1, 3), R, t)[0]
        if np.count_nonzero(np.isfinite(depths)) >= self.params.min_points_for_pose:
            return depths, 'landmark positions'

        if last.average_depth > 0:
            # new landmarks are taken to be as far away as the ones the last keyframe was made from
            return np.full(len(usable_points), last.average_depth), 'keyframe depth'
        return None, None

    def decide(
        self,
        frame_id: FrameId,
        K_current: IntrinsicsMatrix,
        keyframes: KeyframeRingBuffer,
        live_points: Sequence[InterestPoint],
    ) -> Tuple[object, Optional[PoseRecoveryDebugData]]:
        if not keyframes:
            decision = self._bootstrap(frame_id, K_current, live_points)
            if not decision.keyframe.interest_points:
                # a map anchored on an empty frame could never be extended
                return KeyframeDecision.GeometryFailure(reason='nothing detected to bootstrap the map from'), None
            return decision, None

        last = keyframes.last()
        shared_points = select_usable_points(live_points, [last.frame_id, frame_id])
        if len(shared_points) < self.params.min_points_for_pose:
            reason = f'not enough landmarks shared with the last keyframe {len(shared_points)=}'
            return KeyframeDecision.GeometryFailure(reason=reason), None

        shared_last = locations_at(shared_points, last.frame_id)
        shared_current = locations_at(shared_points, frame_id)

        median_parallax_px = float(np.median(np.linalg.norm(shared_current - shared_last, axis=1)))
        if median_parallax_px < self.params.min_parallax_px:
            return KeyframeDecision.InsufficientParallax(median_parallax_px=median_parallax_px), None

        F = estimate_fundamental_matrix(
            shared_last,
            shared_current,
            ransac_threshold_px=self.params.fundamental_ransac_threshold_px,
            confidence=self.params.fundamental_confidence,
        )
        if F is None:
            return KeyframeDecision.GeometryFailure(reason='fundamental matrix estimation failed'), None

        candidates = decompose_essential_matrix(essential_from_fundamental(F, K_current, last.intrinsics))

        usable_points, prior_view_or_none = self._prior_view(keyframes, live_points, frame_id)
        known_depths_in_last, scale_source = None, 'prior keyframe'
        if prior_view_or_none is None:
            known_depths_in_last, scale_source = self._known_depths(keyframes, usable_points)
            if scale_source is None:
                return KeyframeDecision.GeometryFailure(reason='no known depth to recover the scale from'), None

        evaluations = evaluate_candidates(
            candidates,
            K_last=last.intrinsics,
            K_current=K_current,
            points_last=locations_at(usable_points, last.frame_id),
            points_current=locations_at(usable_points, frame_id),
            prior_view_or_none=prior_view_or_none,
            known_depths_in_last=known_depths_in_last,
        )
        debug_data = PoseRecoveryDebugData(
            num_usable_points=len(usable_points),
            num_views=2 if prior_view_or_none is None else 3,
            scale_source=scale_source,
            evaluations=evaluations,
        )

        best = select_pose_candidate(evaluations)
        if best is None:
            return KeyframeDecision.GeometryFailure(reason='no pose candidate passed the cheirality test'), debug_data
        logger.debug(f"Candidate {best.candidate_idx} out of {len(evaluations)}: scale {best.scale:.3f}, "
                     f"error {best.mean_error:.3f}px over {debug_data.num_views} views, scale from {scale_source}")

        translation_magnitude = float(best.scale * np.linalg.norm(best.candidate.translation))
        # the bootstrap keyframe has zero depth: then any non-zero translation is enough
        threshold = last.average_depth * self.params.keyframe_depth_fraction
        if not translation_magnitude > threshold:
            return KeyframeDecision.BelowThreshold(translation_magnitude, threshold), debug_data

        rotation, translation = compose_pose(last, best.candidate, best.scale)
        keyframe = Keyframe(
            frame_id=frame_id,
            intrinsics=K_current,
            interest_points=tuple(select_usable_points(live_points, [frame_id])),
            rotation=rotation,
            translation=translation,
            average_depth=best.average_depth,
        )
        decision = KeyframeDecision.Accepted(
            keyframe=keyframe,
            translation_magnitude=translation_magnitude,
            threshold=threshold,
            landmarks=usable_points,
            landmark_positions=transform_points(best.points_3d, last.rotation, last.translation),
        )
        return decision, debug_data
