""" Two-view geometry: fundamental / essential matrices and the pose candidates hidden in them. """
from typing import List, Optional, Tuple

import attr
import cv2
import numpy as np

from armap.types import (
    EssentialMatrix, FundamentalMatrix, IntrinsicsMatrix, Points2d, Points3d, ProjectionMatrix, RotationSO3,
    Translation3d, TransformSE3, Vector3d
)
from utils.custom_types import Array


def vec_hat(x: Vector3d) -> Array['3,3', np.float64]:
    return np.array([
        [  0.,  -x[2],  x[1]],
        [ x[2],    0., -x[0]],
        [-x[1],  x[0],    0.]
    ], dtype=np.float64)


def make_pose(rotation: RotationSO3, translation: Translation3d) -> TransformSE3:
    T = np.eye(4, dtype=np.float64)
    T[:3, :3] = rotation
    T[:3, 3] = np.asarray(translation, dtype=np.float64).reshape(3)
    return T


def invert_pose(rotation: RotationSO3, translation: Translation3d) -> Tuple[RotationSO3, Translation3d]:
    return rotation.T, -rotation.T @ np.asarray(translation, dtype=np.float64).reshape(3)


def transform_points(points: Points3d, rotation: RotationSO3, translation: Translation3d) -> Points3d:
    """ X' = R @ X + t, row-wise """
    return points @ rotation.T + np.asarray(translation, dtype=np.float64).reshape(1, 3)


def projection_matrix(K: IntrinsicsMatrix, rotation: RotationSO3, translation: Translation3d) -> ProjectionMatrix:
    return K @ np.column_stack([rotation, np.asarray(translation, dtype=np.float64).reshape(3)])


def project_points(P: ProjectionMatrix, points: Points3d) -> Points2d:
    homo = np.column_stack([points, np.ones(len(points))]) @ P.T
    return homo[:, :2] / homo[:, 2:3]


@attr.s(auto_attribs=True, frozen=True, eq=False)
class PoseCandidate:
    """ One hypothesis of relative motion: maps points from the last keyframe camera to the current camera.
    Translation is known only up to scale. """
    rotation: RotationSO3
    translation: Translation3d

    def camera_in_reference(self, scale: float = 1.0) -> Tuple[RotationSO3, Translation3d]:
        """ Pose of the current camera expressed in the last keyframe camera. """
        return invert_pose(self.rotation, scale * self.translation)


def estimate_fundamental_matrix(
    points_last: Points2d,
    points_current: Points2d,
    ransac_threshold_px: float = 1.0,
    confidence: float = 0.999,
) -> Optional[FundamentalMatrix]:
    """ F such that x_current^T @ F @ x_last = 0. None if OpenCV could not find one. """
    if len(points_last) != len(points_current):
        raise ValueError(f"{len(points_last)=} != {len(points_current)=}")
    if len(points_last) < 8:
        return None

    F, _ = cv2.findFundamentalMat(
        np.asarray(points_last, dtype=np.float64),
        np.asarray(points_current, dtype=np.float64),
        method=cv2.FM_RANSAC,
        ransacReprojThreshold=ransac_threshold_px,
        confidence=confidence,
    )

    if F is None or F.shape[0] < 3:
        return None

    # several solutions can come stacked, the first one is as good as any
    return F[:3, :3].astype(np.float64)


def essential_from_fundamental(
    F: FundamentalMatrix,
    K_current: IntrinsicsMatrix,
    K_last: IntrinsicsMatrix
) -> EssentialMatrix:
    return K_current.T @ F @ K_last


def essential_from_pose(rotation: RotationSO3, translation: Translation3d) -> EssentialMatrix:
    """ E = [t]x R, for X_cur = R @ X_last + t """
    return vec_hat(np.asarray(translation, dtype=np.float64).reshape(3)) @ rotation


def decompose_essential_matrix(E: EssentialMatrix) -> List[PoseCandidate]:
    """ The classical four-fold ambiguity: two rotations times two translation signs. """
    R1, R2, t = cv2.decomposeEssentialMat(np.asarray(E, dtype=np.float64))
    t = t.reshape(3)
    return [
        PoseCandidate(rotation=R1, translation=t),
        PoseCandidate(rotation=R1, translation=-t),
        PoseCandidate(rotation=R2, translation=t),
        PoseCandidate(rotation=R2, translation=-t),
    ]
