from typing import List, Sequence, Tuple

import numpy as np

from armap.geometry import project_points, transform_points
from armap.types import Points2d, Points3d, ProjectionMatrix, RotationSO3, Translation3d
from utils.custom_types import Array


def _docs_of_multiview_triangulation() -> str:
    """
    Function multiview_triangulation implements linear (DLT) triangulation
    from any number of views.

    For a view with projection matrix P (rows p1, p2, p3) and observed pixel (u, v),
    a point X (homogeneous) satisfies

        u * (p3 @ X) - p1 @ X = 0
        v * (p3 @ X) - p2 @ X = 0

    Stacking two rows per view gives A @ X = 0, and the least squares solution
    with |X| = 1 is the right singular vector of A for the smallest singular value.
    All points are solved at once with batched SVD.

    The error reported per point is the mean pixel distance between the observed
    and the reprojected location, averaged over the views.
    Points that come out at infinity (homogeneous w ~ 0) get an infinite error.
    """


def multiview_triangulation(
    projections: Sequence[ProjectionMatrix],
    points_2d: Sequence[Points2d],
) -> Tuple[Points3d, Array['N', np.float64]]:
    """ Triangulate N points seen in V views. See above for longer doc. """
    if len(projections) != len(points_2d):
        raise ValueError(f"{len(projections)=} != {len(points_2d)=}")
    if len(projections) < 2:
        raise ValueError("Need at least two views to triangulate")

    points_2d = [np.asarray(pts, dtype=np.float64).reshape(-1, 2) for pts in points_2d]
    n_points = len(points_2d[0])
    if any(len(pts) != n_points for pts in points_2d):
        raise ValueError("Every view has to observe the same number of points")
    if n_points == 0:
        return np.zeros((0, 3), dtype=np.float64), np.zeros(0, dtype=np.float64)

    rows = []
    for P, pts in zip(projections, points_2d):
        P = np.asarray(P, dtype=np.float64)
        rows.append(pts[:, 0:1] * P[2][None, :] - P[0][None, :])
        rows.append(pts[:, 1:2] * P[2][None, :] - P[1][None, :])
    A = np.stack(rows, axis=1)   # N, 2V, 4

    _, _, Vh = np.linalg.svd(A)
    X_homo = Vh[:, -1, :]
    w = X_homo[:, 3]
    at_infinity = np.abs(w) < 1e-12
    w = np.where(at_infinity, 1.0, w)
    points_3d = X_homo[:, :3] / w[:, None]

    errors = np.zeros(n_points, dtype=np.float64)
    for P, pts in zip(projections, points_2d):
        errors += np.linalg.norm(project_points(np.asarray(P, dtype=np.float64), points_3d) - pts, axis=1)
    errors /= len(projections)
    errors[at_infinity] = np.inf

    return points_3d, errors


def depths_in_view(points_3d: Points3d, rotation: RotationSO3, translation: Translation3d) -> Array['N', np.float64]:
    """ Depth of the points in a camera given by its world-to-camera transform. """
    return transform_points(points_3d, rotation, translation)[:, 2]


def points_in_front(
    points_3d: Points3d,
    extrinsics: List[Tuple[RotationSO3, Translation3d]],
) -> bool:
    """ Cheirality: all the points have positive depth in every camera. """
    if len(points_3d) == 0:
        return False
    if not np.all(np.isfinite(points_3d)):
        return False
    return all(np.all(depths_in_view(points_3d, R, t) > 0) for R, t in extrinsics)
