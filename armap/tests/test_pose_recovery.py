import numpy as np

from armap.geometry import (
    PoseCandidate, decompose_essential_matrix, essential_from_pose, invert_pose, project_points, projection_matrix
)
from armap.keyframe import Keyframe
from armap.pose_recovery import (
    CandidateEvaluation, PriorView, compose_pose, evaluate_candidates, relative_extrinsics, select_pose_candidate
)


def _get_test_setup():
    rng = np.random.default_rng(11)
    n = 30
    points_world = np.column_stack([rng.uniform(-2, 2, n), rng.uniform(-1.5, 1.5, n), rng.uniform(4, 8, n)])
    K = np.array([
        [450., 0., 320.],
        [0., 450., 240.],
        [0., 0., 1.],
    ])
    return points_world, K


def _rotation_about_y(theta: float) -> np.ndarray:
    return np.array([
        [np.cos(theta), 0., np.sin(theta)],
        [0., 1., 0.],
        [-np.sin(theta), 0., np.cos(theta)],
    ])


def _pixels_of(points_world, K, camera_rotation, camera_translation):
    """ Project through a camera given by its camera-in-world pose. """
    R, t = invert_pose(camera_rotation, camera_translation)
    return project_points(projection_matrix(K, R, t), points_world)


def test_cheirality_picks_the_true_candidate():
    points_world, K = _get_test_setup()
    # last keyframe camera at the world origin, so its frame is the world frame
    R_true = _rotation_about_y(0.05)
    t_true = np.array([-0.6, 0.05, 0.1])

    candidates = decompose_essential_matrix(essential_from_pose(R_true, t_true))
    assert len(candidates) == 4

    points_last = project_points(projection_matrix(K, np.eye(3), np.zeros(3)), points_world)
    points_current = project_points(projection_matrix(K, R_true, t_true), points_world)

    evaluations = evaluate_candidates(candidates, K, K, points_last, points_current)
    assert sum(e.valid for e in evaluations) == 1

    best = select_pose_candidate(evaluations)
    assert best is not None
    assert np.allclose(best.candidate.rotation, R_true, atol=1e-6)
    assert np.allclose(best.candidate.translation, t_true / np.linalg.norm(t_true), atol=1e-6)
    assert best.scale == 1.0
    assert best.mean_error < 1e-4


def test_prior_keyframe_fixes_the_scale():
    points_world, K = _get_test_setup()
    older = Keyframe(0, K, (), rotation=np.eye(3), translation=np.zeros(3), average_depth=0.)
    last = Keyframe(5, K, (), rotation=np.eye(3), translation=[1., 0., 0.], average_depth=6.)
    current_rotation, current_translation = _rotation_about_y(-0.03), np.array([2., 0.5, 0.])

    points_older = _pixels_of(points_world, K, older.rotation, older.translation)
    points_last = _pixels_of(points_world, K, last.rotation, last.translation)
    points_current = _pixels_of(points_world, K, current_rotation, current_translation)

    # the truth, as seen from the last keyframe camera
    R_true, t_true = invert_pose(current_rotation, current_translation - last.translation)
    candidates = decompose_essential_matrix(essential_from_pose(R_true, t_true))

    rotation, translation = relative_extrinsics(older, last)
    prior_view = PriorView(K=K, rotation=rotation, translation=translation, points_2d=points_older)

    best = select_pose_candidate(evaluate_candidates(candidates, K, K, points_last, points_current, prior_view))
    assert best is not None
    assert np.isclose(best.scale, np.linalg.norm(t_true), rtol=1e-4)

    new_rotation, new_translation = compose_pose(last, best.candidate, best.scale)
    assert np.allclose(new_rotation, current_rotation, atol=1e-6)
    assert np.allclose(new_translation, current_translation, atol=1e-4)


def test_compose_pose_rotates_translation_into_world():
    last = Keyframe(3, np.eye(3), (), rotation=_rotation_about_y(np.pi / 2), translation=[1., 0., 0.])
    # current camera one unit ahead of the last one along its optical axis
    candidate = PoseCandidate(rotation=np.eye(3), translation=np.array([0., 0., -1.]))

    rotation, translation = compose_pose(last, candidate, scale=1.0)

    assert np.allclose(rotation, last.rotation)
    # the optical axis of the last camera points along world +x
    assert np.allclose(translation, [2., 0., 0.])


def test_no_valid_candidate():
    evaluations = [
        CandidateEvaluation(i, PoseCandidate(np.eye(3), np.array([1., 0., 0.])), valid=False, reason='points behind camera')
        for i in range(4)
    ]
    assert select_pose_candidate(evaluations) is None


def test_points_at_infinity_are_rejected():
    points_world, K = _get_test_setup()
    pixels = project_points(projection_matrix(K, np.eye(3), np.zeros(3)), points_world)
    # the image did not change at all, so a translated camera puts every point at infinity
    candidate = PoseCandidate(rotation=np.eye(3), translation=np.array([1., 0., 0.]))

    evaluations = evaluate_candidates([candidate], K, K, pixels, pixels.copy())

    assert not evaluations[0].valid
    assert evaluations[0].reason == 'points at infinity'
    assert select_pose_candidate(evaluations) is None
