import numpy as np
import pytest

from armap.interest_point import InterestPoint, Observation


def _random_observation(rng: np.random.Generator, p_visible: float = 0.6) -> Observation:
    if rng.random() < p_visible:
        return Observation.seen(rng.uniform(0, 640, size=2), rng.integers(0, 2, size=256).astype(np.float32))
    return Observation.invisible()


def test_average_descriptor_matches_retained_history():
    rng = np.random.default_rng(7)
    point = InterestPoint(initial_frame_id=0, max_observations=5)

    for _ in range(40):
        point.add_observation(_random_observation(rng))

        assert len(point.history) <= 5
        visible = [obs.descriptor for obs in point.history if obs.visible]
        assert point.visible_count == len(visible)
        if visible:
            assert np.allclose(point.average_descriptor, np.mean(visible, axis=0), atol=1e-5)
        else:
            assert point.average_descriptor is None
            assert point.to_discard()


def test_history_stays_aligned_with_frames():
    point = InterestPoint(initial_frame_id=3, max_observations=4)
    descriptors = {}
    for frame_id in range(3, 12):
        desc = np.full(8, frame_id, dtype=np.float32)
        descriptors[frame_id] = desc
        point.add_observation(Observation.seen([frame_id, frame_id], desc) if frame_id % 2 else Observation.invisible())

    assert point.last_frame_id == 11
    assert point.total_observations == 9

    # only the four newest frames are retained
    assert point.observation_at(7) is None
    assert point.observation_at(12) is None
    for frame_id in range(8, 12):
        obs = point.observation_at(frame_id)
        assert obs.visible == bool(frame_id % 2)
        if obs.visible:
            assert np.allclose(obs.descriptor, descriptors[frame_id])
    assert point.is_visible_at(11)
    assert not point.is_visible_at(10)


def test_remove_early_observations():
    point = InterestPoint(initial_frame_id=0, max_observations=10)
    point.add_observation(Observation.seen([1., 1.], np.ones(4, dtype=np.float32)))
    point.add_observation(Observation.seen([2., 2.], np.full(4, 3., dtype=np.float32)))
    point.add_observation(Observation.invisible())

    point.remove_early_observations(1)
    assert point.visible_count == 1
    assert np.allclose(point.average_descriptor, 3.)
    assert point.last_frame_id == 2

    point.remove_early_observations(100)
    assert point.history == ()
    assert point.average_descriptor is None


def test_decay_needs_full_history():
    point = InterestPoint(initial_frame_id=0, max_observations=3)
    point.add_observation(Observation.seen([1., 1.], np.ones(4, dtype=np.float32)))
    for _ in range(2):
        point.add_observation(Observation.invisible())
    # the sighting is still retained
    assert not point.is_decayed()

    point.add_observation(Observation.invisible())
    assert point.to_discard()
    assert point.is_decayed()


def test_invalid_capacity():
    with pytest.raises(ValueError):
        InterestPoint(initial_frame_id=0, max_observations=0)
