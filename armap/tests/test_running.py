from typing import Iterable, List

import attr
import numpy as np

from armap.cam import CameraIntrinsics
from armap.datasets.recording import Frame
from armap.engine import MappingEngine
from armap.running import MappingRunRecorder, run_mapping
from armap.tracker import FeatureDetections


@attr.define
class ScriptedTracker:
    """ Hands out prepared detections, one set per frame. """
    detections: List[FeatureDetections]
    calls: int = 0

    def detect_and_describe(self, image) -> FeatureDetections:
        detections = self.detections[self.calls]
        self.calls += 1
        return detections

    def match(self, new_descriptors, stored_descriptors):
        distances = np.linalg.norm(new_descriptors[:, None, :] - stored_descriptors[None, :, :], axis=2)
        return [(i, int(j)) for i, j in enumerate(np.argmin(distances, axis=1)) if distances[i, j] < 1e-4]


@attr.define
class BlankFramesProvider:
    num_frames: int

    def stream(self) -> Iterable[Frame]:
        for i in range(self.num_frames):
            yield Frame(image=np.zeros((48, 64, 3), dtype=np.uint8), frame_idx=i, timestamp=i / 30.)

    def get_intrinsics(self) -> CameraIntrinsics:
        return CameraIntrinsics.from_image_shape(48, 64)


def test_run_mapping_summary():
    rng = np.random.default_rng(0)
    detections = FeatureDetections(
        locations=rng.uniform(0, 64, size=(12, 2)),
        descriptors=rng.normal(size=(12, 8)).astype(np.float32),
    )
    provider = BlankFramesProvider(num_frames=3)
    engine = MappingEngine(
        tracker=ScriptedTracker([detections, detections, FeatureDetections.empty(descriptor_size=8)]),
        intrinsics=provider.get_intrinsics(),
        start_refinement=False,
    )
    recorder = MappingRunRecorder()

    summary = run_mapping(provider, engine, recorder, progress=False)

    assert summary.num_frames == 3
    assert summary.num_keyframes_created == 1
    assert summary.num_geometry_failures == 1
    assert summary.num_live_points == 12

    df = recorder.to_df()
    assert list(df['decision']) == ['Bootstrap', 'InsufficientParallax', 'GeometryFailure']
    assert list(df['num_matched']) == [0, 12, 0]
