import logging
from typing import List

import attr
import pandas as pd
import tqdm

from armap.datasets.recording import DataProvider, Frame
from armap.engine import MappingEngine
from armap.pose_recovery import KeyframeDecision
from armap.status import FeedResult

logger = logging.getLogger(__name__)


@attr.define
class MappingRunSummary:
    num_frames: int
    num_keyframes_created: int
    num_geometry_failures: int
    num_live_points: int


@attr.define
class MappingRunRecorder:
    results: List[FeedResult] = attr.Factory(list)
    timestamps: List[float] = attr.Factory(list)

    def record(self, frame: Frame, feed_result: FeedResult):
        self.results.append(feed_result)
        self.timestamps.append(frame.timestamp)

    def to_df(self) -> pd.DataFrame:
        return pd.DataFrame({
            'frame_id': [r.frame_id for r in self.results],
            'timestamp': self.timestamps,
            'num_detections': [r.num_detections for r in self.results],
            'num_matched': [r.num_matched for r in self.results],
            'num_new_points': [r.num_new_points for r in self.results],
            'num_pruned': [r.num_pruned for r in self.results],
            'num_live_points': [r.num_live_points for r in self.results],
            'decision': [type(r.decision).__name__ for r in self.results],
        })

    def emit_summary(self) -> MappingRunSummary:
        return MappingRunSummary(
            num_frames=len(self.results),
            num_keyframes_created=sum(r.created_keyframe for r in self.results),
            num_geometry_failures=sum(isinstance(r.decision, KeyframeDecision.GeometryFailure) for r in self.results),
            num_live_points=self.results[-1].num_live_points if self.results else 0,
        )


def run_mapping(
    data_provider: DataProvider,
    engine: MappingEngine,
    recorder: MappingRunRecorder,
    progress: bool = True,
) -> MappingRunSummary:
    for frame in tqdm.tqdm(data_provider.stream(), disable=not progress):
        feed_result = engine.feed_frame(frame.image)
        recorder.record(frame, feed_result)

    summary = recorder.emit_summary()
    logger.info(f"{summary}")
    return summary
