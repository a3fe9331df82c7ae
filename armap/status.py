import enum

import attr

from armap.pose_recovery import KeyframeDecision
from armap.types import FrameId


class ErrorCode(enum.Enum):
    SUCCESS = 0
    UNIMPLEMENTED = 1    # the request reached an extension point nobody has filled in yet


@attr.s(auto_attribs=True)
class FeedResult:
    """ What happened to the map while ingesting one frame. """
    frame_id: FrameId
    num_detections: int
    num_matched: int
    num_new_points: int
    num_pruned: int
    num_live_points: int
    decision: object     # one of the KeyframeDecision variants
    num_motion_samples: int = 0
    status: ErrorCode = ErrorCode.SUCCESS

    @property
    def created_keyframe(self) -> bool:
        return isinstance(self.decision, (KeyframeDecision.Bootstrap, KeyframeDecision.Accepted))
