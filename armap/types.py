from typing import Tuple

import numpy as np
from utils.custom_types import Array


Vector3d = Array['3', np.float64]
Point2d = Array['2', np.float64]
Points2d = Array['N,2', np.float64]            # x goes right, y goes down, in pixels (OpenCV convention)
Points3d = Array['N,3', np.float64]
Descriptors = Array['N,D', np.float32]
IntrinsicsMatrix = Array['3,3', np.float64]
RotationSO3 = Array['3,3', np.float64]
Translation3d = Array['3', np.float64]
TransformSE3 = Array['4,4', np.float64]
ProjectionMatrix = Array['3,4', np.float64]     # K @ [R | t], world (or reference cam) to pixels
FundamentalMatrix = Array['3,3', np.float64]
EssentialMatrix = Array['3,3', np.float64]

FrameId = int
PointId = int
IndexPair = Tuple[int, int]   # (index into new detections, index into stored points)

"""
Pose conventions

    Keyframe poses are camera-in-world:      X_world = R @ X_cam + t
    Pose candidates are last-to-current:     X_cur = R @ X_last + t
    The world frame is the camera frame of the bootstrap keyframe.
"""
