import logging
from typing import Iterable, Optional, Union

import attr
import cv2

from armap.cam import CameraIntrinsics
from armap.datasets.recording import DataProvider, Frame
from utils.custom_types import FilePath

logger = logging.getLogger(__name__)


@attr.define
class VideoFileStreamer(DataProvider):
    """ Frames of a video file, or of a live capture device when given its integer index. """
    source: Union[FilePath, int]
    intrinsics_or_none: Optional[CameraIntrinsics] = None
    max_frames: Optional[int] = None

    def _open(self) -> cv2.VideoCapture:
        capture = cv2.VideoCapture(self.source)
        if not capture.isOpened():
            raise ValueError(f"Could not open video source {self.source!r}")
        return capture

    def get_intrinsics(self) -> CameraIntrinsics:
        if self.intrinsics_or_none is not None:
            return self.intrinsics_or_none

        capture = self._open()
        try:
            screen_w = int(capture.get(cv2.CAP_PROP_FRAME_WIDTH))
            screen_h = int(capture.get(cv2.CAP_PROP_FRAME_HEIGHT))
        finally:
            capture.release()
        logger.warning(f"No calibration for {self.source!r}, guessing intrinsics from {screen_w}x{screen_h}")
        return CameraIntrinsics.from_image_shape(screen_h, screen_w)

    def stream(self) -> Iterable[Frame]:
        capture = self._open()
        try:
            frame_idx = 0
            while self.max_frames is None or frame_idx < self.max_frames:
                ok, image = capture.read()
                if not ok:
                    break
                yield Frame(
                    image=image,
                    frame_idx=frame_idx,
                    timestamp=capture.get(cv2.CAP_PROP_POS_MSEC) / 1000.,
                )
                frame_idx += 1
        finally:
            capture.release()
