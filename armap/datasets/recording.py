from typing import Iterable, List, Optional, Protocol, runtime_checkable

import attr

from armap.cam import CameraIntrinsics
from utils.custom_types import BGRImageArray, FilePath
from utils.serialization import from_native_types, msgpack_dumps, msgpack_loads, to_native_types


@attr.define
class Frame:
    image: BGRImageArray   # grayscale frames go through as they are
    frame_idx: int
    timestamp: float   # in seconds since epoch, as per python convention


@runtime_checkable
class DataProvider(Protocol):
    def stream(self) -> Iterable[Frame]:
        ...

    def get_intrinsics(self) -> CameraIntrinsics:
        ...


@attr.define
class FrameRecording:
    intrinsics: CameraIntrinsics
    frames: List[Frame] = attr.ib(factory=list)

    def record_frame(self, frame: Frame):
        self.frames.append(frame)

    def save(self, path: FilePath, compress: bool = True):
        data = msgpack_dumps(to_native_types(self), compress=compress)
        with open(path, 'wb') as f:
            f.write(data)

    @classmethod
    def load(cls, path: FilePath) -> 'FrameRecording':
        with open(path, 'rb') as f:
            raw_data = f.read()
        return from_native_types(msgpack_loads(raw_data), cls)


@attr.define
class RecordedFramesStreamer(DataProvider):
    """ Replays a recording saved with FrameRecording.save """
    recording: FrameRecording
    max_frames: Optional[int] = None

    @classmethod
    def from_path(cls, path: FilePath, max_frames: Optional[int] = None) -> 'RecordedFramesStreamer':
        return cls(recording=FrameRecording.load(path), max_frames=max_frames)

    def get_intrinsics(self) -> CameraIntrinsics:
        return self.recording.intrinsics

    def stream(self) -> Iterable[Frame]:
        for i, frame in enumerate(self.recording.frames):
            if self.max_frames is not None and i >= self.max_frames:
                break
            yield frame
