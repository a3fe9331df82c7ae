import attr
import numpy as np

from armap.types import IntrinsicsMatrix


@attr.s(auto_attribs=True, frozen=True)
class CameraIntrinsics:
    fx: float
    fy: float
    cx: float
    cy: float

    @classmethod
    def from_matrix(cls, K: IntrinsicsMatrix) -> 'CameraIntrinsics':
        K = np.asarray(K, dtype=np.float64)
        if K.shape != (3, 3):
            raise ValueError(f"Intrinsics matrix has to be 3x3, got {K.shape=}")
        return cls(fx=float(K[0, 0]), fy=float(K[1, 1]), cx=float(K[0, 2]), cy=float(K[1, 2]))

    @classmethod
    def from_image_shape(
        cls,
        screen_h: int,
        screen_w: int,
        f_mod: float = 2.0,   # higher f_mod -> narrower field of view
    ) -> 'CameraIntrinsics':
        """ Rough pinhole guess for uncalibrated streams. """
        return cls(
            fx=screen_w / 4 * f_mod,
            fy=screen_w / 4 * f_mod,
            cx=screen_w / 2,
            cy=screen_h / 2,
        )

    def to_matrix(self) -> IntrinsicsMatrix:
        return np.array([
            [self.fx, 0., self.cx],
            [0., self.fy, self.cy],
            [0., 0., 1.],
        ], dtype=np.float64)
