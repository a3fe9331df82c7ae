from typing import List, Protocol, runtime_checkable

import attr
import cv2
import numpy as np

from armap.types import Descriptors, IndexPair, Points2d
from utils.custom_types import ImageArray
from utils.profiling import just_time


@attr.define
class FeatureDetections:
    """ Detections of one frame, row i of locations goes with row i of descriptors. """
    locations: Points2d = attr.ib(converter=lambda x: np.asarray(x, dtype=np.float64).reshape(-1, 2))
    descriptors: Descriptors = attr.ib(repr=False)

    def __attrs_post_init__(self):
        self.descriptors = np.asarray(self.descriptors, dtype=np.float32)
        if self.descriptors.ndim != 2:
            raise ValueError(f"Descriptors have to be a (N, D) array, got {self.descriptors.shape=}")
        if len(self.descriptors) != len(self.locations):
            raise ValueError(f"{len(self.locations)=} != {len(self.descriptors)=}")

    @classmethod
    def empty(cls, descriptor_size: int = 0) -> 'FeatureDetections':
        return cls(
            locations=np.zeros((0, 2), dtype=np.float64),
            descriptors=np.zeros((0, descriptor_size), dtype=np.float32)
        )

    def __len__(self) -> int:
        return len(self.locations)


@runtime_checkable
class FeatureTracker(Protocol):
    """ Detection, description and matching. The engine calls it once per frame. """

    def detect_and_describe(self, image: ImageArray) -> FeatureDetections:
        ...

    def match(self, new_descriptors: Descriptors, stored_descriptors: Descriptors) -> List[IndexPair]:
        """ Pairs of (index into new_descriptors, index into stored_descriptors). """
        ...


def unpack_binary_descriptors(descriptors: np.ndarray) -> Descriptors:
    """ ORB gives 32 bytes per feature, we want 256 bits as floats so that averaging makes sense. """
    return np.unpackbits(descriptors.astype(np.uint8), axis=1).astype(np.float32)


@attr.s(auto_attribs=True)
class OrbFeatureTracker:
    orb_feature_detector: cv2.ORB
    feature_matcher: cv2.BFMatcher
    max_descriptor_distance: float
    verbose: bool = False

    @classmethod
    def build(
        cls,
        max_features: int = 1000,
        max_descriptor_distance: float = 6.0,   # L2 on unpacked bits, 6.0 ~ 36 differing bits
    ):
        orb_feature_detector = cv2.ORB_create(max_features)
        # cross check keeps the matching one-to-one
        feature_matcher = cv2.BFMatcher(cv2.NORM_L2, crossCheck=True)

        return cls(
            orb_feature_detector=orb_feature_detector,
            feature_matcher=feature_matcher,
            max_descriptor_distance=max_descriptor_distance,
        )

    def detect_and_describe(self, image: ImageArray) -> FeatureDetections:
        if image.ndim == 3:
            image = cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)

        with just_time('detecting', verbose=self.verbose):
            keypoints, descriptors = self.orb_feature_detector.detectAndCompute(image, None)

        if descriptors is None or len(keypoints) == 0:
            return FeatureDetections.empty(descriptor_size=256)

        return FeatureDetections(
            locations=np.array([kp.pt for kp in keypoints], dtype=np.float64),
            descriptors=unpack_binary_descriptors(descriptors)
        )

    def match(self, new_descriptors: Descriptors, stored_descriptors: Descriptors) -> List[IndexPair]:
        if len(new_descriptors) == 0 or len(stored_descriptors) == 0:
            return []

        with just_time('matching', verbose=self.verbose):
            raw_cv_matches = self.feature_matcher.match(
                np.asarray(new_descriptors, dtype=np.float32),
                np.asarray(stored_descriptors, dtype=np.float32)
            )

        sorted_matches = sorted(raw_cv_matches, key=lambda match: match.distance)
        return [
            (match.queryIdx, match.trainIdx)
            for match in sorted_matches
            if match.distance <= self.max_descriptor_distance
        ]
