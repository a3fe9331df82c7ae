from typing import Any, Dict

import attr
import cattrs

from utils.serialization import to_native_types


def _positive(instance, attribute, value):
    if value <= 0:
        raise ValueError(f"{attribute.name} has to be positive, got {value}")


@attr.s(auto_attribs=True, frozen=True)
class MappingParams:
    """ Every tunable of the mapping engine in one place. """
    # bookkeeping capacities
    max_observations: int = attr.ib(default=30, validator=_positive)
    max_interest_points: int = attr.ib(default=2000, validator=_positive)
    max_keyframes: int = attr.ib(default=10, validator=_positive)

    # keyframe selection: new keyframe once we moved further than this fraction of the scene depth
    keyframe_depth_fraction: float = attr.ib(default=0.2, validator=_positive)
    max_prior_keyframes: int = attr.ib(default=2, validator=attr.validators.in_([1, 2]))
    min_points_for_pose: int = attr.ib(default=8, validator=attr.validators.ge(8))
    min_parallax_px: float = 1.0

    # fundamental matrix estimation
    fundamental_ransac_threshold_px: float = attr.ib(default=1.0, validator=_positive)
    fundamental_confidence: float = 0.999

    # background refinement
    refinement_min_views: int = attr.ib(default=2, validator=attr.validators.ge(2))
    refinement_max_points: int = attr.ib(default=500, validator=_positive)
    refinement_max_nfev: int = attr.ib(default=20, validator=_positive)

    @classmethod
    def from_defaults(cls) -> 'MappingParams':
        return cls()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'MappingParams':
        unknown = set(data) - {field.name for field in attr.fields(cls)}
        if unknown:
            raise ValueError(f"Unknown mapping params: {sorted(unknown)}")
        try:
            return cattrs.structure(data, cls)
        except cattrs.BaseValidationError as e:
            # validator failures come wrapped, surface the first one as is
            for exc in e.exceptions:
                if isinstance(exc, ValueError):
                    raise exc
            raise

    def to_dict(self) -> Dict[str, Any]:
        return to_native_types(self)
