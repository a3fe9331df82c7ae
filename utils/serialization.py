from typing import Any, Dict, Type, TypeVar

import cattrs
import lz4.frame
import msgpack
import msgpack_numpy as m
import numpy as np


def msgpack_dumps(obj: Any, compress: bool = False) -> bytes:
    data = msgpack.packb(obj, use_bin_type=True, default=m.encode)
    return lz4.frame.compress(data) if compress else data


def msgpack_loads(data: bytes):
    # lz4 frames always start with this magic number, msgpack maps never do
    if data[:4] == b'\x04\x22\x4d\x18':
        data = lz4.frame.decompress(data)
    return msgpack.unpackb(data, raw=False, object_hook=m.decode)


_CONVERTER = None


def _is_ndarray_type(t) -> bool:
    return t is np.ndarray or getattr(t, "__origin__", None) is np.ndarray


def _get_converter_singleton() -> cattrs.Converter:
    global _CONVERTER

    if _CONVERTER is None:
        converter = cattrs.Converter()

        # arrays travel through msgpack-numpy untouched
        converter.register_structure_hook_func(_is_ndarray_type, lambda v, t: np.asarray(v))
        converter.register_unstructure_hook_func(_is_ndarray_type, lambda v: v)

        _CONVERTER = converter

    return _CONVERTER


def to_native_types(obj: Any) -> Dict[str, Any]:
    return _get_converter_singleton().unstructure(obj)


T = TypeVar('T')


def from_native_types(data: Dict[str, Any], target_type: Type[T]) -> T:
    return _get_converter_singleton().structure(data, target_type)
