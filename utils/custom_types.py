from typing import TypeAlias, Union

import numpy as np

FilePath = str

Array: TypeAlias = np.ndarray

FloatDescriptor = Array['D', np.float32]

# images
BGRImageArray = Array['H,W,3', np.uint8]
GrayImageArray = Array['H,W', np.uint8]

ImageArray = Union[BGRImageArray, GrayImageArray]
