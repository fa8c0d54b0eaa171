from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol, Tuple, Union, runtime_checkable

import numpy as np
from PIL import Image

from patch_params import DEFAULT_PARAMS, MAX_INTENSITY, PatchParams


@runtime_checkable
class PixelSource(Protocol):
    """Single-channel image addressable by integer (x, y) coordinates."""

    width: int
    height: int

    def get_pixel(self, x: int, y: int) -> int: ...


@dataclass
class ArrayPixelSource:
    pixels: np.ndarray

    def __post_init__(self) -> None:
        self.pixels = _as_gray_array(self.pixels)

    @classmethod
    def from_pil(cls, image: Image.Image) -> "ArrayPixelSource":
        return cls(_pil_to_array(image))

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    def get_pixel(self, x: int, y: int) -> int:
        return int(self.pixels[y, x])


ImageLike = Union[np.ndarray, Image.Image, PixelSource]


def _pil_to_array(image: Image.Image) -> np.ndarray:
    if image.mode != "L":
        raise ValueError(f"expected a grayscale ('L') image, got mode {image.mode!r}")
    return np.asarray(image, dtype=np.uint8)


def _as_gray_array(pixels: np.ndarray) -> np.ndarray:
    arr = np.asarray(pixels)
    if arr.ndim != 2:
        raise ValueError(f"expected a 2-D grayscale array, got shape {arr.shape}")
    if arr.dtype != np.uint8 and arr.size > 0:
        lo, hi = arr.min(), arr.max()
        if lo < 0 or hi > MAX_INTENSITY:
            raise ValueError(
                f"pixel values must be in 0..{MAX_INTENSITY}, got range {lo}..{hi}"
            )
    return arr


def _resolve(image: ImageLike) -> Tuple[Optional[np.ndarray], Optional[PixelSource]]:
    if isinstance(image, Image.Image):
        return _pil_to_array(image), None
    if isinstance(image, ArrayPixelSource):
        return image.pixels, None
    if isinstance(image, np.ndarray):
        return _as_gray_array(image), None
    if isinstance(image, PixelSource):
        return None, image
    raise ValueError(f"unsupported pixel source type {type(image).__name__}")


def in_bounds(
    x: int, y: int, width: int, height: int, params: PatchParams = DEFAULT_PARAMS
) -> bool:
    r = params.half_width
    return x >= r and y >= r and x + r < width and y + r < height


def sample_patch(
    image: ImageLike, x: int, y: int, params: PatchParams = DEFAULT_PARAMS
) -> Optional[np.ndarray]:
    """Sample the every-other-pixel grid around (x, y).

    Rows follow dy and columns follow dx, so element ``row * side + col`` holds
    the intensity at ``(x + offsets[col], y + offsets[row])``. Returns None
    when the sampling window does not lie fully inside the image.
    """
    pixels, source = _resolve(image)
    x, y = int(x), int(y)
    offsets = params.offsets

    if pixels is not None:
        height, width = pixels.shape
        if not in_bounds(x, y, width, height, params):
            return None
        window = pixels[np.ix_(y + offsets, x + offsets)]
        return window.reshape(-1).astype(np.uint8)

    if not in_bounds(x, y, source.width, source.height, params):
        return None
    sample = np.empty(params.grid_size, dtype=np.uint8)
    count = 0
    for dy in offsets:
        for dx in offsets:
            sample[count] = source.get_pixel(x + int(dx), y + int(dy))
            count += 1
    return sample


def sample_patches(
    image: ImageLike, points: np.ndarray, params: PatchParams = DEFAULT_PARAMS
) -> Tuple[np.ndarray, np.ndarray]:
    """Batch form of `sample_patch` for an (N, 2) array of (x, y) points.

    Returns (patches, valid): an (N, grid_size) uint8 array whose rows for
    rejected points are zero, and the (N,) mask of accepted points.
    """
    pts = np.asarray(points, dtype=np.int64).reshape(-1, 2)
    n = pts.shape[0]
    patches = np.zeros((n, params.grid_size), dtype=np.uint8)
    valid = np.zeros(n, dtype=bool)
    if n == 0:
        return patches, valid

    pixels, source = _resolve(image)
    if pixels is None:
        for k, (x, y) in enumerate(pts):
            sample = sample_patch(source, int(x), int(y), params)
            if sample is not None:
                patches[k] = sample
                valid[k] = True
        return patches, valid

    height, width = pixels.shape
    r = params.half_width
    xs, ys = pts[:, 0], pts[:, 1]
    valid = (xs >= r) & (ys >= r) & (xs + r < width) & (ys + r < height)
    idx = np.flatnonzero(valid)
    if idx.size > 0:
        off = params.offsets
        yy = ys[idx, None, None] + off[None, :, None]
        xx = xs[idx, None, None] + off[None, None, :]
        patches[idx] = pixels[yy, xx].reshape(idx.size, -1).astype(np.uint8)
    return patches, valid


def normalise(
    patch: np.ndarray, params: PatchParams = DEFAULT_PARAMS
) -> Optional[np.ndarray]:
    """Rescale a patch to zero mean and unit variance.

    The normalised values are truncated toward zero and saturated into the
    uint8 range, so negative values become 0. Returns None for a constant
    patch (zero standard deviation).
    """
    values = np.asarray(patch, dtype=np.float64).reshape(-1)
    if values.size != params.grid_size:
        raise ValueError(
            f"patch must have {params.grid_size} values, got {values.size}"
        )
    mean = values.mean()
    stddev = values.std(ddof=params.ddof)
    if stddev == 0.0 or not np.isfinite(stddev):
        return None
    v = (values - mean) / stddev
    return np.clip(np.trunc(v), 0, MAX_INTENSITY).astype(np.uint8)
