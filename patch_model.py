"""Per-location intensity histograms of an 8x8 patch and their rare-bin descriptors.

Implements the matching scheme of Taylor & Drummond, "Robust feature matching
in 2.3us" (2009): a patch model counts, at each of the 64 sampled locations,
how often a training patch fell into each of 5 intensity bins. Quantising the
model marks the bins that hold fewer than 5% of the samples at a location, and
the discrepancy between two descriptors counts the locations where both mark
the same bin.
"""

from __future__ import annotations

import threading
import warnings
from typing import Iterable, Optional, Sequence, Union

import numba
import numpy as np

from patch_params import DEFAULT_PARAMS, MAX_INTENSITY, WORD_BITS, PatchParams
from patch_sampler import ImageLike, normalise, sample_patch

WORD_MAX = (1 << WORD_BITS) - 1

# popcount of every byte value
POPCOUNT_TABLE = np.unpackbits(np.arange(256, dtype=np.uint8)[:, None], axis=1).sum(
    axis=1
)

DescriptorLike = Union[np.ndarray, Sequence[int]]


class EmptyModelError(ValueError):
    """Raised when quantising a model that has never seen a sample."""


@numba.njit(cache=True)
def popcount_kernel(x):
    count = 0
    v = x
    while v:
        v &= v - np.uint64(1)
        count += 1
    return count


@numba.njit(cache=True)
def discrepancy_kernel(patch, model):
    count = 0
    for i in range(patch.shape[0]):
        count += popcount_kernel(patch[i] & model[i])
    return count


@numba.njit(cache=True)
def accumulate_kernel(hists, samples, bin_width):
    for n in range(samples.shape[0]):
        for h in range(samples.shape[1]):
            hists[h, samples[n, h] // bin_width] += 1


def bin_index(value, bin_width: int = DEFAULT_PARAMS.bin_width):
    """Intensity bin of a value (or array of values) in 0..255."""
    if isinstance(value, np.ndarray):
        return value // bin_width
    return int(value) // bin_width


def set_bit(n: int, pos: int) -> int:
    if not 0 <= pos < WORD_BITS:
        raise ValueError(f"bit position must be in 0..{WORD_BITS - 1}, got {pos}")
    return int(n) | (1 << int(pos))


def popcount(x: int) -> int:
    """Number of set bits in a 64-bit word."""
    if not 0 <= int(x) <= WORD_MAX:
        raise ValueError(f"expected an unsigned {WORD_BITS}-bit value, got {x}")
    return int(popcount_kernel(np.uint64(x)))


def as_descriptor(
    descriptor: DescriptorLike, n_words: Optional[int] = None
) -> np.ndarray:
    """Contiguous uint64 words of a descriptor given as an array or a list of ints."""
    if isinstance(descriptor, np.ndarray) and descriptor.dtype == np.uint64:
        words = descriptor
    else:
        raw = np.asarray(descriptor, dtype=object)
        if raw.ndim == 1 and any(int(w) < 0 or int(w) > WORD_MAX for w in raw):
            raise ValueError(
                f"descriptor words must be unsigned {WORD_BITS}-bit values, "
                f"got {raw.tolist()}"
            )
        words = raw
    if words.ndim != 1:
        raise ValueError(f"descriptor must be 1-D, got shape {words.shape}")
    if n_words is not None and words.size != n_words:
        raise ValueError(f"descriptor must have {n_words} words, got {words.size}")
    if words.dtype != np.uint64:
        words = np.array([int(w) for w in words], dtype=np.uint64)
    return np.ascontiguousarray(words)


def descriptor_popcount(descriptor: DescriptorLike) -> int:
    words = as_descriptor(descriptor)
    return int(POPCOUNT_TABLE[words.view(np.uint8)].sum())


def discrepancy(
    patch: DescriptorLike,
    model: DescriptorLike,
    params: PatchParams = DEFAULT_PARAMS,
) -> int:
    """Count the locations where the patch lies in a bin the model considers rare.

    Sums the popcount of ``patch[i] & model[i]`` over the bin words, giving a
    score in 0..320 for the default grid. Higher means less similar. Both
    descriptors must hold one word per bin of `params`.
    """
    a = as_descriptor(patch, params.n_bins)
    b = as_descriptor(model, params.n_bins)
    return int(discrepancy_kernel(a, b))


def _check_samples(samples: np.ndarray, params: PatchParams) -> np.ndarray:
    arr = np.asarray(samples)
    if arr.ndim == 1:
        arr = arr[None, :]
    if arr.ndim != 2 or arr.shape[1] != params.grid_size:
        raise ValueError(
            f"samples must have {params.grid_size} values per patch, got shape {arr.shape}"
        )
    if arr.size > 0 and (arr.min() < 0 or arr.max() > MAX_INTENSITY):
        raise ValueError(
            f"sample values must be in 0..{MAX_INTENSITY}, "
            f"got range {arr.min()}..{arr.max()}"
        )
    return np.ascontiguousarray(arr, dtype=np.uint8)


def _quantise_counts(hists: np.ndarray, params: PatchParams) -> np.ndarray:
    totals = hists.sum(axis=1, dtype=np.int64)
    if np.any(totals == 0):
        raise EmptyModelError("cannot quantise a patch model with no samples")
    fractions = hists / totals[:, None]
    rare = np.zeros((params.n_bins, WORD_BITS), dtype=bool)
    rare[:, : params.grid_size] = (fractions < params.rare_fraction).T
    packed = np.packbits(rare, axis=1, bitorder="little")
    return packed.view("<u8").reshape(-1).astype(np.uint64)


class PatchModel:
    """Histogram of normalised intensities at each location of the sampling grid.

    Counters only grow, except through `reset`. All access to the counters
    holds an internal lock, so one model may be trained from several threads;
    training separate models and combining them with `merge` avoids the
    contention.
    """

    def __init__(self, params: PatchParams = DEFAULT_PARAMS):
        self.params = params
        self._hists = np.zeros((params.grid_size, params.n_bins), dtype=np.uint32)
        self._n_samples = 0
        self._lock = threading.Lock()

    @classmethod
    def from_samples(
        cls, samples: np.ndarray, params: PatchParams = DEFAULT_PARAMS
    ) -> "PatchModel":
        model = cls(params)
        model.add_samples(samples)
        return model

    def __len__(self) -> int:
        return self.n_samples

    def __repr__(self) -> str:
        return f"PatchModel(n_samples={self.n_samples}, params={self.params!r})"

    @property
    def n_samples(self) -> int:
        with self._lock:
            return self._n_samples

    @property
    def counts(self) -> np.ndarray:
        with self._lock:
            return self._hists.copy()

    def add_sample(self, sample: np.ndarray) -> None:
        """Add one normalised patch to the per-location histograms."""
        arr = _check_samples(sample, self.params)
        if arr.shape[0] != 1:
            raise ValueError(f"expected a single patch, got {arr.shape[0]}")
        self._accumulate(arr)

    def add_samples(self, samples: np.ndarray) -> None:
        """Add an (N, grid_size) batch of normalised patches."""
        self._accumulate(_check_samples(samples, self.params))

    def add_patch(self, raw: np.ndarray) -> bool:
        """Normalise a raw patch and add it; False if it was constant and skipped."""
        sample = normalise(raw, self.params)
        if sample is None:
            return False
        self.add_sample(sample)
        return True

    def add_patches(self, raws: Iterable[np.ndarray]) -> int:
        """Normalise and add raw patches, returning how many were added."""
        added = 0
        skipped = 0
        for raw in raws:
            if self.add_patch(raw):
                added += 1
            else:
                skipped += 1
        if skipped:
            warnings.warn(
                f"skipped {skipped} constant patch(es) with zero standard deviation",
                RuntimeWarning,
                stacklevel=2,
            )
        return added

    def _accumulate(self, samples: np.ndarray) -> None:
        with self._lock:
            accumulate_kernel(self._hists, samples, self.params.bin_width)
            self._n_samples += int(samples.shape[0])

    def quantise(self) -> np.ndarray:
        """Reduce the histograms to one word per bin.

        Bit h of word i is set when fewer than `rare_fraction` of the samples
        at location h fell into bin i. Raises EmptyModelError before any
        sample has been added.
        """
        with self._lock:
            return _quantise_counts(self._hists, self.params)

    def merge(self, other: "PatchModel") -> "PatchModel":
        if other.params != self.params:
            raise ValueError(
                f"cannot merge models with different params: {self.params} vs {other.params}"
            )
        if other is self:
            hists, n = self.counts, self.n_samples
        else:
            with other._lock:
                hists, n = other._hists.copy(), other._n_samples
        with self._lock:
            self._hists += hists
            self._n_samples += n
        return self

    def reset(self) -> None:
        with self._lock:
            self._hists[...] = 0
            self._n_samples = 0

    def copy(self) -> "PatchModel":
        clone = PatchModel(self.params)
        with self._lock:
            clone._hists[...] = self._hists
            clone._n_samples = self._n_samples
        return clone


def quantise_patch(
    sample: np.ndarray, params: PatchParams = DEFAULT_PARAMS
) -> np.ndarray:
    """Descriptor of a single normalised patch treated as a one-sample model."""
    arr = _check_samples(sample, params)
    if arr.shape[0] != 1:
        raise ValueError(f"expected a single patch, got {arr.shape[0]}")
    hists = np.zeros((params.grid_size, params.n_bins), dtype=np.uint32)
    accumulate_kernel(hists, arr, params.bin_width)
    return _quantise_counts(hists, params)


def score_patch(
    image: ImageLike,
    x: int,
    y: int,
    model_descriptor: DescriptorLike,
    params: PatchParams = DEFAULT_PARAMS,
) -> Optional[int]:
    """Discrepancy between the patch at (x, y) and a quantised model.

    Returns None when the point is too close to the border or the patch is
    constant.
    """
    raw = sample_patch(image, x, y, params)
    if raw is None:
        return None
    sample = normalise(raw, params)
    if sample is None:
        return None
    return discrepancy(quantise_patch(sample, params), model_descriptor, params)


if __name__ == "__main__":
    rng = np.random.default_rng(0)
    img = rng.integers(0, 256, size=(64, 64)).astype(np.uint8)
    x, y = 32, 32

    model = PatchModel()
    raws = []
    for _ in range(200):
        noise = rng.integers(-8, 9, size=img.shape)
        noisy = np.clip(img.astype(np.int64) + noise, 0, 255).astype(np.uint8)
        raws.append(sample_patch(noisy, x, y))
    model.add_patches(raws)
    desc = model.quantise()

    print(f"Trained on {len(model)} patches, rare bits: {descriptor_popcount(desc)}")
    print(f"Score at training point: {score_patch(img, x, y, desc)}")
