from __future__ import annotations

from dataclasses import dataclass, field

import numpy as np

HALF_WIDTH = 7
STEP = 2
N_BINS = 5
BIN_WIDTH = 52
RARE_FRACTION = 0.05
WORD_BITS = 64
MAX_INTENSITY = 255


@dataclass(frozen=True)
class PatchParams:
    half_width: int = HALF_WIDTH
    step: int = STEP
    n_bins: int = N_BINS
    bin_width: int = BIN_WIDTH
    rare_fraction: float = RARE_FRACTION
    ddof: int = 0
    offsets: np.ndarray = field(init=False, repr=False, compare=False)
    grid_size: int = field(init=False)

    def __post_init__(self) -> None:
        self._validate()
        # +/- 1, 3, 5, 7 for the defaults
        offsets = np.arange(
            -self.half_width, self.half_width + 1, self.step, dtype=np.int64
        )
        offsets.setflags(write=False)
        grid_size = int(offsets.size) ** 2
        if grid_size > WORD_BITS:
            raise ValueError(
                f"grid of {grid_size} locations does not fit a {WORD_BITS}-bit word"
            )
        object.__setattr__(self, "offsets", offsets)
        object.__setattr__(self, "grid_size", grid_size)

    def _validate(self) -> None:
        if self.half_width < 0:
            raise ValueError(f"half_width must be >= 0, got {self.half_width}")
        if self.step < 1:
            raise ValueError(f"step must be >= 1, got {self.step}")
        if self.n_bins < 1 or self.bin_width < 1:
            raise ValueError(
                f"n_bins and bin_width must be >= 1, got {self.n_bins}, {self.bin_width}"
            )
        if self.n_bins * self.bin_width <= MAX_INTENSITY:
            raise ValueError(
                f"{self.n_bins} bins of width {self.bin_width} do not cover "
                f"intensities 0..{MAX_INTENSITY}"
            )
        if not 0.0 < self.rare_fraction <= 1.0:
            raise ValueError(
                f"rare_fraction must be in (0, 1], got {self.rare_fraction}"
            )
        if self.ddof not in (0, 1):
            raise ValueError(f"ddof must be 0 or 1, got {self.ddof}")

    @property
    def grid_side(self) -> int:
        return int(self.offsets.size)


DEFAULT_PARAMS = PatchParams()
GRID_SIZE = DEFAULT_PARAMS.grid_size
