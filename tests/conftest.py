from __future__ import annotations

import sys
from pathlib import Path

import numpy as np
import pytest

# Ensure project root is on sys.path
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))


@pytest.fixture
def rng():
    return np.random.default_rng(1234)


@pytest.fixture
def ramp_image():
    """20x20 image whose pixel at (x, y) is x + 10 * y."""
    ys, xs = np.mgrid[0:20, 0:20]
    return (xs + 10 * ys).astype(np.uint8)


@pytest.fixture
def noise_image(rng):
    return rng.integers(0, 256, size=(48, 64)).astype(np.uint8)
