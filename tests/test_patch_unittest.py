import sys
import unittest
from pathlib import Path

import numpy as np


class PatchTrainingMixin:
    IMG_SHAPE = (48, 64)
    POINT = (30, 20)
    N_VIEWS = 60
    NOISE = 6
    SEED = 0

    @classmethod
    def setUpClass(cls):
        cls.root = Path(__file__).resolve().parents[1]
        sys.path.append(str(cls.root))
        from patch_model import PatchModel
        from patch_params import PatchParams
        from patch_sampler import sample_patches

        cls.params = PatchParams()
        rng = np.random.default_rng(cls.SEED)
        cls.img = rng.integers(0, 256, size=cls.IMG_SHAPE).astype(np.uint8)

        x, y = cls.POINT
        views = []
        for _ in range(cls.N_VIEWS):
            noise = rng.integers(-cls.NOISE, cls.NOISE + 1, size=cls.IMG_SHAPE)
            noisy = np.clip(cls.img.astype(np.int64) + noise, 0, 255).astype(np.uint8)
            patches, valid = sample_patches(noisy, [[x, y]], cls.params)
            views.append(patches[valid][0])

        cls.model = PatchModel(cls.params)
        cls.n_added = cls.model.add_patches(views)
        cls.descriptor = cls.model.quantise()

    def test_every_view_was_added(self):
        self.assertEqual(self.n_added, self.N_VIEWS)
        self.assertEqual(len(self.model), self.N_VIEWS)

    def test_counts_cover_every_location(self):
        counts = self.model.counts
        self.assertEqual(counts.shape, (self.params.grid_size, self.params.n_bins))
        np.testing.assert_array_equal(
            counts.sum(axis=1), np.full(self.params.grid_size, self.N_VIEWS)
        )

    def test_descriptor_layout(self):
        from patch_model import descriptor_popcount

        self.assertEqual(self.descriptor.dtype, np.uint64)
        self.assertEqual(self.descriptor.shape, (self.params.n_bins,))
        total = descriptor_popcount(self.descriptor)
        self.assertGreaterEqual(total, 0)
        self.assertLessEqual(total, 5 * 64)

    def test_each_location_keeps_a_common_bin(self):
        # at least one bin per location holds 5% or more of the samples
        bits = np.unpackbits(
            self.descriptor.view(np.uint8).reshape(self.params.n_bins, 8),
            axis=1,
            bitorder="little",
        )
        self.assertTrue(np.all(bits.sum(axis=0) < self.params.n_bins))

    def test_score_at_training_point(self):
        from patch_model import score_patch

        x, y = self.POINT
        score = score_patch(self.img, x, y, self.descriptor, self.params)
        # truncated z-scores all fall in bin 0, leaving bins 1..4 rare everywhere
        self.assertEqual(score, 4 * self.params.grid_size)

    def test_score_near_border_is_rejected(self):
        from patch_model import score_patch

        h, w = self.IMG_SHAPE
        for x, y in [(6, 20), (w - 7, 20), (30, 6), (30, h - 7)]:
            with self.subTest(x=x, y=y):
                self.assertIsNone(score_patch(self.img, x, y, self.descriptor))


class TestPatchTrainingCentre(PatchTrainingMixin, unittest.TestCase):
    pass


class TestPatchTrainingCorner(PatchTrainingMixin, unittest.TestCase):
    IMG_SHAPE = (15, 15)
    POINT = (7, 7)
    N_VIEWS = 25
    NOISE = 20
    SEED = 7
