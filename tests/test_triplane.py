"""Tests for triplane feature sampling."""

import sys
import unittest
from pathlib import Path

import numpy as np
import torch

# Add parent directory to path
sys.path.append(str(Path(__file__).resolve().parent.parent))

from tsr.errors import ConfigurationError
from tsr.triplane import TriplaneSampler, sample_triplane


def pixel_center(index: int, size: int) -> float:
    """Normalized coordinate of a texel center (align_corners=False)."""
    return (2 * index + 1) / size - 1


class TestSampleTriplane(unittest.TestCase):
    """Test bilinear plane sampling and feature reduction."""

    def setUp(self):
        torch.manual_seed(0)
        self.size = 4

    def test_lattice_points_return_texels(self):
        """Sampling at texel centers returns the stored texels, plane-major."""
        for n_channels in [1, 4, 40]:
            triplane = torch.randn(3, n_channels, self.size, self.size)
            lattice = [(0, 0, 0), (1, 2, 3), (3, 3, 0), (2, 0, 1)]
            positions = torch.tensor(
                [[pixel_center(i, self.size) for i in idx] for idx in lattice]
            )

            feats = sample_triplane(triplane, positions, reduction="concat")
            self.assertEqual(feats.shape, (len(lattice), 3 * n_channels))

            for row, (a, b, c) in enumerate(lattice):
                # x indexes width, the second coordinate indexes height
                expected = torch.cat(
                    [triplane[0, :, b, a], triplane[1, :, c, a], triplane[2, :, c, b]]
                )
                np.testing.assert_allclose(
                    feats[row].numpy(), expected.numpy(), atol=1e-6,
                    err_msg=f"C={n_channels}, lattice point {(a, b, c)}",
                )

    def test_mean_reduction(self):
        triplane = torch.randn(3, 5, self.size, self.size)
        positions = torch.rand(16, 3) * 2 - 1

        concat = sample_triplane(triplane, positions, reduction="concat")
        mean = sample_triplane(triplane, positions, reduction="mean")

        self.assertEqual(mean.shape, (16, 5))
        expected = concat.reshape(16, 3, 5).mean(dim=1)
        np.testing.assert_allclose(mean.numpy(), expected.numpy(), atol=1e-6)

    def test_zero_padding_at_boundary(self):
        """At x = -1 half of the bilinear weight falls outside the plane."""
        triplane = torch.ones(3, 1, self.size, self.size)
        center = pixel_center(1, self.size)
        positions = torch.tensor([[-1.0, center, center]])

        feats = sample_triplane(triplane, positions, reduction="concat")
        np.testing.assert_allclose(feats[0].numpy(), [0.5, 0.5, 1.0], atol=1e-6)

        mean = sample_triplane(triplane, positions, reduction="mean")
        self.assertAlmostEqual(mean.item(), 2.0 / 3.0, places=6)

    def test_far_outside_is_zero(self):
        triplane = torch.ones(3, 2, self.size, self.size)
        positions = torch.tensor([[5.0, 0.0, 0.0], [-3.0, 4.0, -7.0]])

        feats = sample_triplane(triplane, positions)
        np.testing.assert_allclose(feats[0].numpy(), [0, 0, 0, 0, 1, 1], atol=1e-6)
        np.testing.assert_allclose(feats[1].numpy(), np.zeros(6), atol=1e-6)

    def test_bilinear_midpoint(self):
        triplane = torch.zeros(3, 1, self.size, self.size)
        triplane[0, 0, 1, 1] = 2.0
        triplane[0, 0, 1, 2] = 4.0
        x = 0.5 * (pixel_center(1, self.size) + pixel_center(2, self.size))
        positions = torch.tensor([[x, pixel_center(1, self.size), 0.0]])

        feats = sample_triplane(triplane, positions)
        self.assertAlmostEqual(feats[0, 0].item(), 3.0, places=6)

    def test_invalid_arguments(self):
        triplane = torch.zeros(3, 2, self.size, self.size)
        with self.assertRaises(ConfigurationError):
            sample_triplane(triplane, torch.zeros(4, 3), reduction="max")
        with self.assertRaises(ConfigurationError):
            sample_triplane(torch.zeros(2, self.size, self.size), torch.zeros(4, 3))
        with self.assertRaises(ConfigurationError):
            sample_triplane(triplane, torch.zeros(4, 2))


class TestTriplaneSampler(unittest.TestCase):
    """Test the sampler wrapper."""

    def test_output_dim(self):
        self.assertEqual(TriplaneSampler("concat").output_dim(40), 120)
        self.assertEqual(TriplaneSampler("mean").output_dim(40), 40)

    def test_call_matches_function(self):
        triplane = torch.randn(3, 3, 8, 8)
        positions = torch.rand(10, 3) * 2 - 1
        sampler = TriplaneSampler("mean")
        self.assertTrue(
            torch.equal(sampler(triplane, positions), sample_triplane(triplane, positions, "mean"))
        )

    def test_invalid_reduction(self):
        with self.assertRaises(ConfigurationError):
            TriplaneSampler("sum")


if __name__ == "__main__":
    unittest.main()
