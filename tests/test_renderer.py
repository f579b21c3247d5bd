"""Tests for the triplane volume renderer.

This module checks compositing against closed-form cases, chunking and batch
equivalence, and configuration validation.
"""

import sys
import unittest
from pathlib import Path
from unittest import mock

import numpy as np
import torch

# Add parent directory to path
sys.path.append(str(Path(__file__).resolve().parent.parent))

from tsr.chunking import DEFAULT_CHUNK_SIZE
from tsr.decoder import NeRFMLP, VolumeDecoder
from tsr.errors import ConfigurationError, RenderError
from tsr.renderer import RendererConfig, TriplaneNeRFRenderer, get_activation
from tsr.triplane import TriplaneSampler


class ConstantDecoder:
    """Decoder returning the same raw density and colour everywhere."""

    def __init__(self, density: float, color_logit=(0.0, 0.0, 0.0)):
        self.density = density
        self.color_logit = torch.tensor(color_logit)
        self.n_calls = 0

    def __call__(self, features):
        self.n_calls += 1
        n = features.shape[0]
        return {
            "density": torch.full((n, 1), self.density, dtype=features.dtype),
            "features": self.color_logit.to(features.dtype).expand(n, 3),
        }


class FailingDecoder:
    def __call__(self, features):
        raise torch.cuda.OutOfMemoryError("simulated allocation failure")


def axis_rays(n_rays: int = 4, offset: float = 2.0):
    """Rays along +x through the scene cube, spread in y."""
    ys = torch.linspace(-0.5, 0.5, n_rays)
    rays_o = torch.stack([torch.full_like(ys, -offset), ys, torch.zeros_like(ys)], dim=-1)
    rays_d = torch.tensor([[1.0, 0.0, 0.0]]).expand(n_rays, 3).clone()
    return rays_o, rays_d


class TestCompositing(unittest.TestCase):
    """Test alpha compositing against closed-form results."""

    def setUp(self):
        self.triplane = torch.zeros(3, 4, 8, 8)
        self.rays_o, self.rays_d = axis_rays()

    def test_zero_density_is_transparent(self):
        renderer = TriplaneNeRFRenderer(RendererConfig(density_activation="relu"))
        comp = renderer.render(ConstantDecoder(0.0), self.triplane, self.rays_o, self.rays_d)

        self.assertEqual(comp.shape, (4, 4))
        self.assertTrue(torch.equal(comp, torch.zeros(4, 4)))

    def test_opaque_first_sample_occludes(self):
        """A huge density saturates at the first sample: opacity 1, rgb = colour."""
        renderer = TriplaneNeRFRenderer(RendererConfig(density_activation="relu"))
        decoder = ConstantDecoder(1e5, color_logit=(0.0, 2.0, -2.0))
        comp = renderer.render(decoder, self.triplane, self.rays_o, self.rays_d)

        expected_rgb = torch.sigmoid(torch.tensor([0.0, 2.0, -2.0]))
        for row in comp:
            np.testing.assert_allclose(row[:3].numpy(), expected_rgb.numpy(), atol=1e-5)
            self.assertAlmostEqual(row[3].item(), 1.0, places=5)

    def test_constant_density_closed_form(self):
        """Uniform density gives opacity 1 - exp(-sigma) over the unit t range."""
        sigma = 1.5
        config = RendererConfig(density_activation="none", density_bias=0.0, num_samples_per_ray=64)
        renderer = TriplaneNeRFRenderer(config)
        comp = renderer.render(ConstantDecoder(sigma), self.triplane, self.rays_o, self.rays_d)

        np.testing.assert_allclose(
            comp[:, 3].numpy(), np.full(4, 1.0 - np.exp(-sigma)), atol=1e-4
        )
        np.testing.assert_allclose(comp[:, 0].numpy(), 0.5 * comp[:, 3].numpy(), atol=1e-6)

    def test_conservation(self):
        """Opacity stays in [0, 1] and colour never exceeds opacity."""
        torch.manual_seed(0)
        decoder = NeRFMLP(in_channels=12, n_neurons=16, n_hidden_layers=2)
        triplane = torch.randn(3, 4, 8, 8) * 3
        rays_o, rays_d = axis_rays(16)

        comp = TriplaneNeRFRenderer().render(decoder, triplane, rays_o, rays_d)
        opacity = comp[:, 3]
        self.assertTrue(bool((opacity >= 0).all()))
        self.assertTrue(bool((opacity <= 1 + 1e-5).all()))
        self.assertTrue(bool((comp[:, :3] <= opacity[:, None] + 1e-5).all()))
        self.assertTrue(bool((comp[:, :3] >= 0).all()))

    def test_invalid_rays_are_zero_and_not_decoded(self):
        rays_o = torch.tensor([[-2.0, 5.0, 0.0], [2.0, 0.0, 0.0]])
        rays_d = torch.tensor([[1.0, 0.0, 0.0], [1.0, 0.0, 0.0]])
        decoder = ConstantDecoder(100.0)

        comp = TriplaneNeRFRenderer().render(decoder, self.triplane, rays_o, rays_d)
        self.assertTrue(torch.equal(comp, torch.zeros(2, 4)))
        self.assertEqual(decoder.n_calls, 0)

    def test_white_background(self):
        config = RendererConfig(density_activation="relu", white_background=True)
        renderer = TriplaneNeRFRenderer(config)
        comp = renderer.render(ConstantDecoder(0.0), self.triplane, self.rays_o, self.rays_d)

        np.testing.assert_allclose(comp[:, :3].numpy(), np.ones((4, 3)))
        np.testing.assert_allclose(comp[:, 3].numpy(), np.zeros(4))

    def test_output_keeps_ray_shape(self):
        rays_o = self.rays_o.reshape(2, 2, 3)
        rays_d = self.rays_d.reshape(2, 2, 3)
        comp = TriplaneNeRFRenderer().render(ConstantDecoder(1.0), self.triplane, rays_o, rays_d)
        self.assertEqual(comp.shape, (2, 2, 4))


class TestChunkingAndBatching(unittest.TestCase):
    """Test that chunk size and scene batching do not change results."""

    def setUp(self):
        torch.manual_seed(0)
        self.decoder = NeRFMLP(in_channels=12, n_neurons=16, n_hidden_layers=3)
        self.triplane = torch.randn(3, 4, 16, 16)
        self.rays_o, self.rays_d = axis_rays(3)
        self.config = RendererConfig(num_samples_per_ray=8)

    def test_chunk_sizes_match(self):
        renderer = TriplaneNeRFRenderer(self.config)
        reference = renderer.render(self.decoder, self.triplane, self.rays_o, self.rays_d)

        n_points = 3 * 8
        for chunk_size in [1, n_points // 2 + 1, n_points]:
            renderer.set_chunk_size(chunk_size)
            comp = renderer.render(self.decoder, self.triplane, self.rays_o, self.rays_d)
            np.testing.assert_allclose(
                comp.numpy(), reference.numpy(), atol=1e-5, err_msg=f"chunk_size={chunk_size}"
            )

    def test_device_memory_released_between_chunks(self):
        renderer = TriplaneNeRFRenderer(self.config)
        renderer.set_chunk_size(5)
        with mock.patch("tsr.chunking.release_device_memory") as release:
            renderer.render(self.decoder, self.triplane, self.rays_o, self.rays_d)

        # 3 rays x 8 samples in chunks of 5
        self.assertEqual(release.call_count, 5)
        self.assertEqual(release.call_args[0][0], torch.device("cpu"))

    def test_memory_budgeted_chunk_size(self):
        renderer = TriplaneNeRFRenderer(RendererConfig(chunk_size=64))
        self.assertEqual(renderer.fit_chunk_size("cpu"), 64)

        renderer = TriplaneNeRFRenderer(RendererConfig(chunk_size=64, memory_fraction=0.5))
        self.assertEqual(renderer.fit_chunk_size("cpu"), DEFAULT_CHUNK_SIZE)
        self.assertTrue(renderer.evaluator.release_memory)

    def test_sampler_follows_config(self):
        renderer = TriplaneNeRFRenderer(RendererConfig(num_samples_per_ray=8, feature_reduction="mean"))
        self.assertEqual(renderer.sampler.reduction, "mean")

        decoder = NeRFMLP(in_channels=4, n_neurons=16, n_hidden_layers=3)
        calls = []

        def sampler(triplane, positions):
            calls.append(positions.shape[0])
            return TriplaneSampler("mean")(triplane, positions)

        renderer.sampler = sampler
        comp = renderer.render(decoder, self.triplane, self.rays_o, self.rays_d)
        self.assertEqual(comp.shape, (3, 4))
        self.assertEqual(sum(calls), 3 * 8)

    def test_batched_scenes_match_single_scenes(self):
        renderer = TriplaneNeRFRenderer(self.config)
        triplanes = torch.stack([self.triplane, -self.triplane], dim=0)
        rays_o = torch.stack([self.rays_o, self.rays_o.flip(0)], dim=0)
        rays_d = torch.stack([self.rays_d, self.rays_d], dim=0)

        batched = renderer.render(self.decoder, triplanes, rays_o, rays_d)
        self.assertEqual(batched.shape, (2, 3, 4))
        for i in range(2):
            single = renderer.render(self.decoder, triplanes[i], rays_o[i], rays_d[i])
            np.testing.assert_allclose(batched[i].numpy(), single.numpy(), atol=1e-6)

    def test_batched_ray_count_mismatch(self):
        triplanes = torch.stack([self.triplane, self.triplane], dim=0)
        with self.assertRaises(ConfigurationError):
            TriplaneNeRFRenderer().render(self.decoder, triplanes, self.rays_o, self.rays_d)

    def test_query_triplane_outputs(self):
        renderer = TriplaneNeRFRenderer(self.config)
        positions = torch.rand(5, 7, 3) * 1.6 - 0.8
        out = renderer.query_triplane(self.decoder, positions, self.triplane)

        self.assertEqual(set(out), {"density", "density_act", "features", "color"})
        self.assertEqual(out["density"].shape, (5, 7, 1))
        self.assertEqual(out["color"].shape, (5, 7, 3))
        torch.testing.assert_close(out["density_act"], torch.exp(out["density"] - 1.0))
        torch.testing.assert_close(out["color"], torch.sigmoid(out["features"]))


class TestRendererConfig(unittest.TestCase):
    """Test configuration validation."""

    def test_defaults(self):
        config = RendererConfig()
        self.assertEqual(config.radius, 0.87)
        self.assertEqual(config.num_samples_per_ray, 128)
        self.assertEqual(config.density_bias, -1.0)
        self.assertFalse(config.white_background)

    def test_from_dict(self):
        config = RendererConfig.from_dict({"radius": 1.0, "feature_reduction": "mean"})
        self.assertEqual(config.radius, 1.0)
        self.assertEqual(config.feature_reduction, "mean")
        self.assertEqual(config.to_dict()["color_activation"], "sigmoid")

    def test_invalid_values(self):
        with self.assertRaises(ConfigurationError):
            RendererConfig(density_activation="gelu")
        with self.assertRaises(ConfigurationError):
            RendererConfig(feature_reduction="max")
        with self.assertRaises(ConfigurationError):
            RendererConfig(chunk_size=-1)
        with self.assertRaises(ConfigurationError):
            RendererConfig(num_samples_per_ray=0)
        with self.assertRaises(ConfigurationError):
            RendererConfig.from_dict({"radius": 0.87, "samples": 64})
        with self.assertRaises(ConfigurationError):
            TriplaneNeRFRenderer().set_chunk_size(-8)
        with self.assertRaises(ConfigurationError):
            RendererConfig(memory_fraction=1.5)
        with self.assertRaises(ConfigurationError):
            RendererConfig(bytes_per_point=0)

    def test_randomized_sampling_rejected(self):
        with self.assertRaises(ConfigurationError):
            RendererConfig(randomized=True)
        self.assertFalse(RendererConfig.from_dict({"randomized": False}).randomized)

    def test_activations(self):
        x = torch.tensor([-1.0, 0.0, 2.0])
        torch.testing.assert_close(get_activation("trunc_exp")(x), torch.exp(x))
        torch.testing.assert_close(get_activation("none")(x), x)
        torch.testing.assert_close(get_activation(None)(x), x)
        with self.assertRaises(ConfigurationError):
            get_activation("tanh")


class TestRenderErrors(unittest.TestCase):
    """Test render-time error reporting."""

    def test_out_of_memory_becomes_render_error(self):
        rays_o, rays_d = axis_rays()
        with self.assertRaises(RenderError) as ctx:
            TriplaneNeRFRenderer().render(FailingDecoder(), torch.zeros(3, 4, 8, 8), rays_o, rays_d)
        self.assertIn("chunk_size", str(ctx.exception))

    def test_mismatched_rays(self):
        with self.assertRaises(ConfigurationError):
            TriplaneNeRFRenderer().render(
                ConstantDecoder(0.0), torch.zeros(3, 4, 8, 8), torch.zeros(4, 3), torch.zeros(5, 3)
            )

    def test_decoder_protocol(self):
        self.assertIsInstance(ConstantDecoder(0.0), VolumeDecoder)
        self.assertIsInstance(NeRFMLP(), VolumeDecoder)


if __name__ == "__main__":
    unittest.main()
