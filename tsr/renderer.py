"""Triplane NeRF volume renderer.

Rays are clipped to the scene cube, sampled at stratified depths, decoded
through the triplane and a volume decoder, and alpha-composited into RGB and
opacity.
"""

from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass, fields
from typing import Callable, Dict, Optional, Union

import torch
import torch.nn.functional as F

from tsr.chunking import ChunkedEvaluator
from tsr.decoder import VolumeDecoder
from tsr.errors import ConfigurationError, RenderError
from tsr.geometry import rays_intersect_bbox, scale_tensor
from tsr.triplane import SUPPORTED_REDUCTIONS, TriplaneSampler

logger = logging.getLogger(__name__)


def trunc_exp(x: torch.Tensor) -> torch.Tensor:
    # Gradient truncation only matters for training; at inference this is exp
    return torch.exp(x)


ACTIVATIONS: Dict[str, Callable[[torch.Tensor], torch.Tensor]] = {
    "trunc_exp": trunc_exp,
    "exp": torch.exp,
    "sigmoid": torch.sigmoid,
    "relu": F.relu,
    "softplus": F.softplus,
    "none": lambda x: x,
}


def get_activation(name: Optional[str]) -> Callable[[torch.Tensor], torch.Tensor]:
    """Look up an activation function by name.

    Args:
        name: Activation name (None is treated as 'none')

    Returns:
        Elementwise activation function
    """
    if name is None:
        name = "none"
    key = name.lower()
    if key not in ACTIVATIONS:
        raise ConfigurationError(
            f"Unknown activation '{name}', expected one of {sorted(ACTIVATIONS)}"
        )
    return ACTIVATIONS[key]


@dataclass
class RendererConfig:
    """Renderer settings.

    Attributes:
        radius: Half extent of the scene cube in world units
        feature_reduction: Triplane reduction, 'concat' or 'mean'
        density_activation: Activation applied to the biased raw density
        density_bias: Offset added to the raw density before activation
        color_activation: Activation applied to the raw colour features
        num_samples_per_ray: Stratified samples per ray
        randomized: Jitter sample depths. Only meaningful for training, so
            inference rejects True; samples always sit at interval midpoints
        chunk_size: Points per decoder chunk (0 disables chunking)
        memory_fraction: Share of free device memory used to size decoder
            chunks; 0 keeps the fixed chunk_size
        bytes_per_point: Estimated peak bytes per decoded point, used with
            memory_fraction
        white_background: Composite onto white instead of black
    """

    radius: float = 0.87
    feature_reduction: str = "concat"
    density_activation: str = "trunc_exp"
    density_bias: float = -1.0
    color_activation: str = "sigmoid"
    num_samples_per_ray: int = 128
    randomized: bool = False
    chunk_size: int = 0
    memory_fraction: float = 0.0
    bytes_per_point: int = 4096
    white_background: bool = False

    def __post_init__(self):
        if self.radius <= 0:
            raise ConfigurationError(f"radius must be positive, got {self.radius}")
        if self.feature_reduction not in SUPPORTED_REDUCTIONS:
            raise ConfigurationError(
                f"Unsupported feature reduction '{self.feature_reduction}', "
                f"expected one of {SUPPORTED_REDUCTIONS}"
            )

        # Unknown activation names raise here rather than at render time
        get_activation(self.density_activation)
        get_activation(self.color_activation)

        if self.num_samples_per_ray < 1:
            raise ConfigurationError(
                f"num_samples_per_ray must be >= 1, got {self.num_samples_per_ray}"
            )
        if self.randomized:
            raise ConfigurationError(
                "randomized sampling is a training option; inference uses midpoint samples"
            )
        if self.chunk_size < 0:
            raise ConfigurationError(
                f"chunk_size must be a non-negative integer (0 for no chunking), got {self.chunk_size}"
            )
        if not 0.0 <= self.memory_fraction <= 1.0:
            raise ConfigurationError(
                f"memory_fraction must be in [0, 1], got {self.memory_fraction}"
            )
        if self.bytes_per_point <= 0:
            raise ConfigurationError(
                f"bytes_per_point must be positive, got {self.bytes_per_point}"
            )

    @classmethod
    def from_dict(cls, config: Optional[Dict] = None) -> "RendererConfig":
        """Build a config from the ``renderer`` config section.

        Unknown keys are rejected so that typos do not silently fall back to
        defaults.
        """
        config = dict(config or {})
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(config) - known)
        if unknown:
            raise ConfigurationError(f"Unknown renderer config keys: {unknown}")
        return cls(**config)

    def to_dict(self) -> Dict:
        return asdict(self)


class TriplaneNeRFRenderer:
    """Volume renderer over triplane scene representations."""

    def __init__(self, config: Optional[RendererConfig] = None):
        self.config = config if config is not None else RendererConfig()
        self.sampler = TriplaneSampler(self.config.feature_reduction)
        self.evaluator = ChunkedEvaluator(self.config.chunk_size, release_memory=True)
        self._density_act = get_activation(self.config.density_activation)
        self._color_act = get_activation(self.config.color_activation)

    @property
    def chunk_size(self) -> int:
        return self.evaluator.chunk_size

    def set_chunk_size(self, chunk_size: int) -> None:
        """Set the number of points decoded per chunk (0 disables chunking)."""
        self.evaluator = ChunkedEvaluator(chunk_size, release_memory=True)

    def fit_chunk_size(self, device: Union[str, torch.device]) -> int:
        """Size decoder chunks from the free memory of ``device``.

        Does nothing unless ``memory_fraction`` is set in the config.

        Returns:
            Chunk size in use
        """
        if self.config.memory_fraction > 0:
            self.evaluator = ChunkedEvaluator.from_memory_budget(
                self.config.bytes_per_point,
                device=device,
                memory_fraction=self.config.memory_fraction,
                release_memory=True,
            )
        return self.chunk_size

    @torch.no_grad()
    def query_triplane(
        self,
        decoder: VolumeDecoder,
        positions: torch.Tensor,
        triplane: torch.Tensor,
    ) -> Dict[str, torch.Tensor]:
        """Decode density and colour at world positions.

        Args:
            decoder: Volume decoder
            positions: World positions of shape (..., 3) within (-radius, radius)
            triplane: 3xCxHxW feature planes of one scene

        Returns:
            Dictionary with 'density', 'density_act', 'features' and 'color',
            each shaped like ``positions`` in the leading dimensions
        """
        input_shape = positions.shape[:-1]
        positions = positions.reshape(-1, 3)

        # Map world positions into the triplane's [-1, 1] range
        positions = scale_tensor(
            positions, (-self.config.radius, self.config.radius), (-1.0, 1.0)
        )

        def _query_chunk(x: torch.Tensor) -> Dict[str, torch.Tensor]:
            feats = self.sampler(triplane, x)
            return decoder(feats)

        # Sample and decode chunk by chunk
        net_out = self.evaluator.evaluate(_query_chunk, positions)

        # Apply output activations
        density = net_out["density"]
        features = net_out["features"]
        out = {
            "density": density,
            "density_act": self._density_act(density + self.config.density_bias),
            "features": features,
            "color": self._color_act(features),
        }
        return {
            key: value.reshape(*input_shape, value.shape[-1]) for key, value in out.items()
        }

    def _forward(
        self,
        decoder: VolumeDecoder,
        triplane: torch.Tensor,
        rays_o: torch.Tensor,
        rays_d: torch.Tensor,
    ) -> torch.Tensor:
        rays_shape = rays_o.shape[:-1]
        rays_o = rays_o.reshape(-1, 3)
        rays_d = rays_d.reshape(-1, 3)
        n_rays = rays_o.shape[0]
        n_samples = self.config.num_samples_per_ray

        # Clip rays to the scene cube
        t_near, t_far, rays_valid = rays_intersect_bbox(rays_o, rays_d, self.config.radius)
        valid_idx = torch.nonzero(rays_valid, as_tuple=False).squeeze(-1)

        # Rays that miss the cube stay zero
        rgb = torch.zeros(n_rays, 3, dtype=rays_o.dtype, device=rays_o.device)
        opacity = torch.zeros(n_rays, dtype=rays_o.dtype, device=rays_o.device)

        if valid_idx.numel() > 0:
            rays_o_v = rays_o[valid_idx]
            rays_d_v = rays_d[valid_idx]
            t_near_v = t_near[valid_idx]
            t_far_v = t_far[valid_idx]

            # Sample depths at interval midpoints between t_near and t_far
            t_vals = torch.linspace(
                0, 1, n_samples + 1, dtype=rays_o.dtype, device=rays_o.device
            )
            t_mid = (t_vals[:-1] + t_vals[1:]) / 2.0
            z_vals = t_near_v[:, None] * (1 - t_mid[None, :]) + t_far_v[:, None] * t_mid[None, :]

            # Sample points along each ray
            xyz = rays_o_v[:, None, :] + z_vals[..., None] * rays_d_v[:, None, :]

            # Decode density and colour at the samples
            out = self.query_triplane(decoder, xyz, triplane)

            # Alpha from density over the normalized interval length
            deltas = (t_vals[1:] - t_vals[:-1])[None, :]
            alpha = 1 - torch.exp(-deltas * out["density_act"][..., 0])

            # Exclusive transmittance, starting at 1 for the first sample
            transmittance = torch.cumprod(1 - alpha[:, :-1] + 1e-10, dim=-1)
            transmittance = torch.cat([torch.ones_like(alpha[:, :1]), transmittance], dim=-1)
            weights = alpha * transmittance

            # Composite and scatter back to the valid rays
            rgb[valid_idx] = (weights[..., None] * out["color"]).sum(dim=1)
            opacity[valid_idx] = weights.sum(dim=1)

        if self.config.white_background:
            rgb = rgb + (1 - opacity[:, None])

        logger.debug(
            f"Rendered {n_rays} rays ({valid_idx.numel()} valid, {n_samples} samples/ray)"
        )
        comp = torch.cat([rgb, opacity[:, None]], dim=-1)
        return comp.reshape(*rays_shape, 4)

    @torch.no_grad()
    def render(
        self,
        decoder: VolumeDecoder,
        triplane: torch.Tensor,
        rays_o: torch.Tensor,
        rays_d: torch.Tensor,
    ) -> torch.Tensor:
        """Render rays through one scene or a batch of scenes.

        Args:
            decoder: Volume decoder
            triplane: 3xCxHxW planes, or Bx3xCxHxW for a batch of scenes
            rays_o: Ray origins (..., 3); batched as (B, ..., 3)
            rays_d: Ray directions (..., 3); not normalized here

        Returns:
            RGB + opacity of shape (..., 4), or (B, ..., 4) for a batch
        """
        if rays_o.shape != rays_d.shape or rays_o.shape[-1] != 3:
            raise ConfigurationError(
                f"Ray origins and directions must share a (..., 3) shape, "
                f"got {tuple(rays_o.shape)} and {tuple(rays_d.shape)}"
            )
        if triplane.ndim not in (4, 5):
            raise ConfigurationError(
                f"Expected a (3, C, H, W) or (B, 3, C, H, W) triplane, got {tuple(triplane.shape)}"
            )

        start_time = time.perf_counter()
        try:
            # One scene, or one ray set per scene in a batch
            if triplane.ndim == 4:
                comp = self._forward(decoder, triplane, rays_o, rays_d)
            else:
                if rays_o.shape[0] != triplane.shape[0]:
                    raise ConfigurationError(
                        f"Batched rendering needs one ray set per scene: "
                        f"{triplane.shape[0]} scenes, {rays_o.shape[0]} ray sets"
                    )
                comp = torch.stack(
                    [
                        self._forward(decoder, triplane[i], rays_o[i], rays_d[i])
                        for i in range(triplane.shape[0])
                    ],
                    dim=0,
                )
        except (torch.cuda.OutOfMemoryError, MemoryError) as e:
            raise RenderError(
                f"Out of memory rendering {tuple(rays_o.shape[:-1])} rays through triplane "
                f"{tuple(triplane.shape)} with chunk_size={self.chunk_size}: {e}"
            ) from e

        logger.debug(f"Render finished (elapsed time: {time.perf_counter() - start_time:.2f}s)")
        return comp
