"""Triplane feature sampling.

A triplane stores three axis-aligned feature planes (XY, XZ, YZ). A 3D point is
projected onto each plane, the planes are bilinearly sampled and the three
feature vectors are reduced to a single per-point feature.
"""

from __future__ import annotations

import logging
from typing import Tuple

import torch
import torch.nn.functional as F

from tsr.errors import ConfigurationError

logger = logging.getLogger(__name__)

SUPPORTED_REDUCTIONS = ("concat", "mean")

# Coordinate pairs projected onto planes 0, 1 and 2
PLANE_AXES: Tuple[Tuple[int, int], ...] = ((0, 1), (0, 2), (1, 2))


def _check_reduction(reduction: str) -> None:
    if reduction not in SUPPORTED_REDUCTIONS:
        raise ConfigurationError(
            f"Unsupported feature reduction '{reduction}', expected one of {SUPPORTED_REDUCTIONS}"
        )


def sample_triplane(
    triplane: torch.Tensor,
    positions: torch.Tensor,
    reduction: str = "concat",
) -> torch.Tensor:
    """Sample per-point features from a triplane.

    Planes are sampled bilinearly with ``align_corners=False`` and zero
    padding, so positions outside [-1, 1] fade to zero instead of raising.

    Args:
        triplane: 3xCxHxW feature planes (XY, XZ, YZ)
        positions: Nx3 positions in normalized [-1, 1] coordinates
        reduction: 'concat' for Nx3C features (plane-major) or 'mean' for NxC

    Returns:
        Per-point feature tensor
    """
    # Validate inputs
    _check_reduction(reduction)
    if triplane.ndim != 4 or triplane.shape[0] != 3:
        raise ConfigurationError(
            f"Expected a triplane of shape (3, C, H, W), got {tuple(triplane.shape)}"
        )
    if positions.ndim != 2 or positions.shape[-1] != 3:
        raise ConfigurationError(f"Expected Nx3 positions, got {tuple(positions.shape)}")

    n_points = positions.shape[0]
    n_channels = triplane.shape[1]

    # grid_sample takes (x, y) pairs where x indexes width and y indexes height
    grid = torch.stack([positions[:, list(axes)] for axes in PLANE_AXES], dim=0)
    grid = grid.view(3, 1, n_points, 2).to(triplane.dtype)

    out = F.grid_sample(
        triplane,
        grid,
        mode="bilinear",
        padding_mode="zeros",
        align_corners=False,
    )
    # (3, C, 1, N) -> (3, N, C)
    out = out.view(3, n_channels, n_points).permute(0, 2, 1)

    # Reduce the three plane features
    if reduction == "concat":
        return out.permute(1, 0, 2).reshape(n_points, 3 * n_channels)
    return out.mean(dim=0)


class TriplaneSampler:
    """Callable triplane sampler with a fixed reduction mode."""

    def __init__(self, reduction: str = "concat"):
        _check_reduction(reduction)
        self.reduction = reduction

    def output_dim(self, n_channels: int) -> int:
        """Feature width produced for a triplane with ``n_channels`` channels."""
        return 3 * n_channels if self.reduction == "concat" else n_channels

    def __call__(self, triplane: torch.Tensor, positions: torch.Tensor) -> torch.Tensor:
        return sample_triplane(triplane, positions, reduction=self.reduction)

    def __repr__(self) -> str:
        return f"TriplaneSampler(reduction='{self.reduction}')"
