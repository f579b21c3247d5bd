"""Ray geometry for triplane volume rendering.

This module implements the ray/bounding-box intersection used to clip rays to
the scene cube, range rescaling of coordinates, and the camera helpers that
generate rays for spherical turntable views.
"""

from __future__ import annotations

import logging
import math
from typing import Optional, Tuple, Union

import torch
import torch.nn.functional as F

from tsr.errors import ConfigurationError

logger = logging.getLogger(__name__)

# Direction components smaller than this are replaced to avoid division by zero
DIRECTION_EPS = 1e-6

# Relative shrink of the bounding cube against grazing rays
RADIUS_SHRINK = 1e-3


def scale_tensor(
    dat: torch.Tensor,
    inp_scale: Tuple[float, float],
    tgt_scale: Tuple[float, float],
) -> torch.Tensor:
    """Linearly map values from one range to another.

    Args:
        dat: Input tensor
        inp_scale: Source range (min, max)
        tgt_scale: Target range (min, max)

    Returns:
        Rescaled tensor
    """
    if inp_scale[1] == inp_scale[0]:
        raise ConfigurationError(f"Degenerate input range {inp_scale}")

    # Normalize to [0, 1], then map to the target range
    dat = (dat - inp_scale[0]) / (inp_scale[1] - inp_scale[0])
    return dat * (tgt_scale[1] - tgt_scale[0]) + tgt_scale[0]


def rays_intersect_bbox(
    rays_o: torch.Tensor,
    rays_d: torch.Tensor,
    radius: float,
    near: float = 0.0,
    valid_thresh: float = 0.01,
) -> Tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
    """Intersect rays with the axis-aligned cube [-radius, radius]^3.

    Uses the slab method. Rays whose clipped segment is not longer than
    ``valid_thresh`` (including rays that miss the cube) are flagged invalid.

    Args:
        rays_o: Nx3 ray origins
        rays_d: Nx3 ray directions (need not be normalized)
        radius: Half extent of the cube
        near: Lower bound for the entry distance
        valid_thresh: Minimum segment length for a ray to be valid

    Returns:
        Tuple of (t_near [N], t_far [N], valid [N] bool)
    """
    if rays_o.shape != rays_d.shape or rays_o.shape[-1] != 3:
        raise ConfigurationError(
            f"Expected matching Nx3 ray origins and directions, "
            f"got {tuple(rays_o.shape)} and {tuple(rays_d.shape)}"
        )

    # Keep the sign of tiny components so the slab bounds stay ordered
    rays_d_valid = torch.where(
        rays_d.abs() < DIRECTION_EPS,
        torch.where(
            rays_d >= 0,
            torch.full_like(rays_d, DIRECTION_EPS),
            torch.full_like(rays_d, -DIRECTION_EPS),
        ),
        rays_d,
    )

    # Shrink the cube slightly so samples stay inside the planes
    radius = (1.0 - RADIUS_SHRINK) * radius
    bound_max = torch.full((3,), radius, dtype=rays_o.dtype, device=rays_o.device)
    bound_min = -bound_max

    # Slab entry and exit distances per axis
    inter_0 = (bound_max - rays_o) / rays_d_valid
    inter_1 = (bound_min - rays_o) / rays_d_valid
    t_near_axis = torch.minimum(inter_0, inter_1)
    t_far_axis = torch.maximum(inter_0, inter_1)

    # Entry is the last slab entered, exit the first slab left
    t_near = t_near_axis.max(dim=-1).values.clamp(min=near)
    t_far = t_far_axis.min(dim=-1).values

    # Rays that miss or only graze the cube are invalid
    rays_valid = (t_far - t_near) > valid_thresh

    logger.debug(f"Ray/box intersection: {int(rays_valid.sum())}/{rays_o.shape[0]} rays valid")
    return t_near, t_far, rays_valid


def get_ray_directions(
    H: int,
    W: int,
    focal: Union[float, Tuple[float, float]],
    principal: Optional[Tuple[float, float]] = None,
    use_pixel_centers: bool = True,
    normalize: bool = True,
) -> torch.Tensor:
    """Get ray directions for all pixels in camera coordinates.

    The camera looks down -z with +y up (OpenGL convention).

    Args:
        H: Image height
        W: Image width
        focal: Focal length in pixels, scalar or (fx, fy)
        principal: Principal point (cx, cy), defaults to the image center
        use_pixel_centers: Offset pixel coordinates by 0.5
        normalize: Normalize directions to unit length

    Returns:
        HxWx3 direction tensor
    """
    pixel_center = 0.5 if use_pixel_centers else 0.0

    # Expand scalar focal length and default principal point
    if isinstance(focal, (int, float)):
        fx, fy = float(focal), float(focal)
    else:
        fx, fy = focal
    if principal is None:
        cx, cy = W / 2, H / 2
    else:
        cx, cy = principal

    # Pixel grid, i along width and j along height
    i, j = torch.meshgrid(
        torch.arange(W, dtype=torch.float32) + pixel_center,
        torch.arange(H, dtype=torch.float32) + pixel_center,
        indexing="xy",
    )

    # Camera space: +x right, +y up, looking down -z
    directions = torch.stack([(i - cx) / fx, -(j - cy) / fy, -torch.ones_like(i)], dim=-1)

    if normalize:
        directions = F.normalize(directions, dim=-1)

    return directions


def get_rays(
    directions: torch.Tensor,
    c2w: torch.Tensor,
    keepdim: bool = False,
    normalize: bool = False,
) -> Tuple[torch.Tensor, torch.Tensor]:
    """Rotate camera-space directions into world space.

    Args:
        directions: Camera-space directions, (H, W, 3) or (B, H, W, 3)
        c2w: Camera-to-world matrices, (4, 4) or (B, 4, 4)
        keepdim: Keep the image dimensions instead of flattening to Nx3
        normalize: Normalize world-space directions

    Returns:
        Tuple of (rays_o, rays_d)
    """
    # Rotate directions by c2w and broadcast the camera origin
    if directions.ndim == 3:
        if c2w.ndim == 2:
            rays_d = (directions[:, :, None, :] * c2w[None, None, :3, :3]).sum(-1)
            rays_o = c2w[None, None, :3, 3].expand(rays_d.shape)
        elif c2w.ndim == 3:
            rays_d = (directions[None, :, :, None, :] * c2w[:, None, None, :3, :3]).sum(-1)
            rays_o = c2w[:, None, None, :3, 3].expand(rays_d.shape)
        else:
            raise ConfigurationError(f"Invalid c2w shape {tuple(c2w.shape)}")
    elif directions.ndim == 4:
        if c2w.ndim != 3:
            raise ConfigurationError(
                f"Batched directions need (B, 4, 4) c2w, got {tuple(c2w.shape)}"
            )
        rays_d = (directions[:, :, :, None, :] * c2w[:, None, None, :3, :3]).sum(-1)
        rays_o = c2w[:, None, None, :3, 3].expand(rays_d.shape)
    else:
        raise ConfigurationError(f"Invalid directions shape {tuple(directions.shape)}")

    if normalize:
        rays_d = F.normalize(rays_d, dim=-1)

    if not keepdim:
        rays_o, rays_d = rays_o.reshape(-1, 3), rays_d.reshape(-1, 3)

    return rays_o, rays_d


def get_spherical_cameras(
    n_views: int,
    elevation_deg: float,
    camera_distance: float,
    fovy_deg: float,
    height: int,
    width: int,
) -> Tuple[torch.Tensor, torch.Tensor]:
    """Generate rays for cameras evenly spaced in azimuth around the origin.

    Right-handed world frame with x back, y right, z up; cameras look at the
    origin with +z as the up vector.

    Args:
        n_views: Number of views
        elevation_deg: Elevation angle in degrees
        camera_distance: Distance from the origin
        fovy_deg: Vertical field of view in degrees
        height: Image height
        width: Image width

    Returns:
        Tuple of (rays_o, rays_d), each of shape (n_views, height, width, 3)
    """
    if n_views <= 0:
        raise ConfigurationError(f"n_views must be positive, got {n_views}")

    # Evenly spaced azimuths, endpoint excluded
    azimuth_deg = torch.linspace(0, 360.0, n_views + 1)[:n_views]
    elevation_deg = torch.full_like(azimuth_deg, elevation_deg)
    camera_distances = torch.full_like(elevation_deg, camera_distance)

    elevation = elevation_deg * math.pi / 180
    azimuth = azimuth_deg * math.pi / 180

    # Camera positions on the sphere around the origin
    camera_positions = torch.stack(
        [
            camera_distances * torch.cos(elevation) * torch.cos(azimuth),
            camera_distances * torch.cos(elevation) * torch.sin(azimuth),
            camera_distances * torch.sin(elevation),
        ],
        dim=-1,
    )

    center = torch.zeros_like(camera_positions)
    up = torch.tensor([0, 0, 1], dtype=torch.float32)[None, :].repeat(n_views, 1)

    fovy = torch.full_like(elevation_deg, fovy_deg) * math.pi / 180

    # Look-at frame with +z up
    lookat = F.normalize(center - camera_positions, dim=-1)
    right = F.normalize(torch.cross(lookat, up, dim=-1), dim=-1)
    up = F.normalize(torch.cross(right, lookat, dim=-1), dim=-1)

    # Camera-to-world matrices
    c2w3x4 = torch.cat(
        [torch.stack([right, up, -lookat], dim=-1), camera_positions[:, :, None]],
        dim=-1,
    )
    c2w = torch.cat([c2w3x4, torch.zeros_like(c2w3x4[:, :1])], dim=1)
    c2w[:, 3, 3] = 1.0

    # Scale unit-focal directions by the focal length from fovy
    focal_length = 0.5 * height / torch.tan(0.5 * fovy)
    directions_unit_focal = get_ray_directions(H=height, W=width, focal=1.0, normalize=False)
    directions = directions_unit_focal[None, :, :, :].repeat(n_views, 1, 1, 1)
    directions[:, :, :, :2] = directions[:, :, :, :2] / focal_length[:, None, None, None]

    rays_o, rays_d = get_rays(directions, c2w, keepdim=True, normalize=True)

    logger.debug(
        f"Spherical cameras: {n_views} views, elevation={float(elevation_deg[0]):.1f} deg, "
        f"distance={camera_distance:.2f}, fovy={fovy_deg:.1f} deg"
    )
    return rays_o, rays_d
