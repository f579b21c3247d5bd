"""Chunked marching cubes isosurface extraction.

The cube grid is split into sub-grids of ``chunk_cubes`` cubes per axis. Each
sub-grid is processed in one vectorised pass on the field's device: every cube
emits one vertex per crossed edge and the triangles listed in the triangle
table. Output slots come from a prefix sum over per-cube counts, so results
are deterministic and do not depend on the chunk size.
"""

from __future__ import annotations

import logging
import time
from typing import Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
import torch
from tqdm import tqdm

from tsr.chunking import as_device_tensor, release_device_memory
from tsr.errors import ConfigurationError
from tsr.mc_tables import (
    CORNER_OFFSETS,
    EDGE_CORNERS,
    EDGE_TABLE,
    MAX_TRIANGLES_PER_CUBE,
    TRI_TABLE,
)

logger = logging.getLogger(__name__)

Bounds = Tuple[Sequence[float], Sequence[float]]

DEFAULT_BOUNDS: Bounds = ((-1.0, -1.0, -1.0), (1.0, 1.0, 1.0))

# Edge endpoint values closer than this interpolate to the edge midpoint
INTERP_EPS = 1e-5


class _DeviceTables:
    """Marching cubes tables as tensors on one device."""

    def __init__(self, device: torch.device):
        self.edge_table = torch.tensor(EDGE_TABLE, dtype=torch.int64, device=device)

        # Pad triangle rows to a fixed width with -1
        padded = torch.full((256, 3 * MAX_TRIANGLES_PER_CUBE), -1, dtype=torch.int64)
        for code, row in enumerate(TRI_TABLE):
            if row:
                padded[code, : len(row)] = torch.tensor(row, dtype=torch.int64)
        self.tri_table = padded.to(device)

        self.corner_offsets = torch.tensor(CORNER_OFFSETS, dtype=torch.int64, device=device)
        self.edge_corners = torch.tensor(EDGE_CORNERS, dtype=torch.int64, device=device)
        self.corner_weights = (2 ** torch.arange(8, dtype=torch.int64)).to(device)
        self.edge_bits = torch.arange(12, dtype=torch.int64, device=device)


class MarchingCubes:
    """Chunked, vectorised marching cubes on a dense scalar field.

    A corner is inside the surface when its value is below ``threshold``.
    Vertices are not deduplicated: neighbouring cubes each emit their own copy
    of a shared edge vertex.
    """

    def __init__(self, chunk_cubes: int = 32, show_progress: bool = False):
        """Initialize the extractor.

        Args:
            chunk_cubes: Cubes per axis in one processing chunk
            show_progress: Display a progress bar over chunks
        """
        if chunk_cubes < 1:
            raise ConfigurationError(f"chunk_cubes must be >= 1, got {chunk_cubes}")
        self.chunk_cubes = chunk_cubes
        self.show_progress = show_progress
        self.last_stats: Dict = {}
        self._tables: Dict[str, _DeviceTables] = {}

    def _get_tables(self, device: torch.device) -> _DeviceTables:
        key = str(device)
        if key not in self._tables:
            self._tables[key] = _DeviceTables(device)
        return self._tables[key]

    def _process_chunk(
        self,
        field: torch.Tensor,
        origin: Tuple[int, int, int],
        size: Tuple[int, int, int],
        threshold: float,
        tables: _DeviceTables,
    ) -> Tuple[torch.Tensor, torch.Tensor]:
        """Run one sub-grid of cubes.

        Returns vertices in grid index units and chunk-local face indices.
        """
        (x0, y0, z0), (nx, ny, nz) = origin, size

        # Sub-grid of corner samples, one point wider than the cubes
        sub = field[x0:x0 + nx + 1, y0:y0 + ny + 1, z0:z0 + nz + 1]

        # Gather the 8 corner values of every cube
        corner_values = torch.stack(
            [sub[dx:dx + nx, dy:dy + ny, dz:dz + nz] for dx, dy, dz in CORNER_OFFSETS],
            dim=-1,
        ).reshape(-1, 8)

        # Cube code: one bit per inside corner
        codes = ((corner_values < threshold).long() * tables.corner_weights).sum(dim=-1)
        edge_masks = tables.edge_table[codes]

        # Keep cubes the surface passes through
        active = torch.nonzero(edge_masks, as_tuple=False).squeeze(-1)
        if active.numel() == 0:
            return (
                torch.zeros(0, 3, dtype=field.dtype, device=field.device),
                torch.zeros(0, 3, dtype=torch.int64, device=field.device),
            )

        codes = codes[active]
        corner_values = corner_values[active]
        # Crossed edges per active cube
        crossed = ((edge_masks[active][:, None] >> tables.edge_bits[None, :]) & 1).bool()

        # Row-major prefix sum gives every (cube, edge) crossing its output slot
        slots = torch.cumsum(crossed.reshape(-1).long(), dim=0).reshape(crossed.shape) - 1

        # Endpoint values of every crossed edge
        cube_idx, edge_idx = torch.nonzero(crossed, as_tuple=True)
        corner_a = tables.edge_corners[edge_idx, 0]
        corner_b = tables.edge_corners[edge_idx, 1]
        value_a = corner_values[cube_idx, corner_a]
        value_b = corner_values[cube_idx, corner_b]

        # Linear interpolation, midpoint on flat edges
        delta = value_b - value_a
        flat = delta.abs() < INTERP_EPS
        t = torch.where(
            flat,
            torch.full_like(delta, 0.5),
            (threshold - value_a) / torch.where(flat, torch.ones_like(delta), delta),
        )

        # Cube position in the full grid
        cube_lin = active[cube_idx]
        cube_pos = torch.stack(
            [
                cube_lin // (ny * nz) + x0,
                (cube_lin // nz) % ny + y0,
                cube_lin % nz + z0,
            ],
            dim=-1,
        )
        # Vertex positions in grid index units
        offset_a = tables.corner_offsets[corner_a]
        offset_b = tables.corner_offsets[corner_b]
        vertices = (cube_pos + offset_a).to(field.dtype) + t[:, None] * (offset_b - offset_a).to(
            field.dtype
        )

        # Faces reference the slots of their crossed edges
        tri_edges = tables.tri_table[codes]
        tri_valid = tri_edges >= 0
        faces = torch.gather(slots, 1, tri_edges.clamp(min=0))[tri_valid].reshape(-1, 3)

        return vertices, faces

    @torch.no_grad()
    def extract(
        self,
        field: Union[np.ndarray, torch.Tensor],
        threshold: float = 0.0,
        bounds: Bounds = DEFAULT_BOUNDS,
    ) -> Tuple[torch.Tensor, torch.Tensor]:
        """Extract the ``threshold`` isosurface of a dense field.

        Args:
            field: RxRxR scalar field; ``field[ix, iy, iz]`` is the sample at
                grid point (x_ix, y_iy, z_iz)
            threshold: Iso level
            bounds: ((min_x, min_y, min_z), (max_x, max_y, max_z)) covered by
                the grid corners

        Returns:
            Tuple of (vertices [V, 3] float32, faces [F, 3] int64) on the
            field's device; empty arrays when nothing crosses the level
        """
        # Validate the field and bounds
        field = as_device_tensor(field)
        if field.ndim != 3:
            raise ConfigurationError(f"Expected a 3D field, got shape {tuple(field.shape)}")
        field = field.to(torch.float32)

        bound_min = torch.tensor(bounds[0], dtype=torch.float32, device=field.device)
        bound_max = torch.tensor(bounds[1], dtype=torch.float32, device=field.device)
        if bound_min.shape != (3,) or bound_max.shape != (3,) or bool((bound_max <= bound_min).any()):
            raise ConfigurationError(f"Invalid bounds {bounds}")

        start_time = time.perf_counter()
        device = field.device
        n_cubes = [max(s - 1, 0) for s in field.shape]

        # Chunk origins in cube units
        origins = [
            (x, y, z)
            for x in range(0, n_cubes[0], self.chunk_cubes)
            for y in range(0, n_cubes[1], self.chunk_cubes)
            for z in range(0, n_cubes[2], self.chunk_cubes)
        ]

        tables = self._get_tables(device)
        all_vertices: List[torch.Tensor] = []
        all_faces: List[torch.Tensor] = []
        skipped: List[Tuple[int, int, int]] = []
        n_vertices = 0

        for origin in tqdm(
            origins,
            desc="Marching cubes",
            disable=not self.show_progress,
            leave=False,
        ):
            # Last chunk along an axis may be smaller
            size = tuple(min(self.chunk_cubes, n - o) for o, n in zip(origin, n_cubes))
            try:
                vertices, faces = self._process_chunk(field, origin, size, threshold, tables)
            except (torch.cuda.OutOfMemoryError, MemoryError) as e:
                logger.warning(f"Skipping marching cubes chunk at {origin} (size {size}): {e}")
                skipped.append(origin)
                release_device_memory(device)
                continue

            # Offset chunk-local faces by the vertices emitted so far
            if vertices.shape[0] > 0:
                all_vertices.append(vertices)
                all_faces.append(faces + n_vertices)
                n_vertices += vertices.shape[0]

            if device.type == "cuda":
                torch.cuda.synchronize(device)

        # Concatenate chunk outputs
        if all_vertices:
            vertices = torch.cat(all_vertices, dim=0)
            faces = torch.cat(all_faces, dim=0)
        else:
            vertices = torch.zeros(0, 3, dtype=torch.float32, device=device)
            faces = torch.zeros(0, 3, dtype=torch.int64, device=device)

        # Grid index -> bounds
        denom = torch.tensor(
            [max(s - 1, 1) for s in field.shape], dtype=torch.float32, device=device
        )
        vertices = bound_min + vertices / denom * (bound_max - bound_min)

        elapsed = time.perf_counter() - start_time
        self.last_stats = {
            "n_chunks": len(origins),
            "skipped_chunks": skipped,
            "n_vertices": int(vertices.shape[0]),
            "n_faces": int(faces.shape[0]),
            "elapsed": elapsed,
        }

        if skipped:
            logger.warning(
                f"Marching cubes skipped {len(skipped)}/{len(origins)} chunks; mesh is partial"
            )
        logger.debug(
            f"Marching cubes on {tuple(field.shape)} field: {vertices.shape[0]} vertices, "
            f"{faces.shape[0]} faces in {len(origins)} chunks (elapsed time: {elapsed:.2f}s)"
        )
        return vertices, faces

    __call__ = extract


class MarchingCubeHelper:
    """Marching cubes over a fixed-resolution grid spanning [-1, 1]^3."""

    points_range: Tuple[float, float] = (-1.0, 1.0)

    def __init__(self, resolution: int, chunk_cubes: int = 32, show_progress: bool = False):
        if resolution < 2:
            raise ConfigurationError(f"Isosurface resolution must be >= 2, got {resolution}")
        self.resolution = resolution
        self.extractor = MarchingCubes(chunk_cubes=chunk_cubes, show_progress=show_progress)
        self._grid_vertices: Optional[torch.Tensor] = None

    @property
    def grid_vertices(self) -> torch.Tensor:
        """Grid points as an (R^3, 3) tensor, x slowest and z fastest."""
        if self._grid_vertices is None:
            # Built once and cached
            x, y, z = (
                torch.linspace(*self.points_range, self.resolution),
                torch.linspace(*self.points_range, self.resolution),
                torch.linspace(*self.points_range, self.resolution),
            )
            x, y, z = torch.meshgrid(x, y, z, indexing="ij")
            self._grid_vertices = torch.stack([x, y, z], dim=-1).reshape(-1, 3)
        return self._grid_vertices

    @property
    def last_stats(self) -> Dict:
        return self.extractor.last_stats

    def __call__(
        self, level: torch.Tensor, threshold: float = 0.0
    ) -> Tuple[torch.Tensor, torch.Tensor]:
        """Extract the isosurface of values sampled at ``grid_vertices``.

        Args:
            level: R^3 values (flat or RxRxR) in ``grid_vertices`` order
            threshold: Iso level

        Returns:
            Tuple of (vertices in [-1, 1]^3, faces)
        """
        r = self.resolution
        if level.numel() != r ** 3:
            raise ConfigurationError(
                f"Expected {r ** 3} level values for resolution {r}, got {level.numel()}"
            )
        lo, hi = self.points_range
        return self.extractor.extract(
            level.reshape(r, r, r), threshold=threshold, bounds=((lo, lo, lo), (hi, hi, hi))
        )


def sphere_density_field(
    resolution: int,
    radius: float = 0.4,
    scale: float = 100.0,
    center: Sequence[float] = (0.0, 0.0, 0.0),
    device: Optional[Union[str, torch.device]] = None,
) -> torch.Tensor:
    """Synthetic density of a sphere on the [-1, 1]^3 grid.

    Positive inside, negative outside: ``(radius - |p - center|) * scale``.

    Args:
        resolution: Grid points per axis
        radius: Sphere radius
        scale: Density scale
        center: Sphere center
        device: Device of the returned tensor

    Returns:
        RxRxR density field in ``MarchingCubeHelper.grid_vertices`` order
    """
    # Distance from the center on the helper grid
    helper = MarchingCubeHelper(resolution)
    points = helper.grid_vertices
    if device is not None:
        points = points.to(device)
    center_t = torch.tensor(center, dtype=points.dtype, device=points.device)
    dist = torch.linalg.norm(points - center_t, dim=-1)
    return ((radius - dist) * scale).reshape(resolution, resolution, resolution)
