"""Triangle mesh data model, extraction from triplanes and export.

This module holds the ``TriMesh`` container, the density-grid to mesh path
(query the triplane on a dense grid, run marching cubes, re-query vertex
colours) and export through Open3D.
"""

from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass
from typing import Optional

import numpy as np
import open3d as o3d
import torch

from tsr.decoder import VolumeDecoder
from tsr.errors import MeshError
from tsr.geometry import scale_tensor
from tsr.isosurface import MarchingCubeHelper
from tsr.renderer import TriplaneNeRFRenderer

logger = logging.getLogger(__name__)

SUPPORTED_MESH_FORMATS = (".obj", ".ply", ".off", ".glb", ".gltf", ".stl")


@dataclass
class TriMesh:
    """Indexed triangle mesh with optional per-vertex colours.

    Attributes:
        vertices: Vx3 float32 positions
        faces: Fx3 int64 vertex indices
        vertex_colors: Vx3 float32 colours in [0, 1], or None
    """

    vertices: np.ndarray
    faces: np.ndarray
    vertex_colors: Optional[np.ndarray] = None

    def __post_init__(self):
        # Normalize dtypes and shapes
        self.vertices = np.asarray(self.vertices, dtype=np.float32).reshape(-1, 3)
        self.faces = np.asarray(self.faces, dtype=np.int64).reshape(-1, 3)

        # Faces must index existing vertices
        n_vertices = self.vertices.shape[0]
        if self.faces.size > 0:
            if self.faces.min() < 0 or self.faces.max() >= n_vertices:
                raise MeshError(
                    f"Face indices must lie in [0, {n_vertices}), "
                    f"got range [{self.faces.min()}, {self.faces.max()}]"
                )

        # One colour per vertex
        if self.vertex_colors is not None:
            self.vertex_colors = np.asarray(self.vertex_colors, dtype=np.float32)
            if self.vertex_colors.shape != (n_vertices, 3):
                raise MeshError(
                    f"Expected vertex colours of shape ({n_vertices}, 3), "
                    f"got {self.vertex_colors.shape}"
                )

    @classmethod
    def from_tensors(
        cls,
        vertices: torch.Tensor,
        faces: torch.Tensor,
        vertex_colors: Optional[torch.Tensor] = None,
    ) -> "TriMesh":
        return cls(
            vertices=vertices.detach().cpu().numpy(),
            faces=faces.detach().cpu().numpy(),
            vertex_colors=None if vertex_colors is None else vertex_colors.detach().cpu().numpy(),
        )

    @property
    def n_vertices(self) -> int:
        return int(self.vertices.shape[0])

    @property
    def n_faces(self) -> int:
        return int(self.faces.shape[0])

    @property
    def is_empty(self) -> bool:
        return self.n_faces == 0

    def to_open3d(self, orientation_fix: bool = True) -> o3d.geometry.TriangleMesh:
        """Convert to an Open3D triangle mesh.

        Args:
            orientation_fix: Map (x, y, z) to (-y, z, x) so that the z-up
                scene frame becomes y-up

        Returns:
            Open3D triangle mesh
        """
        # Reorient from the z-up scene frame
        vertices = self.vertices.astype(np.float64)
        if orientation_fix:
            vertices = np.stack([-vertices[:, 1], vertices[:, 2], vertices[:, 0]], axis=-1)

        mesh = o3d.geometry.TriangleMesh()
        mesh.vertices = o3d.utility.Vector3dVector(vertices)
        mesh.triangles = o3d.utility.Vector3iVector(self.faces.astype(np.int32))
        if self.vertex_colors is not None:
            mesh.vertex_colors = o3d.utility.Vector3dVector(
                np.clip(self.vertex_colors, 0.0, 1.0).astype(np.float64)
            )
        return mesh

    def export(self, output_path: str, **kwargs) -> bool:
        return save_mesh(self, output_path, **kwargs)


def extract_mesh(
    renderer: TriplaneNeRFRenderer,
    decoder: VolumeDecoder,
    triplane: torch.Tensor,
    helper: MarchingCubeHelper,
    threshold: float = 25.0,
    has_vertex_color: bool = True,
) -> TriMesh:
    """Extract a mesh from one scene's triplane.

    The activated density is queried on the helper's grid, marching cubes
    runs on ``-(density - threshold)`` at level 0, and vertices are mapped
    back to world units. Vertex colours are queried at the world vertex
    positions in a second chunked evaluation.

    Args:
        renderer: Renderer providing triplane queries
        decoder: Volume decoder
        triplane: 3xCxHxW planes of one scene
        helper: Marching cubes helper fixing the grid resolution
        threshold: Density level of the surface
        has_vertex_color: Query per-vertex colours

    Returns:
        Extracted mesh (possibly empty)
    """
    start_time = time.perf_counter()
    radius = renderer.config.radius
    device = triplane.device

    # Query density on the grid in world units
    grid = helper.grid_vertices.to(device=device, dtype=triplane.dtype)
    grid_world = scale_tensor(grid, helper.points_range, (-radius, radius))
    density = renderer.query_triplane(decoder, grid_world, triplane)["density_act"]
    density_time = time.perf_counter() - start_time
    logger.info(
        f"Queried density on {helper.resolution}^3 grid (elapsed time: {density_time:.2f}s)"
    )

    # Marching cubes treats values below the level as inside
    v_pos, t_pos_idx = helper(-(density - threshold), threshold=0.0)
    # Map vertices back to world units
    v_pos = scale_tensor(v_pos, helper.points_range, (-radius, radius))

    # Query vertex colours at the final positions
    vertex_colors = None
    if has_vertex_color:
        if v_pos.shape[0] > 0:
            vertex_colors = renderer.query_triplane(decoder, v_pos.to(triplane.dtype), triplane)[
                "color"
            ]
        else:
            vertex_colors = torch.zeros(0, 3, device=device)

    mesh = TriMesh.from_tensors(v_pos, t_pos_idx, vertex_colors)

    elapsed_time = time.perf_counter() - start_time
    logger.info(
        f"Mesh extraction complete: {mesh.n_vertices} vertices, {mesh.n_faces} faces "
        f"(elapsed time: {elapsed_time:.2f}s)"
    )
    if mesh.is_empty:
        logger.warning(f"No surface found at density threshold {threshold}")

    return mesh


def save_mesh(
    mesh: TriMesh,
    output_path: str,
    orientation_fix: bool = True,
    cleanup: bool = False,
) -> bool:
    """Save mesh to file.

    The format follows the file extension. OBJ files carry vertex colours on
    the ``v`` lines and 1-based face indices.

    Args:
        mesh: Mesh to save
        output_path: Output file path
        orientation_fix: Apply the (x, y, z) -> (-y, z, x) axis change
        cleanup: Merge duplicated vertices and drop degenerate triangles

    Returns:
        True if successful, False otherwise
    """
    ext = os.path.splitext(output_path)[1].lower()
    if ext not in SUPPORTED_MESH_FORMATS:
        raise MeshError(
            f"Unsupported mesh format '{ext}' for {output_path}, "
            f"expected one of {SUPPORTED_MESH_FORMATS}"
        )

    # Convert to Open3D and optionally merge duplicates
    o3d_mesh = mesh.to_open3d(orientation_fix=orientation_fix)
    if cleanup:
        o3d_mesh.remove_duplicated_vertices()
        o3d_mesh.remove_degenerate_triangles()
        o3d_mesh.remove_duplicated_triangles()
        o3d_mesh.remove_unreferenced_vertices()

    # Create output directory if needed
    output_dir = os.path.dirname(output_path)
    if output_dir:
        os.makedirs(output_dir, exist_ok=True)

    try:
        ok = o3d.io.write_triangle_mesh(
            output_path,
            o3d_mesh,
            write_vertex_normals=False,
            write_vertex_colors=mesh.vertex_colors is not None,
        )
    except RuntimeError as e:
        logger.error(f"Failed to save mesh: {e}")
        return False

    if ok:
        logger.info(f"Mesh saved to {output_path}")
    else:
        logger.error(f"Failed to save mesh to {output_path}")
    return bool(ok)
