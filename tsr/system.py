"""Triplane reconstruction pipeline.

Ties a volume decoder, the triplane renderer and the marching cubes helper
together: turntable rendering and mesh extraction for batches of scene codes
(triplanes produced upstream by the image-to-triplane model).
"""

from __future__ import annotations

import logging
import os
import time
from typing import Dict, List, Optional, Union

import numpy as np
import torch
from tqdm import tqdm

from tsr.decoder import NeRFMLP, VolumeDecoder
from tsr.errors import ConfigurationError
from tsr.geometry import get_spherical_cameras
from tsr.isosurface import MarchingCubeHelper
from tsr.mesh import TriMesh, extract_mesh
from tsr.renderer import RendererConfig, TriplaneNeRFRenderer

logger = logging.getLogger(__name__)


class TSRPipeline:
    """Render and mesh triplane scene codes with a shared decoder."""

    def __init__(
        self,
        decoder: VolumeDecoder,
        renderer: Optional[TriplaneNeRFRenderer] = None,
        chunk_cubes: int = 32,
        device: Union[str, torch.device] = "cpu",
        show_progress: bool = True,
    ):
        """Initialize the pipeline.

        Args:
            decoder: Volume decoder shared by rendering and meshing
            renderer: Renderer (defaults to the TripoSR configuration)
            chunk_cubes: Marching cubes chunk size in cubes per axis
            device: Device for rendering and extraction
            show_progress: Display progress bars
        """
        self.device = torch.device(device)
        self.decoder = decoder
        if isinstance(self.decoder, torch.nn.Module):
            self.decoder = self.decoder.to(self.device).eval()
        self.renderer = renderer if renderer is not None else TriplaneNeRFRenderer()

        # Size decoder chunks for this device when a memory budget is configured
        self.renderer.fit_chunk_size(self.device)

        self.chunk_cubes = chunk_cubes
        self.show_progress = show_progress
        self.isosurface_helper: Optional[MarchingCubeHelper] = None
        self.last_mesh_stats: List[Dict] = []

    @classmethod
    def from_config(
        cls,
        config: Dict,
        decoder_path: Optional[str] = None,
        device: Union[str, torch.device] = "cpu",
    ) -> "TSRPipeline":
        """Build a pipeline from a loaded config file.

        Args:
            config: Parsed configuration with 'renderer', 'decoder' and
                'isosurface' sections
            decoder_path: Decoder ``state_dict`` file; random weights if None
            device: Device for rendering and extraction

        Returns:
            Configured pipeline
        """
        # Build the decoder, from weights when given
        decoder_config = config.get("decoder", {})
        if decoder_path is not None:
            decoder = NeRFMLP.from_checkpoint(decoder_path, decoder_config, device=device)
        else:
            logger.warning("No decoder weights given, using randomly initialised decoder")
            decoder = NeRFMLP.from_config(decoder_config)

        # Renderer and isosurface settings
        renderer = TriplaneNeRFRenderer(RendererConfig.from_dict(config.get("renderer", {})))
        isosurface_config = config.get("isosurface", {})

        return cls(
            decoder,
            renderer=renderer,
            chunk_cubes=isosurface_config.get("chunk_cubes", 32),
            device=device,
            show_progress=config.get("show_progress", True),
        )

    @staticmethod
    def load_scene_codes(path: str) -> torch.Tensor:
        """Load triplane scene codes from a ``.npy`` or ``.pt`` file.

        A single triplane (3, C, H, W) is promoted to a batch of one.

        Args:
            path: File path

        Returns:
            Bx3xCxHxW float32 tensor
        """
        ext = os.path.splitext(path)[1].lower()

        # Load from numpy or torch files
        if ext == ".npy":
            scene_codes = torch.from_numpy(np.load(path))
        elif ext in (".pt", ".pth"):
            scene_codes = torch.load(path, map_location="cpu")
        else:
            raise ConfigurationError(f"Unsupported scene code file '{path}', expected .npy or .pt")

        # Validate the shape, promoting a single triplane to a batch
        if not isinstance(scene_codes, torch.Tensor):
            raise ConfigurationError(f"Scene code file {path} does not hold a tensor")
        if scene_codes.ndim == 4:
            scene_codes = scene_codes[None]
        if scene_codes.ndim != 5 or scene_codes.shape[1] != 3:
            raise ConfigurationError(
                f"Expected scene codes of shape (B, 3, C, H, W), got {tuple(scene_codes.shape)}"
            )

        logger.info(f"Loaded {scene_codes.shape[0]} scene codes from {path}")
        return scene_codes.float()

    def set_marching_cubes_resolution(self, resolution: int) -> None:
        # Reuse the helper while the resolution is unchanged
        if (
            self.isosurface_helper is not None
            and self.isosurface_helper.resolution == resolution
        ):
            return
        self.isosurface_helper = MarchingCubeHelper(
            resolution, chunk_cubes=self.chunk_cubes, show_progress=self.show_progress
        )

    def render(
        self,
        scene_codes: torch.Tensor,
        n_views: int,
        elevation_deg: float = 0.0,
        camera_distance: float = 1.9,
        fovy_deg: float = 40.0,
        height: int = 256,
        width: int = 256,
        return_type: str = "pt",
    ) -> List[List[Union[torch.Tensor, np.ndarray]]]:
        """Render every scene from cameras evenly spaced in azimuth.

        Args:
            scene_codes: Bx3xCxHxW triplanes
            n_views: Views per scene
            elevation_deg: Camera elevation in degrees
            camera_distance: Camera distance from the origin
            fovy_deg: Vertical field of view in degrees
            height: Render height
            width: Render width
            return_type: 'pt' for tensors, 'np' for numpy arrays

        Returns:
            Per scene, a list of HxWx4 RGB + opacity renders
        """
        if return_type not in ("pt", "np"):
            raise ConfigurationError(f"Unsupported return_type '{return_type}'")

        start_time = time.perf_counter()

        # Cameras are shared by every scene
        rays_o, rays_d = get_spherical_cameras(
            n_views, elevation_deg, camera_distance, fovy_deg, height, width
        )
        rays_o, rays_d = rays_o.to(self.device), rays_d.to(self.device)
        scene_codes = scene_codes.to(self.device)

        # Render each view of each scene
        images = []
        for scene_idx, scene_code in enumerate(scene_codes):
            images_ = []
            for view_idx in tqdm(
                range(n_views),
                desc=f"Rendering scene {scene_idx}",
                disable=not self.show_progress,
            ):
                image = self.renderer.render(
                    self.decoder, scene_code, rays_o[view_idx], rays_d[view_idx]
                )
                images_.append(image.cpu().numpy() if return_type == "np" else image)
            images.append(images_)

        elapsed_time = time.perf_counter() - start_time
        logger.info(
            f"Rendered {len(images)} scenes x {n_views} views at {width}x{height} "
            f"(elapsed time: {elapsed_time:.2f}s)"
        )
        return images

    def extract_mesh(
        self,
        scene_codes: torch.Tensor,
        has_vertex_color: bool = True,
        resolution: int = 256,
        threshold: float = 25.0,
    ) -> List[TriMesh]:
        """Extract one mesh per scene.

        Args:
            scene_codes: Bx3xCxHxW triplanes
            has_vertex_color: Query per-vertex colours
            resolution: Density grid resolution per axis
            threshold: Density level of the surface

        Returns:
            List of meshes, one per scene
        """
        self.set_marching_cubes_resolution(resolution)
        scene_codes = scene_codes.to(self.device)

        # Extract one mesh per scene, keeping its marching cubes stats
        meshes = []
        self.last_mesh_stats = []
        for scene_idx, scene_code in enumerate(scene_codes):
            logger.info(f"Extracting mesh for scene {scene_idx} at resolution {resolution}")
            mesh = extract_mesh(
                self.renderer,
                self.decoder,
                scene_code,
                self.isosurface_helper,
                threshold=threshold,
                has_vertex_color=has_vertex_color,
            )
            meshes.append(mesh)
            self.last_mesh_stats.append(dict(self.isosurface_helper.last_stats))

        return meshes
