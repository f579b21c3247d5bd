"""Visualization utilities for rendered views, density fields and meshes."""

from __future__ import annotations

import logging
import os
from typing import List, Optional, Sequence, Tuple, Union

import cv2
import matplotlib.pyplot as plt
import numpy as np
import open3d as o3d
import torch

from tsr.mesh import TriMesh

logger = logging.getLogger(__name__)


def _to_numpy(array: Union[np.ndarray, torch.Tensor]) -> np.ndarray:
    if isinstance(array, torch.Tensor):
        return array.detach().cpu().numpy()
    return np.asarray(array)


def render_to_image(
    render: Union[np.ndarray, torch.Tensor],
    background: Optional[Tuple[float, float, float]] = None,
    keep_alpha: bool = False,
) -> np.ndarray:
    """Convert an HxWx4 float render to an 8-bit image.

    Args:
        render: RGB + opacity render with values in [0, 1]
        background: Composite onto this RGB colour using the opacity
        keep_alpha: Return RGBA instead of RGB

    Returns:
        HxWx3 (or HxWx4) uint8 RGB(A) image
    """
    render = _to_numpy(render).astype(np.float32)
    if render.ndim != 3 or render.shape[-1] != 4:
        raise ValueError(f"Expected an HxWx4 render, got shape {render.shape}")

    # Split colour and opacity
    rgb, alpha = render[..., :3], render[..., 3:4]
    # Composite onto the background colour
    if background is not None:
        rgb = rgb + (1.0 - alpha) * np.asarray(background, dtype=np.float32)

    image = np.concatenate([rgb, alpha], axis=-1) if keep_alpha else rgb

    # Quantize to 8 bits
    return (np.clip(image, 0.0, 1.0) * 255.0 + 0.5).astype(np.uint8)


def save_render(
    render: Union[np.ndarray, torch.Tensor],
    output_path: str,
    background: Optional[Tuple[float, float, float]] = None,
) -> None:
    """Save a render as an image; PNG keeps the opacity as alpha.

    Args:
        render: HxWx4 RGB + opacity render
        output_path: Output image path
        background: Composite colour for formats without alpha
    """
    # PNG keeps opacity as alpha
    keep_alpha = output_path.lower().endswith(".png") and background is None
    image = render_to_image(render, background=background, keep_alpha=keep_alpha)
    code = cv2.COLOR_RGBA2BGRA if keep_alpha else cv2.COLOR_RGB2BGR

    # OpenCV expects BGR channel order
    if not cv2.imwrite(output_path, cv2.cvtColor(image, code)):
        raise IOError(f"Failed to write image {output_path}")
    logger.debug(f"Render saved to {output_path}")


def save_renders(
    renders: Sequence[Union[np.ndarray, torch.Tensor]],
    output_dir: str,
    prefix: str = "render",
) -> List[str]:
    """Save a sequence of views as numbered PNG files.

    Returns:
        Paths of the written images
    """
    os.makedirs(output_dir, exist_ok=True)
    paths = []
    for i, render in enumerate(renders):
        path = os.path.join(output_dir, f"{prefix}_{i:03d}.png")
        save_render(render, path)
        paths.append(path)
    logger.info(f"Saved {len(paths)} renders to {output_dir}")
    return paths


def save_turntable_video(
    renders: Sequence[Union[np.ndarray, torch.Tensor]],
    output_path: str,
    fps: int = 30,
    background: Tuple[float, float, float] = (1.0, 1.0, 1.0),
) -> None:
    """Write turntable views as an MP4 video.

    Args:
        renders: HxWx4 renders, one per frame
        output_path: Output video path
        fps: Frames per second
        background: Composite colour for transparent pixels
    """
    if not renders:
        logger.warning("No renders provided for turntable video")
        return

    # Composite every frame onto the background
    frames = [render_to_image(render, background=background) for render in renders]
    height, width = frames[0].shape[:2]

    writer = cv2.VideoWriter(
        output_path, cv2.VideoWriter_fourcc(*"mp4v"), fps, (width, height)
    )
    try:
        for frame in frames:
            writer.write(cv2.cvtColor(frame, cv2.COLOR_RGB2BGR))
    finally:
        writer.release()

    logger.info(f"Turntable video ({len(frames)} frames) saved to {output_path}")


def save_density_slices(
    field: Union[np.ndarray, torch.Tensor],
    output_path: str,
    threshold: Optional[float] = None,
    colormap: str = "viridis",
) -> None:
    """Plot the three central axis-aligned slices of a density field.

    Args:
        field: RxRxR density field indexed [x, y, z]
        output_path: Path to save the figure
        threshold: Draw this iso level as a contour when given
        colormap: Matplotlib colormap name
    """
    field = _to_numpy(field)
    if field.ndim != 3:
        raise ValueError(f"Expected a 3D field, got shape {field.shape}")

    # Central slice along each axis
    slices = [
        ("x", field[field.shape[0] // 2, :, :], ("z", "y")),
        ("y", field[:, field.shape[1] // 2, :], ("z", "x")),
        ("z", field[:, :, field.shape[2] // 2], ("y", "x")),
    ]

    # Plot slices with a shared colour range
    fig, axs = plt.subplots(1, 3, figsize=(15, 5))
    vmin, vmax = float(field.min()), float(field.max())

    for ax, (axis_name, data, (xlabel, ylabel)) in zip(axs, slices):
        im = ax.imshow(data, cmap=colormap, vmin=vmin, vmax=vmax, origin="lower")
        # Draw the iso level
        if threshold is not None and data.min() < threshold < data.max():
            ax.contour(data, levels=[threshold], colors="red", linewidths=1)
        ax.set_title(f"{axis_name} = center")
        ax.set_xlabel(xlabel)
        ax.set_ylabel(ylabel)

    fig.colorbar(im, ax=axs, fraction=0.02, pad=0.02, label="Density")
    plt.savefig(output_path, dpi=150, bbox_inches="tight")
    plt.close(fig)

    logger.info(f"Density slices saved to {output_path}")


def show_mesh(
    mesh: TriMesh,
    save_path: Optional[str] = None,
    window_size: Tuple[int, int] = (1280, 720),
    interactive: bool = True,
) -> None:
    """Display a mesh in an Open3D window.

    Args:
        mesh: Mesh to display
        save_path: Path to save a screenshot (optional)
        window_size: Visualization window size
        interactive: Run the interactive viewer loop
    """
    # Prepare the mesh for display
    o3d_mesh = mesh.to_open3d(orientation_fix=True)
    o3d_mesh.compute_vertex_normals()
    if mesh.vertex_colors is None:
        o3d_mesh.paint_uniform_color(plt.cm.viridis(0.6)[:3])

    # Create visualization window
    vis = o3d.visualization.Visualizer()
    vis.create_window(width=window_size[0], height=window_size[1], visible=interactive)
    vis.add_geometry(o3d.geometry.TriangleMesh.create_coordinate_frame(size=0.5))
    vis.add_geometry(o3d_mesh)

    view_control = vis.get_view_control()
    view_control.set_zoom(0.7)

    # Set rendering options
    opt = vis.get_render_option()
    opt.background_color = np.array([0.1, 0.1, 0.1])
    opt.mesh_show_back_face = True

    vis.poll_events()
    vis.update_renderer()

    # Capture screenshot if requested
    if save_path is not None:
        vis.capture_screen_image(save_path)
        logger.info(f"Mesh preview saved to {save_path}")

    if interactive:
        vis.run()
    vis.destroy_window()
