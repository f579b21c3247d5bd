#!/usr/bin/env python3
"""
Triplane Reconstruction Pipeline

This script renders turntable views and extracts textured meshes from
triplane scene codes produced by an image-to-triplane model, using a trained
volume decoder.
"""

from __future__ import annotations

import argparse
import datetime
import logging
import os
import sys
from pathlib import Path
from typing import Dict, Optional

import numpy as np
import torch
import yaml

# Add parent directory to path
sys.path.append(str(Path(__file__).resolve().parent.parent))

from tsr import evaluate, visualise
from tsr.system import TSRPipeline


# Set up logging
logging.basicConfig(
    level=logging.INFO,
    format="[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s",
    handlers=[
        logging.StreamHandler(),
    ],
)
logger = logging.getLogger("pipeline")


def load_config(config_path: Optional[str] = None) -> Dict:
    """Load configuration from YAML file.

    Args:
        config_path: Path to configuration file

    Returns:
        Configuration dictionary
    """
    if config_path is None:
        config_path = Path(__file__).resolve().parent.parent / "config.yaml"

    with open(config_path, "r") as f:
        config = yaml.safe_load(f)

    return config or {}


def run_pipeline(
    scene_codes_path: str,
    output_dir: str,
    decoder_path: Optional[str] = None,
    config_path: Optional[str] = None,
    resolution: Optional[int] = None,
    threshold: Optional[float] = None,
    n_views: Optional[int] = None,
    has_vertex_color: bool = True,
    visualise_results: bool = False,
    device: Optional[str] = None,
    reference_path: Optional[str] = None,
) -> Dict:
    """Render and mesh every scene in a scene code file.

    Args:
        scene_codes_path: Path to a .npy/.pt file with triplane scene codes
        output_dir: Path to output directory
        decoder_path: Path to decoder weights (random weights if None)
        config_path: Path to configuration file
        resolution: Marching cubes grid resolution (overrides config)
        threshold: Density iso level (overrides config)
        n_views: Turntable views per scene, 0 to skip rendering (overrides config)
        has_vertex_color: Query per-vertex colours
        visualise_results: Save density slices, a turntable video and a mesh preview
        device: Torch device (defaults to CUDA when available)
        reference_path: Reference mesh or .npy points in the exported frame;
            adds Chamfer distance and F1 score to the report

    Returns:
        Dictionary of reconstruction metrics
    """
    pipeline_timer = evaluate.Timer("Pipeline")
    pipeline_timer.start()

    os.makedirs(output_dir, exist_ok=True)

    file_handler = logging.FileHandler(os.path.join(output_dir, "log.txt"))
    file_handler.setFormatter(logging.Formatter("[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s"))
    logging.getLogger().addHandler(file_handler)

    config = load_config(config_path)
    render_config = config.get("render", {})
    mesh_config = config.get("mesh", {})
    isosurface_config = config.get("isosurface", {})

    if resolution is None:
        resolution = isosurface_config.get("resolution", 256)
    if threshold is None:
        threshold = isosurface_config.get("threshold", 25.0)
    if n_views is None:
        n_views = render_config.get("n_views", 30)
    if device is None:
        device = "cuda" if torch.cuda.is_available() else "cpu"
    logger.info(f"Running on {device}")

    metrics = evaluate.ReconstructionMetrics()

    # Reference geometry for accuracy metrics
    reference_points = None
    if reference_path is not None:
        reference_points = evaluate.load_reference_points(reference_path)

    # === Stage 1: Load Model and Scene Codes ===
    with evaluate.Timer("Load Model") as timer:
        pipeline = TSRPipeline.from_config(config, decoder_path=decoder_path, device=device)
        scene_codes = TSRPipeline.load_scene_codes(scene_codes_path)
    metrics.update_stage_timing("load_model", timer.elapsed)
    metrics.update("n_scenes", int(scene_codes.shape[0]))

    # === Stage 2: Render Turntable Views ===
    if n_views > 0:
        with evaluate.Timer("Render Views") as timer:
            renders = pipeline.render(
                scene_codes,
                n_views=n_views,
                elevation_deg=render_config.get("elevation_deg", 0.0),
                camera_distance=render_config.get("camera_distance", 1.9),
                fovy_deg=render_config.get("fovy_deg", 40.0),
                height=render_config.get("height", 256),
                width=render_config.get("width", 256),
                return_type="np",
            )
        metrics.update_stage_timing("render", timer.elapsed)

        for scene_idx, scene_renders in enumerate(renders):
            scene_dir = os.path.join(output_dir, f"{scene_idx}")
            visualise.save_renders(scene_renders, scene_dir)
            metrics.add_renders(scene_renders)
            if visualise_results:
                visualise.save_turntable_video(
                    scene_renders, os.path.join(scene_dir, "render.mp4"),
                    fps=render_config.get("fps", 30),
                )

    # === Stage 3: Extract Meshes ===
    with evaluate.Timer("Extract Mesh") as timer:
        meshes = pipeline.extract_mesh(
            scene_codes,
            has_vertex_color=has_vertex_color,
            resolution=resolution,
            threshold=threshold,
        )
    metrics.update_stage_timing("extract_mesh", timer.elapsed)

    # === Stage 4: Save Results ===
    with evaluate.Timer("Save Results") as timer:
        for scene_idx, (mesh_obj, stats) in enumerate(zip(meshes, pipeline.last_mesh_stats)):
            scene_dir = os.path.join(output_dir, f"{scene_idx}")
            os.makedirs(scene_dir, exist_ok=True)

            # Save mesh
            orientation_fix = mesh_config.get("orientation_fix", True)
            mesh_file = os.path.join(scene_dir, f"mesh.{mesh_config.get('format', 'obj')}")
            mesh_obj.export(
                mesh_file,
                orientation_fix=orientation_fix,
                cleanup=mesh_config.get("cleanup", False),
            )

            # Compare against the reference in the exported frame
            vertices = mesh_obj.vertices
            if reference_points is not None and orientation_fix:
                vertices = np.asarray(mesh_obj.to_open3d(orientation_fix=True).vertices)
            metrics.add_mesh(
                vertices,
                mesh_obj.faces,
                skipped_chunks=len(stats.get("skipped_chunks", [])),
                reference_points=reference_points,
            )

            # Density slices and mesh preview
            if visualise_results:
                grid = pipeline.isosurface_helper.grid_vertices.to(device)
                radius = pipeline.renderer.config.radius
                density = pipeline.renderer.query_triplane(
                    pipeline.decoder, grid * radius, scene_codes[scene_idx].to(device)
                )["density_act"]
                visualise.save_density_slices(
                    density.reshape(resolution, resolution, resolution),
                    os.path.join(scene_dir, "density_slices.png"),
                    threshold=threshold,
                )
                if not mesh_obj.is_empty:
                    visualise.show_mesh(
                        mesh_obj,
                        save_path=os.path.join(scene_dir, "mesh.png"),
                        interactive=False,
                    )

        metrics.update("runtime_s", pipeline_timer.elapsed)
        metrics.update("datetime", datetime.datetime.now().isoformat())
        metrics.save(os.path.join(output_dir, "report.json"))
    metrics.update_stage_timing("save_results", timer.elapsed)

    logger.info("\n" + metrics.summary())

    logging.getLogger().removeHandler(file_handler)
    file_handler.close()

    return metrics.to_dict()


def main():
    """Main function to parse arguments and run the pipeline."""
    parser = argparse.ArgumentParser(description="Triplane Reconstruction Pipeline")
    parser.add_argument(
        "--scene-codes", "-s", dest="scene_codes", required=True,
        help="Path to triplane scene codes (.npy or .pt, shape [B, 3, C, H, W])"
    )
    parser.add_argument(
        "--decoder", "-m", dest="decoder_path", default=None,
        help="Path to decoder state_dict (.pt)"
    )
    parser.add_argument(
        "--output", "-o", dest="output_dir", default="results/run1",
        help="Path to output directory"
    )
    parser.add_argument(
        "--config", "-c", dest="config_path", default=None,
        help="Path to configuration file"
    )
    parser.add_argument(
        "--resolution", "-r", type=int, default=None,
        help="Marching cubes grid resolution"
    )
    parser.add_argument(
        "--threshold", "-t", type=float, default=None,
        help="Density threshold of the extracted surface"
    )
    parser.add_argument(
        "--n-views", "-n", dest="n_views", type=int, default=None,
        help="Number of turntable views to render (0 to skip)"
    )
    parser.add_argument(
        "--no-vertex-color", dest="vertex_color", action="store_false",
        help="Do not query per-vertex colours"
    )
    parser.add_argument(
        "--reference", "-g", dest="reference_path", default=None,
        help="Reference mesh or .npy points for Chamfer distance and F1 score"
    )
    parser.add_argument(
        "--device", "-d", default=None,
        help="Torch device (default: cuda if available)"
    )
    parser.add_argument(
        "--visualise", "-v", dest="visualise", action="store_true",
        help="Save density slices, turntable videos and mesh previews"
    )

    args = parser.parse_args()

    try:
        run_pipeline(
            args.scene_codes,
            args.output_dir,
            decoder_path=args.decoder_path,
            config_path=args.config_path,
            resolution=args.resolution,
            threshold=args.threshold,
            n_views=args.n_views,
            has_vertex_color=args.vertex_color,
            visualise_results=args.visualise,
            device=args.device,
            reference_path=args.reference_path,
        )
    except Exception as e:
        logger.exception(f"Error running pipeline: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
