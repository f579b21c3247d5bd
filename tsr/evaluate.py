"""Evaluation metrics and timing for triplane reconstructions.

This module implements geometric accuracy metrics for extracted meshes
(Chamfer distance, F1 score, radial error against an analytic sphere), a
stage timer and the metrics report written by the pipeline script.
"""

from __future__ import annotations

import json
import logging
import os
import time
from typing import Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
import open3d as o3d
from scipy import spatial

logger = logging.getLogger(__name__)


def _nearest_distances(
    pcd_a: np.ndarray, pcd_b: np.ndarray
) -> Tuple[np.ndarray, np.ndarray]:
    """Nearest-neighbour distances a->b and b->a."""
    # Create KDTrees for efficient nearest neighbor search
    tree_a = spatial.KDTree(pcd_a)
    tree_b = spatial.KDTree(pcd_b)

    # Query in both directions
    dist_a_to_b, _ = tree_b.query(pcd_a, k=1)
    dist_b_to_a, _ = tree_a.query(pcd_b, k=1)
    return dist_a_to_b, dist_b_to_a


def chamfer_distance(pcd_est: np.ndarray, pcd_gt: np.ndarray) -> float:
    """Calculate the symmetric Chamfer distance between two point sets.

    Args:
        pcd_est: Estimated points, Nx3 array
        pcd_gt: Reference points, Mx3 array

    Returns:
        Sum of the mean nearest-neighbour distances in both directions
    """
    if len(pcd_est) == 0 or len(pcd_gt) == 0:
        logger.warning("Empty point set provided for Chamfer distance calculation")
        return float("inf")

    est_to_gt, gt_to_est = _nearest_distances(pcd_est[:, :3], pcd_gt[:, :3])

    # Chamfer distance is the sum of the means
    return float(np.mean(est_to_gt) + np.mean(gt_to_est))


def f1_score(pcd_est: np.ndarray, pcd_gt: np.ndarray, threshold: float = 0.01) -> float:
    """Calculate the F1 score of two point sets at a distance threshold.

    Args:
        pcd_est: Estimated points, Nx3 array
        pcd_gt: Reference points, Mx3 array
        threshold: Distance under which a point counts as matched

    Returns:
        F1 score (0 to 1, higher is better)
    """
    if len(pcd_est) == 0 or len(pcd_gt) == 0:
        logger.warning("Empty point set provided for F1 score calculation")
        return 0.0

    est_to_gt, gt_to_est = _nearest_distances(pcd_est[:, :3], pcd_gt[:, :3])

    # Precision: estimated points close to the reference
    precision = float(np.mean(est_to_gt < threshold))

    # Recall: reference points covered by the estimate
    recall = float(np.mean(gt_to_est < threshold))

    if precision + recall == 0:
        return 0.0
    return 2 * precision * recall / (precision + recall)


def mesh_radius_error(
    vertices: np.ndarray,
    radius: float,
    center: Sequence[float] = (0.0, 0.0, 0.0),
) -> Dict[str, float]:
    """Compare mesh vertices against an analytic sphere.

    Args:
        vertices: Vx3 vertex positions
        radius: Sphere radius
        center: Sphere center

    Returns:
        Dictionary with mean/max absolute radial error and the centroid offset
    """
    if len(vertices) == 0:
        logger.warning("Empty mesh provided for radius error calculation")
        return {
            "mean_abs_error": float("inf"),
            "max_abs_error": float("inf"),
            "centroid_offset": float("inf"),
        }

    # Center the vertices on the sphere
    center = np.asarray(center, dtype=np.float64)
    offsets = np.asarray(vertices, dtype=np.float64) - center

    # Radial distance error per vertex
    errors = np.abs(np.linalg.norm(offsets, axis=-1) - radius)

    return {
        "mean_abs_error": float(errors.mean()),
        "max_abs_error": float(errors.max()),
        "centroid_offset": float(np.linalg.norm(offsets.mean(axis=0))),
    }


def load_reference_points(path: str, n_points: int = 10000, seed: int = 0) -> np.ndarray:
    """Load reference surface points for accuracy metrics.

    ``.npy`` files hold an Nx3 point array. Any other file is read as a
    triangle mesh by Open3D and sampled uniformly over its surface.

    Args:
        path: Reference point or mesh file
        n_points: Number of surface samples drawn from a mesh
        seed: Seed for the surface sampling

    Returns:
        Nx3 float64 reference points
    """
    if not os.path.exists(path):
        raise FileNotFoundError(f"Reference file not found: {path}")

    if path.lower().endswith(".npy"):
        points = np.load(path)
        if points.ndim != 2 or points.shape[1] < 3:
            raise ValueError(f"Expected Nx3 reference points in {path}, got shape {points.shape}")
        points = points[:, :3].astype(np.float64)
    else:
        mesh = o3d.io.read_triangle_mesh(path)
        if not mesh.has_triangles():
            raise ValueError(f"Reference mesh {path} has no triangles")

        # Sample the surface uniformly
        o3d.utility.random.seed(seed)
        pcd = mesh.sample_points_uniformly(number_of_points=n_points)
        points = np.asarray(pcd.points)

    logger.info(f"Loaded {len(points)} reference points from {path}")
    return points


class Timer:
    """Stage timer usable as a context manager or lap clock."""

    def __init__(self, name: str = "Timer", logger: Optional[logging.Logger] = None):
        self.name = name
        self.logger = logger or logging.getLogger(__name__)
        self.start_time: Optional[float] = None
        self.end_time: Optional[float] = None
        self._laps: Dict[str, float] = {}
        self._last_lap: Optional[float] = None

    def start(self) -> None:
        self.start_time = time.perf_counter()
        self._last_lap = self.start_time

    def stop(self) -> float:
        """Stop the timer.

        Returns:
            Elapsed time in seconds
        """
        if self.start_time is None:
            self.logger.warning(f"{self.name}: Timer stopped without being started")
            return 0.0

        self.end_time = time.perf_counter()
        elapsed = self.end_time - self.start_time
        self.logger.info(f"{self.name} (elapsed time: {elapsed:.2f}s)")
        return elapsed

    def __enter__(self) -> "Timer":
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.stop()

    def lap(self, name: str) -> float:
        """Record the time since the previous lap (or start) under ``name``."""
        now = time.perf_counter()

        # A lap without start() starts the clock
        if self.start_time is None:
            self.start_time = now
        last = self._last_lap if self._last_lap is not None else self.start_time

        lap_time = now - last
        self._last_lap = now
        self._laps[name] = lap_time

        self.logger.debug(f"{self.name} - {name}: {lap_time:.4f}s")
        return lap_time

    @property
    def timings(self) -> Dict[str, float]:
        return dict(self._laps)

    @property
    def elapsed(self) -> float:
        """Elapsed time so far, without stopping the timer."""
        if self.start_time is None:
            return 0.0
        end = self.end_time if self.end_time is not None else time.perf_counter()
        return end - self.start_time


class ReconstructionMetrics:
    """Collects mesh, render and timing metrics for one pipeline run."""

    def __init__(self):
        self.metrics = {
            "n_scenes": 0,
            "n_vertices": [],
            "n_faces": [],
            "skipped_chunks": [],
            "mean_opacity": [],
            "runtime_s": 0.0,
            "stage_timings": {},
        }

    def update(self, metric_name: str, value: Union[int, float, List, Dict]) -> None:
        self.metrics[metric_name] = value

    def update_stage_timing(self, stage_name: str, time_s: float) -> None:
        self.metrics["stage_timings"][stage_name] = time_s

    def add_mesh(
        self,
        vertices: np.ndarray,
        faces: np.ndarray,
        skipped_chunks: int = 0,
        reference_points: Optional[np.ndarray] = None,
    ) -> None:
        """Record counts for one extracted mesh.

        Args:
            vertices: Vx3 mesh vertices
            faces: Fx3 mesh faces
            skipped_chunks: Marching cubes chunks skipped for this mesh
            reference_points: Optional reference surface samples; adds
                Chamfer distance and F1 score
        """
        self.metrics["n_vertices"].append(int(len(vertices)))
        self.metrics["n_faces"].append(int(len(faces)))
        self.metrics["skipped_chunks"].append(int(skipped_chunks))

        # Accuracy against reference geometry
        if reference_points is not None:
            self.metrics.setdefault("chamfer_distance", []).append(
                chamfer_distance(vertices, reference_points)
            )
            self.metrics.setdefault("f1_score", []).append(f1_score(vertices, reference_points))

    def add_renders(self, renders: Sequence[np.ndarray]) -> None:
        """Record the mean opacity of each view of one scene."""
        self.metrics["mean_opacity"].append(
            [float(np.mean(render[..., 3])) for render in renders]
        )

    def to_dict(self) -> Dict:
        return dict(self.metrics)

    def save(self, output_path: str) -> None:
        """Write the metrics as a JSON report."""
        output_dir = os.path.dirname(output_path)
        if output_dir:
            os.makedirs(output_dir, exist_ok=True)
        with open(output_path, "w") as f:
            json.dump(self.to_dict(), f, indent=2)
        logger.info(f"Metrics report saved to {output_path}")

    def summary(self) -> str:
        """Human-readable summary of the collected metrics."""
        lines = [
            "Reconstruction Metrics:",
            f"  Scenes: {self.metrics['n_scenes']}",
        ]

        # Per-scene mesh sizes
        for i, (n_v, n_f) in enumerate(zip(self.metrics["n_vertices"], self.metrics["n_faces"])):
            lines.append(f"  Scene {i}: {n_v} vertices, {n_f} faces")

        if any(self.metrics["skipped_chunks"]):
            lines.append(f"  Skipped marching cubes chunks: {self.metrics['skipped_chunks']}")

        if "chamfer_distance" in self.metrics:
            values = ", ".join(f"{v:.4f}" for v in self.metrics["chamfer_distance"])
            lines.append(f"  Chamfer distance: {values}")

        if "f1_score" in self.metrics:
            values = ", ".join(f"{v:.4f}" for v in self.metrics["f1_score"])
            lines.append(f"  F1 score: {values}")

        for i, opacities in enumerate(self.metrics["mean_opacity"]):
            if opacities:
                lines.append(f"  Scene {i} mean opacity: {np.mean(opacities):.3f}")

        lines.append(f"  Total runtime: {self.metrics['runtime_s']:.2f}s")

        if self.metrics["stage_timings"]:
            lines.append("  Stage timings:")
            for stage, time_s in self.metrics["stage_timings"].items():
                lines.append(f"    {stage}: {time_s:.2f}s")

        return "\n".join(lines)
