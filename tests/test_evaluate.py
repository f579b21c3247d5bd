"""Tests for evaluation metrics and timing utilities."""

import json
import os
import shutil
import sys
import tempfile
import time
import unittest
from pathlib import Path

import numpy as np
import open3d as o3d

# Add parent directory to path
sys.path.append(str(Path(__file__).resolve().parent.parent))

from tsr import evaluate


def sample_sphere_points(n_points, radius, seed=0):
    """Points spread uniformly over a sphere surface."""
    rng = np.random.default_rng(seed)
    points = rng.normal(size=(n_points, 3))
    points /= np.linalg.norm(points, axis=-1, keepdims=True)
    return points * radius


class TestMetrics(unittest.TestCase):
    """Test point set metrics."""

    def setUp(self):
        self.points = sample_sphere_points(500, radius=0.5, seed=1)

    def test_identical_sets(self):
        self.assertAlmostEqual(evaluate.chamfer_distance(self.points, self.points), 0.0)
        self.assertAlmostEqual(evaluate.f1_score(self.points, self.points), 1.0)

    def test_shifted_sets(self):
        shifted = self.points + np.array([0.1, 0.0, 0.0])
        self.assertGreater(evaluate.chamfer_distance(shifted, self.points), 0.0)
        self.assertLess(evaluate.f1_score(shifted, self.points, threshold=0.01), 1.0)

    def test_empty_sets(self):
        empty = np.zeros((0, 3))
        self.assertEqual(evaluate.chamfer_distance(empty, self.points), float("inf"))
        self.assertEqual(evaluate.f1_score(self.points, empty), 0.0)

    def test_radius_error(self):
        errors = evaluate.mesh_radius_error(self.points, 0.5)
        self.assertLess(errors["max_abs_error"], 1e-9)
        self.assertLess(errors["centroid_offset"], 0.1)

        errors = evaluate.mesh_radius_error(self.points * 1.1, 0.5)
        self.assertAlmostEqual(errors["mean_abs_error"], 0.05, places=6)


class TestReferencePoints(unittest.TestCase):
    """Test loading reference geometry."""

    def setUp(self):
        self.output_dir = tempfile.mkdtemp()

    def tearDown(self):
        shutil.rmtree(self.output_dir)

    def test_load_npy_points(self):
        path = os.path.join(self.output_dir, "points.npy")
        np.save(path, np.ones((20, 6), dtype=np.float32))
        points = evaluate.load_reference_points(path)
        self.assertEqual(points.shape, (20, 3))
        self.assertEqual(points.dtype, np.float64)

    def test_sample_reference_mesh(self):
        path = os.path.join(self.output_dir, "sphere.ply")
        sphere = o3d.geometry.TriangleMesh.create_sphere(radius=0.5, resolution=40)
        self.assertTrue(o3d.io.write_triangle_mesh(path, sphere))

        points = evaluate.load_reference_points(path, n_points=2000)
        self.assertEqual(points.shape, (2000, 3))
        errors = evaluate.mesh_radius_error(points, 0.5)
        self.assertLess(errors["max_abs_error"], 0.01)

    def test_invalid_reference(self):
        with self.assertRaises(FileNotFoundError):
            evaluate.load_reference_points(os.path.join(self.output_dir, "missing.ply"))

        path = os.path.join(self.output_dir, "points.npy")
        np.save(path, np.ones(5))
        with self.assertRaises(ValueError):
            evaluate.load_reference_points(path)


class TestTimer(unittest.TestCase):
    """Test the stage timer."""

    def test_context_manager(self):
        with evaluate.Timer("sleep") as timer:
            time.sleep(0.01)
        self.assertGreaterEqual(timer.elapsed, 0.01)
        # Stopped timers keep their elapsed time
        elapsed = timer.elapsed
        time.sleep(0.01)
        self.assertEqual(timer.elapsed, elapsed)

    def test_laps(self):
        timer = evaluate.Timer("laps")
        timer.start()
        timer.lap("first")
        timer.lap("second")
        self.assertEqual(list(timer.timings), ["first", "second"])

    def test_stop_without_start(self):
        self.assertEqual(evaluate.Timer().stop(), 0.0)


class TestReconstructionMetrics(unittest.TestCase):
    """Test the metrics report."""

    def setUp(self):
        self.output_dir = tempfile.mkdtemp()

    def tearDown(self):
        shutil.rmtree(self.output_dir)

    def test_report(self):
        metrics = evaluate.ReconstructionMetrics()
        metrics.update("n_scenes", 1)
        points = sample_sphere_points(100, radius=0.5)
        metrics.add_mesh(points, np.zeros((10, 3), dtype=np.int64), reference_points=points)
        metrics.add_renders([np.ones((4, 4, 4)), np.zeros((4, 4, 4))])
        metrics.update_stage_timing("render", 1.5)

        path = os.path.join(self.output_dir, "report.json")
        metrics.save(path)
        with open(path, "r") as f:
            report = json.load(f)

        self.assertEqual(report["n_vertices"], [100])
        self.assertEqual(report["n_faces"], [10])
        self.assertEqual(report["mean_opacity"], [[1.0, 0.0]])
        self.assertAlmostEqual(report["f1_score"][0], 1.0)
        self.assertEqual(report["stage_timings"]["render"], 1.5)

        summary = metrics.summary()
        self.assertIn("Scene 0: 100 vertices, 10 faces", summary)
        self.assertIn("render: 1.50s", summary)


if __name__ == "__main__":
    unittest.main()
