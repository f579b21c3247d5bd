"""Tests for chunked evaluation.

This module checks that splitting a batch into chunks gives the same result as
evaluating it at once, for every supported output structure.
"""

import sys
import unittest
from pathlib import Path

import numpy as np
import pytest
import torch

# Add parent directory to path
sys.path.append(str(Path(__file__).resolve().parent.parent))

from tsr.chunking import (
    DEFAULT_CHUNK_SIZE,
    ChunkedEvaluator,
    as_device_tensor,
    chunk_batch,
)
from tsr.errors import ConfigurationError


class TestChunkBatch(unittest.TestCase):
    """Test chunk_batch splitting and reassembly."""

    def setUp(self):
        torch.manual_seed(0)
        self.x = torch.randn(37, 3)
        self.y = torch.randn(37, 2)
        self.calls = []

    def _func(self, x, y, scale=1.0):
        self.calls.append(x.shape[0])
        return torch.cat([x, y], dim=-1) * scale

    def test_chunk_sizes_match_single_call(self):
        """Every chunk size gives the unchunked result."""
        expected = self._func(self.x, self.y, scale=2.0)
        for chunk_size in [1, 5, 36, 37, 100, 0]:
            out = chunk_batch(self._func, chunk_size, self.x, self.y, scale=2.0)
            self.assertTrue(torch.equal(out, expected), f"chunk_size={chunk_size}")

    def test_number_of_calls(self):
        chunk_batch(self._func, 10, self.x, self.y)
        self.assertEqual(self.calls, [10, 10, 10, 7])

    def test_zero_chunk_size_single_call(self):
        chunk_batch(self._func, 0, self.x, self.y)
        self.assertEqual(self.calls, [37])

    def test_dict_and_tuple_outputs(self):
        def func(x):
            return {"a": x * 2, "b": (x[:, :1], x.sum(dim=-1))}

        out = chunk_batch(func, 4, self.x)
        self.assertTrue(torch.allclose(out["a"], self.x * 2))
        self.assertIsInstance(out["b"], tuple)
        self.assertEqual(out["b"][0].shape, (37, 1))
        self.assertTrue(torch.allclose(out["b"][1], self.x.sum(dim=-1)))

    def test_non_tensor_arguments_pass_through(self):
        def func(x, offset, label):
            self.assertEqual(label, "scene")
            return x + offset

        out = chunk_batch(func, 8, self.x, 3.0, "scene")
        self.assertTrue(torch.allclose(out, self.x + 3.0))

    def test_negative_chunk_size_raises(self):
        with self.assertRaises(ConfigurationError):
            chunk_batch(self._func, -1, self.x, self.y)

    def test_mismatched_batch_raises(self):
        with self.assertRaises(ConfigurationError):
            chunk_batch(self._func, 4, self.x, self.y[:10])

    def test_no_tensor_argument_raises(self):
        with self.assertRaises(ConfigurationError):
            chunk_batch(lambda v: v, 4, 3.0)

    def test_unsupported_output_raises(self):
        with self.assertRaises(ConfigurationError):
            chunk_batch(lambda x: "not a tensor", 4, self.x)


class TestChunkedEvaluator(unittest.TestCase):
    """Test the evaluator wrapper."""

    def test_evaluate_matches_direct_call(self):
        x = torch.linspace(0, 1, 100)[:, None]
        evaluator = ChunkedEvaluator(chunk_size=7)
        out = evaluator(lambda v: v ** 2, x)
        self.assertTrue(torch.allclose(out, x ** 2))

    def test_invalid_chunk_size(self):
        with self.assertRaises(ConfigurationError):
            ChunkedEvaluator(chunk_size=-3)
        with self.assertRaises(ConfigurationError):
            ChunkedEvaluator(chunk_size=2.5)

    def test_memory_budget_on_cpu(self):
        evaluator = ChunkedEvaluator.from_memory_budget(bytes_per_item=4096, device="cpu")
        self.assertEqual(evaluator.chunk_size, DEFAULT_CHUNK_SIZE)

    def test_memory_budget_validation(self):
        with self.assertRaises(ConfigurationError):
            ChunkedEvaluator.from_memory_budget(bytes_per_item=0)
        with self.assertRaises(ConfigurationError):
            ChunkedEvaluator.from_memory_budget(bytes_per_item=16, memory_fraction=1.5)

    @pytest.mark.skipif(not torch.cuda.is_available(), reason="CUDA not available")
    def test_memory_budget_on_cuda(self):
        evaluator = ChunkedEvaluator.from_memory_budget(
            bytes_per_item=1024, device="cuda", min_chunk_size=512
        )
        self.assertGreaterEqual(evaluator.chunk_size, 512)


class TestDeviceTensor(unittest.TestCase):
    """Test borrowing numpy arrays as tensors."""

    def test_shares_memory_with_numpy(self):
        array = np.zeros((4, 3), dtype=np.float32)
        tensor = as_device_tensor(array)
        array[1, 2] = 5.0
        self.assertEqual(tensor[1, 2].item(), 5.0)

    def test_dtype_conversion_copies(self):
        array = np.zeros(3, dtype=np.float64)
        tensor = as_device_tensor(array, dtype=torch.float32)
        self.assertEqual(tensor.dtype, torch.float32)


if __name__ == "__main__":
    unittest.main()
