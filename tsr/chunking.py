"""Chunked evaluation of large batches.

Splits a batch of query points into sequential chunks so that the peak memory
of an evaluation is bounded by the chunk size instead of the batch size.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

import numpy as np
import torch
from tqdm import tqdm

from tsr.errors import ConfigurationError

logger = logging.getLogger(__name__)

# Fallback chunk size when no device memory information is available
DEFAULT_CHUNK_SIZE = 8192


def as_device_tensor(
    array: Union[np.ndarray, torch.Tensor],
    device: Optional[torch.device] = None,
    dtype: Optional[torch.dtype] = None,
) -> torch.Tensor:
    """Borrow an array as a tensor on ``device``.

    Uses ``torch.as_tensor``, so no copy is made when the array already lives
    on the target device with the target dtype. The result is then a view of
    the caller's memory: it stays valid only while the source array is alive
    and unmodified, and must not be written to.

    Args:
        array: Numpy array or tensor
        device: Target device (defaults to the array's own device / CPU)
        dtype: Target dtype (defaults to the array's own dtype)

    Returns:
        Tensor sharing memory with ``array`` whenever possible
    """
    return torch.as_tensor(array, dtype=dtype, device=device)


def release_device_memory(device: Optional[Union[str, torch.device]] = None) -> None:
    """Return cached allocator blocks to the device between chunks.

    A no-op on CPU.
    """
    if device is None:
        if torch.cuda.is_available():
            torch.cuda.empty_cache()
        return

    device = torch.device(device)
    if device.type == "cuda":
        torch.cuda.synchronize(device)
        torch.cuda.empty_cache()


def _batch_size(args: Sequence[Any]) -> int:
    sizes = [arg.shape[0] for arg in args if isinstance(arg, torch.Tensor)]
    if not sizes:
        raise ConfigurationError("chunk_batch requires at least one tensor argument")
    if len(set(sizes)) != 1:
        raise ConfigurationError(
            f"All tensor arguments must share the batch dimension, got sizes {sizes}"
        )
    return sizes[0]


def _concat(outputs: List[Any]) -> Any:
    first = outputs[0]

    if first is None:
        return None
    if isinstance(first, torch.Tensor):
        return torch.cat(outputs, dim=0)
    # Merge dict outputs key by key
    if isinstance(first, dict):
        merged: Dict[str, List[Any]] = defaultdict(list)
        for out in outputs:
            for key, value in out.items():
                merged[key].append(value)
        return {key: _concat(values) for key, values in merged.items()}
    if isinstance(first, (tuple, list)):
        return type(first)(_concat(list(items)) for items in zip(*outputs))

    raise ConfigurationError(
        f"Unsupported chunk output type {type(first).__name__}; "
        "expected a tensor, a tuple/list or a dict of tensors"
    )


def chunk_batch(
    func: Callable[..., Any],
    chunk_size: int,
    *args: Any,
    release_memory: bool = False,
    show_progress: bool = False,
    **kwargs: Any,
) -> Any:
    """Evaluate ``func`` over the batch dimension in sequential chunks.

    Every tensor positional argument is sliced along dim 0; other arguments
    and keyword arguments are passed through unchanged. Outputs of each chunk
    are concatenated in order along dim 0.

    Args:
        func: Function to evaluate
        chunk_size: Chunk length; 0 (or a size not smaller than the batch)
            evaluates everything in a single call
        *args: Positional arguments for ``func``
        release_memory: Release cached device memory after each chunk
        show_progress: Display a progress bar over chunks
        **kwargs: Keyword arguments for ``func``

    Returns:
        Concatenated result with the same structure as one ``func`` output
    """
    if chunk_size < 0:
        raise ConfigurationError(
            f"chunk_size must be a non-negative integer (0 for no chunking), got {chunk_size}"
        )

    # Small batches run in one call
    batch_size = _batch_size(args)
    if chunk_size == 0 or chunk_size >= batch_size:
        return func(*args, **kwargs)

    n_chunks = (batch_size + chunk_size - 1) // chunk_size
    logger.debug(f"Evaluating {batch_size} items in {n_chunks} chunks of {chunk_size}")

    device = None
    outputs = []
    for start in tqdm(
        range(0, batch_size, chunk_size),
        desc="Chunks",
        total=n_chunks,
        disable=not show_progress,
        leave=False,
    ):
        # Slice tensor arguments, pass the rest through
        chunk_args = [
            arg[start:start + chunk_size] if isinstance(arg, torch.Tensor) else arg
            for arg in args
        ]
        out = func(*chunk_args, **kwargs)
        outputs.append(out)

        # Drop chunk references before releasing the cache
        if release_memory:
            if device is None:
                device = next(arg.device for arg in args if isinstance(arg, torch.Tensor))
            del chunk_args, out
            release_device_memory(device)

    # Reassemble the chunks in order
    return _concat(outputs)


class ChunkedEvaluator:
    """Fixed-size (or memory-budgeted) chunked evaluator."""

    def __init__(
        self,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        release_memory: bool = True,
        show_progress: bool = False,
    ):
        """Initialize the evaluator.

        Args:
            chunk_size: Number of items per chunk (0 disables chunking)
            release_memory: Release cached device memory between chunks
            show_progress: Display a progress bar over chunks
        """
        if not isinstance(chunk_size, (int, np.integer)) or chunk_size < 0:
            raise ConfigurationError(
                f"chunk_size must be a non-negative integer (0 for no chunking), got {chunk_size!r}"
            )
        self.chunk_size = int(chunk_size)
        self.release_memory = release_memory
        self.show_progress = show_progress

    @classmethod
    def from_memory_budget(
        cls,
        bytes_per_item: int,
        device: Optional[Union[str, torch.device]] = None,
        memory_fraction: float = 0.5,
        min_chunk_size: int = 1024,
        **kwargs: Any,
    ) -> "ChunkedEvaluator":
        """Create an evaluator whose chunk size fits the free device memory.

        Args:
            bytes_per_item: Estimated peak bytes needed per evaluated item
            device: Device the evaluation runs on
            memory_fraction: Share of the currently free memory to use
            min_chunk_size: Lower bound on the computed chunk size
            **kwargs: Passed on to the constructor

        Returns:
            Configured ChunkedEvaluator
        """
        if bytes_per_item <= 0:
            raise ConfigurationError(f"bytes_per_item must be positive, got {bytes_per_item}")
        if not 0.0 < memory_fraction <= 1.0:
            raise ConfigurationError(f"memory_fraction must be in (0, 1], got {memory_fraction}")

        device = torch.device(device) if device is not None else torch.device("cpu")

        # Only CUDA reports free memory
        if device.type == "cuda" and torch.cuda.is_available():
            free_bytes, _ = torch.cuda.mem_get_info(device)
            chunk_size = max(min_chunk_size, int(free_bytes * memory_fraction) // bytes_per_item)
            logger.info(
                f"Chunk size {chunk_size} from {free_bytes / 2**20:.0f} MiB free "
                f"({bytes_per_item} bytes/item)"
            )
        else:
            chunk_size = DEFAULT_CHUNK_SIZE
            logger.debug(f"No device memory information for {device}, using chunk size {chunk_size}")

        return cls(chunk_size=chunk_size, **kwargs)

    def evaluate(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Evaluate ``func`` over its tensor arguments chunk by chunk."""
        return chunk_batch(
            func,
            self.chunk_size,
            *args,
            release_memory=self.release_memory,
            show_progress=self.show_progress,
            **kwargs,
        )

    __call__ = evaluate
