"""Exception types raised by the triplane rendering and meshing code."""

from __future__ import annotations


class TSRError(Exception):
    """Base class for all errors raised by this package."""


class ConfigurationError(TSRError, ValueError):
    """Invalid configuration or call arguments (unknown mode, bad shape, ...)."""


class RenderError(TSRError, RuntimeError):
    """A render call could not be completed (device or allocation failure)."""


class MeshError(TSRError, ValueError):
    """A mesh violates its index invariants or cannot be exported."""
