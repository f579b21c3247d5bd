"""Triplane neural volume rendering and isosurface extraction.

This package turns triplane scene codes into images (volume rendering through
a small MLP decoder) and into triangle meshes (chunked marching cubes on the
decoded density field).
"""

__version__ = "0.1.0"
