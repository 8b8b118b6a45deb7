"""Graph-based approximate nearest neighbour index, its bin file formats and helpers."""

__version__ = "0.1.0"