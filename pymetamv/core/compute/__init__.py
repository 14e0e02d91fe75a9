"""
Compute utilities shared across the engine.
"""

from pymetamv.core.compute.timing import Timer

__all__ = ["Timer"]
