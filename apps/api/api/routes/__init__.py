"""API routes module."""

from . import approval, health

__all__ = ["approval", "health"]
