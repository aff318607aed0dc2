"""
API route handlers.
"""

from . import health, metadata

__all__ = ["health", "metadata"]
