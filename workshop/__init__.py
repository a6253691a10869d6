"""
Workshop - offline-first painting log for miniature units.

Edit anywhere, sync when you can.
"""

from .core import Workshop

try:
    from importlib.metadata import version

    __version__ = version("workshop")
except Exception:
    __version__ = "0.0.0"

__all__ = ["Workshop"]
