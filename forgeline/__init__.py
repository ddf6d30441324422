"""Forgeline: autonomous code-change pipeline."""

from forgeline.identity import __version__

__all__ = ["__version__"]
