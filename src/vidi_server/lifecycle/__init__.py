"""Background lifecycle tasks."""

from .sweeper import LifecycleSweeper

__all__ = ["LifecycleSweeper"]
