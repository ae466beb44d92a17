"""Visualization of the backend state."""

from .rerun_visualizer import RerunVisualizer

__all__ = ["RerunVisualizer"]
