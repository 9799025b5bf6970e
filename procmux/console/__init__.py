"""
Console rendering of the merged output feed.
"""

from __future__ import annotations

from .colors import Color, assign_colors
from .render import ConsoleHandle, ConsoleRenderer, run_console


__all__ = ["Color", "ConsoleHandle", "ConsoleRenderer", "assign_colors", "run_console"]
