"""Shade - provider gateway and conversation persistence for the screen overlay."""

__version__ = "0.3.0"
