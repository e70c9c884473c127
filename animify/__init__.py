"""Animify backend: turns uploaded photos into hand-drawn animation stills."""

__version__ = "0.1.0"
