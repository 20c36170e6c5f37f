"""Offline customizer for piCore (Tiny Core Linux) Raspberry Pi disk images."""

from .__version__ import __version__


__all__ = ["__version__"]
