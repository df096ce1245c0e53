"""Provision network-booting Raspberry Pis from bakeform images."""

from .__version__ import __version__


__all__ = ["__version__"]
