"""CNI plugin that gives a container its own AWS ENI."""

from eni_cni.version import __version__

__all__ = ["__version__"]
