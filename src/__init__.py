"""catalogscan: catalog the contents of a storage device or directory tree."""

from catalogscan.version import __version__

__all__ = ["__version__"]
