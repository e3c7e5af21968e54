"""Register AppImages and integrate them with the desktop menu and thumbnails."""

__version__ = "0.1.0"
__all__ = ["__version__"]