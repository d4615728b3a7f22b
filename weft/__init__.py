"""weft — adaptive planning and context kernel for long-running agents."""

from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("weft")
except PackageNotFoundError:
    __version__ = "0.1.0"  # fallback for development
