"""Package version from installed metadata."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("myhome")
except PackageNotFoundError:
    # Source checkout without an installed distribution
    __version__ = "0.0.0+unknown"
