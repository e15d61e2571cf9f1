"""kubemeta - Kubernetes pod/namespace metadata cache for log enrichment."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("kubemeta")
except PackageNotFoundError:
    __version__ = "0.0.0-dev"
