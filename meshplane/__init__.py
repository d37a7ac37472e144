"""meshplane - service mesh control plane reconciliation engine."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("meshplane")
except PackageNotFoundError:
    __version__ = "0.0.0-dev"
