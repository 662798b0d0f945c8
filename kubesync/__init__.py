"""kubesync - GitOps reconciliation and progressive-delivery controller."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("kubesync")
except PackageNotFoundError:
    __version__ = "0.0.0-dev"
