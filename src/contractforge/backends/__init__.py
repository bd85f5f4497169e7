"""Isolated build environment interfaces and implementations."""

from .base import IsolationBackend, provisioned
from .docker import DockerBackend
from .inprocess import InProcessBackend
from .local import LocalBackend

__all__ = [
    "DockerBackend",
    "InProcessBackend",
    "IsolationBackend",
    "LocalBackend",
    "provisioned",
]
