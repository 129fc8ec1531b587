"""Grafana Cloud secrets backend."""

from .backend import BACKEND_HELP, GrafanaCloudBackend
from .storage import InMemoryStorage, SQLStorage, Storage

__all__ = [
    "BACKEND_HELP",
    "GrafanaCloudBackend",
    "InMemoryStorage",
    "SQLStorage",
    "Storage",
]
