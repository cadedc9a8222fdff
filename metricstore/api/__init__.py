"""
REST API Interface

HTTP API for queries, the push gateway and status surfaces.
"""

from .server import create_api_server, MetricStoreAPI

__all__ = [
    "create_api_server",
    "MetricStoreAPI",
]
