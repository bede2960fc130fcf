"""
HTTP API for vaultsync.
"""

from .http_server import create_http_app, run_http_server

__all__ = ["create_http_app", "run_http_server"]
