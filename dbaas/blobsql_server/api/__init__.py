"""
API module for BlobSQL server.

This module provides the client-facing query surface: a JSON-over-HTTP
rendition of the "query text in, rows or acknowledgement out" contract.

Invariants:
    - Every request except health is authenticated
    - A connection is identified by X-Connection-ID (default: the user)
    - Statement errors are returned, never raised to the transport

How to change safely:
    - Add new endpoints under /v1, don't change existing payloads
    - Keep error payloads carrying error_class and sqlstate
"""

from .http_server import HttpServer, create_http_app

__all__ = [
    "HttpServer",
    "create_http_app",
]
