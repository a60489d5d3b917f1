"""
gate.tls
~~~~~~~~
Server-side TLS for the listening socket.  Upstream traffic stays plain.
"""

from __future__ import annotations

import ssl
from pathlib import Path


def server_ssl_context(cert: str | Path, key: str | Path) -> ssl.SSLContext:
    ctx = ssl.create_default_context(ssl.Purpose.CLIENT_AUTH)
    ctx.load_cert_chain(str(cert), str(key))
    return ctx
