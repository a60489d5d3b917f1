"""
gate.http
~~~~~~~~~
Minimal HTTP/1.1 request/response handles shared by the middleware chain
and the server.  Only the request head is parsed; bodies are streamed
through untouched.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from http import HTTPStatus
from typing import Dict, Tuple
from urllib.parse import urlsplit

CRLF = b"\r\n"

_HOP_BY_HOP = {
    "proxy-authorization",
    "proxy-connection",
    "connection",
    "keep-alive",
    "te",
    "trailer",
    "transfer-encoding",
    "upgrade",
}


class HTTPError(Exception):
    def __init__(self, status: int, msg: str):
        self.status = status
        self.msg = msg
        super().__init__(f"{status} {msg}")


@dataclass
class Request:
    method: str
    target: str
    headers: Dict[str, str] = field(default_factory=dict)
    peer: str = "-"
    version: str = "HTTP/1.1"

    @property
    def path(self) -> str:
        return urlsplit(self.target).path


@dataclass
class Response:
    status: int = 200
    headers: Dict[str, str] = field(default_factory=dict)
    body: bytes = b""
    # set by the final handler when the request should go upstream
    passthrough: bool = False

    def write(self, data: bytes | str) -> None:
        if isinstance(data, str):
            data = data.encode()
        self.body += data

    def error(self, message: str, status: int) -> None:
        """Replace the response with a plain-text error."""
        self.status = status
        self.headers["Content-Type"] = "text/plain; charset=utf-8"
        self.headers["X-Content-Type-Options"] = "nosniff"
        self.body = (message + "\n").encode()

    def to_bytes(self) -> bytes:
        head = f"HTTP/1.1 {self.status} {_reason(self.status)}\r\n"
        for k, v in self.headers.items():
            if k.lower() not in ("content-length", "connection"):
                head += f"{k}: {v}\r\n"
        head += f"Content-Length: {len(self.body)}\r\nConnection: close\r\n\r\n"
        return head.encode() + self.body


def _reason(status: int) -> str:
    try:
        return HTTPStatus(status).phrase
    except ValueError:
        return "Error"


async def read_request_head(reader: asyncio.StreamReader) -> Tuple[bytes, Dict[str, str]]:
    head = b""
    while True:
        line = await reader.readline()
        if not line:
            raise HTTPError(400, "Bad Request: EOF before headers complete")
        head += line
        if line == CRLF:
            break

    lines = head.split(CRLF)[:-1]
    if not lines or not lines[0]:
        raise HTTPError(400, "Bad Request: empty head")

    req_line = lines[0]
    hdrs = {}
    for raw in lines[1:]:
        if b":" in raw:
            k, v = raw.split(b":", 1)
            hdrs[k.decode("latin-1").strip().lower()] = v.decode("latin-1").strip()
    return req_line, hdrs


def parse_request_line(line: bytes) -> Tuple[str, str, str]:
    try:
        method, target, version = line.decode("latin-1").strip().split()
    except ValueError:
        raise HTTPError(400, "Bad Request: malformed request-line") from None
    return method, target, version


def rebuild_request_head(req: Request) -> bytes:
    head = bytearray(f"{req.method} {req.target} {req.version}".encode("latin-1") + CRLF)
    for k, v in req.headers.items():
        if k.lower() in _HOP_BY_HOP or k.lower() == "x-forwarded-for":
            continue
        head.extend(f"{k}: {v}".encode("latin-1") + CRLF)
    forwarded = req.headers.get("x-forwarded-for")
    chain = f"{forwarded}, {req.peer}" if forwarded else req.peer
    head.extend(f"x-forwarded-for: {chain}".encode("latin-1") + CRLF)
    head.extend(b"connection: close" + CRLF)
    head.extend(CRLF)
    return bytes(head)
