from __future__ import annotations

import asyncio
import base64
import json

from gate.auth import AuthError, MemoryUserState
from gate.config import Config
from gate.core import GateServer
from gate.http import Request
from gate.logger import GateLogger
from gate.permissions import VERSION, Permissions
from gate.rules import Category


def _basic(user: str, pwd: str) -> str:
    return "Basic " + base64.b64encode(f"{user}:{pwd}".encode()).decode()


async def _upstream(seen: list):
    async def handle(reader, writer):
        head = b""
        while not head.endswith(b"\r\n\r\n"):
            chunk = await reader.readline()
            if not chunk:
                break
            head += chunk
        seen.append(head)
        body = b"hello from upstream"
        writer.write(
            b"HTTP/1.1 200 OK\r\nContent-Length: %d\r\nConnection: close\r\n\r\n%s"
            % (len(body), body)
        )
        await writer.drain()
        writer.close()

    return await asyncio.start_server(handle, host="127.0.0.1", port=0)


async def _fetch(port: int, raw: bytes) -> bytes:
    reader, writer = await asyncio.open_connection("127.0.0.1", port)
    writer.write(raw)
    await writer.drain()
    data = await asyncio.wait_for(reader.read(), timeout=5)
    writer.close()
    return data


def _config(upstream_port: int, tmp_path) -> Config:
    return Config(
        listen_host="127.0.0.1",
        listen_port=0,
        upstream_host="127.0.0.1",
        upstream_port=upstream_port,
        use_tls=False,
        tls_cert="server.pem",
        tls_key="server.key",
        user_store="",
        log_path=str(tmp_path / "gate.log"),
    )


def _gate(upstream_port: int, tmp_path) -> GateServer:
    users = MemoryUserState()
    users.add_user("alice", "secret", admin=True)
    users.add_user("bob", "1234")
    perm = Permissions.from_user_state(users)
    perm.set_path(Category.PUBLIC, ["/login", "/admin"])
    logger = GateLogger(tmp_path / "gate.log", console=False)
    gate = GateServer(_config(upstream_port, tmp_path), permissions=perm, logger=logger)
    perm.on_identity_error = gate.log_identity_error
    return gate


def _run(tmp_path, requests):
    async def go():
        seen = []
        upstream = await _upstream(seen)
        up_port = upstream.sockets[0].getsockname()[1]
        gate = _gate(up_port, tmp_path)
        server = await gate.start()
        port = server.sockets[0].getsockname()[1]
        try:
            replies = [await _fetch(port, raw) for raw in requests]
        finally:
            server.close()
            await server.wait_closed()
            upstream.close()
            await upstream.wait_closed()
            gate.logger.close()
        return replies, seen

    return asyncio.run(go())


def test_public_request_is_forwarded(tmp_path):
    replies, seen = _run(tmp_path, [b"GET /login HTTP/1.1\r\nHost: app\r\n\r\n"])
    assert replies[0].startswith(b"HTTP/1.1 200 OK")
    assert replies[0].endswith(b"hello from upstream")
    assert len(seen) == 1
    assert seen[0].startswith(b"GET /login HTTP/1.1\r\n")
    assert b"x-forwarded-for: 127.0.0.1\r\n" in seen[0]


def test_unlisted_path_is_denied_without_reaching_upstream(tmp_path):
    replies, seen = _run(tmp_path, [b"GET /unknown/page HTTP/1.1\r\nHost: app\r\n\r\n"])
    assert replies[0].startswith(b"HTTP/1.1 403 Forbidden")
    assert replies[0].endswith(b"Permission denied.\n")
    assert seen == []


def test_admin_path_depends_on_caller(tmp_path):
    admin = f"GET /admin/panel HTTP/1.1\r\nAuthorization: {_basic('alice', 'secret')}\r\n\r\n"
    user = f"GET /admin/panel HTTP/1.1\r\nAuthorization: {_basic('bob', '1234')}\r\n\r\n"
    anon = "GET /admin/panel HTTP/1.1\r\n\r\n"
    replies, seen = _run(tmp_path, [admin.encode(), user.encode(), anon.encode()])
    assert replies[0].startswith(b"HTTP/1.1 200 OK")
    assert replies[1].startswith(b"HTTP/1.1 403")
    assert replies[2].startswith(b"HTTP/1.1 403")
    assert len(seen) == 1


def test_malformed_request_gets_400(tmp_path):
    replies, seen = _run(tmp_path, [b"NONSENSE\r\n\r\n"])
    assert replies[0].startswith(b"HTTP/1.1 400 Bad Request")
    assert seen == []


def test_unreachable_upstream_gets_502(tmp_path):
    async def go():
        probe = await asyncio.start_server(lambda r, w: None, host="127.0.0.1", port=0)
        dead_port = probe.sockets[0].getsockname()[1]
        probe.close()
        await probe.wait_closed()

        gate = _gate(dead_port, tmp_path)
        server = await gate.start()
        port = server.sockets[0].getsockname()[1]
        try:
            return await _fetch(port, b"GET /login HTTP/1.1\r\n\r\n")
        finally:
            server.close()
            await server.wait_closed()
            gate.logger.close()

    reply = asyncio.run(go())
    assert reply.startswith(b"HTTP/1.1 502 Bad Gateway")


def _events(tmp_path):
    return [json.loads(ln) for ln in (tmp_path / "gate.jsonl").read_text().splitlines()]


def test_default_rules_forward_unlisted_paths(tmp_path):
    async def go():
        seen = []
        upstream = await _upstream(seen)
        up_port = upstream.sockets[0].getsockname()[1]
        gate = GateServer(
            _config(up_port, tmp_path),
            permissions=Permissions.from_user_state(MemoryUserState()),
            logger=GateLogger(tmp_path / "gate.log", console=False),
        )
        server = await gate.start()
        port = server.sockets[0].getsockname()[1]
        try:
            return await _fetch(port, b"GET /unknown/page HTTP/1.1\r\n\r\n"), seen
        finally:
            server.close()
            await server.wait_closed()
            upstream.close()
            await upstream.wait_closed()
            gate.logger.close()

    reply, seen = asyncio.run(go())
    # the default public "/" prefix covers every path
    assert reply.startswith(b"HTTP/1.1 200 OK")
    assert len(seen) == 1


def test_missing_credentials_logged_as_auth_fail(tmp_path):
    _run(tmp_path, [b"GET /admin/panel HTTP/1.1\r\n\r\n"])
    events = _events(tmp_path)
    assert [e["event"] for e in events] == ["auth_fail", "deny"]
    assert events[0]["error"] == "Missing Authorization"
    assert events[0]["user"] == "-"


def test_store_failure_logged_as_identity_error(tmp_path):
    logger = GateLogger(tmp_path / "gate.log", console=False)
    perm = Permissions(MemoryUserState())
    gate = GateServer(_config(0, tmp_path), permissions=perm, logger=logger)
    try:
        gate.log_identity_error(Request("GET", "/admin", peer="10.0.0.9"), ConnectionError("down"))
        gate.log_identity_error(Request("GET", "/admin", peer="10.0.0.9"), AuthError("Bad credentials"))
        for h in logger.log.handlers:
            h.flush()
        events = _events(tmp_path)
    finally:
        logger.close()

    assert events[0]["event"] == "identity_error"
    assert events[0]["error"] == "down"
    assert events[1]["event"] == "auth_fail"


def test_supplied_permissions_keep_their_hook(tmp_path):
    def hook(request, exc):
        pass

    perm = Permissions(MemoryUserState(), on_identity_error=hook)
    bare = Permissions(MemoryUserState())
    logger = GateLogger(tmp_path / "gate.log", console=False)
    try:
        kept = GateServer(_config(0, tmp_path), permissions=perm, logger=logger)
        untouched = GateServer(_config(0, tmp_path), permissions=bare, logger=logger)
        assert kept.permissions.on_identity_error is hook
        assert untouched.permissions.on_identity_error is None
    finally:
        logger.close()


def test_server_built_from_config_wires_logging(tmp_path, monkeypatch):
    monkeypatch.delenv("GATE_USERS", raising=False)
    logger = GateLogger(tmp_path / "gate.log", console=False)
    try:
        gate = GateServer(_config(0, tmp_path), logger=logger)
        assert gate.permissions.on_identity_error == gate.log_identity_error
    finally:
        logger.close()


def test_banner_names_version_and_upstream(tmp_path):
    async def go():
        gate = _gate(8000, tmp_path)
        server = await gate.start()
        try:
            return gate.banner(server), server.sockets[0].getsockname()[1]
        finally:
            server.close()
            await server.wait_closed()
            gate.logger.close()

    text, port = asyncio.run(go())
    assert text.startswith(f"▸ Gate {VERSION} listening on ")
    assert str(port) in text
    assert text.endswith("-> 127.0.0.1:8000  (TLS=False)")
