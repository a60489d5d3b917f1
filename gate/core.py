"""
gate.core
~~~~~~~~~
Non-blocking reverse proxy that runs every request through the permission
middleware before forwarding it to the upstream application.
"""

from __future__ import annotations

import asyncio
import time
from contextlib import suppress

from .auth import AuthError, supplied_username
from .config import Config
from .http import (
    HTTPError,
    Request,
    Response,
    parse_request_line,
    read_request_head,
    rebuild_request_head,
)
from .logger import GateLogger
from .permissions import VERSION, Permissions, from_config
from .tls import server_ssl_context

BUFFER = 65_536


def run_gate(config: Config) -> None:
    gate = GateServer(config)
    try:
        asyncio.run(gate.serve_forever())
    except KeyboardInterrupt:
        print("\n▸ Gate shut down.")


def _pass_through(request: Request, response: Response) -> None:
    response.passthrough = True


class GateServer:
    def __init__(
        self,
        cfg: Config,
        permissions: Permissions | None = None,
        logger: GateLogger | None = None,
    ) -> None:
        """A *permissions* object passed in is used as is; only an evaluator
        built here from *cfg* gets wired to the access log.
        """
        self.cfg = cfg
        self.logger = logger or GateLogger(cfg.log_path)
        if permissions is None:
            permissions = from_config(cfg, on_identity_error=self.log_identity_error)
        self.permissions = permissions

    async def start(self) -> asyncio.AbstractServer:
        ssl_ctx = (
            server_ssl_context(self.cfg.tls_cert, self.cfg.tls_key)
            if self.cfg.use_tls
            else None
        )
        return await asyncio.start_server(
            self._handle_client,
            host=self.cfg.listen_host,
            port=self.cfg.listen_port,
            ssl=ssl_ctx,
        )

    async def serve_forever(self) -> None:
        server = await self.start()

        print(self.banner(server))

        async with server:
            await server.serve_forever()

    def banner(self, server: asyncio.AbstractServer) -> str:
        bind_str = ", ".join(str(s.getsockname()) for s in server.sockets)
        return (
            f"▸ Gate {VERSION} listening on {bind_str} -> "
            f"{self.cfg.upstream_host}:{self.cfg.upstream_port}  (TLS={self.cfg.use_tls})"
        )

    def log_identity_error(self, request: Request, exc: Exception) -> None:
        # a caller without valid credentials is routine, a store failure is not
        if isinstance(exc, AuthError):
            self.logger.auth_fail(
                request.peer,
                supplied_username(request.headers),
                request.method,
                request.target,
                exc,
            )
        else:
            self.logger.identity_error(request.peer, request.method, request.target, exc)

    async def _handle_client(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        start_ts = time.time()
        peer = writer.get_extra_info("peername")
        peer_ip = peer[0] if peer else "-"
        user, method, target = "-", "-", "-"

        try:
            req_line, headers = await read_request_head(reader)
            method, target, version = parse_request_line(req_line)
            user = supplied_username(headers)
            request = Request(method, target, headers, peer=peer_ip, version=version)
            response = Response()

            # the identity query may block, keep it off the event loop
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(
                None, self.permissions, request, response, _pass_through
            )

            if not response.passthrough:
                self.logger.deny(user, peer_ip, method, target, response.status)
                await _send_response(writer, response)
                return

            self.logger.start(user, peer_ip, method, target, headers.get("user-agent", ""))
            status = await self._forward(reader, writer, request)
            self.logger.end(user, method, target, status, _elapsed_ms(start_ts))

        except HTTPError as e:
            error = Response()
            error.error(e.msg, e.status)
            with suppress(ConnectionError):
                await _send_response(writer, error)
            self.logger.end(user, method, target, e.status, _elapsed_ms(start_ts))
        except Exception:  # noqa: BLE001
            error = Response()
            error.error("Internal Server Error", 500)
            with suppress(ConnectionError):
                await _send_response(writer, error)
            self.logger.end(user, method, target, 500, _elapsed_ms(start_ts))
        finally:
            writer.close()
            with suppress(ConnectionError):
                await writer.wait_closed()

    async def _forward(
        self,
        client_reader: asyncio.StreamReader,
        client_writer: asyncio.StreamWriter,
        request: Request,
    ) -> int:
        try:
            remote_reader, remote_writer = await asyncio.open_connection(
                self.cfg.upstream_host, self.cfg.upstream_port
            )
        except OSError as e:
            raise HTTPError(502, f"Upstream connect failed: {e}") from e

        remote_writer.write(rebuild_request_head(request))
        await remote_writer.drain()

        # request body goes up while we wait for the status line
        upload = asyncio.create_task(_pipe_stream(client_reader, remote_writer))
        try:
            status_line = await remote_reader.readline()
            status = _parse_status(status_line)
            client_writer.write(status_line)
            await _pipe_stream(remote_reader, client_writer)
        finally:
            upload.cancel()
            with suppress(asyncio.CancelledError):
                await upload
            remote_writer.close()
        return status


def _elapsed_ms(start_ts: float) -> int:
    return int((time.time() - start_ts) * 1000)


def _parse_status(line: bytes) -> int:
    parts = line.split(None, 2)
    if len(parts) < 2 or not parts[0].startswith(b"HTTP/"):
        raise HTTPError(502, "Bad Gateway: malformed upstream response")
    try:
        return int(parts[1])
    except ValueError:
        raise HTTPError(502, "Bad Gateway: malformed upstream status") from None


async def _send_response(writer: asyncio.StreamWriter, response: Response) -> None:
    writer.write(response.to_bytes())
    await writer.drain()


async def _pipe_stream(src: asyncio.StreamReader, dst: asyncio.StreamWriter) -> None:
    try:
        while not src.at_eof():
            chunk = await src.read(BUFFER)
            if not chunk:
                break
            dst.write(chunk)
            await dst.drain()
    finally:
        try:
            dst.close()
            await dst.wait_closed()
        except Exception:  # noqa: BLE001
            pass
