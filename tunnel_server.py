#!/usr/bin/env python3
"""
HTTP tunnel server. Holds the real TCP sockets to the destinations and
exposes them through five routes:

  GET  /hello     handshake token "ip/timestamp/lastReload"
  POST /begin     open a destination connection, returns its id
  POST /upload    write the body to the destination
  GET  /download  long-poll read from the destination (410 at end of stream)
  GET  /finish    close the destination connection

One thread per request (ThreadingHTTPServer). The only background thread is
the optional idle-connection reaper.
"""
from __future__ import annotations

import argparse
import logging
import socket
import threading
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Optional, Tuple

from auth_gate import AuthenticationGate
from connection_registry import ConnectionRegistry
from key_directory import KeyDirectory
from stream_io import DownloadPoller, UploadWriter
from tunnel_config import ServerSettings, add_common_arguments, load_server_settings, setup_logging
from tunnel_errors import MalformedRequest, TransportError, TunnelError
from tunnel_protocol import HEADER_CLIENT_ID, HEADER_CONNECTION_ID


logger = logging.getLogger(__name__)

BANNER = b"htunnel"


class TunnelService:
    """Route handlers, independent from the HTTP plumbing."""

    def __init__(self, settings: ServerSettings) -> None:
        self.settings = settings
        self.keys = KeyDirectory(settings.public_key, settings.public_key_reload_interval * 60)
        self.keys.reload()
        self.gate = AuthenticationGate(self.keys)
        self.registry = ConnectionRegistry()
        self.poller = DownloadPoller(settings.read_wait_time)
        self.writer = UploadWriter()

    def hello(self, caller_ip: str, client_id: Optional[str]) -> bytes:
        return self.gate.hello(caller_ip, client_id).encode("utf-8")

    def begin(self, caller_ip: str, client_id: Optional[str], body: bytes) -> bytes:
        request = self.gate.admit(body, caller_ip, client_id)
        cfg = request.connection_config
        logger.info("New connection received from %s for target %s:%d", caller_ip, cfg.host, cfg.port)
        logger.info("Buffer size is %d, base64 encoding is %s", cfg.buffer_size, cfg.base64_encoding)
        if cfg.buffer_size > self.settings.max_buffer_size:
            logger.warning("Rejecting buffer size %d from %s, limit is %d",
                           cfg.buffer_size, caller_ip, self.settings.max_buffer_size)
            raise MalformedRequest("buffer size too large")
        try:
            sock = socket.create_connection((cfg.host, cfg.port), timeout=self.settings.connect_timeout)
        except OSError as e:
            logger.warning("Unable to connect to %s:%d: %s", cfg.host, cfg.port, e)
            raise TransportError("connect failed") from e
        sock.setblocking(False)
        session_id = self.registry.create(caller_ip, cfg, sock)
        logger.info("Connection %s opened", session_id)
        return session_id.encode("ascii")

    def upload(self, caller_ip: str, session_id: str, body: bytes) -> bytes:
        logger.debug("New write request from %s for ID %s with body length %d", caller_ip, session_id, len(body))
        session = self.registry.lookup(session_id, caller_ip)
        self.writer.write(session, body)
        return b""

    def download(self, caller_ip: str, session_id: str) -> bytes:
        logger.debug("New read request from %s for ID %s", caller_ip, session_id)
        session = self.registry.lookup(session_id, caller_ip)
        return self.poller.poll(session)

    def finish(self, caller_ip: str, session_id: str) -> bytes:
        logger.info("New close request from %s for ID %s", caller_ip, session_id)
        self.registry.lookup(session_id, caller_ip)
        self.registry.remove(session_id)
        return b""

    def reap_idle(self) -> None:
        timeout = self.settings.idle_timeout
        while timeout > 0:
            time.sleep(max(1.0, timeout / 4))
            self.registry.evict_idle(timeout)


class TunnelRequestHandler(BaseHTTPRequestHandler):
    server_version = "htunnel"
    protocol_version = "HTTP/1.1"

    @property
    def service(self) -> TunnelService:
        return self.server.service  # type: ignore[attr-defined]

    def _caller_ip(self) -> str:
        return self.client_address[0]

    def _session_id(self) -> str:
        session_id = self.headers.get(HEADER_CONNECTION_ID)
        if not session_id:
            raise MalformedRequest("missing connection id")
        return session_id

    def _read_body(self) -> bytes:
        try:
            length = int(self.headers.get("Content-Length", 0))
        except ValueError as e:
            raise MalformedRequest("bad content length") from e
        return self.rfile.read(length) if length > 0 else b""

    def _reply(self, status: int, body: bytes = b"", content_type: str = "application/octet-stream") -> None:
        self.send_response(status)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        if body:
            self.wfile.write(body)

    def _dispatch(self, route) -> None:
        try:
            body, content_type = route()
        except TunnelError as e:
            logger.debug("%s %s -> %d (%s)", self.command, self.path, e.status, e)
            self._reply(e.status, e.reason.encode("ascii"), "text/plain")
            return
        except Exception:
            logger.exception("Unexpected error on %s %s", self.command, self.path)
            self._reply(500, b"Internal Server Error", "text/plain")
            return
        self._reply(200, body, content_type)

    def do_GET(self) -> None:
        ip = self._caller_ip()
        routes = {
            "/": lambda: (BANNER, "text/plain"),
            "/hello": lambda: (self.service.hello(ip, self.headers.get(HEADER_CLIENT_ID)), "text/plain"),
            "/download": lambda: (self.service.download(ip, self._session_id()), "application/octet-stream"),
            "/finish": lambda: (self.service.finish(ip, self._session_id()), "text/plain"),
        }
        self._route(routes)

    def do_POST(self) -> None:
        ip = self._caller_ip()
        try:
            body = self._read_body()
        except MalformedRequest:
            self.close_connection = True
            self._reply(400, b"Bad Request", "text/plain")
            return
        routes = {
            "/begin": lambda: (self.service.begin(ip, self.headers.get(HEADER_CLIENT_ID), body), "text/plain"),
            "/upload": lambda: (self.service.upload(ip, self._session_id(), body), "text/plain"),
        }
        self._route(routes)

    def _route(self, routes) -> None:
        path = self.path.split("?", 1)[0]
        route = routes.get(path)
        if route is None:
            self._reply(404, b"Not Found", "text/plain")
            return
        self._dispatch(route)

    def log_message(self, format, *args):
        logger.debug("%s - %s", self.address_string(), format % args)


class TunnelHTTPServer(ThreadingHTTPServer):
    daemon_threads = True

    def __init__(self, address: Tuple[str, int], service: TunnelService) -> None:
        self.service = service
        super().__init__(address, TunnelRequestHandler)


def start_server(settings: ServerSettings) -> TunnelHTTPServer:
    """Bind and serve in a background thread; call shutdown() to stop."""
    service = TunnelService(settings)
    httpd = TunnelHTTPServer((settings.host, settings.port), service)
    threading.Thread(target=httpd.serve_forever, daemon=True).start()
    if settings.idle_timeout > 0:
        threading.Thread(target=service.reap_idle, daemon=True).start()
    return httpd


def main(argv=None):
    ap = argparse.ArgumentParser(description="HTTP tunnel server")
    add_common_arguments(ap)
    ap.add_argument("--host", help="listen address")
    ap.add_argument("--port", type=int, help="listen port")
    ap.add_argument("--public-key", help="public key PEM file or directory of *.pem files")
    ap.add_argument("--public-key-reload-interval", type=int, help="minutes between key reloads, 0 disables")
    ap.add_argument("--read-wait-time", type=float, help="max seconds a /download call waits for data")
    ap.add_argument("--connect-timeout", type=float, help="seconds to wait for a destination connect")
    ap.add_argument("--idle-timeout", type=float, help="close connections idle this many seconds, 0 disables")
    ap.add_argument("--max-buffer-size", type=int, help="largest read buffer a client may request, in bytes")
    args = ap.parse_args(argv)

    try:
        settings = load_server_settings(args.config, vars(args))
    except (ValueError, FileNotFoundError) as e:
        raise SystemExit(str(e))
    setup_logging(settings.log_level)

    service = TunnelService(settings)
    if service.keys.is_empty():
        logger.warning("No public key configured, connection requests are not authenticated")
    if settings.idle_timeout > 0:
        threading.Thread(target=service.reap_idle, daemon=True).start()

    httpd = TunnelHTTPServer((settings.host, settings.port), service)
    logger.info("Tunnel server listening on %s:%d", settings.host, settings.port)
    try:
        httpd.serve_forever()
    except KeyboardInterrupt:
        logger.info("Shutting down")
    finally:
        httpd.server_close()
        service.registry.close_all()


if __name__ == "__main__":
    main()
