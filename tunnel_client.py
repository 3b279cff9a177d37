# tunnel_client.py
"""
Per-connection worker on the client side. Bridges one accepted local socket
to a server-side connection:

  hello -> begin -> loop { upload local bytes, download remote bytes } -> finish

Calls for a connection are strictly sequential, so the server never sees two
in-flight /upload or /download for the same id.
"""
from __future__ import annotations

import base64
import enum
import logging
import socket
from typing import Optional

import requests
from cryptography.hazmat.primitives.asymmetric import rsa

from stream_io import write_fully
from tunnel_errors import TransportError
from tunnel_protocol import (
    HEADER_CLIENT_ID,
    HEADER_CONNECTION_ID,
    ConnectionConfig,
    ConnectionRequest,
    seal_request,
)


logger = logging.getLogger(__name__)

# (connect, read) seconds; read must outlast the server's long-poll wait
HTTP_TIMEOUT = (10.0, 60.0)


class State(enum.Enum):
    CONNECTING = "connecting"
    HANDSHAKING = "handshaking"
    BRIDGING = "bridging"
    CLOSING = "closing"
    CLOSED = "closed"


class TunnelClient:
    def __init__(self, local: socket.socket, target_host: str, target_port: int, tunnel: str,
                 proxy: Optional[str] = None, buffer_size: int = 1048576, base64_encoding: bool = False,
                 private_key: Optional[rsa.RSAPrivateKey] = None, client_id: Optional[str] = None) -> None:
        self.local = local
        self.config = ConnectionConfig(target_host, target_port, buffer_size, base64_encoding)
        self.tunnel = tunnel.rstrip("/")
        self.private_key = private_key
        self.client_id = client_id
        self.connection_id: Optional[str] = None
        self.state = State.CONNECTING
        self.http = requests.Session()
        if proxy:
            self.http.proxies.update({"http": proxy, "https": proxy})
        if client_id:
            self.http.headers[HEADER_CLIENT_ID] = client_id

    def _url(self, route: str) -> str:
        return f"{self.tunnel}/{route}"

    def handshake(self) -> str:
        self.state = State.HANDSHAKING
        resp = self.http.get(self._url("hello"), timeout=HTTP_TIMEOUT)
        resp.raise_for_status()
        request = ConnectionRequest(hello_result=resp.text.strip(), connection_config=self.config)
        resp = self.http.post(self._url("begin"), data=seal_request(request, self.private_key), timeout=HTTP_TIMEOUT)
        resp.raise_for_status()
        self.connection_id = resp.text.strip()
        self.http.headers[HEADER_CONNECTION_ID] = self.connection_id
        logger.info("Connection id is %s", self.connection_id)
        return self.connection_id

    def _read_local(self) -> Optional[bytes]:
        """Available local bytes, b"" if none yet, None once the peer closed."""
        try:
            data = self.local.recv(self.config.buffer_size)
        except BlockingIOError:
            return b""
        except OSError as e:
            logger.info("Local read failed: %s", e)
            return None
        return data if data else None

    def upload(self, data: bytes) -> None:
        body = base64.b64encode(data) if self.config.base64_encoding else data
        resp = self.http.post(self._url("upload"), data=body, timeout=HTTP_TIMEOUT)
        resp.raise_for_status()

    def download(self) -> Optional[bytes]:
        """Next batch from the server, None once the remote side is gone."""
        resp = self.http.get(self._url("download"), timeout=HTTP_TIMEOUT)
        if resp.status_code == 410:
            return None
        resp.raise_for_status()
        data = resp.content
        if data and self.config.base64_encoding:
            data = base64.b64decode(data)
        return data

    def bridge(self) -> None:
        self.state = State.BRIDGING
        while True:
            data = self._read_local()
            if data is None:
                logger.info("Local connection closed")
                return
            if data:
                self.upload(data)

            data = self.download()
            if data is None:
                logger.info("Remote connection closed")
                return
            if data:
                write_fully(self.local, data)

    def finish(self) -> None:
        self.state = State.CLOSING
        if self.connection_id:
            try:
                self.http.get(self._url("finish"), timeout=HTTP_TIMEOUT).raise_for_status()
            except requests.RequestException as e:
                logger.warning("Unable to finish connection %s: %s", self.connection_id, e)

    def close(self) -> None:
        try:
            self.local.close()
        finally:
            self.http.close()
            self.state = State.CLOSED

    def run(self) -> None:
        try:
            self.local.setblocking(False)
            try:
                self.handshake()
            except (requests.RequestException, ValueError) as e:
                logger.error("Handshake failed: %s", e)
                return
            except Exception:
                logger.exception("Unexpected error during handshake")
                return
            try:
                self.bridge()
            except (requests.RequestException, TransportError) as e:
                logger.error("Error in tunnel loop for %s: %s", self.connection_id, e)
            except Exception:
                logger.exception("Unexpected error in tunnel loop for %s", self.connection_id)
            finally:
                self.finish()
            logger.info("Tunnel %s terminated", self.connection_id)
        finally:
            self.close()
