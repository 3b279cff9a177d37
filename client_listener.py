#!/usr/bin/env python3
"""
Client entry point: listens on a local port and starts one TunnelClient
thread per accepted connection (or exactly one in single mode).
"""
from __future__ import annotations

import argparse
import logging
import socket
import threading
from typing import List, Optional

from tunnel_client import TunnelClient
from tunnel_config import ClientSettings, add_common_arguments, load_client_settings, setup_logging
from tunnel_crypto import file_digest, load_private_key


logger = logging.getLogger(__name__)


class ClientListener:
    def __init__(self, settings: ClientSettings) -> None:
        self.settings = settings
        self.private_key = None
        self.client_id: Optional[str] = None
        if settings.private_key:
            logger.info("Using private key %s for connections", settings.private_key)
            self.private_key = load_private_key(settings.private_key)
        if settings.public_key:
            self.client_id = file_digest(settings.public_key)
            logger.info("Using client id: %s", self.client_id)
        self.workers: List[threading.Thread] = []
        self._sock: Optional[socket.socket] = None
        self._thread: Optional[threading.Thread] = None

    @property
    def address(self):
        return self._sock.getsockname() if self._sock else None

    def bind(self) -> socket.socket:
        lsock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        lsock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        lsock.bind((self.settings.bind, self.settings.port))
        lsock.listen(5)
        self._sock = lsock
        return lsock

    def start(self) -> None:
        self.bind()
        logger.info("Starting listener thread")
        self._thread = threading.Thread(target=self.run, daemon=True)
        self._thread.start()

    def stop(self) -> None:
        logger.info("Destroying listener")
        lsock, self._sock = self._sock, None
        if lsock is not None:
            # closing the socket interrupts accept()
            try:
                lsock.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            lsock.close()
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None

    def _spawn(self, csock: socket.socket) -> threading.Thread:
        host, port = self.settings.target_address()
        client = TunnelClient(csock, host, port, self.settings.tunnel,
                              proxy=self.settings.proxy,
                              buffer_size=self.settings.buffer_size,
                              base64_encoding=self.settings.base64,
                              private_key=self.private_key,
                              client_id=self.client_id)
        t = threading.Thread(target=client.run, daemon=True)
        t.start()
        self.workers = [w for w in self.workers if w.is_alive()]
        self.workers.append(t)
        return t

    def run(self) -> None:
        lsock = self._sock or self.bind()
        logger.info("Waiting for connection on %s:%d", *lsock.getsockname()[:2])
        try:
            while True:
                try:
                    csock, addr = lsock.accept()
                except OSError:
                    if self._sock is None:
                        break  # stopped
                    raise
                logger.info("New connection received from %s:%d", *addr[:2])
                self._spawn(csock)
                if self.settings.single:
                    break
        except OSError as e:
            logger.error("Error in listener loop: %s", e)
        finally:
            if self.settings.single and self._sock is not None:
                self._sock.close()
                self._sock = None
        logger.info("Listener thread terminated")


def main(argv=None):
    ap = argparse.ArgumentParser(description="HTTP tunnel client")
    add_common_arguments(ap)
    ap.add_argument("--port", type=int, help="local listen port")
    ap.add_argument("--bind", help="local listen address")
    ap.add_argument("--target", help="destination host:port, as reached by the server")
    ap.add_argument("--tunnel", help="tunnel server base URL")
    ap.add_argument("--proxy", help="outbound HTTP proxy URL")
    ap.add_argument("--buffer-size", type=int, help="server read buffer size")
    ap.add_argument("--base64", action="store_true", default=None, help="base64 encode transferred bytes")
    ap.add_argument("--private-key", help="RSA private key PEM used to sign connection requests")
    ap.add_argument("--public-key", help="public key PEM whose digest is sent as client id")
    ap.add_argument("--single", action="store_true", default=None, help="accept one connection then stop")
    args = ap.parse_args(argv)

    try:
        settings = load_client_settings(args.config, vars(args))
    except (ValueError, FileNotFoundError) as e:
        raise SystemExit(str(e))
    setup_logging(settings.log_level)

    listener = ClientListener(settings)
    try:
        listener.run()
        for t in listener.workers:
            t.join()
    except KeyboardInterrupt:
        logger.info("Shutting down")
        listener.stop()


if __name__ == "__main__":
    main()
