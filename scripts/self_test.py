#!/usr/bin/env python3
"""
End-to-end local self-test:
- Starts a local TCP echo server
- Starts the tunnel server and a single-shot client listener
- Sends traffic through the tunnel and verifies echo
"""
from __future__ import annotations

import os
import socket
import sys
import threading

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from client_listener import ClientListener  # noqa: E402
from tunnel_config import ClientSettings, ServerSettings, setup_logging  # noqa: E402
from tunnel_server import start_server  # noqa: E402


def start_echo_server(host: str, port: int):
    lsock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    lsock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    lsock.bind((host, port))
    lsock.listen(5)

    def handler():
        while True:
            csock, _ = lsock.accept()
            def _serve():
                while True:
                    data = csock.recv(4096)
                    if not data:
                        break
                    csock.sendall(data)
                csock.close()
            threading.Thread(target=_serve, daemon=True).start()
    threading.Thread(target=handler, daemon=True).start()
    return lsock


def main():
    setup_logging(os.environ.get("HTUNNEL_LOG_LEVEL", "WARNING"))

    echo = start_echo_server("127.0.0.1", 0)
    echo_host, echo_port = echo.getsockname()

    httpd = start_server(ServerSettings(host="127.0.0.1", port=0, read_wait_time=1.0))
    server_host, server_port = httpd.server_address[:2]

    listener = ClientListener(ClientSettings(
        target=f"{echo_host}:{echo_port}",
        tunnel=f"http://{server_host}:{server_port}",
        bind="127.0.0.1",
        port=0,
        single=True,
    ))
    listener.start()

    client = socket.create_connection(listener.address, timeout=10)
    msg = b"hello-http-tunnel"
    client.sendall(msg)
    out = b""
    while len(out) < len(msg):
        chunk = client.recv(4096)
        if not chunk:
            break
        out += chunk
    client.close()

    for t in listener.workers:
        t.join(10)
    listener.stop()
    httpd.shutdown()
    echo.close()

    if out != msg:
        raise SystemExit("self-test failed: echo mismatch")
    print("[OK] self-test passed")


if __name__ == "__main__":
    main()
