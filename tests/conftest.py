import socket
import threading

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from tunnel_config import ServerSettings
from tunnel_server import start_server


def _write_keypair(directory, name):
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    priv_path = directory / f"{name}.key"
    pub_path = directory / f"{name}.pem"
    priv_path.write_bytes(key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.TraditionalOpenSSL,
        serialization.NoEncryption(),
    ))
    pub_path.write_bytes(key.public_key().public_bytes(
        serialization.Encoding.PEM,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    ))
    return key, priv_path, pub_path


@pytest.fixture(scope="session")
def keypair(tmp_path_factory):
    """(private_key, private_pem_path, public_pem_path); public pem alone in its dir."""
    return _write_keypair(tmp_path_factory.mktemp("keys"), "client")


@pytest.fixture(scope="session")
def other_keypair(tmp_path_factory):
    return _write_keypair(tmp_path_factory.mktemp("other_keys"), "other")


@pytest.fixture
def echo_server():
    lsock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    lsock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    lsock.bind(("127.0.0.1", 0))
    lsock.listen(5)

    def _serve(csock):
        with csock:
            while True:
                try:
                    data = csock.recv(4096)
                except OSError:
                    break
                if not data:
                    break
                csock.sendall(data)

    def handler():
        while True:
            try:
                csock, _ = lsock.accept()
            except OSError:
                break
            threading.Thread(target=_serve, args=(csock,), daemon=True).start()

    threading.Thread(target=handler, daemon=True).start()
    yield lsock.getsockname()
    try:
        lsock.shutdown(socket.SHUT_RDWR)
    except OSError:
        pass
    lsock.close()


@pytest.fixture
def make_server():
    servers = []

    def _make(**kwargs):
        kwargs.setdefault("host", "127.0.0.1")
        kwargs.setdefault("port", 0)
        kwargs.setdefault("read_wait_time", 1.0)
        httpd = start_server(ServerSettings(**kwargs))
        servers.append(httpd)
        host, port = httpd.server_address[:2]
        return httpd, f"http://{host}:{port}"

    yield _make
    for httpd in servers:
        httpd.shutdown()
        httpd.server_close()
        httpd.service.registry.close_all()
