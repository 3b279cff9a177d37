# tunnel_protocol.py
"""
Wire types shared by the tunnel client and server: the connection request
sent to /begin, the hello token format and the HTTP header names.
"""
from __future__ import annotations

import base64
import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from cryptography.hazmat.primitives.asymmetric import rsa

from tunnel_crypto import asymmetric_inverse, asymmetric_transform
from tunnel_errors import MalformedRequest


HEADER_CONNECTION_ID = "X-Connection-Id"
HEADER_CLIENT_ID = "X-Client-Id"

TOKEN_MAX_AGE_SECONDS = 300


@dataclass(frozen=True)
class ConnectionConfig:
    host: str
    port: int
    buffer_size: int = 1048576
    base64_encoding: bool = False

    def __post_init__(self) -> None:
        if not self.host:
            raise ValueError("empty target host")
        if not 0 < self.port < 65536:
            raise ValueError(f"bad target port: {self.port}")
        if self.buffer_size <= 0:
            raise ValueError(f"bad buffer size: {self.buffer_size}")


@dataclass(frozen=True)
class ConnectionRequest:
    hello_result: str
    connection_config: ConnectionConfig


def _canonical_json(obj: Dict[str, Any]) -> bytes:
    return json.dumps(obj, sort_keys=True, separators=(",", ":")).encode("utf-8")


def encode_request(request: ConnectionRequest) -> bytes:
    cfg = request.connection_config
    return _canonical_json({
        "helloResult": request.hello_result,
        "connectionConfig": {
            "host": cfg.host,
            "port": cfg.port,
            "bufferSize": cfg.buffer_size,
            "base64Encoding": cfg.base64_encoding,
        },
    })


def decode_request(data: bytes) -> ConnectionRequest:
    try:
        raw = json.loads(data.decode("utf-8"))
        cfg = raw["connectionConfig"]
        config = ConnectionConfig(
            host=str(cfg["host"]),
            port=int(cfg["port"]),
            buffer_size=int(cfg.get("bufferSize", 1048576)),
            base64_encoding=bool(cfg.get("base64Encoding", False)),
        )
        return ConnectionRequest(hello_result=str(raw["helloResult"]), connection_config=config)
    except (UnicodeDecodeError, ValueError, KeyError, TypeError, AttributeError) as e:
        raise MalformedRequest("bad connection request") from e


def seal_request(request: ConnectionRequest, private_key: Optional[rsa.RSAPrivateKey]) -> bytes:
    payload = encode_request(request)
    if private_key is None:
        return payload
    return base64.b64encode(asymmetric_transform(payload, private_key))


def open_request(body: bytes, public_key: rsa.RSAPublicKey) -> bytes:
    """Undo seal_request; raises ValueError (DecryptError or a base64 error)."""
    return asymmetric_inverse(base64.b64decode(body, validate=True), public_key)


def make_hello_token(ip: str, now: datetime, last_reload: int) -> str:
    return f"{ip}/{now.isoformat()}/{last_reload}"


def parse_hello_token(token: str) -> Tuple[str, datetime]:
    parts = token.split("/")
    if len(parts) < 2:
        raise MalformedRequest("bad hello token")
    try:
        ts = datetime.fromisoformat(parts[1])
    except ValueError as e:
        raise MalformedRequest("bad hello token") from e
    if ts.tzinfo is not None:
        # tokens are issued in server local time, without offset
        raise MalformedRequest("bad hello token")
    return parts[0], ts
