# stream_io.py
"""
Socket side of the tunnel: the long-poll read behind /download and the
write-complete loop behind /upload.

A download returns one batch of bytes (possibly empty after the wait time)
or raises EndOfStream once the destination has closed and nothing is left
to deliver.
"""
from __future__ import annotations

import base64
import binascii
import errno
import logging
import select
import socket
import time

from connection_registry import Session
from tunnel_errors import EndOfStream, MalformedRequest, TransportError


logger = logging.getLogger(__name__)

READ_WAIT_TIME = 10.0
WRITE_WAIT_TIME = 10.0

EOF = -1


def _recv_into(sock: socket.socket, view: memoryview) -> int:
    """Non-blocking read: bytes read, 0 when nothing is available, EOF at end of stream."""
    if sock.fileno() == -1:
        return EOF
    try:
        n = sock.recv_into(view)
    except BlockingIOError:
        return 0
    except OSError as e:
        if e.errno == errno.EBADF:
            return EOF
        raise TransportError(f"read failed: {e}") from e
    return n if n > 0 else EOF


def write_fully(sock: socket.socket, data: bytes, wait_time: float = WRITE_WAIT_TIME) -> int:
    view = memoryview(data)
    sent = 0
    while sent < len(view):
        try:
            sent += sock.send(view[sent:])
            continue
        except BlockingIOError:
            pass
        except OSError as e:
            raise TransportError(f"write failed: {e}") from e
        _, writable, _ = select.select([], [sock], [], wait_time)
        if not writable:
            raise TransportError(f"write stalled for {wait_time}s")
    return sent


class DownloadPoller:
    def __init__(self, wait_time: float = READ_WAIT_TIME) -> None:
        self.wait_time = wait_time

    def poll(self, session: Session) -> bytes:
        sock = session.sock
        view = memoryview(session.read_buffer)
        capacity = len(view)
        pos = 0
        start = time.monotonic()
        while True:
            read = _recv_into(sock, view[pos:])
            if read > 0:
                pos += read
            if pos < capacity and read > 0:
                continue

            if pos > 0:
                data = bytes(view[:pos])
                logger.debug("Read %d bytes for %s", pos, session.id)
                if session.config.base64_encoding:
                    return base64.b64encode(data)
                return data
            if read == EOF:
                raise EndOfStream("EOF reached")

            remaining = self.wait_time - (time.monotonic() - start)
            if remaining <= 0:
                return b""
            # wait for readability instead of spinning; same stop conditions
            try:
                select.select([sock], [], [], remaining)
            except (OSError, ValueError):
                # socket closed underneath us; next read reports EOF
                continue


class UploadWriter:
    def __init__(self, wait_time: float = WRITE_WAIT_TIME) -> None:
        self.wait_time = wait_time

    def write(self, session: Session, body: bytes) -> int:
        data = body
        if session.config.base64_encoding:
            try:
                data = base64.b64decode(body, validate=True)
            except binascii.Error as e:
                raise MalformedRequest("bad base64 body") from e
        if not data:
            return 0
        logger.debug("Writing %d bytes for %s", len(data), session.id)
        return write_fully(session.sock, data, self.wait_time)
