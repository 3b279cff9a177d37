# connection_registry.py
"""
In-memory registry of tunneled sessions. A session is reachable only from
the ip address that created it.
"""
from __future__ import annotations

import logging
import secrets
import socket
import threading
import time
from dataclasses import dataclass, field
from typing import Dict, List

from tunnel_errors import NotFoundError, OwnershipError
from tunnel_protocol import ConnectionConfig


logger = logging.getLogger(__name__)


@dataclass
class Session:
    id: str
    owner_address: str
    sock: socket.socket
    config: ConnectionConfig
    read_buffer: bytearray = field(init=False, repr=False)
    last_access: float = field(default_factory=time.monotonic)

    def __post_init__(self) -> None:
        self.read_buffer = bytearray(self.config.buffer_size)

    def touch(self) -> None:
        self.last_access = time.monotonic()

    def close(self) -> None:
        try:
            self.sock.close()
        except OSError as e:
            logger.debug("Error closing socket of %s: %s", self.id, e)


class ConnectionRegistry:
    def __init__(self) -> None:
        self._sessions: Dict[str, Session] = {}
        self._lock = threading.Lock()

    def _new_id(self) -> str:
        while True:
            session_id = secrets.token_urlsafe(24)
            if session_id not in self._sessions:
                return session_id

    def create(self, owner_ip: str, config: ConnectionConfig, sock: socket.socket) -> str:
        with self._lock:
            session_id = self._new_id()
            self._sessions[session_id] = Session(session_id, owner_ip, sock, config)
        return session_id

    def lookup(self, session_id: str, caller_ip: str) -> Session:
        with self._lock:
            session = self._sessions.get(session_id)
        if session is None:
            raise NotFoundError("unable to find connection")
        if session.owner_address != caller_ip:
            raise OwnershipError("connection owned by another address")
        session.touch()
        return session

    def remove(self, session_id: str) -> bool:
        with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        session.close()
        return True

    def evict_idle(self, max_idle: float) -> List[str]:
        cutoff = time.monotonic() - max_idle
        with self._lock:
            stale = [s for s in self._sessions.values() if s.last_access < cutoff]
            for s in stale:
                del self._sessions[s.id]
        for s in stale:
            logger.info("Evicting idle connection %s of %s", s.id, s.owner_address)
            s.close()
        return [s.id for s in stale]

    def close_all(self) -> None:
        with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        for s in sessions:
            s.close()

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        with self._lock:
            return session_id in self._sessions
