# auth_gate.py
"""
Admission control for /hello and /begin.

hello hands out "ip/timestamp/lastReload"; begin must carry that string back
inside the connection request, from the same ip and within five minutes.
When public keys are configured the request must also be transformed with
the private key matching the caller's client id.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Optional

from key_directory import KeyDirectory
from tunnel_errors import AuthenticationFailure, MalformedRequest
from tunnel_protocol import (
    TOKEN_MAX_AGE_SECONDS,
    ConnectionRequest,
    decode_request,
    make_hello_token,
    open_request,
    parse_hello_token,
)


logger = logging.getLogger(__name__)


class AuthenticationGate:
    def __init__(self, keys: KeyDirectory, clock: Callable[[], datetime] = datetime.now) -> None:
        self.keys = keys
        self._clock = clock

    def hello(self, caller_ip: str, client_id: Optional[str] = None) -> str:
        if not self.keys.is_empty() and client_id not in self.keys:
            if self.keys.maybe_reload():
                logger.info("Public keys reloaded on hello from %s", caller_ip)
        last_reload = int(self.keys.last_reload * 1000) if self.keys.reload_interval > 0 else 0
        return make_hello_token(caller_ip, self._clock(), last_reload)

    def admit(self, body: bytes, caller_ip: str, client_id: Optional[str] = None) -> ConnectionRequest:
        payload = body
        if not self.keys.is_empty():
            public_key = self.keys.get(client_id)
            if public_key is None:
                logger.warning("Rejecting connection from %s: unknown client id %r", caller_ip, client_id)
                raise AuthenticationFailure("unknown client id")
            try:
                payload = open_request(body, public_key)
            except ValueError as e:
                logger.warning("Unable to decrypt connection request from %s: %s", caller_ip, e)
                raise MalformedRequest("undecryptable request") from e

        request = decode_request(payload)
        self.check_token(request.hello_result, caller_ip)
        return request

    def check_token(self, token: str, caller_ip: str) -> None:
        token_ip, token_time = parse_hello_token(token)
        if token_ip != caller_ip:
            logger.warning("Rejecting connection from %s: hello token issued to %s", caller_ip, token_ip)
            raise AuthenticationFailure("ip mismatch")
        age = (self._clock() - token_time).total_seconds()
        if age > TOKEN_MAX_AGE_SECONDS:
            logger.warning("Rejecting connection from %s: hello token is %.0fs old", caller_ip, age)
            raise AuthenticationFailure("expired token")
