# tunnel_errors.py
"""
Error taxonomy for the tunnel protocol. Each TunnelError carries the HTTP
status the server answers with; details stay in the server log.
"""
from __future__ import annotations


class TunnelError(Exception):
    status = 500
    reason = "Internal Server Error"


class MalformedRequest(TunnelError):
    status = 400
    reason = "Bad Request"


class AuthenticationFailure(TunnelError):
    status = 403
    reason = "Forbidden"


class OwnershipError(TunnelError):
    status = 403
    reason = "Forbidden"


class NotFoundError(TunnelError):
    status = 404
    reason = "Not Found"


class EndOfStream(TunnelError):
    status = 410
    reason = "Gone"


class TransportError(TunnelError):
    status = 500
    reason = "Internal Server Error"


class DecryptError(ValueError):
    pass


class EncodingError(ValueError):
    pass
