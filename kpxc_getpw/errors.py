from __future__ import annotations

from typing import Optional


class KpxcError(Exception):
    """Base class for every failure the client reports."""


class PeerConnectionError(KpxcError, ConnectionError):
    # Peer application socket / proxy unreachable.
    pass


class TransportError(KpxcError):
    pass


class HandshakeError(KpxcError):
    pass


class AssociationError(KpxcError):
    pass


class AuthenticationFailure(KpxcError, ValueError):
    """A received message failed decryption or verification. Possible tampering."""


class ProtocolError(KpxcError):
    pass


class PeerError(ProtocolError):
    """The peer answered with an explicit error code."""

    def __init__(self, message: str, code: Optional[int] = None, action: Optional[str] = None):
        super().__init__(message)
        self.code = code
        self.action = action


class SessionFailedError(KpxcError):
    pass


class ConfigLoadError(KpxcError):
    pass


class ConfigSaveError(KpxcError):
    pass


class NoMatchError(KpxcError):
    pass
