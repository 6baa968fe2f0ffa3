"""Errors raised by the discovery service.

Every rejected request maps to one named condition; the HTTP layer uses
``code`` and ``http_status`` to build the response.
"""

from __future__ import annotations


class RegistryError(Exception):
    """Base class for rejected registry operations."""

    code = "RegistryError"
    http_status = 400
    default_message = "Request rejected"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.default_message)

    @property
    def message(self) -> str:
        return str(self)


class InvalidRequest(RegistryError):
    code = "InvalidRequest"
    default_message = "Request body must be a JSON object"


class MissingPeerId(RegistryError):
    code = "MissingPeerId"
    default_message = "peerId is required"


class InvalidPeerId(RegistryError):
    code = "InvalidPeerId"
    default_message = "Invalid peer ID format"


class MissingUsername(RegistryError):
    code = "MissingUsername"
    default_message = "Username is required"


class UsernameLengthInvalid(RegistryError):
    code = "UsernameLengthInvalid"
    default_message = "Username has an invalid length"


class UsernameCharsInvalid(RegistryError):
    code = "UsernameCharsInvalid"
    default_message = "Username contains invalid characters"


class InvalidLocation(RegistryError):
    code = "InvalidLocation"
    default_message = "Valid location coordinates are required"


class InvalidAvatar(RegistryError):
    code = "InvalidAvatar"
    default_message = "Invalid avatar format"


class UsernameTaken(RegistryError):
    code = "UsernameTaken"
    http_status = 409
    default_message = "Username already taken in this area. Please choose a different one."


class PeerNotFound(RegistryError):
    code = "PeerNotFound"
    http_status = 404
    default_message = "Peer not found"


class InvalidStatus(RegistryError):
    code = "InvalidStatus"
    default_message = "Invalid status"
