"""Wire format shared by the transfer client and server.

A session runs as follows.  The client sends the username, the target
directory and the file name as NUL-padded fixed-width fields
(``USERNAME_FIELD_SIZE``, ``TARGET_FIELD_SIZE`` and ``FILENAME_FIELD_SIZE``
bytes, each holding at most one byte less than its width), followed by the
file size as a signed 64-bit little-endian integer.  If the server accepts
the request it answers with ``READY_SIGNAL`` as a 32-bit integer, the client
streams the file bytes, and the server finishes with a 32-bit status code.
If the server refuses the request it sends only the status code.
"""

from __future__ import annotations

import socket
import struct
from enum import IntEnum

SERVER_IP = "127.0.0.1"
PORT = 8080
BUFFER_SIZE = 1024
MAX_CLIENTS = 10
MAX_PATH_LENGTH = 256

MANUFACTURING_DIR = "Manufacturing"
DISTRIBUTION_DIR = "Distribution"
TARGET_DIRS = (MANUFACTURING_DIR, DISTRIBUTION_DIR)

USERNAME_FIELD_SIZE = 64
TARGET_FIELD_SIZE = 64
FILENAME_FIELD_SIZE = MAX_PATH_LENGTH

READY_SIGNAL = 1

_FILESIZE = struct.Struct("<q")
_INT = struct.Struct("<i")

FILESIZE_LENGTH = _FILESIZE.size
INT_LENGTH = _INT.size


class Status(IntEnum):
    """Outcome of a transfer as reported by the server."""

    SUCCESS = 0
    PERMISSION_DENIED = 1
    FILE_ERROR = 2
    UNKNOWN_ERROR = 3

    def message(self) -> str:
        """Human-readable description of this status."""
        return _MESSAGES[self]


_MESSAGES = {
    Status.SUCCESS: "File transfer successful.",
    Status.PERMISSION_DENIED: (
        "Permission denied. You do not have access to the target directory."
    ),
    Status.FILE_ERROR: "File transfer failed due to a file-related error.",
    Status.UNKNOWN_ERROR: "File transfer failed due to an unknown error.",
}


class TransferError(Exception):
    """A transfer failed with the given status."""

    def __init__(self, status, message):
        super().__init__(message)
        self.status = Status(status)


def _pack(codec: struct.Struct, value: int) -> bytes:
    try:
        return codec.pack(value)
    except struct.error as exc:
        raise ValueError(f"value out of range: {value}") from exc


def _unpack(codec: struct.Struct, data: bytes) -> int:
    if len(data) != codec.size:
        raise ValueError(f"expected {codec.size} bytes, got {len(data)}")
    (value,) = codec.unpack(data)
    return value


def encode_filesize(size: int) -> bytes:
    """Encode a file size as a signed 64-bit little-endian integer."""
    return _pack(_FILESIZE, size)


def decode_filesize(data: bytes) -> int:
    """Decode a file size produced by :func:`encode_filesize`."""
    return _unpack(_FILESIZE, data)


def encode_int(value: int) -> bytes:
    """Encode a status or signal as a signed 32-bit little-endian integer."""
    return _pack(_INT, value)


def decode_int(data: bytes) -> int:
    """Decode an integer produced by :func:`encode_int`."""
    return _unpack(_INT, data)


def recv_exact(sock: socket.socket, size: int) -> bytes:
    """Read exactly ``size`` bytes, raising ConnectionError on early EOF."""
    received = bytearray()
    while len(received) < size:
        chunk = sock.recv(size - len(received))
        if not chunk:
            raise ConnectionError(
                f"connection closed after {len(received)} of {size} bytes"
            )
        received += chunk
    return bytes(received)