"""Client that uploads one file to the transfer server."""

from __future__ import annotations

import argparse
import logging
import os
import pwd
import socket
import stat
import sys
from functools import partial

from .protocol import (
    BUFFER_SIZE,
    FILENAME_FIELD_SIZE,
    INT_LENGTH,
    PORT,
    READY_SIGNAL,
    SERVER_IP,
    TARGET_DIRS,
    TARGET_FIELD_SIZE,
    USERNAME_FIELD_SIZE,
    Status,
    TransferError,
    decode_int,
    encode_filesize,
    recv_exact,
)

log = logging.getLogger(__name__)


def connect_to_server(host=SERVER_IP, port=PORT) -> socket.socket:
    """Open a TCP connection to the server; raises OSError on failure."""
    return socket.create_connection((host, port))


def get_current_username() -> str | None:
    """Login name of the user running this process, or None if unknown."""
    try:
        return pwd.getpwuid(os.getuid()).pw_name
    except KeyError:
        return None


def get_file_size(filepath) -> int:
    """Size of ``filepath`` in bytes; raises OSError if it cannot be read."""
    return os.stat(filepath).st_size


def _field(value: str, size: int) -> bytes:
    raw = value.encode("utf-8")[: size - 1]
    return raw.ljust(size, b"\0")


def _as_status(value: int) -> Status:
    try:
        return Status(value)
    except ValueError:
        return Status.UNKNOWN_ERROR


def _send(sock: socket.socket, data: bytes, what: str) -> None:
    try:
        sock.sendall(data)
    except OSError as exc:
        raise TransferError(Status.UNKNOWN_ERROR, f"send {what}: {exc}") from exc


def _recv_int(sock: socket.socket, what: str) -> int:
    try:
        return decode_int(recv_exact(sock, INT_LENGTH))
    except OSError as exc:
        raise TransferError(Status.UNKNOWN_ERROR, f"recv {what}: {exc}") from exc


def send_file(sock, filepath, target_dir, username=None) -> Status:
    """Upload ``filepath`` into ``target_dir`` on the server behind ``sock``.

    Returns the status the server reported. Raises TransferError when the
    transfer cannot be carried out on this side or the connection fails.
    """
    if username is None:
        username = get_current_username()
        if username is None:
            raise TransferError(Status.UNKNOWN_ERROR, "Failed to get username")

    path = os.fspath(filepath)
    filename = path.rsplit("/", 1)[-1]

    try:
        filesize = get_file_size(path)
    except OSError as exc:
        raise TransferError(
            Status.FILE_ERROR, f"Failed to get file size for '{path}': {exc}"
        ) from exc

    _send(sock, _field(username, USERNAME_FIELD_SIZE), "username")
    _send(sock, _field(target_dir, TARGET_FIELD_SIZE), "target directory")
    _send(sock, _field(filename, FILENAME_FIELD_SIZE), "filename")
    _send(sock, encode_filesize(filesize), "filesize")

    reply = _recv_int(sock, "ready signal")
    if reply != READY_SIGNAL:
        return _as_status(reply)

    try:
        source = open(path, "rb")
    except OSError as exc:
        raise TransferError(Status.FILE_ERROR, f"open file: {exc}") from exc

    log.info("Sending file: %s (%d bytes)", filename, filesize)
    with source:
        for chunk in iter(partial(source.read, BUFFER_SIZE), b""):
            _send(sock, chunk, "file data")
            log.info("Sent %d bytes", len(chunk))

    return _as_status(_recv_int(sock, "status code"))


def usage() -> str:
    """Usage text for the command line."""
    return (
        "Usage: client <filepath> <target_directory>\n"
        "  filepath: Path to the file you want to transfer\n"
        "  target_directory: Either 'Manufacturing' or 'Distribution'\n"
        "\n"
        "Example: ./client /path/to/myfile.txt Manufacturing\n"
    )


class _UsageError(Exception):
    pass


class _Parser(argparse.ArgumentParser):
    def error(self, message):
        raise _UsageError(message)


def _parse(argv):
    parser = _Parser(prog="client", add_help=False)
    parser.add_argument("filepath")
    parser.add_argument("target_directory")
    parser.add_argument("--host", default=SERVER_IP)
    parser.add_argument("--port", type=int, default=PORT)
    return parser.parse_args(argv)


def main(argv=None) -> int:
    """Upload a file given on the command line; returns the exit status."""
    try:
        args = _parse(sys.argv[1:] if argv is None else argv)
    except _UsageError:
        print(usage(), end="")
        return 1

    if args.target_directory not in TARGET_DIRS:
        print(
            "Error: Target directory must be either 'Manufacturing' or 'Distribution'",
            file=sys.stderr,
        )
        print(usage(), end="")
        return 1

    try:
        is_file = stat.S_ISREG(os.stat(args.filepath).st_mode)
    except OSError:
        is_file = False
    if not is_file:
        print(
            f"Error: File '{args.filepath}' does not exist or is not a regular file",
            file=sys.stderr,
        )
        return 1

    try:
        sock = connect_to_server(args.host, args.port)
    except OSError as exc:
        print(f"connect: {exc}", file=sys.stderr)
        print("Failed to connect to server. Exiting.", file=sys.stderr)
        return 1

    print(f"Connected to server at {args.host}:{args.port}")
    with sock:
        try:
            status = send_file(sock, args.filepath, args.target_directory)
        except TransferError as exc:
            print(exc, file=sys.stderr)
            status = exc.status
    print(status.message())
    return 0 if status is Status.SUCCESS else 1


if __name__ == "__main__":
    sys.exit(main())