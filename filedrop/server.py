"""Multithreaded server that receives files into group-restricted directories."""

from __future__ import annotations

import argparse
import grp
import logging
import os
import pwd
import socket
import sys
import threading
from pathlib import Path

from .protocol import (
    BUFFER_SIZE,
    DISTRIBUTION_DIR,
    FILENAME_FIELD_SIZE,
    FILESIZE_LENGTH,
    MANUFACTURING_DIR,
    MAX_CLIENTS,
    MAX_PATH_LENGTH,
    PORT,
    READY_SIGNAL,
    TARGET_FIELD_SIZE,
    USERNAME_FIELD_SIZE,
    Status,
    TransferError,
    decode_filesize,
    encode_int,
    recv_exact,
)

log = logging.getLogger(__name__)

_TARGET_GROUPS = {
    MANUFACTURING_DIR: "manufacturing",
    DISTRIBUTION_DIR: "distribution",
}

_ACCEPT_POLL_SECONDS = 0.2


def resolve_target_dir(base_dir, target_dir) -> Path:
    """Return the directory under ``base_dir`` for a requested target name."""
    if target_dir not in _TARGET_GROUPS:
        raise TransferError(
            Status.PERMISSION_DENIED, f"Invalid target directory: {target_dir}"
        )
    return Path(base_dir) / target_dir


def verify_user_access(username: str, target_dir: str) -> bool:
    """Whether ``username`` belongs to the group that owns ``target_dir``."""
    group_name = _TARGET_GROUPS.get(target_dir)
    if group_name is None:
        return False
    try:
        user = pwd.getpwnam(username)
    except KeyError:
        log.error("User not found: %s", username)
        return False
    try:
        group = grp.getgrnam(group_name)
    except KeyError:
        log.error("Group not found: %s", group_name)
        return False
    return group.gr_gid in os.getgrouplist(username, user.pw_gid)


def set_file_ownership(path, username: str) -> None:
    """Give ``path`` to ``username`` and their primary group.

    Raises KeyError for an unknown user and OSError if the change fails.
    """
    user = pwd.getpwnam(username)
    os.chown(path, user.pw_uid, user.pw_gid)


def get_username_from_uid(uid: int) -> str | None:
    """Login name for ``uid``, or None if there is none."""
    try:
        return pwd.getpwuid(uid).pw_name
    except KeyError:
        return None


def _recv_field(conn: socket.socket, size: int) -> str:
    raw = recv_exact(conn, size)
    return raw.split(b"\0", 1)[0].decode("utf-8", errors="replace")


def _valid_filename(filename: str) -> bool:
    return bool(filename) and filename not in (".", "..") and "/" not in filename


def _copy_to_file(conn: socket.socket, out, size: int) -> None:
    remaining = size
    while remaining > 0:
        try:
            chunk = conn.recv(min(BUFFER_SIZE, remaining))
        except OSError as exc:
            raise TransferError(Status.FILE_ERROR, f"recv file data: {exc}") from exc
        if not chunk:
            raise TransferError(
                Status.FILE_ERROR,
                f"connection closed with {remaining} bytes outstanding",
            )
        try:
            out.write(chunk)
        except OSError as exc:
            raise TransferError(Status.FILE_ERROR, f"write file data: {exc}") from exc
        remaining -= len(chunk)


class TransferServer:
    """Listening socket that accepts uploads, one thread per client."""

    def __init__(self, host="0.0.0.0", port=PORT, base_dir=".", max_clients=MAX_CLIENTS):
        self.base_dir = Path(base_dir)
        self.max_clients = max_clients
        self._file_lock = threading.Lock()
        self._clients_lock = threading.Lock()
        self._active = 0
        self._stopping = threading.Event()
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((host, port))
            sock.listen(max_clients)
        except OSError:
            sock.close()
            raise
        sock.settimeout(_ACCEPT_POLL_SECONDS)
        self._sock = sock

    @property
    def address(self) -> tuple[str, int]:
        """The (host, port) the server is bound to."""
        host, port = self._sock.getsockname()[:2]
        return host, port

    @property
    def active_clients(self) -> int:
        """Number of clients currently being served."""
        with self._clients_lock:
            return self._active

    def serve_forever(self) -> None:
        """Accept connections until :meth:`close` is called."""
        while not self._stopping.is_set():
            try:
                conn, addr = self._sock.accept()
            except TimeoutError:
                continue
            except OSError as exc:
                if self._stopping.is_set():
                    break
                log.error("accept: %s", exc)
                continue
            conn.settimeout(None)
            with self._clients_lock:
                full = self._active >= self.max_clients
                if not full:
                    client_id = self._active
                    self._active += 1
            if full:
                log.info("Maximum clients reached. Rejecting connection.")
                conn.close()
                continue
            log.info(
                "New connection from %s:%d. Client ID: %d", addr[0], addr[1], client_id
            )
            thread = threading.Thread(
                target=self._run_client, args=(conn, addr, client_id), daemon=True
            )
            try:
                thread.start()
            except RuntimeError as exc:
                log.error("Could not start client thread: %s", exc)
                conn.close()
                self._release_client()

    def _release_client(self) -> int:
        with self._clients_lock:
            self._active -= 1
            return self._active

    def _run_client(self, conn, addr, client_id) -> None:
        try:
            self.handle_client(conn, addr, client_id)
        finally:
            remaining = self._release_client()
            log.info(
                "Client %d disconnected. Total active clients: %d", client_id, remaining
            )

    def handle_client(self, conn, addr, client_id) -> Status | None:
        """Serve one request on ``conn`` and close it.

        Returns the status sent back, or None if the request never arrived.
        """
        with conn:
            try:
                username = _recv_field(conn, USERNAME_FIELD_SIZE)
                log.info("Client %d identified as user: %s", client_id, username)
                target_dir = _recv_field(conn, TARGET_FIELD_SIZE)
                log.info(
                    "Client %d requested transfer to directory: %s",
                    client_id,
                    target_dir,
                )
                filename = _recv_field(conn, FILENAME_FIELD_SIZE)
                log.info("Client %d requested transfer of file: %s", client_id, filename)
            except OSError as exc:
                log.error("Client %d: failed to receive request: %s", client_id, exc)
                return None
            status = self.process_file_transfer(conn, username, target_dir, filename)
            try:
                conn.sendall(encode_int(status))
            except OSError as exc:
                log.error("Client %d: send status code: %s", client_id, exc)
            return status

    def process_file_transfer(self, conn, username, target_dir, filename) -> Status:
        """Receive one file from ``conn`` and report how it went."""
        try:
            target_path = self._receive_file(conn, username, target_dir, filename)
        except TransferError as exc:
            log.error("%s", exc)
            return exc.status
        log.info("File transfer completed: %s -> %s", filename, target_path)
        return Status.SUCCESS

    def _receive_file(self, conn, username, target_dir, filename) -> Path:
        directory = resolve_target_dir(self.base_dir, target_dir)
        if not verify_user_access(username, target_dir):
            raise TransferError(
                Status.PERMISSION_DENIED,
                f"User {username} does not have permission to access {target_dir}",
            )
        if not _valid_filename(filename):
            raise TransferError(Status.FILE_ERROR, f"Invalid file name: {filename!r}")
        relative_dir = f"./{target_dir}"
        if len(relative_dir.encode()) + len(filename.encode()) + 2 > MAX_PATH_LENGTH:
            raise TransferError(
                Status.FILE_ERROR, f"Path too long: {relative_dir}/{filename}"
            )

        try:
            filesize = decode_filesize(recv_exact(conn, FILESIZE_LENGTH))
        except OSError as exc:
            raise TransferError(Status.UNKNOWN_ERROR, f"recv filesize: {exc}") from exc
        log.info("Expected file size: %d bytes", filesize)

        target_path = directory / filename
        with self._file_lock:
            try:
                fd = os.open(target_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o644)
            except OSError as exc:
                raise TransferError(
                    Status.FILE_ERROR, f"open target file: {exc}"
                ) from exc
            with os.fdopen(fd, "wb") as out:
                try:
                    conn.sendall(encode_int(READY_SIGNAL))
                except OSError as exc:
                    raise TransferError(
                        Status.UNKNOWN_ERROR, f"send ready: {exc}"
                    ) from exc
                _copy_to_file(conn, out, filesize)
            try:
                set_file_ownership(target_path, username)
            except (KeyError, OSError) as exc:
                raise TransferError(
                    Status.FILE_ERROR,
                    f"Failed to set file ownership for {target_path}: {exc}",
                ) from exc
        return target_path

    def close(self) -> None:
        """Stop accepting connections and release the listening socket."""
        self._stopping.set()
        self._sock.close()

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()


def main(argv=None) -> int:
    """Run the transfer server until interrupted."""
    parser = argparse.ArgumentParser(description="Receive files from transfer clients.")
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=PORT)
    parser.add_argument("--base-dir", default=".")
    parser.add_argument("--max-clients", type=int, default=MAX_CLIENTS)
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(message)s")
    try:
        server = TransferServer(args.host, args.port, args.base_dir, args.max_clients)
    except OSError as exc:
        print(f"Failed to initialize server: {exc}. Exiting.", file=sys.stderr)
        return 1
    with server:
        log.info("Server initialized. Listening on port %d...", server.address[1])
        try:
            server.serve_forever()
        except KeyboardInterrupt:
            pass
    return 0


if __name__ == "__main__":
    sys.exit(main())