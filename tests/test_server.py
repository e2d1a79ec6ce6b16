import socket
import threading
import time
from pathlib import Path
from types import SimpleNamespace
from unittest import mock

import pytest

from filedrop.protocol import (
    BUFFER_SIZE,
    FILENAME_FIELD_SIZE,
    INT_LENGTH,
    READY_SIGNAL,
    TARGET_FIELD_SIZE,
    USERNAME_FIELD_SIZE,
    Status,
    TransferError,
    decode_int,
    encode_filesize,
    recv_exact,
)
from filedrop.server import (
    TransferServer,
    get_username_from_uid,
    main,
    resolve_target_dir,
    set_file_ownership,
    verify_user_access,
)

USERS = {
    "alice": SimpleNamespace(pw_name="alice", pw_uid=1001, pw_gid=1001),
    "bob": SimpleNamespace(pw_name="bob", pw_uid=1002, pw_gid=1002),
}
GROUPS = {
    "manufacturing": SimpleNamespace(gr_name="manufacturing", gr_gid=5001),
    "distribution": SimpleNamespace(gr_name="distribution", gr_gid=5002),
}
MEMBERSHIP = {"alice": [1001, 5001], "bob": [1002, 5002]}


def _getpwnam(name):
    return USERS[name]


def _getpwuid(uid):
    for user in USERS.values():
        if user.pw_uid == uid:
            return user
    raise KeyError(uid)


def _getgrnam(name):
    return GROUPS[name]


def _getgrouplist(name, gid):
    return MEMBERSHIP.get(name, [gid])


@pytest.fixture
def accounts():
    with mock.patch("pwd.getpwnam", side_effect=_getpwnam), mock.patch(
        "pwd.getpwuid", side_effect=_getpwuid
    ), mock.patch("grp.getgrnam", side_effect=_getgrnam), mock.patch(
        "os.getgrouplist", side_effect=_getgrouplist
    ), mock.patch(
        "os.chown"
    ) as chown:
        yield chown


@pytest.fixture
def base_dir(tmp_path):
    (tmp_path / "Manufacturing").mkdir()
    (tmp_path / "Distribution").mkdir()
    return tmp_path


@pytest.fixture
def server(base_dir, accounts):
    srv = TransferServer("127.0.0.1", 0, base_dir, 4)
    thread = threading.Thread(target=srv.serve_forever, daemon=True)
    thread.start()
    yield srv
    srv.close()
    thread.join(timeout=5)


def _field(text, size):
    return text.encode().ljust(size, b"\0")


def _request(username, target, filename):
    return (
        _field(username, USERNAME_FIELD_SIZE)
        + _field(target, TARGET_FIELD_SIZE)
        + _field(filename, FILENAME_FIELD_SIZE)
    )


def _connect(srv):
    return socket.create_connection(srv.address, timeout=5)


def _read_int(sock):
    return decode_int(recv_exact(sock, INT_LENGTH))


def test_resolve_target_dir_valid(tmp_path):
    assert resolve_target_dir(tmp_path, "Manufacturing") == tmp_path / "Manufacturing"
    assert resolve_target_dir(tmp_path, "Distribution") == tmp_path / "Distribution"


def test_resolve_target_dir_invalid(tmp_path):
    with pytest.raises(TransferError) as info:
        resolve_target_dir(tmp_path, "Elsewhere")
    assert info.value.status is Status.PERMISSION_DENIED


@pytest.mark.parametrize(
    "username, target, expected",
    [
        ("alice", "Manufacturing", True),
        ("alice", "Distribution", False),
        ("bob", "Distribution", True),
        ("bob", "Manufacturing", False),
        ("mallory", "Manufacturing", False),
        ("alice", "Elsewhere", False),
    ],
)
def test_verify_user_access(accounts, username, target, expected):
    assert verify_user_access(username, target) is expected


def test_verify_user_access_missing_group(accounts):
    with mock.patch("grp.getgrnam", side_effect=KeyError("manufacturing")):
        assert verify_user_access("alice", "Manufacturing") is False


def test_set_file_ownership_uses_user_ids(accounts, tmp_path):
    path = tmp_path / "f.txt"
    path.write_text("x")
    set_file_ownership(path, "bob")
    accounts.assert_called_once_with(path, 1002, 1002)


def test_set_file_ownership_unknown_user(accounts, tmp_path):
    with pytest.raises(KeyError):
        set_file_ownership(tmp_path / "f.txt", "mallory")


def test_get_username_from_uid(accounts):
    assert get_username_from_uid(1001) == "alice"
    assert get_username_from_uid(4242) is None


def test_address_reports_bound_port(base_dir):
    with TransferServer("127.0.0.1", 0, base_dir, 1) as srv:
        host, port = srv.address
        assert host == "127.0.0.1"
        assert port > 0


@pytest.mark.parametrize(
    "username, target", [("alice", "Manufacturing"), ("bob", "Distribution")]
)
def test_successful_transfer(server, base_dir, accounts, username, target):
    data = bytes(range(256)) * 20
    with _connect(server) as sock:
        sock.sendall(_request(username, target, "report.bin"))
        sock.sendall(encode_filesize(len(data)))
        assert _read_int(sock) == READY_SIGNAL
        sock.sendall(data)
        assert _read_int(sock) == Status.SUCCESS
    target_path = base_dir / target / "report.bin"
    assert target_path.read_bytes() == data
    user = USERS[username]
    accounts.assert_called_once_with(target_path, user.pw_uid, user.pw_gid)


def test_active_clients_returns_to_zero(server):
    with _connect(server) as sock:
        sock.sendall(_request("alice", "Manufacturing", "a.txt"))
        sock.sendall(encode_filesize(3))
        assert _read_int(sock) == READY_SIGNAL
        sock.sendall(b"abc")
        assert _read_int(sock) == Status.SUCCESS
    deadline = time.monotonic() + 5
    while server.active_clients and time.monotonic() < deadline:
        time.sleep(0.01)
    assert server.active_clients == 0


@pytest.mark.parametrize(
    "username, target, filename, expected",
    [
        ("bob", "Manufacturing", "a.txt", Status.PERMISSION_DENIED),
        ("mallory", "Distribution", "a.txt", Status.PERMISSION_DENIED),
        ("alice", "Elsewhere", "a.txt", Status.PERMISSION_DENIED),
        ("alice", "Manufacturing", "../escape.txt", Status.FILE_ERROR),
        ("alice", "Manufacturing", "a" * 240, Status.FILE_ERROR),
    ],
)
def test_refused_requests(server, base_dir, username, target, filename, expected):
    with _connect(server) as sock:
        sock.sendall(_request(username, target, filename))
        assert _read_int(sock) == expected
    assert not (base_dir / "escape.txt").exists()
    assert list((base_dir / "Manufacturing").iterdir()) == []


def test_truncated_upload_is_file_error(server):
    with _connect(server) as sock:
        sock.sendall(_request("alice", "Manufacturing", "short.bin"))
        sock.sendall(encode_filesize(100))
        assert _read_int(sock) == READY_SIGNAL
        sock.sendall(b"x" * 10)
        sock.shutdown(socket.SHUT_WR)
        assert _read_int(sock) == Status.FILE_ERROR


def test_rejects_when_full(base_dir, accounts):
    srv = TransferServer("127.0.0.1", 0, base_dir, 0)
    thread = threading.Thread(target=srv.serve_forever, daemon=True)
    thread.start()
    try:
        with _connect(srv) as sock:
            assert sock.recv(16) == b""
    finally:
        srv.close()
        thread.join(timeout=5)
    assert srv.active_clients == 0


def test_process_file_transfer_directly(base_dir, accounts):
    with TransferServer("127.0.0.1", 0, base_dir, 1) as srv:
        conn, peer = socket.socketpair()
        with conn, peer:
            peer.sendall(encode_filesize(5) + b"hello")
            status = srv.process_file_transfer(conn, "alice", "Manufacturing", "x.bin")
            assert status is Status.SUCCESS
            assert _read_int(peer) == READY_SIGNAL
    assert (base_dir / "Manufacturing" / "x.bin").read_bytes() == b"hello"


def test_process_file_transfer_longest_allowed_name(base_dir, accounts):
    name = "a" * 239
    with TransferServer("127.0.0.1", 0, base_dir, 1) as srv:
        conn, peer = socket.socketpair()
        with conn, peer:
            peer.sendall(encode_filesize(0))
            status = srv.process_file_transfer(conn, "alice", "Manufacturing", name)
    assert status is Status.SUCCESS
    assert (base_dir / "Manufacturing" / name).read_bytes() == b""


def test_process_file_transfer_missing_size_is_unknown_error(base_dir, accounts):
    with TransferServer("127.0.0.1", 0, base_dir, 1) as srv:
        conn, peer = socket.socketpair()
        with conn:
            peer.close()
            status = srv.process_file_transfer(conn, "alice", "Manufacturing", "y")
    assert status is Status.UNKNOWN_ERROR


def test_process_file_transfer_ownership_failure(base_dir, accounts):
    accounts.side_effect = PermissionError("not permitted")
    with TransferServer("127.0.0.1", 0, base_dir, 1) as srv:
        conn, peer = socket.socketpair()
        with conn, peer:
            peer.sendall(encode_filesize(2) + b"ok")
            status = srv.process_file_transfer(conn, "alice", "Manufacturing", "z")
    assert status is Status.FILE_ERROR


def test_handle_client_directly(base_dir, accounts):
    data = b"q" * (BUFFER_SIZE + 10)
    with TransferServer("127.0.0.1", 0, base_dir, 1) as srv:
        conn, peer = socket.socketpair()
        with peer:
            peer.sendall(_request("bob", "Distribution", "d.bin"))
            peer.sendall(encode_filesize(len(data)) + data)
            status = srv.handle_client(conn, None, 0)
            assert status is Status.SUCCESS
            assert _read_int(peer) == READY_SIGNAL
            assert _read_int(peer) == Status.SUCCESS
            assert peer.recv(1) == b""
    assert Path(base_dir / "Distribution" / "d.bin").read_bytes() == data


def test_handle_client_with_missing_request(base_dir, accounts):
    with TransferServer("127.0.0.1", 0, base_dir, 1) as srv:
        conn, peer = socket.socketpair()
        peer.sendall(b"alice")
        peer.close()
        assert srv.handle_client(conn, None, 0) is None
    assert list((base_dir / "Manufacturing").iterdir()) == []


def test_main_fails_when_port_taken(tmp_path, capsys):
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as holder:
        holder.bind(("127.0.0.1", 0))
        holder.listen(1)
        port = holder.getsockname()[1]
        code = main(["--host", "127.0.0.1", "--port", str(port), "--base-dir", str(tmp_path)])
    assert code == 1
    assert "Failed to initialize server" in capsys.readouterr().err