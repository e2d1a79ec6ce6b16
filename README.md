# filedrop

A TCP file-drop service for POSIX systems. A client uploads a file to one
of two destination directories, `Manufacturing` or `Distribution`, and the
server accepts it only if the uploading user belongs to the matching group
(`manufacturing` or `distribution`). Each stored file is then owned by the
user who sent it.

## Installation

```
pip install .
```

## Preparing the server host

The server writes into two directories below its base directory (the
current directory unless `--base-dir` is given). It does not create them,
nor the groups, itself:

```
mkdir -p Manufacturing Distribution
chmod 770 Manufacturing Distribution
```

You also need the system groups `manufacturing` and `distribution`, with
users added to them. The server changes the owner of each received file to
the sending user and that user's primary group, so it usually has to run
with enough privilege to call `chown`; if the change fails the transfer is
reported as a file-related error.

## Running the server

```
filedrop-server
```

Options:

- `--host` – address to bind to (default `0.0.0.0`)
- `--port` – port to listen on (default `8080`)
- `--base-dir` – directory holding `Manufacturing` and `Distribution` (default `.`)
- `--max-clients` – clients served at once (default `10`)

Connections beyond the client limit are closed straight away. Writes to the
destination directories happen one at a time. File names that are empty,
`.`, `..` or contain `/` are refused. The server logs to standard error and
runs until interrupted.

## Sending a file

```
filedrop-client /path/to/report.txt Manufacturing
```

Options `--host` (default `127.0.0.1`) and `--port` (default `8080`) choose
the server. The client checks that the target is `Manufacturing` or
`Distribution` and that the path is a regular file, then sends your login
name, the target directory, the file name and the file's contents, and
prints the result:

- `File transfer successful.`
- `Permission denied. You do not have access to the target directory.`
- `File transfer failed due to a file-related error.`
- `File transfer failed due to an unknown error.`

The command exits with status 0 only when the transfer succeeds.

## Using it from Python

```python
from filedrop.server import TransferServer

with TransferServer("127.0.0.1", 0, ".", 10) as server:
    print(server.address)
    server.serve_forever()
```

`serve_forever()` returns after `close()` is called from another thread;
`active_clients` gives the number of clients being served.

```python
from filedrop.client import connect_to_server, get_current_username, send_file

with connect_to_server("127.0.0.1", 8080) as sock:
    status = send_file(sock, "report.txt", "Distribution", get_current_username())
    print(status.message())
```

`send_file` returns the `Status` the server reported and raises
`TransferError` (carrying a `status`) when the transfer fails on the
client side or the connection breaks.

The wire helpers (`encode_filesize`, `decode_filesize`, `encode_int`,
`decode_int`, `recv_exact`), the `Status` codes and `TransferError` are in
`filedrop.protocol`.