"""Messages between MapReduce workers and the coordinator.

Each message is one codec frame sent over a Unix stream socket. A worker sends
``{"method": <name>, "args": WorkerArgs(...)}`` and the coordinator answers
with ``{"ok": True, "reply": WorkerReply(...)}`` or
``{"ok": False, "error": <text>}``.
"""

from __future__ import annotations

import io
import os
import socket
import struct
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any

from labsys.codec import Decoder, Encoder, register

REQUEST_METHOD = "Coordinator.WorkerRequest"
COMPLETE_METHOD = "Coordinator.WorkerComplete"

_SOCK_PREFIX = "/var/tmp/5840-mr-"
_HEADER = struct.Struct(">I")


class TaskType(IntEnum):
    """What the coordinator tells a worker to do."""

    MAP = 0
    REDUCE = 1
    WAIT = 2
    DONE = 3


@dataclass
class KeyValue:
    """One pair emitted by a map function."""

    key: str
    value: str


@dataclass
class WorkerArgs:
    """Sent by a worker when asking for a task or reporting one finished."""

    id: int = 0
    file: str = ""
    option_type: TaskType = TaskType.MAP
    num_reduce: int = 0
    temp_file_names: list[str] = field(default_factory=list)
    reduce_index: int = 0


@dataclass
class WorkerReply:
    """The coordinator's answer: a task to run, or wait, or done."""

    id: int = 0
    file: str = ""
    option_type: TaskType = TaskType.MAP
    num_reduce: int = 0
    reduce_index: int = 0
    num_mapper: int = 0


for _cls in (TaskType, KeyValue, WorkerArgs, WorkerReply):
    register(_cls)


def coordinator_sock() -> str:
    """Per-user path of the coordinator's Unix-domain socket."""
    return f"{_SOCK_PREFIX}{os.getuid()}"


def send_message(sock: socket.socket, message: Any) -> None:
    """Write ``message`` to ``sock`` as one frame."""
    buf = io.BytesIO()
    Encoder(buf).encode(message)
    sock.sendall(buf.getvalue())


def _recv_exact(sock: socket.socket, n: int) -> bytes:
    chunks = []
    remaining = n
    while remaining > 0:
        chunk = sock.recv(remaining)
        if not chunk:
            break
        chunks.append(chunk)
        remaining -= len(chunk)
    return b"".join(chunks)


def receive_message(sock: socket.socket) -> Any:
    """Read one frame from ``sock``.

    Raises EOFError if the peer closed before sending anything, and
    ConnectionError if it closed in the middle of a frame.
    """
    header = _recv_exact(sock, _HEADER.size)
    if not header:
        raise EOFError("connection closed")
    if len(header) < _HEADER.size:
        raise ConnectionError("connection closed inside a frame header")
    (length,) = _HEADER.unpack(header)
    payload = _recv_exact(sock, length)
    if len(payload) < length:
        raise ConnectionError("connection closed inside a frame")
    return Decoder(io.BytesIO(header + payload)).decode()