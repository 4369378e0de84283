import os
import socket

import pytest

from labsys.mrrpc import (
    KeyValue,
    TaskType,
    WorkerArgs,
    WorkerReply,
    coordinator_sock,
    receive_message,
    send_message,
)


@pytest.fixture
def pair():
    a, b = socket.socketpair(socket.AF_UNIX, socket.SOCK_STREAM)
    yield a, b
    a.close()
    b.close()


def test_task_type_values_match_wire_codes():
    assert [t.value for t in TaskType] == [0, 1, 2, 3]
    assert TaskType(2) is TaskType.WAIT


def test_coordinator_sock_is_per_user():
    assert coordinator_sock() == "/var/tmp/5840-mr-" + str(os.getuid())


def test_worker_args_round_trip(pair):
    a, b = pair
    args = WorkerArgs(
        id=3, file="f.txt", option_type=TaskType.REDUCE, temp_file_names=["x", "y"], reduce_index=2
    )
    send_message(a, args)
    got = receive_message(b)
    assert got == args
    assert got.option_type is TaskType.REDUCE


def test_reply_in_envelope_round_trip(pair):
    a, b = pair
    reply = WorkerReply(id=1, file="in", option_type=TaskType.MAP, num_reduce=10, num_mapper=4)
    send_message(a, {"ok": True, "reply": reply})
    assert receive_message(b) == {"ok": True, "reply": reply}


def test_key_values_round_trip(pair):
    a, b = pair
    kva = [KeyValue("a", "1"), KeyValue("b", "2")]
    send_message(a, kva)
    assert receive_message(b) == kva


def test_several_messages_in_order(pair):
    a, b = pair
    for i in range(5):
        send_message(a, WorkerArgs(id=i))
    assert [receive_message(b).id for _ in range(5)] == list(range(5))


def test_frame_bytes(pair):
    a, b = pair
    send_message(a, 7)
    raw = b.recv(100)
    assert raw == b"\x00\x00\x00\x017"
    a.sendall(raw)
    assert receive_message(b) == 7


def test_closed_connection_raises_eof(pair):
    a, b = pair
    a.close()
    with pytest.raises(EOFError):
        receive_message(b)


def test_truncated_frame_raises_connection_error(pair):
    a, b = pair
    a.sendall(b"\x00\x00\x00\x10ab")
    a.close()
    with pytest.raises(ConnectionError):
        receive_message(b)


def test_truncated_header_raises_connection_error(pair):
    a, b = pair
    a.sendall(b"\x00\x00")
    a.close()
    with pytest.raises(ConnectionError):
        receive_message(b)