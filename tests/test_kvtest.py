import string
import threading

import pytest

from labsys.kvtest import (
    CheckError,
    ClntRes,
    EntryN,
    OpLog,
    check_appends,
    make_keys,
    rand_value,
    timed_get,
    timed_put,
)
from labsys.models import GET, PUT, KvInput, init_state, step
from labsys.rpc import Err


class _MemoryClerk:
    def __init__(self):
        self.data = {}

    def get(self, key):
        if key not in self.data:
            return "", 0, Err.NO_KEY
        value, version = self.data[key]
        return value, version, Err.OK

    def put(self, key, value, version):
        current = self.data.get(key)
        if current is None:
            if version != 0:
                return Err.NO_KEY
            self.data[key] = (value, 1)
            return Err.OK
        if current[1] != version:
            return Err.VERSION
        self.data[key] = (value, version + 1)
        return Err.OK


def test_rand_value_length_and_alphabet():
    value = rand_value(64)
    assert len(value) == 64
    assert set(value) <= set(string.ascii_letters)
    assert rand_value(0) == ""


def test_rand_value_rejects_negative_length():
    with pytest.raises(ValueError):
        rand_value(-1)


def test_make_keys():
    assert make_keys(3) == ["k0", "k1", "k2"]
    assert len(set(make_keys(50))) == 50


def test_oplog_read_returns_copy():
    log = OpLog()
    ck = _MemoryClerk()
    timed_get(ck, "x", log, 1)
    snapshot = log.read()
    timed_get(ck, "y", log, 1)
    assert len(snapshot) == 1
    assert len(log) == 2


def test_oplog_concurrent_appends():
    log = OpLog()
    ck = _MemoryClerk()

    def worker(cli):
        for _ in range(50):
            timed_get(ck, "k", log, cli)

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert len(log) == 8 * 50
    assert {op.client_id for op in log.read()} == set(range(8))


def test_timed_put_and_get_are_recorded_legally():
    log = OpLog()
    ck = _MemoryClerk()
    assert timed_put(ck, "k", "v", 0, log, 3) is Err.OK
    assert timed_get(ck, "k", log, 3) == ("v", 1, Err.OK)

    put_op, get_op = log.read()
    assert put_op.input == KvInput(PUT, "k", "v", 0)
    assert put_op.output.err == "OK"
    assert get_op.input == KvInput(GET, "k")
    assert get_op.output.value == "v"
    assert put_op.call <= put_op.return_ <= get_op.call <= get_op.return_

    state = init_state()
    for op in (put_op, get_op):
        ok, state = step(state, op.input, op.output)
        assert ok


def test_timed_calls_without_log():
    ck = _MemoryClerk()
    assert timed_put(ck, "k", "v", 1) is Err.NO_KEY
    assert timed_get(ck, "k") == ("", 0, Err.NO_KEY)


def test_check_appends_accepts_consistent_history():
    entries = [EntryN(0, 0), EntryN(1, 0), EntryN(0, 1)]
    skipped = check_appends(entries, 2, [ClntRes(2, 0), ClntRes(1, 0)], len(entries) + 1)
    assert skipped == {0: 0, 1: 0}


def test_check_appends_counts_skipped_entries():
    entries = [EntryN(0, 0), EntryN(0, 2)]
    skipped = check_appends(entries, 1, [ClntRes(2, 1)], 3)
    assert skipped == {0: 1}


def test_check_appends_rejects_old_put():
    with pytest.raises(CheckError):
        check_appends([EntryN(0, 1), EntryN(0, 0)], 1, [ClntRes(2, 5)], 3)


def test_check_appends_rejects_version_mismatch():
    with pytest.raises(CheckError):
        check_appends([EntryN(0, 0)], 1, [ClntRes(1, 0)], 5)


def test_check_appends_rejects_too_many_skips():
    with pytest.raises(CheckError):
        check_appends([EntryN(0, 3)], 1, [ClntRes(1, 0)], 2)


def test_check_appends_rejects_too_many_puts():
    with pytest.raises(CheckError):
        check_appends([EntryN(0, 0), EntryN(0, 1)], 1, [ClntRes(1, 0)], 3)