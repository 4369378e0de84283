"""Helpers for exercising key/value clerks and recording their histories."""

from __future__ import annotations

import random
import string
import threading
import time
from collections import defaultdict
from dataclasses import dataclass
from typing import Protocol, Sequence

from labsys.models import GET, PUT, KvInput, KvOutput, Operation
from labsys.rpc import Err

# Elections are allowed a generous second to complete.
ELECTION_TIMEOUT = 1.0

_LETTERS = string.ascii_lowercase + string.ascii_uppercase


class KVClerk(Protocol):
    """What a key/value clerk offers."""

    def get(self, key: str) -> tuple[str, int, Err]: ...

    def put(self, key: str, value: str, version: int) -> Err: ...


class CheckError(Exception):
    """A check on a clerk's results failed."""


@dataclass
class ClntRes:
    """Counts of puts that succeeded and that may have succeeded."""

    nok: int = 0
    nmaybe: int = 0


@dataclass
class EntryV:
    id: int
    v: int


@dataclass
class EntryN:
    id: int
    n: int


def rand_value(n: int) -> str:
    """Random string of ``n`` ASCII letters."""
    if n < 0:
        raise ValueError(f"length must be non-negative, got {n}")
    return "".join(random.choices(_LETTERS, k=n))


def make_keys(n: int) -> list[str]:
    """Keys k0 .. k(n-1)."""
    return [f"k{i}" for i in range(n)]


class OpLog:
    """Thread-safe record of client operations."""

    def __init__(self) -> None:
        self._ops: list[Operation] = []
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._ops)

    def append(self, op: Operation) -> None:
        with self._lock:
            self._ops.append(op)

    def read(self) -> list[Operation]:
        """Snapshot of the operations recorded so far."""
        with self._lock:
            return list(self._ops)


def timed_get(ck: KVClerk, key: str, log: OpLog | None = None, cli: int = 0) -> tuple[str, int, Err]:
    """Run ``ck.get`` and record it, with its timing, in ``log``."""
    start = time.monotonic_ns()
    value, version, err = ck.get(key)
    end = time.monotonic_ns()
    if log is not None:
        log.append(
            Operation(
                KvInput(GET, key),
                KvOutput(value, int(version), Err(err).value),
                start,
                end,
                cli,
            )
        )
    return value, version, err


def timed_put(
    ck: KVClerk, key: str, value: str, version: int, log: OpLog | None = None, cli: int = 0
) -> Err:
    """Run ``ck.put`` and record it, with its timing, in ``log``."""
    start = time.monotonic_ns()
    err = ck.put(key, value, version)
    end = time.monotonic_ns()
    if log is not None:
        log.append(
            Operation(
                KvInput(PUT, key, value, int(version)),
                KvOutput(err=Err(err).value),
                start,
                end,
                cli,
            )
        )
    return err


def check_appends(
    entries: Sequence[EntryN], nclnt: int, results: Sequence[ClntRes], version: int
) -> dict[int, int]:
    """Check the appended entries against the clients' results.

    Returns the number of skipped appends per client; raises CheckError when
    the entries cannot have come from the reported puts.
    """
    expect: defaultdict[int, int] = defaultdict(int, {i: 0 for i in range(nclnt)})
    skipped: defaultdict[int, int] = defaultdict(int, {i: 0 for i in range(nclnt)})
    for entry in entries:
        want = expect[entry.id]
        if want > entry.n:
            raise CheckError(f"{entry.id}: wrong expecting {want} but got {entry.n}")
        if want == entry.n:
            expect[entry.id] += 1
        else:
            # Entries missing because of failed puts.
            skipped[entry.id] += entry.n - want
            expect[entry.id] = entry.n + 1
    if len(entries) + 1 != version:
        raise CheckError(f"{len(entries)} appends in val != puts on server {version}")
    for client, n in expect.items():
        res = results[client]
        if skipped[client] > res.nmaybe:
            raise CheckError(
                f"{client}: skipped puts {skipped[client]} on server > {res.nmaybe} maybe"
            )
        if n > res.nok + res.nmaybe:
            raise CheckError(f"{client}: {n} puts on server > ok+maybe {res.nok + res.nmaybe}")
    return dict(skipped)