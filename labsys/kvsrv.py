"""A single-server versioned key/value store and the clerk that talks to it."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Any, Protocol

from labsys.labrpc import RPCFailed
from labsys.rpc import Err, GetArgs, GetReply, PutArgs, PutReply

_GET = "KVServer.get"
_PUT = "KVServer.put"


class _End(Protocol):
    def call(self, svc_meth: str, args: Any) -> Any: ...


@dataclass
class _Entry:
    value: str
    version: int


class KVServer:
    """In-memory key/value server with conditional, versioned puts."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._data: dict[str, _Entry] = {}

    def get(self, args: GetArgs) -> GetReply:
        """Return the value and version of ``args.key``, or ErrNoKey."""
        with self._lock:
            entry = self._data.get(args.key)
            if entry is None:
                return GetReply(err=Err.NO_KEY)
            return GetReply(entry.value, entry.version, Err.OK)

    def put(self, args: PutArgs) -> PutReply:
        """Install ``args.value`` if ``args.version`` matches the stored version.

        A missing key is created, at version 1, only when ``args.version`` is
        0; otherwise the reply is ErrNoKey. A version mismatch on an existing
        key gives ErrVersion.
        """
        with self._lock:
            entry = self._data.get(args.key)
            if entry is None:
                if args.version != 0:
                    return PutReply(Err.NO_KEY)
                self._data[args.key] = _Entry(args.value, 1)
                return PutReply(Err.OK)
            if entry.version != args.version:
                return PutReply(Err.VERSION)
            entry.value = args.value
            entry.version += 1
            return PutReply(Err.OK)

    def kill(self) -> None:
        """Nothing to release for a single in-memory server."""


class Clerk:
    """Client of a :class:`KVServer`, retrying through lost messages."""

    def __init__(self, end: _End, retry_interval: float = 0.1) -> None:
        self._end = end
        self._retry_interval = retry_interval

    def get(self, key: str) -> tuple[str, int, Err]:
        """Fetch value and version of ``key``; retries until a reply arrives."""
        args = GetArgs(key)
        while True:
            try:
                reply = self._end.call(_GET, args)
            except RPCFailed:
                time.sleep(self._retry_interval)
                continue
            return reply.value, reply.version, Err(reply.err)

    def put(self, key: str, value: str, version: int) -> Err:
        """Conditionally put ``value``.

        ErrVersion on a resent request becomes ErrMaybe: an earlier attempt
        may have been applied with its reply lost.
        """
        args = PutArgs(key, value, version)
        attempts = 0
        while True:
            try:
                reply = self._end.call(_PUT, args)
            except RPCFailed:
                attempts += 1
                time.sleep(self._retry_interval)
                continue
            err = Err(reply.err)
            if err is Err.VERSION and attempts > 0:
                return Err.MAYBE
            return err