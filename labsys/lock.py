"""A distributed lock kept as a key in a versioned key/value store."""

from __future__ import annotations

from typing import Any

from labsys.kvtest import KVClerk, rand_value
from labsys.rpc import Err

_UNLOCKED = ""


class Lock:
    """A lock stored under key ``name``; its value names the holder.

    The store has no delete, so an empty value means the lock is free.
    Acquiring a lock this client already holds returns at once.
    """

    def __init__(self, ck: KVClerk, name: str) -> None:
        self._ck = ck
        self.name = name
        self.client_id = rand_value(8)

    def acquire(self) -> None:
        """Block until this client holds the lock."""
        while True:
            owner, version, err = self._ck.get(self.name)
            if err == Err.NO_KEY:
                if self._ck.put(self.name, self.client_id, 0) == Err.OK:
                    return
                # Someone else created it first, or the outcome is unknown.
                continue
            if err == Err.OK:
                if owner == self.client_id:
                    return
                if owner == _UNLOCKED:
                    if self._ck.put(self.name, self.client_id, version) == Err.OK:
                        return

    def release(self) -> None:
        """Free the lock if this client holds it."""
        while True:
            owner, version, err = self._ck.get(self.name)
            if err == Err.NO_KEY:
                return
            if err == Err.OK:
                if owner != self.client_id:
                    return
                if self._ck.put(self.name, _UNLOCKED, version) == Err.OK:
                    return

    def __enter__(self) -> Lock:
        self.acquire()
        return self

    def __exit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        self.release()