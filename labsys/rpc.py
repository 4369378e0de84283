"""Request and reply types shared by key/value clerks and servers."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class Err(str, Enum):
    """Outcome of a key/value operation, as carried on the wire."""

    OK = "OK"
    NO_KEY = "ErrNoKey"
    VERSION = "ErrVersion"
    # Reported by a clerk only.
    MAYBE = "ErrMaybe"
    WRONG_LEADER = "ErrWrongLeader"
    WRONG_GROUP = "ErrWrongGroup"

    def __str__(self) -> str:
        return self.value


def _check_version(version: int) -> None:
    if version < 0:
        raise ValueError(f"version must be non-negative, got {version}")


@dataclass
class PutArgs:
    """Arguments of a conditional put."""

    key: str
    value: str
    version: int = 0

    def __post_init__(self) -> None:
        _check_version(self.version)


@dataclass
class PutReply:
    """Reply to a put."""

    err: Err = Err.OK


@dataclass
class GetArgs:
    """Arguments of a get."""

    key: str


@dataclass
class GetReply:
    """Reply to a get: the value, its version and the outcome."""

    value: str = ""
    version: int = 0
    err: Err = Err.OK

    def __post_init__(self) -> None:
        _check_version(self.version)