"""Sequential model of a versioned key/value store, for checking histories."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Sequence

from labsys.rpc import Err

GET = 0
PUT = 1


@dataclass(frozen=True)
class KvInput:
    """The request side of an operation."""

    op: int
    key: str
    value: str = ""
    version: int = 0


@dataclass(frozen=True)
class KvOutput:
    """The reply side of an operation."""

    value: str = ""
    version: int = 0
    err: str = ""


@dataclass(frozen=True)
class KvState:
    """State of a single key."""

    value: str = ""
    version: int = 0


@dataclass(frozen=True)
class Operation:
    """One client operation with its call and return times."""

    input: KvInput
    output: KvOutput
    call: int
    return_: int
    client_id: int = 0


def partition(history: Sequence[Operation]) -> list[list[Operation]]:
    """Split a history by key, keys in sorted order, operations in input order."""
    groups: dict[str, list[Operation]] = {}
    for op in history:
        groups.setdefault(op.input.key, []).append(op)
    return [groups[key] for key in sorted(groups)]


def init_state() -> KvState:
    """State of a key that was never written."""
    return KvState("", 0)


def step(state: KvState, inp: KvInput, out: KvOutput) -> tuple[bool, Any]:
    """Apply one operation; return whether it is legal and the next state."""
    if inp.op == GET:
        return out.value == state.value, state
    if inp.op == PUT:
        if state.version == inp.version:
            return out.err in (Err.OK, Err.MAYBE), KvState(inp.value, state.version + 1)
        return out.err in (Err.VERSION, Err.MAYBE), state
    return False, state


def describe_operation(inp: KvInput, out: KvOutput) -> str:
    """Human-readable summary of one operation."""
    if inp.op == GET:
        return f"get('{inp.key}') -> ('{out.value}', '{out.version}', '{out.err}')"
    if inp.op == PUT:
        return f"put('{inp.key}', '{inp.value}', '{inp.version}') -> ('{out.err}')"
    return "<invalid>"