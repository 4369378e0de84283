"""The MapReduce worker: asks the coordinator for tasks and runs them."""

from __future__ import annotations

import contextlib
import logging
import os
import socket
import sys
import time
from pathlib import Path
from typing import Any, Callable, Sequence

from labsys.apps import load_app
from labsys.mrrpc import (
    COMPLETE_METHOD,
    REQUEST_METHOD,
    KeyValue,
    TaskType,
    WorkerArgs,
    WorkerReply,
    coordinator_sock,
    receive_message,
    send_message,
)

_log = logging.getLogger(__name__)

MapFunc = Callable[[str, str], "list[KeyValue]"]
ReduceFunc = Callable[[str, "list[str]"], str]

_MAX_RETRIES = 3
_WAIT_TIME = 0.1  # seconds to pause when told to wait
_COORDINATOR_GONE_RETRIES = 10
_RETRY_STEP = 0.1  # seconds; the n-th retry waits n steps

_FNV_OFFSET = 0x811C9DC5
_FNV_PRIME = 0x01000193


class WorkerError(Exception):
    """A task could not be run, or the coordinator could not be reached."""


def ihash(key: str) -> int:
    """Non-negative 31-bit FNV-1a hash of ``key``; use ``ihash(key) % n_reduce``."""
    h = _FNV_OFFSET
    for byte in key.encode("utf-8"):
        h ^= byte
        h = (h * _FNV_PRIME) & 0xFFFFFFFF
    return h & 0x7FFFFFFF


def _remove_all(paths: Sequence[str]) -> None:
    for path in paths:
        with contextlib.suppress(OSError):
            os.remove(path)


def create_intermediate_files(task_id: int, n_reduce: int, kva: Sequence[KeyValue]) -> list[str]:
    """Write ``kva`` into files ``mr-<task_id>-<r>``, one per reduce partition.

    Each file is written under a temporary name and renamed into place, so a
    reader never sees a partly written file. Returns the final file names.
    """
    if n_reduce <= 0:
        raise ValueError(f"n_reduce must be positive, got {n_reduce}")
    buckets: list[list[str]] = [[] for _ in range(n_reduce)]
    for kv in kva:
        buckets[ihash(kv.key) % n_reduce].append(f"{kv.key} {kv.value}\n")

    temp_names = [f"mr-{task_id}-{r}.tmp" for r in range(n_reduce)]
    written: list[str] = []
    try:
        for name, lines in zip(temp_names, buckets):
            written.append(name)
            with open(name, "w", encoding="utf-8", newline="") as f:
                f.writelines(lines)
    except OSError as exc:
        _remove_all(written)
        raise WorkerError(f"failed to write temporary file: {exc}") from exc

    final_names: list[str] = []
    for r, temp in enumerate(temp_names):
        final = f"mr-{task_id}-{r}"
        try:
            os.replace(temp, final)
        except OSError as exc:
            _remove_all(final_names)
            _remove_all(temp_names[r:])
            raise WorkerError(f"failed to rename {temp} to {final}: {exc}") from exc
        final_names.append(final)
    return final_names


def do_map(mapf: MapFunc, reply: WorkerReply) -> list[str]:
    """Run the map task in ``reply``; return the intermediate file names."""
    filename = reply.file
    _log.info("Worker: starting map task for file %s (id %d)", filename, reply.id)
    try:
        content = Path(filename).read_text(encoding="utf-8", errors="replace")
    except OSError as exc:
        raise WorkerError(f"failed to read input file {filename}: {exc}") from exc
    kva = mapf(filename, content)
    _log.info("Worker: map function produced %d key-value pairs", len(kva))
    paths = create_intermediate_files(reply.id, reply.num_reduce, kva)
    _log.info("Worker: map task done, created %d intermediate files", len(paths))
    return paths


def read_intermediate_files(num_mapper: int, reduce_index: int) -> dict[str, list[str]]:
    """Collect the values of every key in partition ``reduce_index``.

    Files of map tasks that produced none are skipped, as are blank lines and
    lines without a value.
    """
    data: dict[str, list[str]] = {}
    for m in range(num_mapper):
        path = Path(f"mr-{m}-{reduce_index}")
        if not path.exists():
            continue
        try:
            with path.open(encoding="utf-8") as f:
                for raw in f:
                    line = raw.strip()
                    if not line:
                        continue
                    parts = line.split(" ", 1)
                    if len(parts) != 2:
                        continue
                    key, value = parts
                    data.setdefault(key, []).append(value)
        except OSError as exc:
            raise WorkerError(f"error reading intermediate file {path}: {exc}") from exc
    return data


def _write_output(reduce_index: int, data: dict[str, list[str]], reducef: ReduceFunc) -> str:
    temp = f"mr-out-{reduce_index}.tmp"
    final = f"mr-out-{reduce_index}"
    try:
        with open(temp, "w", encoding="utf-8", newline="") as f:
            for key in sorted(data):
                f.write(f"{key} {reducef(key, data[key])}\n")
        os.replace(temp, final)
    except OSError as exc:
        _remove_all([temp])
        raise WorkerError(f"failed to write output file {final}: {exc}") from exc
    return final


def do_reduce(reducef: ReduceFunc, reply: WorkerReply) -> str:
    """Run the reduce task in ``reply``; return the output file name."""
    index = reply.reduce_index
    _log.info("Worker: starting reduce task for partition %d", index)
    data = read_intermediate_files(reply.num_mapper, index)
    if not data:
        _log.info("Worker: no intermediate data for reduce partition %d", index)
        final = f"mr-out-{index}"
        try:
            Path(final).write_text("", encoding="utf-8")
        except OSError as exc:
            raise WorkerError(f"failed to create empty output file {final}: {exc}") from exc
        return final
    final = _write_output(index, data, reducef)
    _log.info("Worker: reduce task done for partition %d", index)
    return final


def _call(method: str, args: WorkerArgs, sock_path: str | None) -> Any:
    path = sock_path or coordinator_sock()
    try:
        with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as sock:
            sock.connect(path)
            send_message(sock, {"method": method, "args": args})
            response = receive_message(sock)
    except (OSError, EOFError, ValueError) as exc:
        raise WorkerError(f"RPC call failed: {exc}") from exc
    if not isinstance(response, dict) or not response.get("ok"):
        detail = response.get("error") if isinstance(response, dict) else "malformed reply"
        raise WorkerError(f"RPC call failed: {detail}")
    return response["reply"]


def call_request(sock_path: str | None = None) -> WorkerReply:
    """Ask the coordinator for a task."""
    return _call(REQUEST_METHOD, WorkerArgs(), sock_path)


def call_complete(args: WorkerArgs, sock_path: str | None = None) -> None:
    """Tell the coordinator a task has finished."""
    _call(COMPLETE_METHOD, args, sock_path)


def _retry(action: Callable[[], Any], max_retries: int) -> Any:
    error: WorkerError | None = None
    for attempt in range(max_retries):
        try:
            return action()
        except WorkerError as exc:
            error = exc
        if attempt < max_retries - 1:
            time.sleep((attempt + 1) * _RETRY_STEP)
    raise WorkerError(f"failed after {max_retries} retries") from error


def _handle_map(mapf: MapFunc, reply: WorkerReply, sock_path: str | None) -> None:
    paths = do_map(mapf, reply)
    args = WorkerArgs(
        id=reply.id, file=reply.file, option_type=reply.option_type, temp_file_names=paths
    )
    _retry(lambda: call_complete(args, sock_path), _MAX_RETRIES)


def _handle_reduce(reducef: ReduceFunc, reply: WorkerReply, sock_path: str | None) -> None:
    do_reduce(reducef, reply)
    args = WorkerArgs(
        id=reply.id,
        file=reply.file,
        option_type=reply.option_type,
        reduce_index=reply.reduce_index,
    )
    _retry(lambda: call_complete(args, sock_path), _MAX_RETRIES)


def run_worker(mapf: MapFunc, reducef: ReduceFunc, sock_path: str | None = None) -> None:
    """Run tasks from the coordinator until it says done or stops answering."""
    gone = 0
    while True:
        try:
            reply = _retry(lambda: call_request(sock_path), _MAX_RETRIES)
        except WorkerError as exc:
            gone += 1
            if gone >= _COORDINATOR_GONE_RETRIES:
                _log.info("Worker: coordinator appears to be gone, exiting")
                return
            _log.warning(
                "Worker: failed to get task, attempt %d/%d: %s",
                gone,
                _COORDINATOR_GONE_RETRIES,
                exc,
            )
            time.sleep(1)
            continue
        gone = 0

        kind = reply.option_type
        try:
            if kind == TaskType.MAP:
                _handle_map(mapf, reply, sock_path)
            elif kind == TaskType.REDUCE:
                _handle_reduce(reducef, reply, sock_path)
            elif kind == TaskType.WAIT:
                time.sleep(_WAIT_TIME)
            elif kind == TaskType.DONE:
                _log.info("Worker: all tasks completed, exiting")
                return
            else:
                _log.warning("Worker: unknown option type %r", kind)
        except WorkerError as exc:
            _log.warning("Worker: task failed: %s", exc)


def main(argv: Sequence[str] | None = None) -> int:
    """Run a worker with the named application."""
    args = list(sys.argv[1:] if argv is None else argv)
    if len(args) != 1:
        print("Usage: mrworker app", file=sys.stderr)
        return 1
    try:
        app = load_app(args[0])
    except ValueError:
        print(f"cannot load plugin {args[0]}", file=sys.stderr)
        return 1
    run_worker(app.mapf, app.reducef)
    return 0


if __name__ == "__main__":
    sys.exit(main())