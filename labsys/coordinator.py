"""The MapReduce coordinator: hands out map and reduce tasks to workers."""

from __future__ import annotations

import contextlib
import logging
import os
import socketserver
import sys
import threading
import time
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Sequence

from labsys.mrrpc import (
    COMPLETE_METHOD,
    REQUEST_METHOD,
    TaskType,
    WorkerArgs,
    WorkerReply,
    coordinator_sock,
    receive_message,
    send_message,
)

_log = logging.getLogger(__name__)

TIMEOUT = 10.0  # seconds before an unfinished task is handed out again
N_REDUCE = 10


class _Status(IntEnum):
    IDLE = 0
    IN_PROGRESS = 1
    COMPLETED = 2


@dataclass
class _Task:
    id: int
    file: str
    status: _Status = _Status.IDLE
    start_time: float = 0.0


class _Handler(socketserver.BaseRequestHandler):
    def handle(self) -> None:
        try:
            message = receive_message(self.request)
        except (EOFError, ConnectionError, ValueError):
            return
        send_message(self.request, self.server.coordinator._handle(message))


class _UnixServer(socketserver.ThreadingMixIn, socketserver.UnixStreamServer):
    daemon_threads = True


class Coordinator:
    """Tracks map and reduce tasks and serves them to workers over a socket."""

    def __init__(
        self,
        files: Sequence[str],
        n_reduce: int,
        sock_path: str | None = None,
        serve: bool = True,
    ) -> None:
        if n_reduce < 0:
            raise ValueError(f"n_reduce must be non-negative, got {n_reduce}")
        self._lock = threading.Lock()
        self.files = list(files)
        self.n_reduce = n_reduce
        self.map_timeout = TIMEOUT
        self.reduce_timeout = TIMEOUT
        self._tasks = [_Task(i, f) for i, f in enumerate(self.files)]
        self._reduce_status = {i: _Status.IDLE for i in range(n_reduce)}
        self._reduce_start: dict[int, float] = {}
        self._map_done = False
        self._reduce_done = False
        self.sock_path = sock_path or coordinator_sock()
        self._server: _UnixServer | None = None
        self._thread: threading.Thread | None = None
        _log.info(
            "Coordinator: initialized with %d map tasks and %d reduce tasks",
            len(self._tasks),
            n_reduce,
        )
        if serve:
            self.serve()

    def __enter__(self) -> Coordinator:
        return self

    def __exit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        self.close()

    def worker_request(self, args: WorkerArgs | None = None) -> WorkerReply:
        """Hand out the next task, or tell the worker to wait or stop."""
        with self._lock:
            self._check_timeouts()
            reply = WorkerReply()

            if not self._map_done:
                task = next((t for t in self._tasks if t.status is _Status.IDLE), None)
                if task is not None:
                    reply.id = task.id
                    reply.file = task.file
                    reply.option_type = TaskType.MAP
                    reply.num_reduce = self.n_reduce
                    task.status = _Status.IN_PROGRESS
                    task.start_time = time.monotonic()
                    _log.info("Coordinator: assigned map task %d (file: %s)", task.id, task.file)
                    return reply
                if all(t.status is _Status.COMPLETED for t in self._tasks):
                    self._map_done = True
                    _log.info("Coordinator: all map tasks completed, starting reduce phase")
                else:
                    reply.option_type = TaskType.WAIT
                    return reply

            if not self._reduce_done:
                index = next(
                    (i for i in range(self.n_reduce) if self._reduce_status[i] is _Status.IDLE),
                    None,
                )
                if index is not None:
                    reply.option_type = TaskType.REDUCE
                    reply.reduce_index = index
                    reply.num_mapper = len(self.files)
                    self._reduce_status[index] = _Status.IN_PROGRESS
                    self._reduce_start[index] = time.monotonic()
                    _log.info("Coordinator: assigned reduce task %d", index)
                    return reply
                if all(s is _Status.COMPLETED for s in self._reduce_status.values()):
                    self._reduce_done = True
                    _log.info("Coordinator: all reduce tasks completed")
                else:
                    reply.option_type = TaskType.WAIT
                    return reply

            reply.option_type = TaskType.DONE
            return reply

    def worker_complete(self, args: WorkerArgs) -> WorkerReply:
        """Record that a worker finished the task described by ``args``."""
        with self._lock:
            if args.option_type == TaskType.MAP:
                if 0 <= args.id < len(self._tasks):
                    self._tasks[args.id].status = _Status.COMPLETED
                    _log.info("Coordinator: map task %d completed", args.id)
            elif args.option_type == TaskType.REDUCE:
                if self._reduce_status.get(args.reduce_index) is _Status.IN_PROGRESS:
                    self._reduce_status[args.reduce_index] = _Status.COMPLETED
                    _log.info("Coordinator: reduce task %d completed", args.reduce_index)
        return WorkerReply()

    def done(self) -> bool:
        """Whether both phases have been seen to complete."""
        with self._lock:
            return self._map_done and self._reduce_done

    def _check_timeouts(self) -> None:
        now = time.monotonic()
        for task in self._tasks:
            if task.status is _Status.IN_PROGRESS and now - task.start_time > self.map_timeout:
                _log.info("Coordinator: map task %d timed out, marking as available", task.id)
                task.status = _Status.IDLE
        for index, status in self._reduce_status.items():
            if status is not _Status.IN_PROGRESS:
                continue
            start = self._reduce_start.get(index)
            if start is not None and now - start > self.reduce_timeout:
                _log.info("Coordinator: reduce task %d timed out, marking as available", index)
                self._reduce_status[index] = _Status.IDLE

    def _handle(self, message: Any) -> dict[str, Any]:
        handlers = {REQUEST_METHOD: self.worker_request, COMPLETE_METHOD: self.worker_complete}
        if not isinstance(message, dict):
            return {"ok": False, "error": "malformed request"}
        handler = handlers.get(message.get("method"))
        if handler is None:
            return {"ok": False, "error": f"unknown method {message.get('method')!r}"}
        args = message.get("args")
        if args is None:
            args = WorkerArgs()
        try:
            return {"ok": True, "reply": handler(args)}
        except Exception as exc:  # reported to the caller
            return {"ok": False, "error": str(exc)}

    def serve(self) -> None:
        """Start answering workers on the Unix socket in a background thread."""
        if self._server is not None:
            raise RuntimeError("coordinator is already serving")
        with contextlib.suppress(FileNotFoundError):
            os.remove(self.sock_path)
        server = _UnixServer(self.sock_path, _Handler)
        server.coordinator = self
        self._server = server
        self._thread = threading.Thread(target=server.serve_forever, daemon=True)
        self._thread.start()

    def close(self) -> None:
        """Stop serving and remove the socket file."""
        server, self._server = self._server, None
        if server is None:
            return
        server.shutdown()
        server.server_close()
        if self._thread is not None:
            self._thread.join()
            self._thread = None
        with contextlib.suppress(FileNotFoundError):
            os.remove(self.sock_path)


def main(argv: Sequence[str] | None = None) -> int:
    """Run a coordinator over the given input files until the job is done."""
    args = list(sys.argv[1:] if argv is None else argv)
    if not args:
        print("Usage: mrcoordinator inputfiles...", file=sys.stderr)
        return 1
    with Coordinator(args, N_REDUCE) as coordinator:
        while not coordinator.done():
            time.sleep(1)
        time.sleep(1)
    return 0


if __name__ == "__main__":
    sys.exit(main())