"""Simulated network for RPC between in-process clients and servers.

The network can lose requests and replies, delay messages, and disconnect
individual client end-points. Arguments and replies pass through the codec, so
a handler never shares objects with its caller.

A server holds one or more services. A service wraps an object whose public
one-argument methods become handlers: a call to ``"Name.method"`` runs
``method(args)`` on the object whose class is called ``Name`` and sends back
what it returns.
"""

from __future__ import annotations

import inspect
import io
import queue
import random
import threading
import time
from typing import Any, Callable, Hashable

from labsys.codec import Decoder, Encoder

SHORT_DELAY = 27  # ms
LONG_DELAY = 7000  # ms
MAX_DELAY = LONG_DELAY + 100

_POLL_INTERVAL = 0.1  # seconds between checks on a server that may have died


class RPCFailed(Exception):
    """No reply arrived: the request or reply was lost, or the server is down."""


def _encode(value: Any) -> bytes:
    buf = io.BytesIO()
    Encoder(buf).encode(value)
    return buf.getvalue()


def _decode(data: bytes) -> Any:
    return Decoder(io.BytesIO(data)).decode()


class Service:
    """An object whose public one-argument methods can be called over RPC."""

    def __init__(self, receiver: Any) -> None:
        self.name = type(receiver).__name__
        self._receiver = receiver
        self._methods: dict[str, Callable[[Any], Any]] = {}
        for attr in dir(type(receiver)):
            if attr.startswith("_"):
                continue
            static = inspect.getattr_static(receiver, attr)
            if not inspect.isfunction(static):
                continue
            if self._is_handler(static):
                self._methods[attr] = getattr(receiver, attr)

    @staticmethod
    def _is_handler(function: Callable[..., Any]) -> bool:
        code = function.__code__
        variadic = inspect.CO_VARARGS | inspect.CO_VARKEYWORDS
        # self plus exactly one positional argument, nothing else.
        return (
            code.co_argcount == 2
            and code.co_kwonlyargcount == 0
            and not code.co_flags & variadic
        )

    @property
    def methods(self) -> list[str]:
        """Names of the handler methods, sorted."""
        return sorted(self._methods)

    def _dispatch(self, method_name: str, svc_meth: str, payload: bytes) -> bytes:
        method = self._methods.get(method_name)
        if method is None:
            raise LookupError(
                f"unknown method {method_name} in {svc_meth}; "
                f"expecting one of {sorted(self._methods)}"
            )
        reply = method(_decode(payload))
        return _encode(reply)


class Server:
    """A collection of services sharing one RPC end-point."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._services: dict[str, Service] = {}
        self._count = 0

    def add_service(self, service: Service) -> None:
        with self._lock:
            self._services[service.name] = service

    @property
    def count(self) -> int:
        """Number of requests this server has received."""
        with self._lock:
            return self._count

    def _dispatch(self, svc_meth: str, payload: bytes) -> bytes:
        with self._lock:
            self._count += 1
            service_name, _, method_name = svc_meth.rpartition(".")
            service = self._services.get(service_name)
            choices = sorted(self._services)
        if service is None:
            raise LookupError(
                f"unknown service {service_name} in {svc_meth}; expecting one of {choices}"
            )
        return service._dispatch(method_name, svc_meth, payload)


class ClientEnd:
    """A client's end-point, through which it talks to one server."""

    def __init__(self, network: Network, endname: Hashable) -> None:
        self._network = network
        self.endname = endname

    def call(self, svc_meth: str, args: Any) -> Any:
        """Send an RPC and wait for the reply.

        Returns the handler's reply; raises RPCFailed if no reply arrived, and
        re-raises any exception the handler itself raised.
        """
        payload = _encode(args)
        if self._network._closed.is_set():
            raise RPCFailed("network has been cleaned up")
        return _decode(self._network._process(self.endname, svc_meth, payload))


class Network:
    """Holds client end-points, servers and the connections between them."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._reliable = True
        self._long_delays = False
        self._long_reordering = False
        self._ends: dict[Hashable, ClientEnd] = {}
        self._enabled: dict[Hashable, bool] = {}
        self._servers: dict[Hashable, Server | None] = {}
        self._connections: dict[Hashable, Hashable | None] = {}
        self._closed = threading.Event()
        self._count = 0
        self._bytes = 0

    def __enter__(self) -> Network:
        return self

    def __exit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        self.cleanup()

    def cleanup(self) -> None:
        """Shut the network down; later calls fail at once."""
        self._closed.set()

    @property
    def reliable(self) -> bool:
        with self._lock:
            return self._reliable

    @reliable.setter
    def reliable(self, yes: bool) -> None:
        with self._lock:
            self._reliable = yes

    @property
    def long_reordering(self) -> bool:
        with self._lock:
            return self._long_reordering

    @long_reordering.setter
    def long_reordering(self, yes: bool) -> None:
        with self._lock:
            self._long_reordering = yes

    @property
    def long_delays(self) -> bool:
        with self._lock:
            return self._long_delays

    @long_delays.setter
    def long_delays(self, yes: bool) -> None:
        with self._lock:
            self._long_delays = yes

    @property
    def total_count(self) -> int:
        """Number of RPCs sent through the network."""
        with self._lock:
            return self._count

    @property
    def total_bytes(self) -> int:
        """Number of bytes of arguments and delivered replies."""
        with self._lock:
            return self._bytes

    def make_end(self, endname: Hashable) -> ClientEnd:
        """Create a client end-point, initially disabled and unconnected."""
        with self._lock:
            if endname in self._ends:
                raise ValueError(f"end {endname!r} already exists")
            end = ClientEnd(self, endname)
            self._ends[endname] = end
            self._enabled[endname] = False
            self._connections[endname] = None
            return end

    def delete_end(self, endname: Hashable) -> None:
        with self._lock:
            if endname not in self._ends:
                raise KeyError(f"end {endname!r} doesn't exist")
            del self._ends[endname]
            self._enabled.pop(endname, None)
            self._connections.pop(endname, None)

    def add_server(self, servername: Hashable, server: Server) -> None:
        with self._lock:
            self._servers[servername] = server

    def delete_server(self, servername: Hashable) -> None:
        with self._lock:
            self._servers[servername] = None

    def connect(self, endname: Hashable, servername: Hashable) -> None:
        """Connect a client end-point to a server."""
        with self._lock:
            self._connections[endname] = servername

    def enable(self, endname: Hashable, enabled: bool) -> None:
        """Enable or disable a client end-point."""
        with self._lock:
            self._enabled[endname] = enabled

    def get_count(self, servername: Hashable) -> int:
        """Number of requests the named server has received."""
        with self._lock:
            server = self._servers.get(servername)
        if server is None:
            raise KeyError(f"no server {servername!r}")
        return server.count

    def _is_server_dead(self, endname: Hashable, servername: Hashable, server: Server) -> bool:
        with self._lock:
            return not self._enabled.get(endname, False) or self._servers.get(servername) is not server

    @staticmethod
    def _run_handler(server: Server, svc_meth: str, payload: bytes, outcome: queue.Queue) -> None:
        try:
            outcome.put((True, server._dispatch(svc_meth, payload)))
        except Exception as exc:  # handed back to the caller
            outcome.put((False, exc))

    def _process(self, endname: Hashable, svc_meth: str, payload: bytes) -> bytes:
        with self._lock:
            self._count += 1
            self._bytes += len(payload)
            enabled = self._enabled.get(endname, False)
            servername = self._connections.get(endname)
            server = self._servers.get(servername) if servername is not None else None
            reliable = self._reliable
            long_reordering = self._long_reordering
            long_delays = self._long_delays

        if not (enabled and servername is not None and server is not None):
            # Simulate no reply and an eventual timeout.
            ms = random.randrange(LONG_DELAY) if long_delays else random.randrange(100)
            time.sleep(ms / 1000)
            raise RPCFailed(f"no reply from {servername!r} to end {endname!r}")

        if not reliable:
            time.sleep(random.randrange(SHORT_DELAY) / 1000)
            if random.randrange(1000) < 100:
                raise RPCFailed("request lost")

        # Run the handler in its own thread so a server deleted meanwhile
        # can be noticed and the call failed.
        outcome: queue.Queue = queue.Queue()
        threading.Thread(
            target=self._run_handler,
            args=(server, svc_meth, payload, outcome),
            daemon=True,
        ).start()

        result = None
        dead = False
        while result is None and not dead:
            try:
                result = outcome.get(timeout=_POLL_INTERVAL)
            except queue.Empty:
                dead = self._is_server_dead(endname, servername, server)

        # No reply from a deleted server, even if the handler finished: its
        # effects may have gone to state that has since been replaced.
        dead = self._is_server_dead(endname, servername, server)
        if result is None or dead:
            raise RPCFailed(f"server {servername!r} was killed")

        ok, value = result
        if not ok:
            raise value
        if not reliable and random.randrange(1000) < 100:
            raise RPCFailed("reply lost")
        if long_reordering and random.randrange(900) < 600:
            ms = 200 + random.randrange(1 + random.randrange(2000))
            time.sleep(ms / 1000)
        with self._lock:
            self._bytes += len(value)
        return value