"""Simulated RPC, a versioned key/value server, a lock and MapReduce."""

__version__ = "0.1.0"