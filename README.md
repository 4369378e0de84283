# labsys

Small, self-contained building blocks for working with distributed systems. The package uses only the standard library. The MapReduce parts communicate over Unix-domain sockets, so they need a POSIX system.

- `labsys.labrpc`: an in-process RPC network (`Network`, `Server`, `Service`, `ClientEnd`). It can drop or delay requests and replies, reorder replies, and disconnect client end-points. A call that gets no reply raises `RPCFailed`.
- `labsys.codec`: length-prefixed frames for RPC arguments, replies and saved state (`Encoder`, `Decoder`, `register`, `register_name`). It logs a warning for dataclass fields whose names start with an underscore, because those fields are not sent. It also warns when `decode_into` writes into a target that already holds non-default values. `error_count()` returns the number of warnings so far.
- `labsys.rpc`: the `Err` outcomes and the `GetArgs`/`GetReply`/`PutArgs`/`PutReply` messages.
- `labsys.kvsrv`: `KVServer`, an in-memory key/value server with versioned, conditional `put`, and `Clerk`, a client that retries calls the network lost.
- `labsys.lock`: `Lock`, a distributed lock kept as a key in the store. It can be used as a context manager.
- `labsys.models`: a sequential model of one key (`init_state`, `step`, `describe_operation`) and `partition`, which splits a history by key.
- `labsys.kvtest`: helpers for tests. It has `OpLog` for recording operations, `timed_get`/`timed_put`, `check_appends`, `rand_value` and `make_keys`.
- `labsys.coordinator`, `labsys.worker`, `labsys.sequential` and `labsys.apps`: a MapReduce framework, with word count, an inverted indexer and several test applications.

## Installation

```
pip install .
pip install ".[test]"   # with pytest for the test suite
```

## Key/value server and lock

```python
from labsys.labrpc import Network, Server, Service
from labsys.kvsrv import KVServer, Clerk
from labsys.lock import Lock
from labsys.rpc import Err

with Network() as net:
    server = Server()
    server.add_service(Service(KVServer()))
    net.add_server("kv", server)

    end = net.make_end("client-0")
    net.connect("client-0", "kv")
    net.enable("client-0", True)

    ck = Clerk(end, 0.1)
    assert ck.put("k", "hello", 0) is Err.OK
    value, version, err = ck.get("k")   # ("hello", 1, Err.OK)

    with Lock(ck, "mylock"):
        ...  # critical section
```

`put` succeeds only when the version you pass matches the stored version. A missing key is created only with version 0. When a retried `put` returns `ErrVersion`, the clerk reports `Err.MAYBE`, because an earlier attempt may have been applied even though its reply was lost.

To make the network lossy, set `net.reliable = False`. `net.long_delays` and `net.long_reordering` turn on longer delays. `net.total_count`, `net.total_bytes` and `net.get_count(name)` report traffic.

## MapReduce

To run a job in a single process, writing `mr-out-0`:

```
labsys-mrsequential wc pg-*.txt
```

To run a distributed job, start a coordinator with the input files. It uses 10 reduce tasks. Then start one or more workers in the same directory, naming the application:

```
labsys-mrcoordinator pg-*.txt
labsys-mrworker wc
```

The coordinator listens on a per-user socket under `/var/tmp`. If a task is not reported finished within 10 seconds, it hands the task out again. Map tasks write `mr-<map>-<reduce>` files. Each reduce task writes its own `mr-out-<n>` file.

The applications are `wc`, `indexer`, `crash`, `nocrash`, `early_exit`, `jobcount`, `mtiming` and `rtiming`. Load one with `labsys.apps.load_app(name)`, which also accepts a path such as `../mrapps/wc.so`.

## What is not included

The package has no replicated, fault-tolerant key/value service. `KVServer` is a single in-memory server, and nothing is persisted. `labsys.models` provides the key/value model and history partitioning, but the package has no linearizability checker that searches a recorded history.

## Tests

```
pytest
```