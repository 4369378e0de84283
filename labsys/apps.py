"""MapReduce applications: word count, indexer and test applications."""

from __future__ import annotations

import os
import re
import secrets
import time
from dataclasses import dataclass
from itertools import count, groupby
from pathlib import Path
from typing import Callable

from labsys.mrrpc import KeyValue

MapFunc = Callable[[str, str], "list[KeyValue]"]
ReduceFunc = Callable[[str, "list[str]"], str]


@dataclass(frozen=True)
class App:
    """A named pair of map and reduce functions."""

    name: str
    mapf: MapFunc
    reducef: ReduceFunc


def _words(text: str) -> list[str]:
    return ["".join(group) for is_letter, group in groupby(text, str.isalpha) if is_letter]


def _byte_len(text: str) -> int:
    return len(text.encode("utf-8"))


def _sorted_join(values: list[str]) -> str:
    return " ".join(sorted(values))


# Word count.

def wc_map(filename: str, contents: str) -> list[KeyValue]:
    """Emit (word, "1") for every word in ``contents``."""
    return [KeyValue(word, "1") for word in _words(contents)]


def wc_reduce(key: str, values: list[str]) -> str:
    """Number of occurrences of the word."""
    return str(len(values))


# Inverted index.

def indexer_map(document: str, value: str) -> list[KeyValue]:
    """Emit (word, document) once for each distinct word."""
    return [KeyValue(word, document) for word in dict.fromkeys(_words(value))]


def indexer_reduce(key: str, values: list[str]) -> str:
    """Count of documents and their sorted, comma-separated names."""
    return f"{len(values)} {','.join(sorted(values))}"


# Applications that crash or stall, to test recovery.

def _maybe_crash() -> None:
    roll = secrets.randbelow(1000)
    if roll < 330:
        os._exit(1)
    elif roll < 660:
        time.sleep(secrets.randbelow(10 * 1000) / 1000)


def _file_facts(filename: str, contents: str) -> list[KeyValue]:
    return [
        KeyValue("a", filename),
        KeyValue("b", str(_byte_len(filename))),
        KeyValue("c", str(_byte_len(contents))),
        KeyValue("d", "xyzzy"),
    ]


def crash_map(filename: str, contents: str) -> list[KeyValue]:
    """Facts about the file; sometimes exits the process or sleeps first."""
    _maybe_crash()
    return _file_facts(filename, contents)


def crash_reduce(key: str, values: list[str]) -> str:
    """Sorted values joined by spaces; sometimes exits or sleeps first."""
    _maybe_crash()
    return _sorted_join(values)


def nocrash_map(filename: str, contents: str) -> list[KeyValue]:
    """Same output as :func:`crash_map`, without crashing."""
    return _file_facts(filename, contents)


def nocrash_reduce(key: str, values: list[str]) -> str:
    """Same output as :func:`crash_reduce`, without crashing."""
    return _sorted_join(values)


# Slow reduce tasks, to catch workers that exit early.

def early_exit_map(filename: str, contents: str) -> list[KeyValue]:
    """Emit (filename, "1")."""
    return [KeyValue(filename, "1")]


def early_exit_reduce(key: str, values: list[str]) -> str:
    """Number of values; keys naming sherlock or tom take three seconds."""
    if "sherlock" in key or "tom" in key:
        time.sleep(3)
    return str(len(values))


# Counting how often map tasks run.

_job_counter = count()


def jobcount_map(filename: str, contents: str) -> list[KeyValue]:
    """Leave a marker file for this invocation, then stall for a while."""
    marker = f"mr-worker-jobcount-{os.getpid()}-{next(_job_counter)}"
    Path(marker).write_text("x")
    time.sleep((2000 + secrets.randbelow(3000)) / 1000)
    return [KeyValue("a", "x")]


def jobcount_reduce(key: str, values: list[str]) -> str:
    """Number of map invocations, counted from the marker files."""
    return str(sum(1 for name in os.listdir(".") if name.startswith("mr-worker-jobcount")))


# Detecting parallel execution.

def _alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except (OSError, OverflowError):
        return False
    return True


def _nparallel(phase: str) -> int:
    """Number of live workers, this one included, running ``phase`` now."""
    mine = Path(f"mr-worker-{phase}-{os.getpid()}")
    mine.write_text("x")
    pattern = re.compile(rf"mr-worker-{re.escape(phase)}-(\d+)")
    running = 0
    for name in os.listdir("."):
        match = pattern.match(name)
        if match and int(match.group(1)) > 0 and _alive(int(match.group(1))):
            running += 1
    time.sleep(1)
    mine.unlink()
    return running


def mtiming_map(filename: str, contents: str) -> list[KeyValue]:
    """Report the start time and the number of map tasks running in parallel."""
    start = time.time()
    pid = os.getpid()
    n = _nparallel("map")
    return [KeyValue(f"times-{pid}", f"{start:.1f}"), KeyValue(f"parallel-{pid}", str(n))]


def mtiming_reduce(key: str, values: list[str]) -> str:
    """Sorted values joined by spaces."""
    return _sorted_join(values)


def rtiming_map(filename: str, contents: str) -> list[KeyValue]:
    """Emit keys a to j, each with value "1"."""
    return [KeyValue(key, "1") for key in "abcdefghij"]


def rtiming_reduce(key: str, values: list[str]) -> str:
    """Number of reduce tasks running in parallel."""
    return str(_nparallel("reduce"))


_APPS = {
    app.name: app
    for app in (
        App("wc", wc_map, wc_reduce),
        App("indexer", indexer_map, indexer_reduce),
        App("crash", crash_map, crash_reduce),
        App("nocrash", nocrash_map, nocrash_reduce),
        App("early_exit", early_exit_map, early_exit_reduce),
        App("jobcount", jobcount_map, jobcount_reduce),
        App("mtiming", mtiming_map, mtiming_reduce),
        App("rtiming", rtiming_map, rtiming_reduce),
    )
}


def load_app(name: str) -> App:
    """Look up an application by name; a path such as ``../mrapps/wc.so`` also works."""
    key = Path(name).stem
    try:
        return _APPS[key]
    except KeyError:
        raise ValueError(f"cannot load application {name!r}; known: {sorted(_APPS)}") from None