"""Run a MapReduce application sequentially, in one process."""

from __future__ import annotations

import sys
from itertools import groupby
from operator import attrgetter
from pathlib import Path
from typing import Callable, Sequence

from labsys.apps import load_app
from labsys.mrrpc import KeyValue

MapFunc = Callable[[str, str], "list[KeyValue]"]
ReduceFunc = Callable[[str, "list[str]"], str]


def run_sequential(
    mapf: MapFunc,
    reducef: ReduceFunc,
    filenames: Sequence[str],
    output: str = "mr-out-0",
) -> str:
    """Map every file, reduce every key in sorted order, write ``output``.

    Each output line is ``<key> <reduced value>``. Returns the output path.
    """
    intermediate: list[KeyValue] = []
    for filename in filenames:
        content = Path(filename).read_text(encoding="utf-8", errors="replace")
        intermediate.extend(mapf(filename, content))

    intermediate.sort(key=attrgetter("key"))
    with open(output, "w", encoding="utf-8", newline="") as out:
        for key, group in groupby(intermediate, key=attrgetter("key")):
            values = [kv.value for kv in group]
            out.write(f"{key} {reducef(key, values)}\n")
    return output


def main(argv: Sequence[str] | None = None) -> int:
    """Run the named application over the input files into mr-out-0."""
    args = list(sys.argv[1:] if argv is None else argv)
    if len(args) < 2:
        print("Usage: mrsequential app inputfiles...", file=sys.stderr)
        return 1
    try:
        app = load_app(args[0])
    except ValueError:
        print(f"cannot load plugin {args[0]}", file=sys.stderr)
        return 1
    try:
        run_sequential(app.mapf, app.reducef, args[1:])
    except OSError as exc:
        print(f"cannot open {exc.filename}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())