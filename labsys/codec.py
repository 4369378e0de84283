"""Framed encoding of Python values for RPC messages and persisted state.

Values travel as length-prefixed JSON frames carrying type tags, so that
dataclasses, enums, bytes and dictionaries with non-string keys survive a round
trip. The encoder warns about dataclass fields that will not be transmitted
(names starting with an underscore), and the decoder warns when decoding into a
target that already holds non-default values.
"""

from __future__ import annotations

import base64
import dataclasses
import json
import logging
import struct
import threading
from enum import Enum
from typing import Any, BinaryIO

_log = logging.getLogger(__name__)

_HEADER = struct.Struct(">I")
_MAX_DEPTH = 3

_lock = threading.Lock()
_errors = 0
_checked: set[type] = set()
_by_name: dict[str, type] = {}
_by_type: dict[type, str] = {}


def error_count() -> int:
    """Number of warnings issued so far."""
    with _lock:
        return _errors


def _bump() -> int:
    global _errors
    with _lock:
        previous = _errors
        _errors += 1
        return previous


def _check_type(cls: type) -> None:
    with _lock:
        if cls in _checked:
            return
        _checked.add(cls)
    if dataclasses.is_dataclass(cls):
        for f in dataclasses.fields(cls):
            if f.name.startswith("_"):
                _log.warning(
                    "codec error: private field %s of %s in RPC or persisted "
                    "state will not be transmitted",
                    f.name,
                    cls.__name__,
                )
                _bump()


def _check_value(value: Any) -> None:
    if isinstance(value, type):
        _check_type(value)
    elif dataclasses.is_dataclass(value):
        _check_type(type(value))
        for f in dataclasses.fields(value):
            if not f.name.startswith("_"):
                _check_value(getattr(value, f.name))
    elif isinstance(value, dict):
        for key, item in value.items():
            _check_value(key)
            _check_value(item)
    elif isinstance(value, (list, tuple, set, frozenset)):
        for item in value:
            _check_value(item)


def _check_default(value: Any, depth: int = 2, name: str = "") -> None:
    if depth > _MAX_DEPTH or value is None:
        return
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        for f in dataclasses.fields(value):
            sub = f"{name}.{f.name}" if name else f.name
            _check_default(getattr(value, f.name), depth + 1, sub)
        return
    if isinstance(value, (bool, int, float, str)) and value:
        if _bump() < 1:
            # Typically a reply object reused across calls, or state restored
            # into variables that already hold values.
            _log.warning(
                "codec warning: decoding into a non-default variable/field %s may not work",
                name or type(value).__name__,
            )


def _default_name(cls: type) -> str:
    return f"{cls.__module__}.{cls.__qualname__}"


def _class_of(value: Any) -> type:
    cls = value if isinstance(value, type) else type(value)
    if not (dataclasses.is_dataclass(cls) or issubclass(cls, Enum)):
        raise TypeError(f"only dataclasses and enums can be registered, not {cls!r}")
    return cls


def _bind(name: str, cls: type) -> None:
    with _lock:
        bound = _by_name.get(name)
        if bound is not None and bound is not cls:
            raise ValueError(f"name {name!r} is already registered for {bound!r}")
        known = _by_type.get(cls)
        if known is not None and known != name:
            raise ValueError(f"{cls!r} is already registered as {known!r}")
        _by_name[name] = cls
        _by_type[cls] = name


def _name_of(cls: type) -> str:
    with _lock:
        name = _by_type.get(cls)
        if name is None:
            name = _default_name(cls)
            _by_name[name] = cls
            _by_type[cls] = name
        return name


def _lookup(name: str) -> type:
    with _lock:
        try:
            return _by_name[name]
        except KeyError:
            raise ValueError(f"unknown type {name!r}") from None


def register(value: Any) -> None:
    """Register a dataclass or enum (class or instance) under its default name."""
    cls = _class_of(value)
    _check_value(value)
    _bind(_default_name(cls), cls)


def register_name(name: str, value: Any) -> None:
    """Register a dataclass or enum (class or instance) under ``name``."""
    cls = _class_of(value)
    _check_value(value)
    _bind(name, cls)


def _to_wire(value: Any) -> Any:
    if value is None or isinstance(value, bool):
        return value
    if isinstance(value, Enum):
        return {"t": "enum", "n": _name_of(type(value)), "v": _to_wire(value.value)}
    if isinstance(value, (int, float, str)):
        return value
    if isinstance(value, (bytes, bytearray)):
        return {"t": "bytes", "v": base64.b64encode(bytes(value)).decode("ascii")}
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        fields = {
            f.name: _to_wire(getattr(value, f.name))
            for f in dataclasses.fields(value)
            if not f.name.startswith("_")
        }
        return {"t": "obj", "n": _name_of(type(value)), "v": fields}
    if isinstance(value, dict):
        return {"t": "dict", "v": [[_to_wire(k), _to_wire(v)] for k, v in value.items()]}
    if isinstance(value, list):
        return {"t": "list", "v": [_to_wire(item) for item in value]}
    if isinstance(value, tuple):
        return {"t": "tuple", "v": [_to_wire(item) for item in value]}
    if isinstance(value, (set, frozenset)):
        return {"t": "set", "v": [_to_wire(item) for item in value]}
    raise TypeError(f"cannot encode value of type {type(value).__name__}")


def _build(cls: type, values: dict[str, Any]) -> Any:
    instance = cls.__new__(cls)
    for f in dataclasses.fields(cls):
        if f.name in values:
            item = values[f.name]
        elif f.default is not dataclasses.MISSING:
            item = f.default
        elif f.default_factory is not dataclasses.MISSING:
            item = f.default_factory()
        else:
            item = None
        object.__setattr__(instance, f.name, item)
    return instance


def _from_wire(data: Any) -> Any:
    if not isinstance(data, dict):
        return data
    tag = data.get("t")
    payload = data.get("v")
    if tag == "list":
        return [_from_wire(item) for item in payload]
    if tag == "tuple":
        return tuple(_from_wire(item) for item in payload)
    if tag == "set":
        return {_from_wire(item) for item in payload}
    if tag == "dict":
        return {_from_wire(k): _from_wire(v) for k, v in payload}
    if tag == "bytes":
        return base64.b64decode(payload)
    if tag == "enum":
        return _lookup(data["n"])(_from_wire(payload))
    if tag == "obj":
        cls = _lookup(data["n"])
        return _build(cls, {k: _from_wire(v) for k, v in payload.items()})
    raise ValueError(f"unknown tag {tag!r}")


class Encoder:
    """Writes values as frames to a binary stream."""

    def __init__(self, stream: BinaryIO) -> None:
        self._stream = stream

    def encode(self, value: Any) -> None:
        _check_value(value)
        payload = json.dumps(_to_wire(value), separators=(",", ":")).encode("utf-8")
        self._stream.write(_HEADER.pack(len(payload)) + payload)


class Decoder:
    """Reads values written by an :class:`Encoder`."""

    def __init__(self, stream: BinaryIO) -> None:
        self._stream = stream

    def decode(self) -> Any:
        """Return the next value; raise EOFError when the stream is exhausted."""
        header = self._stream.read(_HEADER.size)
        if not header:
            raise EOFError("no more values")
        if len(header) < _HEADER.size:
            raise ValueError("truncated frame header")
        (length,) = _HEADER.unpack(header)
        payload = self._stream.read(length)
        if len(payload) < length:
            raise ValueError("truncated frame")
        return _from_wire(json.loads(payload))

    def decode_into(self, target: Any) -> Any:
        """Decode the next value into a dataclass instance, dict or list."""
        _check_value(target)
        _check_default(target)
        value = self.decode()
        if dataclasses.is_dataclass(target) and not isinstance(target, type):
            if type(value) is not type(target):
                raise TypeError(
                    f"cannot decode {type(value).__name__} into {type(target).__name__}"
                )
            for f in dataclasses.fields(target):
                object.__setattr__(target, f.name, getattr(value, f.name))
        elif isinstance(target, dict):
            if not isinstance(value, dict):
                raise TypeError(f"cannot decode {type(value).__name__} into dict")
            target.clear()
            target.update(value)
        elif isinstance(target, list):
            if not isinstance(value, list):
                raise TypeError(f"cannot decode {type(value).__name__} into list")
            target[:] = value
        else:
            raise TypeError(f"cannot decode into {type(target).__name__}")
        return target