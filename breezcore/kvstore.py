"""A small persistent key/value store with nested, ordered buckets.

Keys and values are byte strings. Buckets nest to any depth and iterate in
byte order. Reads happen inside ``view()`` and writes inside ``update()``;
an update is committed to disk only when its block finishes without error.
"""

from __future__ import annotations

import os
import struct
import tempfile
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Callable, Iterator, Optional, Sequence, Union

_MAGIC = b"BKV1"
_VALUE = 0
_BUCKET = 1

KeyLike = Union[bytes, bytearray, memoryview, str]
WalkFunc = Callable[[list, bytes, Optional[bytes], int], None]
SkipFunc = Callable[[list, bytes, Optional[bytes]], bool]


class BucketNotFoundError(KeyError):
    """Raised when a bucket that must exist does not."""


class BucketExistsError(ValueError):
    """Raised when creating a bucket whose name is already taken by a bucket."""


@dataclass
class _Node:
    entries: dict = field(default_factory=dict)
    sequence: int = 0

    def clone(self) -> "_Node":
        return _Node(
            {k: v.clone() if isinstance(v, _Node) else v for k, v in self.entries.items()},
            self.sequence,
        )


class _Tx:
    def __init__(self, writable: bool) -> None:
        self.writable = writable
        self.open = True


def _to_bytes(key: KeyLike) -> bytes:
    if isinstance(key, str):
        return key.encode("utf-8")
    return bytes(key)


def _required_key(key: KeyLike) -> bytes:
    data = _to_bytes(key)
    if not data:
        raise ValueError("key required")
    return data


class Bucket:
    """A handle on a bucket, valid for the transaction that produced it."""

    def __init__(self, node: _Node, tx: _Tx, root: bool = False) -> None:
        self._node = node
        self._tx = tx
        self._root = root

    def _check(self, write: bool = False) -> None:
        if not self._tx.open:
            raise ValueError("transaction closed")
        if write and not self._tx.writable:
            raise ValueError("transaction not writable")

    def get(self, key: KeyLike) -> Optional[bytes]:
        """Return the value for key, or None if missing or a nested bucket."""
        self._check()
        value = self._node.entries.get(_to_bytes(key))
        return None if isinstance(value, _Node) else value

    def put(self, key: KeyLike, value: bytes) -> None:
        self._check(write=True)
        if self._root:
            raise ValueError("only buckets can be stored at the top level")
        data = _required_key(key)
        if isinstance(self._node.entries.get(data), _Node):
            raise ValueError("incompatible value: key names a bucket")
        self._node.entries[data] = bytes(value)

    def delete(self, key: KeyLike) -> None:
        self._check(write=True)
        data = _to_bytes(key)
        if isinstance(self._node.entries.get(data), _Node):
            raise ValueError("incompatible value: key names a bucket")
        self._node.entries.pop(data, None)

    def bucket(self, name: KeyLike) -> Optional["Bucket"]:
        """Return the nested bucket called name, or None."""
        self._check()
        child = self._node.entries.get(_to_bytes(name))
        if isinstance(child, _Node):
            return Bucket(child, self._tx)
        return None

    def create_bucket(self, name: KeyLike) -> "Bucket":
        self._check(write=True)
        data = _required_key(name)
        existing = self._node.entries.get(data)
        if isinstance(existing, _Node):
            raise BucketExistsError(data)
        if existing is not None:
            raise ValueError("incompatible value: key holds a value")
        child = _Node()
        self._node.entries[data] = child
        return Bucket(child, self._tx)

    def create_bucket_if_not_exists(self, name: KeyLike) -> "Bucket":
        self._check(write=True)
        existing = self.bucket(name)
        if existing is not None:
            return existing
        return self.create_bucket(name)

    def delete_bucket(self, name: KeyLike) -> None:
        self._check(write=True)
        data = _to_bytes(name)
        existing = self._node.entries.get(data)
        if existing is None:
            raise BucketNotFoundError(data)
        if not isinstance(existing, _Node):
            raise ValueError("incompatible value: key holds a value")
        del self._node.entries[data]

    @property
    def sequence(self) -> int:
        self._check()
        return self._node.sequence

    @sequence.setter
    def sequence(self, value: int) -> None:
        self._check(write=True)
        if value < 0:
            raise ValueError("sequence must not be negative")
        self._node.sequence = value

    def next_sequence(self) -> int:
        """Increment the bucket sequence and return the new value."""
        self._check(write=True)
        self._node.sequence += 1
        return self._node.sequence

    def items(self) -> Iterator[tuple[bytes, Optional[bytes]]]:
        """Yield (key, value) pairs in key order; value is None for buckets."""
        self._check()
        snapshot = sorted(self._node.entries.items())
        for key, value in snapshot:
            yield key, None if isinstance(value, _Node) else value

    def key_count(self) -> int:
        """Number of keys held directly in this bucket."""
        self._check()
        return len(self._node.entries)


def _encode(root: _Node) -> bytes:
    parts = [_MAGIC]

    def encode_node(node: _Node) -> None:
        parts.append(struct.pack(">QI", node.sequence, len(node.entries)))
        for key in sorted(node.entries):
            value = node.entries[key]
            if isinstance(value, _Node):
                parts.append(struct.pack(">BI", _BUCKET, len(key)))
                parts.append(key)
                encode_node(value)
            else:
                parts.append(struct.pack(">BI", _VALUE, len(key)))
                parts.append(key)
                parts.append(struct.pack(">I", len(value)))
                parts.append(value)

    encode_node(root)
    return b"".join(parts)


class _Reader:
    def __init__(self, data: bytes) -> None:
        self._data = data
        self._pos = 0

    def take(self, size: int) -> bytes:
        end = self._pos + size
        if end > len(self._data):
            raise ValueError("corrupt store: truncated data")
        chunk = self._data[self._pos:end]
        self._pos = end
        return chunk

    def unpack(self, fmt: str) -> tuple:
        return struct.unpack(fmt, self.take(struct.calcsize(fmt)))

    @property
    def exhausted(self) -> bool:
        return self._pos == len(self._data)


def _decode(data: bytes) -> _Node:
    reader = _Reader(data)
    if reader.take(len(_MAGIC)) != _MAGIC:
        raise ValueError("corrupt store: bad header")

    def decode_node() -> _Node:
        sequence, count = reader.unpack(">QI")
        node = _Node(sequence=sequence)
        for _ in range(count):
            kind, key_len = reader.unpack(">BI")
            key = reader.take(key_len)
            if kind == _BUCKET:
                node.entries[key] = decode_node()
            elif kind == _VALUE:
                (value_len,) = reader.unpack(">I")
                node.entries[key] = reader.take(value_len)
            else:
                raise ValueError("corrupt store: unknown entry kind")
        return node

    root = decode_node()
    if not reader.exhausted:
        raise ValueError("corrupt store: trailing data")
    return root


def _atomic_write(path: str, data: bytes) -> None:
    directory = os.path.dirname(os.path.abspath(path))
    fd, tmp = tempfile.mkstemp(dir=directory, prefix=".kvstore-")
    try:
        with os.fdopen(fd, "wb") as out:
            out.write(data)
        os.replace(tmp, path)
    except BaseException:
        if os.path.exists(tmp):
            os.remove(tmp)
        raise


class KVStore:
    """A store file holding top-level buckets."""

    def __init__(self, path: Union[str, os.PathLike]) -> None:
        self.path = os.fspath(path)
        self._lock = threading.RLock()
        self._closed = False
        if os.path.exists(self.path):
            with open(self.path, "rb") as fh:
                self._root = _decode(fh.read())
        else:
            self._root = _Node()
            _atomic_write(self.path, _encode(self._root))

    def __enter__(self) -> "KVStore":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _ensure_open(self) -> None:
        if self._closed:
            raise ValueError("store is closed")

    @contextmanager
    def view(self) -> Iterator[Bucket]:
        """Read-only access to the committed state."""
        self._ensure_open()
        tx = _Tx(writable=False)
        try:
            yield Bucket(self._root, tx, root=True)
        finally:
            tx.open = False

    @contextmanager
    def update(self) -> Iterator[Bucket]:
        """Read-write access; committed on success, discarded on error."""
        self._ensure_open()
        with self._lock:
            working = self._root.clone()
            tx = _Tx(writable=True)
            try:
                yield Bucket(working, tx, root=True)
            finally:
                tx.open = False
            _atomic_write(self.path, _encode(working))
            self._root = working

    def write_to(self, path: Union[str, os.PathLike]) -> int:
        """Write a consistent copy of the store to path; return bytes written."""
        self._ensure_open()
        with self._lock:
            data = _encode(self._root)
        with open(path, "wb") as out:
            out.write(data)
        return len(data)

    def close(self) -> None:
        self._closed = True


def walk(store: KVStore, walk_fn: WalkFunc, skip_fn: Optional[SkipFunc] = None) -> None:
    """Visit every bucket and value, depth first, in key order.

    ``walk_fn(keys, key, value, sequence)`` receives the path of bucket names
    leading to the entry; value is None for buckets. Entries for which
    ``skip_fn(keys, key, value)`` is true are left out along with their content.
    """
    with store.view() as root:
        for name, _ in root.items():
            child = root.bucket(name)
            _walk_bucket(child, (), name, None, child.sequence, walk_fn, skip_fn)


def _walk_bucket(
    bucket: Bucket,
    keypath: Sequence[bytes],
    key: bytes,
    value: Optional[bytes],
    sequence: int,
    walk_fn: WalkFunc,
    skip_fn: Optional[SkipFunc],
) -> None:
    if skip_fn is not None and skip_fn(list(keypath), key, value):
        return
    walk_fn(list(keypath), key, value, sequence)
    if value is not None:
        return
    path = tuple(keypath) + (key,)
    for child_key, child_value in bucket.items():
        if child_value is None:
            child = bucket.bucket(child_key)
            _walk_bucket(child, path, child_key, None, child.sequence, walk_fn, skip_fn)
        else:
            _walk_bucket(bucket, path, child_key, child_value, bucket.sequence, walk_fn, skip_fn)


def copy_store(
    src_path: Union[str, os.PathLike],
    dest_path: Union[str, os.PathLike],
    skip: Optional[SkipFunc] = None,
) -> None:
    """Copy every entry of one store into another, leaving out skipped ones."""
    if not os.path.exists(src_path):
        raise FileNotFoundError(os.fspath(src_path))
    with KVStore(src_path) as src, KVStore(dest_path) as dst, dst.update() as root:

        def copy_entry(keys: list, key: bytes, value: Optional[bytes], sequence: int) -> None:
            if not keys:
                root.create_bucket(key).sequence = sequence
                return
            target = root.bucket(keys[0])
            for name in keys[1:]:
                target = target.bucket(name)
            if value is None:
                target.create_bucket(key).sequence = sequence
            else:
                target.put(key, value)

        walk(src, copy_entry, skip)