"""Persistent storage behind encrypted ratchet sessions.

Session states, skipped message keys, session contexts (expiry and who
initiated the session) and free-form user info are kept in one store file.
"""

from __future__ import annotations

import os
import struct
import time
from typing import Optional, Union

from .kvstore import KVStore

ENCRYPTED_SESSIONS_BUCKET = b"encryptedSessions"
SESSION_KEYS_BUCKET = b"sessionKeys"
SESSION_CONTEXT_BUCKET = b"sessionContext"
SESSION_USER_INFO_BUCKET = b"sessionUserInfo"

_BUCKETS = (
    SESSION_KEYS_BUCKET,
    SESSION_CONTEXT_BUCKET,
    SESSION_USER_INFO_BUCKET,
    ENCRYPTED_SESSIONS_BUCKET,
)

KeyLike = Union[bytes, bytearray, str]


def _key(value: KeyLike) -> bytes:
    if isinstance(value, str):
        return value.encode("utf-8")
    return bytes(value)


def _itob(value: int) -> bytes:
    if value < 0:
        raise ValueError("value must not be negative")
    return struct.pack(">Q", value)


def _btoi(data: bytes) -> int:
    return struct.unpack(">Q", data[:8])[0]


class RatchetStore:
    """The store file holding ratchet sessions and their keys."""

    def __init__(self, path: Union[str, os.PathLike]) -> None:
        self._kv = KVStore(path)
        with self._kv.update() as root:
            for name in _BUCKETS:
                root.create_bucket_if_not_exists(name)

    @property
    def path(self) -> str:
        return self._kv.path

    def __enter__(self) -> "RatchetStore":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def close(self) -> None:
        self._kv.close()

    def destroy(self) -> None:
        """Remove the store file."""
        os.remove(self._kv.path)

    def _save(self, bucket: bytes, key: KeyLike, value: bytes) -> None:
        with self._kv.update() as root:
            root.bucket(bucket).put(_key(key), bytes(value))

    def _fetch(self, bucket: bytes, key: KeyLike) -> Optional[bytes]:
        with self._kv.view() as root:
            return root.bucket(bucket).get(_key(key))

    def save_encrypted_session(self, session_id: KeyLike, data: bytes) -> None:
        self._save(ENCRYPTED_SESSIONS_BUCKET, session_id, data)

    def fetch_encrypted_session(self, session_id: KeyLike) -> Optional[bytes]:
        return self._fetch(ENCRYPTED_SESSIONS_BUCKET, session_id)

    def save_message_key(self, session_id: KeyLike, pub_key: bytes, msg_num: int, msg_key: bytes) -> None:
        """Keep the key of a skipped message, filed under the sender's ratchet key."""
        with self._kv.update() as root:
            keys = root.bucket(SESSION_KEYS_BUCKET)
            keys.create_bucket_if_not_exists(bytes(pub_key)).put(_itob(msg_num), bytes(msg_key))

    def fetch_message_key(self, pub_key: bytes, msg_num: int) -> Optional[bytes]:
        with self._kv.view() as root:
            by_pub_key = root.bucket(SESSION_KEYS_BUCKET).bucket(bytes(pub_key))
            if by_pub_key is None:
                return None
            return by_pub_key.get(_itob(msg_num))

    def count_message_keys(self, pub_key: bytes) -> int:
        with self._kv.view() as root:
            by_pub_key = root.bucket(SESSION_KEYS_BUCKET).bucket(bytes(pub_key))
            return 0 if by_pub_key is None else by_pub_key.key_count()

    def create_session_context(self, session_id: KeyLike, initiated: bool, expiry: int) -> None:
        self._save(SESSION_CONTEXT_BUCKET, session_id, _itob(expiry) + (b"\x01" if initiated else b"\x00"))

    def fetch_session_context(self, session_id: KeyLike) -> tuple:
        """Return (initiated, expiry); (False, 0) for an unknown session."""
        data = self._fetch(SESSION_CONTEXT_BUCKET, session_id)
        if data is None:
            return False, 0
        if len(data) < 9:
            raise ValueError("corrupt session context")
        return data[8] == 1, _btoi(data)

    def delete_expired_sessions(self, now: Optional[int] = None) -> None:
        """Drop every session whose expiry is at or before now (default: the current time)."""
        current = int(time.time()) if now is None else now
        with self._kv.update() as root:
            contexts = root.bucket(SESSION_CONTEXT_BUCKET)
            infos = root.bucket(SESSION_USER_INFO_BUCKET)
            sessions = root.bucket(ENCRYPTED_SESSIONS_BUCKET)
            for key, value in list(contexts.items()):
                if value is None:
                    continue
                if current >= _btoi(value):
                    contexts.delete(key)
                    infos.delete(key)
                    sessions.delete(key)

    def set_session_info(self, session_id: KeyLike, info: Union[bytes, str]) -> None:
        self._save(SESSION_USER_INFO_BUCKET, session_id, _key(info))

    def fetch_session_info(self, session_id: KeyLike) -> Optional[bytes]:
        return self._fetch(SESSION_USER_INFO_BUCKET, session_id)