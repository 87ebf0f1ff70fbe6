"""End-to-end encrypted sessions built on a double ratchet.

Each side keeps its session state in a :class:`RatchetStore`; callers refer
to sessions only by their id. Keys of messages that arrive out of order are
kept so the messages can still be decrypted later.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import os
import struct
import threading
from dataclasses import dataclass, field, replace
from typing import Optional, Union

from cryptography.hazmat.primitives import hashes, padding
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey, X25519PublicKey
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

from .ratchet_store import RatchetStore

KEY_SIZE = 32
MAX_SKIP = 1000

_ROOT_INFO = b"breezcore ratchet root chain"
_MESSAGE_INFO = b"breezcore ratchet message keys"
_CHAIN_KEY_INPUT = b"\x0f"
_MESSAGE_KEY_INPUT = b"\x10"
_MAC_SIZE = 32
_BLOCK_SIZE = 16

_STATE_FORMAT = struct.Struct(">32s32s32s32sIII32sI32sI")

SessionId = Union[bytes, str]


class SessionNotFoundError(LookupError):
    """Raised when no session is stored under the given id."""


def _check_key(value: bytes, what: str = "key") -> bytes:
    data = bytes(value)
    if len(data) != KEY_SIZE:
        raise ValueError(f"{what} must be {KEY_SIZE} bytes, got {len(data)}")
    return data


def _to_key(data: bytes) -> bytes:
    """Fit data into a key: truncate or zero-pad to 32 bytes."""
    return bytes(data[:KEY_SIZE]).ljust(KEY_SIZE, b"\x00")


def _session_key(session_id: SessionId) -> bytes:
    return session_id.encode("utf-8") if isinstance(session_id, str) else bytes(session_id)


def _clamp(raw: bytes) -> bytes:
    key = bytearray(raw)
    key[0] &= 248
    key[31] &= 127
    key[31] |= 64
    return bytes(key)


@dataclass(frozen=True)
class DHPair:
    """An X25519 key pair."""

    private_key: bytes = bytes(KEY_SIZE)
    public_key: bytes = bytes(KEY_SIZE)

    def __post_init__(self) -> None:
        object.__setattr__(self, "private_key", _check_key(self.private_key, "private key"))
        object.__setattr__(self, "public_key", _check_key(self.public_key, "public key"))

    @classmethod
    def generate(cls) -> "DHPair":
        private = _clamp(os.urandom(KEY_SIZE))
        public = (
            X25519PrivateKey.from_private_bytes(private)
            .public_key()
            .public_bytes(Encoding.Raw, PublicFormat.Raw)
        )
        return cls(private, public)

    def exchange(self, remote_public: bytes) -> bytes:
        private = X25519PrivateKey.from_private_bytes(self.private_key)
        return private.exchange(X25519PublicKey.from_public_bytes(_check_key(remote_public)))


def _kdf_ck(ck: bytes) -> tuple:
    chain_key = hmac.new(ck, _CHAIN_KEY_INPUT, hashlib.sha256).digest()
    message_key = hmac.new(ck, _MESSAGE_KEY_INPUT, hashlib.sha256).digest()
    return chain_key, message_key


def _kdf_rk(rk: bytes, dh_out: bytes) -> tuple:
    buf = HKDF(algorithm=hashes.SHA256(), length=3 * KEY_SIZE, salt=rk, info=_ROOT_INFO).derive(dh_out)
    return buf[:32], buf[32:64], buf[64:96]


@dataclass
class Chain:
    """A symmetric chain: its current key and how many steps it has taken."""

    ck: bytes = bytes(KEY_SIZE)
    n: int = 0

    def __post_init__(self) -> None:
        self.ck = _check_key(self.ck, "chain key")

    def step(self) -> bytes:
        """Advance the chain and return the next message key."""
        self.ck, message_key = _kdf_ck(self.ck)
        self.n += 1
        return message_key


@dataclass
class State:
    """Everything one side needs to continue a session."""

    root_ck: bytes = bytes(KEY_SIZE)
    dhr: bytes = bytes(KEY_SIZE)
    dhs: DHPair = field(default_factory=DHPair)
    pn: int = 0
    step: int = 0
    keys_count: int = 0
    send_ch: Chain = field(default_factory=Chain)
    recv_ch: Chain = field(default_factory=Chain)

    def __post_init__(self) -> None:
        self.root_ck = _check_key(self.root_ck, "root key")
        self.dhr = _check_key(self.dhr, "remote ratchet key")

    @classmethod
    def default(cls, shared_key: bytes) -> "State":
        """A fresh state in which both chains start from the shared key."""
        key = _check_key(shared_key, "shared key")
        return cls(root_ck=key, send_ch=Chain(key), recv_ch=Chain(key))


def _root_step(state: State, dh_out: bytes) -> Chain:
    state.root_ck, chain_key, _header_key = _kdf_rk(state.root_ck, dh_out)
    return Chain(chain_key)


@dataclass(frozen=True)
class RatchetSessionDetails:
    session_id: str
    initiated: bool
    user_info: str


class SessionStorage:
    """Saves and loads session states in their fixed binary layout."""

    def __init__(self, store: RatchetStore) -> None:
        self._store = store

    def save(self, session_id: SessionId, state: State) -> None:
        data = _STATE_FORMAT.pack(
            state.root_ck,
            state.dhr,
            state.dhs.public_key,
            state.dhs.private_key,
            state.pn,
            state.step,
            state.keys_count,
            state.send_ch.ck,
            state.send_ch.n,
            state.recv_ch.ck,
            state.recv_ch.n,
        )
        self._store.save_encrypted_session(_session_key(session_id), data)

    def load(self, session_id: SessionId) -> State:
        data = self._store.fetch_encrypted_session(_session_key(session_id))
        if data is None:
            raise SessionNotFoundError(f"Session {session_id!r} does not exist")
        if len(data) != _STATE_FORMAT.size:
            raise ValueError("corrupt session state")
        (root, dhr, public, private, pn, step, keys_count,
         send_ck, send_n, recv_ck, recv_n) = _STATE_FORMAT.unpack(data)
        return State(
            root_ck=root,
            dhr=dhr,
            dhs=DHPair(private_key=private, public_key=public),
            pn=pn,
            step=step,
            keys_count=keys_count,
            send_ch=Chain(send_ck, send_n),
            recv_ch=Chain(recv_ck, recv_n),
        )


@dataclass(frozen=True)
class _Message:
    dh: bytes
    n: int
    pn: int
    ciphertext: bytes = b""

    def encoded_header(self) -> bytes:
        return struct.pack("<II", self.n, self.pn) + self.dh

    def to_json(self) -> str:
        doc = {
            "Header": {"DH": list(self.dh), "N": self.n, "PN": self.pn},
            "Ciphertext": base64.b64encode(self.ciphertext).decode("ascii"),
        }
        return json.dumps(doc, separators=(",", ":"))

    @classmethod
    def from_json(cls, raw: str) -> "_Message":
        doc = json.loads(raw)
        try:
            header = doc["Header"]
            dh = bytes(header["DH"])
            n = int(header["N"])
            pn = int(header["PN"])
            ciphertext = base64.b64decode(doc["Ciphertext"], validate=True)
        except (KeyError, TypeError, binascii.Error) as exc:
            raise ValueError(f"malformed message: {exc}") from exc
        return cls(_check_key(dh, "ratchet key"), n, pn, ciphertext)


def _derive_enc_keys(message_key: bytes) -> tuple:
    buf = HKDF(algorithm=hashes.SHA256(), length=80, salt=bytes(32), info=_MESSAGE_INFO).derive(message_key)
    return buf[:32], buf[32:64], buf[64:80]


def _encrypt(message_key: bytes, plaintext: bytes, ad: bytes) -> bytes:
    enc_key, auth_key, iv = _derive_enc_keys(message_key)
    padder = padding.PKCS7(_BLOCK_SIZE * 8).padder()
    padded = padder.update(plaintext) + padder.finalize()
    encryptor = Cipher(algorithms.AES(enc_key), modes.CBC(iv)).encryptor()
    ciphertext = encryptor.update(padded) + encryptor.finalize()
    return ciphertext + hmac.new(auth_key, ad + ciphertext, hashlib.sha256).digest()


def _decrypt(message_key: bytes, data: bytes, ad: bytes) -> bytes:
    body_len = len(data) - _MAC_SIZE
    if body_len < _BLOCK_SIZE or body_len % _BLOCK_SIZE:
        raise ValueError("can't decrypt: bad ciphertext length")
    ciphertext, signature = data[:body_len], data[body_len:]
    enc_key, auth_key, iv = _derive_enc_keys(message_key)
    expected = hmac.new(auth_key, ad + ciphertext, hashlib.sha256).digest()
    if not hmac.compare_digest(signature, expected):
        raise ValueError("can't decrypt: invalid signature")
    decryptor = Cipher(algorithms.AES(enc_key), modes.CBC(iv)).decryptor()
    padded = decryptor.update(ciphertext) + decryptor.finalize()
    unpadder = padding.PKCS7(_BLOCK_SIZE * 8).unpadder()
    return unpadder.update(padded) + unpadder.finalize()


def _skip_message_keys(state: State, until: int) -> list:
    if until < state.recv_ch.n:
        raise ValueError("bad until: probably an out-of-order message that was deleted")
    if state.recv_ch.n + MAX_SKIP < until:
        raise ValueError("too many messages")
    skipped = []
    while state.recv_ch.n < until:
        message_key = state.recv_ch.step()
        skipped.append((state.dhr, state.recv_ch.n - 1, message_key))
    return skipped


def _dh_ratchet(state: State, message: _Message) -> None:
    state.pn = state.send_ch.n
    state.dhr = message.dh
    state.recv_ch = _root_step(state, state.dhs.exchange(state.dhr))
    state.dhs = DHPair.generate()
    state.send_ch = _root_step(state, state.dhs.exchange(state.dhr))
    state.step += 1


class RatchetService:
    """Creates sessions and encrypts and decrypts messages by session id."""

    def __init__(self, store: RatchetStore) -> None:
        self._store = store
        self._sessions = SessionStorage(store)
        self._lock = threading.Lock()

    @classmethod
    def start(cls, db_path: Union[str, os.PathLike]) -> "RatchetService":
        """Open the store at db_path, dropping expired sessions."""
        store = RatchetStore(db_path)
        store.delete_expired_sessions()
        return cls(store)

    def stop(self) -> None:
        self._store.close()

    def new_session(self, session_id: str, expiry: int) -> tuple:
        """Start a session as initiator; return (shared secret, public key) in hex."""
        secret = os.urandom(KEY_SIZE)
        key = _session_key(session_id)
        self._store.create_session_context(key, True, expiry)
        key_pair = DHPair.generate()
        state = State.default(secret)
        state.dhs = key_pair
        self._sessions.save(key, state)
        return secret.hex(), key_pair.public_key.hex()

    def new_session_with_remote_key(self, session_id: str, secret: str, remote_pub_key: str, expiry: int) -> None:
        """Join a session from the initiator's shared secret and public key (hex)."""
        shared = bytes.fromhex(secret)
        remote = bytes.fromhex(remote_pub_key)
        key = _session_key(session_id)
        self._store.create_session_context(key, False, expiry)
        state = State.default(_to_key(shared))
        state.dhs = DHPair.generate()
        state.dhr = _to_key(remote)
        state.send_ch = _root_step(state, state.dhs.exchange(state.dhr))
        self._sessions.save(key, state)

    def session_info(self, session_id: str) -> Optional[RatchetSessionDetails]:
        """Details of the session, or None if there is no such session."""
        key = _session_key(session_id)
        try:
            self._sessions.load(key)
        except (SessionNotFoundError, ValueError):
            return None
        info = self._store.fetch_session_info(key)
        initiated, _ = self._store.fetch_session_context(key)
        return RatchetSessionDetails(
            session_id=session_id,
            initiated=initiated,
            user_info=(info or b"").decode("utf-8", errors="replace"),
        )

    def set_session_info(self, session_id: str, info: str) -> None:
        key = _session_key(session_id)
        try:
            self._sessions.load(key)
        except ValueError as exc:
            raise SessionNotFoundError(f"Session {session_id!r} does not exist") from exc
        self._store.set_session_info(key, info)

    def encrypt(self, session_id: str, message: str) -> str:
        """Encrypt message in the session and return it as JSON."""
        with self._lock:
            key = _session_key(session_id)
            state = self._sessions.load(key)
            header = _Message(dh=state.dhs.public_key, n=state.send_ch.n, pn=state.pn)
            message_key = state.send_ch.step()
            ciphertext = _encrypt(message_key, message.encode("utf-8"), header.encoded_header())
            self._sessions.save(key, state)
            return replace(header, ciphertext=ciphertext).to_json()

    def decrypt(self, session_id: str, message: str) -> str:
        """Decrypt a JSON message; the session is updated only on success."""
        with self._lock:
            parsed = _Message.from_json(message)
            key = _session_key(session_id)
            state = self._sessions.load(key)
            ad = parsed.encoded_header()

            stored = self._store.fetch_message_key(parsed.dh, parsed.n)
            if stored is not None:
                return _decrypt(stored, parsed.ciphertext, ad).decode("utf-8")

            skipped = []
            if parsed.dh != state.dhr:
                skipped += _skip_message_keys(state, parsed.pn)
                _dh_ratchet(state, parsed)
            skipped += _skip_message_keys(state, parsed.n)
            message_key = state.recv_ch.step()
            plaintext = _decrypt(message_key, parsed.ciphertext, ad)

            for dh, number, skipped_key in skipped:
                self._store.save_message_key(key, dh, number, skipped_key)
            state.keys_count += len(skipped)
            self._sessions.save(key, state)
            return plaintext.decode("utf-8")