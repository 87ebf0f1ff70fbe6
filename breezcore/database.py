"""The application database: buckets for account, network, sync and payment data."""

from __future__ import annotations

import json
import logging
import os
import struct
from dataclasses import dataclass, field
from typing import Callable, Optional, Union

from .funds import ADDRESSES_BUCKET, REDEEMABLE_HASHES_BUCKET, SWAP_ADDRESSES_BY_HASH_BUCKET, FundsMixin
from .kvstore import KVStore
from .payments import (
    CLOSED_CHANNELS_BUCKET,
    INCOMING_PAY_REQ_BUCKET,
    KEYSEND_TIP_MESSAGE_BUCKET,
    PAYMENT_GROUP_BUCKET,
    PAYMENTS_BUCKET,
    PAYMENTS_HASH_BUCKET,
    PAYMENTS_SYNC_INFO_BUCKET,
    PaymentsMixin,
    _delete_item,
    _fetch_item,
    _save_item,
)

VERSION_BUCKET = b"version"
ACCOUNT_BUCKET = b"account"
ENCRYPTED_SESSIONS_BUCKET = b"encrypted_sessions"
NETWORK_BUCKET = b"network"
SYNC_STATUS_BUCKET = b"syncstatus"
REVERSE_SWAP_BUCKET = b"reverse_swap"
ZERO_CONF_INVOICES_BUCKET = b"zero-conf-invoices-bucket"
LNURL_AUTH_BUCKET = b"lnurl-auth-bucket"
LNURL_PAY_BUCKET = b"lnurl-pay-bucket"
LNURL_PAY_METADATA_MIGRATION_BUCKET = b"lnurl-pay-metadata-migration-bucket"
TOR_BUCKET = b"tor"

_TOP_LEVEL_BUCKETS = (
    INCOMING_PAY_REQ_BUCKET,
    KEYSEND_TIP_MESSAGE_BUCKET,
    PAYMENT_GROUP_BUCKET,
    PAYMENTS_BUCKET,
    ACCOUNT_BUCKET,
    ADDRESSES_BUCKET,
    SWAP_ADDRESSES_BY_HASH_BUCKET,
    VERSION_BUCKET,
    REDEEMABLE_HASHES_BUCKET,
    PAYMENTS_HASH_BUCKET,
    ENCRYPTED_SESSIONS_BUCKET,
    NETWORK_BUCKET,
    SYNC_STATUS_BUCKET,
    REVERSE_SWAP_BUCKET,
    CLOSED_CHANNELS_BUCKET,
    ZERO_CONF_INVOICES_BUCKET,
    LNURL_AUTH_BUCKET,
    LNURL_PAY_BUCKET,
    TOR_BUCKET,
    LNURL_PAY_METADATA_MIGRATION_BUCKET,
)

_PEERS_KEY = b"peers"
_TX_SPENT_URL_KEY = b"txspenturl"
_TOR_ACTIVE_KEY = b"torActive"
_LAST_HEADER_TIMESTAMP_KEY = b"last_header_timestamp"
_MISMATCHED_CHANNELS_KEY = b"mismatched_channels"
_LNURL_AUTH_KEY = b"key"

_INVALIDATED_PEER = "bb1.breez.technology"

_log = logging.getLogger(__name__)


def _encode_varint(value: int) -> bytes:
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def _decode_varint(data: bytes, pos: int) -> tuple:
    result = 0
    shift = 0
    while True:
        if pos >= len(data):
            raise ValueError("truncated varint")
        byte = data[pos]
        pos += 1
        result |= (byte & 0x7F) << shift
        if not byte & 0x80:
            return result, pos
        shift += 7
        if shift >= 64:
            raise ValueError("varint too long")


def _encode_peers(peers: list) -> bytes:
    """Encode a peers message: field 1, repeated string."""
    parts = []
    for peer in peers:
        data = peer.encode("utf-8")
        parts.append(b"\x0a" + _encode_varint(len(data)) + data)
    return b"".join(parts)


def _decode_peers(data: bytes) -> list:
    peers = []
    pos = 0
    while pos < len(data):
        tag, pos = _decode_varint(data, pos)
        number, wire_type = tag >> 3, tag & 0x07
        if wire_type == 0:
            _, pos = _decode_varint(data, pos)
        elif wire_type == 1:
            pos += 8
        elif wire_type == 2:
            length, pos = _decode_varint(data, pos)
            if pos + length > len(data):
                raise ValueError("truncated field")
            chunk = data[pos:pos + length]
            pos += length
            if number == 1:
                peers.append(chunk.decode("utf-8"))
        elif wire_type == 5:
            pos += 4
        else:
            raise ValueError(f"unsupported wire type {wire_type}")
        if pos > len(data):
            raise ValueError("truncated field")
    return peers


def _lookup(doc: dict, name: str):
    if name in doc:
        return doc[name]
    lowered = name.lower()
    for key, value in doc.items():
        if key.lower() == lowered:
            return value
    return None


@dataclass
class MismatchedChannel:
    chan_point: str = ""
    short_chan_id: int = 0


@dataclass
class MismatchedChannels:
    """Channels whose state differs from what the LSP reports."""

    lsp_pubkey: str = ""
    chan_points: Optional[list] = field(default=None)

    def to_json(self) -> bytes:
        points = None
        if self.chan_points is not None:
            points = [{"ChanPoint": c.chan_point, "ShortChanID": c.short_chan_id} for c in self.chan_points]
        doc = {"LSPPubkey": self.lsp_pubkey, "ChanPoints": points}
        return json.dumps(doc, separators=(",", ":")).encode("utf-8")

    @classmethod
    def from_json(cls, raw: bytes) -> "MismatchedChannels":
        doc = json.loads(raw)
        if not isinstance(doc, dict):
            raise ValueError("record is not a JSON object")
        raw_points = _lookup(doc, "ChanPoints")
        points = None
        if raw_points is not None:
            points = [
                MismatchedChannel(
                    chan_point=_lookup(item, "ChanPoint") or "",
                    short_chan_id=_lookup(item, "ShortChanID") or 0,
                )
                for item in raw_points
            ]
        return cls(lsp_pubkey=_lookup(doc, "LSPPubkey") or "", chan_points=points)


class DB(PaymentsMixin, FundsMixin):
    """The application database stored in one file."""

    def __init__(self, db_path: Union[str, os.PathLike]) -> None:
        _log.info("openDB started")
        self._store = KVStore(db_path)
        _log.info("breez db opened successfully")
        with self._store.update() as root:
            for name in _TOP_LEVEL_BUCKETS:
                root.create_bucket_if_not_exists(name)
            root.bucket(PAYMENTS_BUCKET).create_bucket_if_not_exists(PAYMENTS_SYNC_INFO_BUCKET)

        peers, _ = self.get_peers(None)
        if peers is not None and len(peers) == 1 and peers[0] == _INVALIDATED_PEER:
            self.set_peers(None)

    @property
    def path(self) -> str:
        return self._store.path

    def __enter__(self) -> "DB":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def close(self) -> None:
        self._store.close()

    def delete_db(self) -> None:
        """Remove the database file."""
        os.remove(self._store.path)

    def backup_db(self, directory: Union[str, os.PathLike]) -> str:
        """Write a copy of the database into directory and return its path."""
        target = os.path.join(os.fspath(directory), os.path.basename(self._store.path))
        self._store.write_to(target)
        return target

    # account

    def save_account(self, account: bytes) -> None:
        _save_item(self._store, ACCOUNT_BUCKET, b"account", account)

    def fetch_account(self) -> Optional[bytes]:
        return _fetch_item(self._store, ACCOUNT_BUCKET, b"account")

    def enable_account(self, enabled: bool) -> None:
        _save_item(self._store, ACCOUNT_BUCKET, b"enabled", b"\x01" if enabled else b"\x00")

    def account_enabled(self) -> bool:
        """The account state; enabled unless it was explicitly disabled."""
        data = _fetch_item(self._store, ACCOUNT_BUCKET, b"enabled")
        return data is None or data[:1] == b"\x01"

    def add_zero_conf_hash(self, payment_hash: bytes, payreq: bytes) -> None:
        _save_item(self._store, ZERO_CONF_INVOICES_BUCKET, bytes(payment_hash), payreq)

    def fetch_zero_conf_invoice(self, payment_hash: bytes) -> Optional[bytes]:
        return _fetch_item(self._store, ZERO_CONF_INVOICES_BUCKET, bytes(payment_hash))

    def remove_zero_conf_hash(self, payment_hash: bytes) -> None:
        _delete_item(self._store, ZERO_CONF_INVOICES_BUCKET, bytes(payment_hash))

    def fetch_zero_conf_hashes(self) -> list:
        with self._store.view() as root:
            return [key for key, _ in root.bucket(ZERO_CONF_INVOICES_BUCKET).items()]

    # network

    def set_peers(self, peers: Optional[list]) -> None:
        """Store the peer list; an empty list restores the defaults."""
        if not peers:
            _delete_item(self._store, NETWORK_BUCKET, _PEERS_KEY)
            return
        _save_item(self._store, NETWORK_BUCKET, _PEERS_KEY, _encode_peers(list(peers)))

    def get_peers(self, defaults: Optional[list]) -> tuple:
        """Return (peers, is_default); defaults are used when none are stored."""
        data = _fetch_item(self._store, NETWORK_BUCKET, _PEERS_KEY)
        if not data:
            return defaults, True
        peers = _decode_peers(data)
        if peers:
            return peers, False
        return defaults, True

    def set_tx_spent_url(self, url: str) -> None:
        _save_item(self._store, NETWORK_BUCKET, _TX_SPENT_URL_KEY, url.encode("utf-8"))

    def get_tx_spent_url(self, default_url: str) -> tuple:
        """Return (url, is_default)."""
        data = _fetch_item(self._store, NETWORK_BUCKET, _TX_SPENT_URL_KEY)
        if not data:
            return default_url, True
        return data.decode("utf-8"), False

    # tor

    def set_tor_active(self, active: bool) -> None:
        _save_item(self._store, TOR_BUCKET, _TOR_ACTIVE_KEY, b"\x01" if active else b"\x00")

    def get_tor_active(self) -> bool:
        data = _fetch_item(self._store, TOR_BUCKET, _TOR_ACTIVE_KEY)
        return bool(data) and data[0] == 1

    # sync status

    def fetch_last_synced_header_timestamp(self) -> int:
        data = _fetch_item(self._store, SYNC_STATUS_BUCKET, _LAST_HEADER_TIMESTAMP_KEY)
        if data is None:
            return 0
        return struct.unpack(">q", data)[0]

    def set_last_synced_header_timestamp(self, ts: int) -> None:
        _save_item(self._store, SYNC_STATUS_BUCKET, _LAST_HEADER_TIMESTAMP_KEY, struct.pack(">q", ts))

    def set_mismatched_channels(self, mismatched: MismatchedChannels) -> None:
        _save_item(self._store, SYNC_STATUS_BUCKET, _MISMATCHED_CHANNELS_KEY, mismatched.to_json())

    def fetch_mismatched_channels(self) -> Optional[MismatchedChannels]:
        data = _fetch_item(self._store, SYNC_STATUS_BUCKET, _MISMATCHED_CHANNELS_KEY)
        if data is None:
            return None
        return MismatchedChannels.from_json(data)

    def remove_channel_mismatch(self) -> None:
        _delete_item(self._store, SYNC_STATUS_BUCKET, _MISMATCHED_CHANNELS_KEY)

    # lnurl auth

    def fetch_lnurl_auth_key(self, create_new: Callable[[], bytes]) -> bytes:
        """Return the stored master key, creating and storing one if missing."""
        with self._store.update() as root:
            bucket = root.bucket(LNURL_AUTH_BUCKET)
            key = bucket.get(_LNURL_AUTH_KEY)
            if key is None:
                key = bytes(create_new())
                bucket.put(_LNURL_AUTH_KEY, key)
        return key


def open_db(db_path: Union[str, os.PathLike]) -> DB:
    """Open (creating if needed) the database at db_path."""
    return DB(db_path)