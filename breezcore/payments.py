"""Payment records kept in the store, with the sync bookkeeping around them."""

from __future__ import annotations

import base64
import json
import logging
import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Mapping, Optional

from .kvstore import Bucket, KVStore

INCOMING_PAY_REQ_BUCKET = b"paymentRequests"
KEYSEND_TIP_MESSAGE_BUCKET = b"keysendTipMessagBucket"
PAYMENT_GROUP_BUCKET = b"paymentGroupBucket"
PAYMENTS_BUCKET = b"payments"
PAYMENTS_HASH_BUCKET = b"paymentsByHash"
PAYMENTS_SYNC_INFO_BUCKET = b"paymentsSyncInfo"
CLOSED_CHANNELS_BUCKET = b"closedChannelsBucket"

_LAST_SENT_PAYMENT_TIME = b"lastSentPaymentTime"
_LAST_SETTLED_INDEX = b"lastSettledIndex"

_log = logging.getLogger(__name__)


def _itob(value: int) -> bytes:
    return struct.pack(">Q", value)


def _btoi(data: bytes) -> int:
    return struct.unpack(">Q", data)[0]


def _save_item(store: KVStore, bucket: bytes, key: bytes, value: Optional[bytes]) -> None:
    with store.update() as root:
        root.bucket(bucket).put(key, b"" if value is None else value)


def _fetch_item(store: KVStore, bucket: bytes, key: bytes) -> Optional[bytes]:
    with store.view() as root:
        return root.bucket(bucket).get(key)


def _delete_item(store: KVStore, bucket: bytes, key: bytes) -> None:
    with store.update() as root:
        root.bucket(bucket).delete(key)


def _encode_record(obj: Any, names: Mapping[str, str], byte_fields: frozenset = frozenset()) -> bytes:
    """Serialize a record to JSON under its stored field names."""
    doc = {}
    for attr, name in names.items():
        value = getattr(obj, attr)
        if attr in byte_fields and value is not None:
            value = base64.b64encode(bytes(value)).decode("ascii")
        elif isinstance(value, IntEnum):
            value = int(value)
        doc[name] = value
    return json.dumps(doc, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def _decode_record(cls: type, raw: bytes, names: Mapping[str, str], byte_fields: frozenset = frozenset()) -> Any:
    """Build a record from stored JSON; missing or null fields keep their defaults."""
    doc = json.loads(raw)
    if not isinstance(doc, dict):
        raise ValueError("record is not a JSON object")
    folded = {key.lower(): value for key, value in doc.items()}
    kwargs = {}
    for attr, name in names.items():
        value = doc[name] if name in doc else folded.get(name.lower())
        if value is None:
            continue
        if attr in byte_fields:
            value = base64.b64decode(value, validate=True)
        kwargs[attr] = value
    return cls(**kwargs)


class PaymentType(IntEnum):
    SENT = 0
    RECEIVED = 1
    DEPOSIT = 2
    WITHDRAWAL = 3
    CLOSED_CHANNEL = 4


class ChannelCloseStatus(IntEnum):
    WAITING = 0
    PENDING = 1
    CONFIRMED = 2


@dataclass
class PaymentInfo:
    """A payment as shown to the user."""

    type: PaymentType = PaymentType.SENT
    amount: int = 0
    fee: int = 0
    creation_timestamp: int = 0
    description: str = ""
    payee_name: str = ""
    payee_image_url: str = ""
    payer_name: str = ""
    payer_image_url: str = ""
    transfer_request: bool = False
    payment_hash: str = ""
    redeem_tx_id: str = ""
    destination: str = ""
    pending_expiration_height: int = 0
    pending_expiration_timestamp: int = 0
    pending_full: bool = False
    preimage: str = ""
    is_key_send: bool = False
    group_key: str = ""
    group_name: str = ""
    closed_channel_point: str = ""
    closed_channel_status: ChannelCloseStatus = ChannelCloseStatus.WAITING
    closed_channel_tx_id: str = ""
    closed_channel_remote_tx_id: str = ""
    closed_channel_sweep_tx_id: str = ""

    def __post_init__(self) -> None:
        self.type = PaymentType(self.type)
        self.closed_channel_status = ChannelCloseStatus(self.closed_channel_status)

    def to_json(self) -> bytes:
        return _encode_record(self, _PAYMENT_NAMES)

    @classmethod
    def from_json(cls, raw: bytes) -> "PaymentInfo":
        return _decode_record(cls, raw, _PAYMENT_NAMES)


_PAYMENT_NAMES = {
    "type": "Type",
    "amount": "Amount",
    "fee": "Fee",
    "creation_timestamp": "CreationTimestamp",
    "description": "Description",
    "payee_name": "PayeeName",
    "payee_image_url": "PayeeImageURL",
    "payer_name": "PayerName",
    "payer_image_url": "PayerImageURL",
    "transfer_request": "TransferRequest",
    "payment_hash": "PaymentHash",
    "redeem_tx_id": "RedeemTxID",
    "destination": "Destination",
    "pending_expiration_height": "PendingExpirationHeight",
    "pending_expiration_timestamp": "PendingExpirationTimestamp",
    "pending_full": "PendingFull",
    "preimage": "Preimage",
    "is_key_send": "IsKeySend",
    "group_key": "GroupKey",
    "group_name": "GroupName",
    "closed_channel_point": "ClosedChannelPoint",
    "closed_channel_status": "ClosedChannelStatus",
    "closed_channel_tx_id": "ClosedChannelTxID",
    "closed_channel_remote_tx_id": "ClosedChannelRemoteTxID",
    "closed_channel_sweep_tx_id": "ClosedChannelSweepTxID",
}


def _add_payment(root: Bucket, payment: PaymentInfo, existing_id: int) -> int:
    """Store payment under existing_id, its known id, or a fresh one."""
    payment_buf = payment.to_json()
    payments = root.bucket(PAYMENTS_BUCKET)
    hashes = root.bucket(PAYMENTS_HASH_BUCKET)

    payment_id = existing_id
    if payment_id == 0:
        old_id = hashes.get(payment.payment_hash)
        if old_id is not None:
            payment_id = _btoi(old_id)
        if payment_id == 0:
            payment_id = payments.next_sequence()

    payments.put(_itob(payment_id), payment_buf)
    if payment.payment_hash:
        hashes.put(payment.payment_hash, _itob(payment_id))
    return payment_id


def _fetch_closed_channel_payment(root: Bucket, channel_point: bytes) -> tuple:
    record_id = root.bucket(CLOSED_CHANNELS_BUCKET).get(channel_point)
    if record_id is not None:
        record = root.bucket(PAYMENTS_BUCKET).get(record_id)
        if record is not None:
            return PaymentInfo.from_json(record), _btoi(record_id)
    return None, 0


class PaymentsMixin:
    """Payment operations for a database object exposing ``_store``.

    The store must already hold the payment buckets, with the sync-info
    bucket nested in the payments bucket.
    """

    _store: KVStore

    def add_account_payment(self, payment: PaymentInfo, received_index: int, sent_time: int) -> bool:
        """Add a payment unless its hash is known; return whether it existed."""
        _log.info("addAccountPayment hash = %s", payment.payment_hash)
        if not payment.payment_hash:
            raise ValueError("account payment must have payment hash")
        with self._store.update() as root:
            if root.bucket(PAYMENTS_HASH_BUCKET).get(payment.payment_hash) is not None:
                return True
            _add_payment(root, payment, 0)

            sync_info = root.bucket(PAYMENTS_BUCKET).bucket(PAYMENTS_SYNC_INFO_BUCKET)
            last_time_buf = sync_info.get(_LAST_SENT_PAYMENT_TIME)
            last_time = 0 if last_time_buf is None else _btoi(last_time_buf)
            if last_time < sent_time:
                sync_info.put(_LAST_SENT_PAYMENT_TIME, _itob(sent_time))

            last_index_buf = sync_info.get(_LAST_SETTLED_INDEX)
            last_index = 0 if last_index_buf is None else _btoi(last_index_buf)
            if last_index < received_index:
                sync_info.put(_LAST_SETTLED_INDEX, _itob(received_index))
        return False

    def add_channel_closed_payment(self, payment: PaymentInfo) -> None:
        """Record or advance the payment that reflects a channel close."""
        _log.info("AddChannelClosedPayment channel point = %s", payment.closed_channel_point)
        chan_key = payment.closed_channel_point.encode("utf-8")
        with self._store.update() as root:
            existing, payment_id = _fetch_closed_channel_payment(root, chan_key)
            if existing is not None:
                if (
                    existing.closed_channel_status == ChannelCloseStatus.CONFIRMED
                    or existing.closed_channel_status > payment.closed_channel_status
                ):
                    _log.info("skipping closed channel payment %s", payment.closed_channel_point)
                    return
                if payment.closed_channel_status != ChannelCloseStatus.CONFIRMED:
                    payment.creation_timestamp = existing.creation_timestamp

            _log.info(
                "adding closed channel payment %s, sweep: %s",
                payment.closed_channel_point,
                payment.closed_channel_sweep_tx_id,
            )
            new_id = _add_payment(root, payment, payment_id)
            root.bucket(PAYMENTS_BUCKET).delete(chan_key)
            root.bucket(CLOSED_CHANNELS_BUCKET).put(chan_key, _itob(new_id))

    def fetch_all_account_payments(self) -> list:
        """All payments, in the order they were first stored."""
        with self._store.view() as root:
            return [
                PaymentInfo.from_json(value)
                for _, value in root.bucket(PAYMENTS_BUCKET).items()
                if value is not None
            ]

    def fetch_payments_sync_info(self) -> tuple:
        """Return (last sent payment time, last settled invoice index)."""
        with self._store.view() as root:
            sync_info = root.bucket(PAYMENTS_BUCKET).bucket(PAYMENTS_SYNC_INFO_BUCKET)
            last_time_buf = sync_info.get(_LAST_SENT_PAYMENT_TIME)
            last_index_buf = sync_info.get(_LAST_SETTLED_INDEX)
        last_time = 0 if last_time_buf is None else struct.unpack(">q", last_time_buf)[0]
        last_index = 0 if last_index_buf is None else _btoi(last_index_buf)
        return last_time, last_index

    def save_payment_request(self, pay_req_hash: str, pay_req: bytes) -> None:
        _save_item(self._store, INCOMING_PAY_REQ_BUCKET, pay_req_hash.encode("utf-8"), pay_req)

    def fetch_payment_request(self, pay_req_hash: str) -> Optional[bytes]:
        return _fetch_item(self._store, INCOMING_PAY_REQ_BUCKET, pay_req_hash.encode("utf-8"))

    def save_tip_message(self, pay_req_hash: str, message: bytes) -> None:
        _save_item(self._store, KEYSEND_TIP_MESSAGE_BUCKET, pay_req_hash.encode("utf-8"), message)

    def fetch_tip_message(self, pay_req_hash: str) -> Optional[bytes]:
        return _fetch_item(self._store, KEYSEND_TIP_MESSAGE_BUCKET, pay_req_hash.encode("utf-8"))

    def save_payment_group(self, pay_req_hash: str, group_key: bytes, group_name: bytes) -> None:
        _save_item(self._store, PAYMENT_GROUP_BUCKET, f"{pay_req_hash}-key".encode("utf-8"), group_key)
        _save_item(self._store, PAYMENT_GROUP_BUCKET, f"{pay_req_hash}-name".encode("utf-8"), group_name)

    def fetch_payment_group(self, pay_req_hash: str) -> tuple:
        """Return (group key, group name); either may be None."""
        group_key = _fetch_item(self._store, PAYMENT_GROUP_BUCKET, f"{pay_req_hash}-key".encode("utf-8"))
        group_name = _fetch_item(self._store, PAYMENT_GROUP_BUCKET, f"{pay_req_hash}-name".encode("utf-8"))
        return group_key, group_name