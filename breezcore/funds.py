"""Submarine swap addresses and redeemable payment hashes."""

from __future__ import annotations

import logging
from dataclasses import dataclass, fields
from typing import Callable, Optional

from .kvstore import KVStore
from .payments import (
    PAYMENTS_BUCKET,
    PAYMENTS_HASH_BUCKET,
    PaymentInfo,
    _decode_record,
    _encode_record,
    _fetch_item,
)

ADDRESSES_BUCKET = b"subswap_addresses"
SWAP_ADDRESSES_BY_HASH_BUCKET = b"subswap_addresses_by_hash"
REDEEMABLE_HASHES_BUCKET = b"redeemableHashes"

_log = logging.getLogger(__name__)


@dataclass
class SwapAddressInfo:
    """Everything known about one submarine swap address."""

    lsp_id: str = ""
    payment_request: str = ""
    address: str = ""
    created_timestamp: int = 0

    min_msat: int = 0
    proportional: int = 0
    valid_until: str = ""
    max_idle_time: int = 0
    max_client_to_self_delay: int = 0
    promise: str = ""

    payment_hash: Optional[bytes] = None
    preimage: Optional[bytes] = None
    private_key: Optional[bytes] = None
    public_key: Optional[bytes] = None

    confirmed_transaction_ids: Optional[list] = None
    confirmed_amount: int = 0
    invoiced_amount: int = 0
    paid_amount: int = 0
    lock_height: int = 0
    funding_tx_id: str = ""

    script: Optional[bytes] = None

    error_message: str = ""
    swap_error_reason: int = 0
    entered_mempool: bool = False

    last_refund_tx_id: str = ""
    non_blocking: bool = False

    def confirmed(self) -> bool:
        """True if the funding transaction has confirmed in the past."""
        return self.lock_height > 0

    def to_json(self) -> bytes:
        return _encode_record(self, _SWAP_NAMES, _SWAP_BYTE_FIELDS)

    @classmethod
    def from_json(cls, raw: bytes) -> "SwapAddressInfo":
        return _decode_record(cls, raw, _SWAP_NAMES, _SWAP_BYTE_FIELDS)


# Stored field names whose capitalisation differs from plain CamelCase.
_SWAP_NAME_OVERRIDES = {
    "lsp_id": "LspID",
    "funding_tx_id": "FundingTxID",
    "last_refund_tx_id": "LastRefundTxID",
}


def _stored_name(field_name: str) -> str:
    override = _SWAP_NAME_OVERRIDES.get(field_name)
    if override is not None:
        return override
    return "".join(part.capitalize() for part in field_name.split("_"))


_SWAP_NAMES = {f.name: _stored_name(f.name) for f in fields(SwapAddressInfo)}

_SWAP_BYTE_FIELDS = frozenset({"payment_hash", "preimage", "private_key", "public_key", "script"})


class FundsMixin:
    """Swap-address operations for a database object exposing ``_store``."""

    _store: KVStore

    def fetch_all_swap_addresses(self) -> list:
        return self.fetch_swap_addresses(lambda _address: True)

    def fetch_swap_addresses(self, filter_func: Callable[[SwapAddressInfo], bool]) -> list:
        """Swap addresses, in address order, for which filter_func is true.

        A record that cannot be decoded ends the listing.
        """
        addresses = []
        with self._store.view() as root:
            for _, value in root.bucket(ADDRESSES_BUCKET).items():
                try:
                    info = SwapAddressInfo.from_json(value or b"")
                except ValueError:
                    break
                if filter_func(info):
                    addresses.append(info)
        return addresses

    def save_swap_address_info(self, address: SwapAddressInfo) -> None:
        data = address.to_json()
        with self._store.update() as root:
            root.bucket(SWAP_ADDRESSES_BY_HASH_BUCKET).put(
                address.payment_hash or b"", address.address.encode("utf-8")
            )
            root.bucket(ADDRESSES_BUCKET).put(address.address, data)

    def update_swap_address_by_payment_hash(
        self, payment_hash: bytes, update_func: Callable[[SwapAddressInfo], None]
    ) -> bool:
        """Apply update_func to the address paid by payment_hash; return whether found."""
        address = _fetch_item(self._store, SWAP_ADDRESSES_BY_HASH_BUCKET, bytes(payment_hash))
        if address is None:
            return False
        return self.update_swap_address(address.decode("utf-8"), update_func)

    def update_swap_address(self, address: str, update_func: Callable[[SwapAddressInfo], None]) -> bool:
        """Apply update_func to the stored address record; return whether found.

        An exception from update_func leaves the record unchanged.
        """
        with self._store.update() as root:
            bucket = root.bucket(ADDRESSES_BUCKET)
            raw = bucket.get(address)
            if raw is None:
                return False
            info = SwapAddressInfo.from_json(raw)
            update_func(info)
            bucket.put(info.address, info.to_json())
        return True

    def add_redeemable_payment_hash(self, payment_hash: str) -> None:
        with self._store.update() as root:
            root.bucket(REDEEMABLE_HASHES_BUCKET).put(payment_hash, b"")

    def fetch_redeemable_payment_hashes(self) -> list:
        with self._store.view() as root:
            return [key.decode("utf-8") for key, _ in root.bucket(REDEEMABLE_HASHES_BUCKET).items()]

    def update_redeem_tx_for_payment(self, payment_hash: str, tx_id: str) -> None:
        """Record the redeem transaction of a payment and drop it from the redeemable set."""
        _log.info("updateRedeemTxForPayment hash = %s, txid=%s", payment_hash, tx_id)
        with self._store.update() as root:
            payments = root.bucket(PAYMENTS_BUCKET)
            payment_index = root.bucket(PAYMENTS_HASH_BUCKET).get(payment_hash)
            if payment_index is None:
                raise LookupError(f"payment doesn't exist for hash {payment_hash}")
            payment = PaymentInfo.from_json(payments.get(payment_index) or b"")
            payment.redeem_tx_id = tx_id
            payments.put(payment_index, payment.to_json())
            root.bucket(REDEEMABLE_HASHES_BUCKET).delete(payment_hash)

    def is_invoice_hash_paid(self, pay_req_hash: str) -> bool:
        """True if this client paid the invoice with pay_req_hash."""
        return _fetch_item(self._store, PAYMENTS_HASH_BUCKET, pay_req_hash.encode("utf-8")) is not None