import os

import pytest

from breezcore.database import DB, MismatchedChannel, MismatchedChannels, open_db
from breezcore.funds import SwapAddressInfo
from breezcore.payments import PaymentInfo


@pytest.fixture
def db(tmp_path):
    database = open_db(tmp_path / "testdb")
    yield database
    database.close()


def test_addresses(db):
    db.save_swap_address_info(SwapAddressInfo(address="addr1", payment_hash=bytes([1, 2, 3])))
    db.save_swap_address_info(SwapAddressInfo(address="addr2", payment_hash=bytes([4, 5, 6])))
    addresses = db.fetch_all_swap_addresses()
    assert len(addresses) == 2
    assert addresses[0].address == "addr1"
    assert addresses[1].address == "addr2"

    def set_100(a):
        a.confirmed_amount = 100

    def set_200(a):
        a.confirmed_amount = 200

    assert db.update_swap_address_by_payment_hash(bytes([1, 2, 3]), set_100) is True
    assert db.update_swap_address("addr2", set_200) is True

    addresses = db.fetch_all_swap_addresses()
    assert len(addresses) == 2
    assert addresses[0].confirmed_amount == 100
    assert addresses[1].confirmed_amount == 200


def test_add_payments(db):
    db.add_account_payment(PaymentInfo(payment_hash="h1"), 1, 0)
    db.add_account_payment(PaymentInfo(payment_hash="h2"), 0, 11)
    assert db.fetch_payments_sync_info() == (11, 1)


def test_payments_sync_info(db):
    db.add_account_payment(PaymentInfo(payment_hash="h1"), 5, 0)
    db.add_account_payment(PaymentInfo(payment_hash="h2"), 4, 0)
    db.add_account_payment(PaymentInfo(payment_hash="h3"), 0, 13)
    db.add_account_payment(PaymentInfo(payment_hash="h4"), 0, 0)
    assert db.fetch_payments_sync_info() == (13, 5)


def test_account(db):
    assert db.fetch_account() is None


def test_sync(db):
    assert db.fetch_last_synced_header_timestamp() == 0
    db.set_last_synced_header_timestamp(100)
    assert db.fetch_last_synced_header_timestamp() == 100


def test_account_save_and_enable(db):
    assert db.account_enabled() is True
    db.save_account(b"acct-data")
    assert db.fetch_account() == b"acct-data"
    db.enable_account(False)
    assert db.account_enabled() is False
    db.enable_account(True)
    assert db.account_enabled() is True


def test_zero_conf_hashes(db):
    db.add_zero_conf_hash(b"\x02", b"req2")
    db.add_zero_conf_hash(b"\x01", b"req1")
    assert db.fetch_zero_conf_hashes() == [b"\x01", b"\x02"]
    assert db.fetch_zero_conf_invoice(b"\x02") == b"req2"
    db.remove_zero_conf_hash(b"\x01")
    assert db.fetch_zero_conf_hashes() == [b"\x02"]
    assert db.fetch_zero_conf_invoice(b"\x01") is None


def test_peers_defaults_and_roundtrip(db):
    assert db.get_peers(["d1"]) == (["d1"], True)
    db.set_peers(["p1:8333", "p2:8333"])
    assert db.get_peers(["d1"]) == (["p1:8333", "p2:8333"], False)
    db.set_peers([])
    assert db.get_peers(["d1"]) == (["d1"], True)


def test_invalidated_peer_removed_on_open(tmp_path):
    path = tmp_path / "peers.db"
    with DB(path) as database:
        database.set_peers(["bb1.breez.technology"])
        assert database.get_peers(None) == (["bb1.breez.technology"], False)
    with DB(path) as database:
        assert database.get_peers(None) == (None, True)


def test_peers_persist_across_reopen(tmp_path):
    path = tmp_path / "keep.db"
    with DB(path) as database:
        database.set_peers(["node.example.com"])
    with DB(path) as database:
        assert database.get_peers(None) == (["node.example.com"], False)


def test_tx_spent_url(db):
    assert db.get_tx_spent_url("https://default.example.com") == ("https://default.example.com", True)
    db.set_tx_spent_url("https://other.example.com")
    assert db.get_tx_spent_url("https://default.example.com") == ("https://other.example.com", False)


def test_tor_active(db):
    assert db.get_tor_active() is False
    db.set_tor_active(True)
    assert db.get_tor_active() is True
    db.set_tor_active(False)
    assert db.get_tor_active() is False


def test_negative_header_timestamp(db):
    db.set_last_synced_header_timestamp(-5)
    assert db.fetch_last_synced_header_timestamp() == -5


def test_mismatched_channels(db):
    assert db.fetch_mismatched_channels() is None
    mismatched = MismatchedChannels(
        lsp_pubkey="02abc",
        chan_points=[MismatchedChannel(chan_point="tx:0", short_chan_id=42)],
    )
    db.set_mismatched_channels(mismatched)
    assert db.fetch_mismatched_channels() == mismatched
    db.remove_channel_mismatch()
    assert db.fetch_mismatched_channels() is None


def test_mismatched_channels_json_names():
    raw = MismatchedChannels(lsp_pubkey="k", chan_points=None).to_json()
    assert raw == b'{"LSPPubkey":"k","ChanPoints":null}'
    parsed = MismatchedChannels.from_json(b'{"lsppubkey":"x","chanpoints":[{"chanpoint":"a","shortchanid":7}]}')
    assert parsed == MismatchedChannels("x", [MismatchedChannel("a", 7)])


def test_lnurl_auth_key_created_once(db):
    calls = []

    def create():
        calls.append(1)
        return b"master-key"

    assert db.fetch_lnurl_auth_key(create) == b"master-key"
    assert db.fetch_lnurl_auth_key(create) == b"master-key"
    assert len(calls) == 1


def test_lnurl_auth_key_error_not_stored(db):
    def fail():
        raise RuntimeError("no key")

    with pytest.raises(RuntimeError):
        db.fetch_lnurl_auth_key(fail)
    assert db.fetch_lnurl_auth_key(lambda: b"second") == b"second"


def test_backup_db(db, tmp_path):
    db.save_account(b"backup-me")
    target_dir = tmp_path / "backup"
    target_dir.mkdir()
    copy_path = db.backup_db(target_dir)
    assert copy_path == os.path.join(str(target_dir), "testdb")
    with DB(copy_path) as copy:
        assert copy.fetch_account() == b"backup-me"


def test_delete_db(tmp_path):
    path = tmp_path / "gone.db"
    database = DB(path)
    assert path.exists()
    database.delete_db()
    database.close()
    assert not path.exists()