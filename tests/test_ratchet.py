import base64
import json
import time

import pytest

from breezcore.ratchet import (
    Chain,
    DHPair,
    RatchetService,
    SessionNotFoundError,
    SessionStorage,
    State,
)
from breezcore.ratchet_store import RatchetStore

DEFAULT_EXPIRY = int(time.time()) + 3600


def _key(*prefix):
    return bytes(prefix) + bytes(32 - len(prefix))


@pytest.fixture
def store(tmp_path):
    s = RatchetStore(tmp_path / "testDB")
    yield s
    s.close()


@pytest.fixture
def service(store):
    return RatchetService(store)


def _pair(service, initiator_id="initiatorSession", receiver_id="receiverID",
          initiator_expiry=DEFAULT_EXPIRY):
    shared, pub_key = service.new_session(initiator_id, initiator_expiry)
    service.new_session_with_remote_key(receiver_id, shared, pub_key, DEFAULT_EXPIRY)
    return initiator_id, receiver_id


def test_session_store(store):
    state = State.default(bytes(32))
    state.keys_count = 10
    state.step = 11
    state.pn = 12
    state.dhr = _key(1, 2, 3)
    state.dhs = DHPair(private_key=_key(1, 1, 1), public_key=_key(2, 2, 2))
    state.recv_ch = Chain(_key(5, 5, 5), 5)
    state.send_ch = Chain(_key(6, 6, 6), 6)

    storage = SessionStorage(store)
    storage.save(b"\x01\x02\x03", state)
    loaded = storage.load(b"\x01\x02\x03")

    assert loaded.root_ck == state.root_ck
    assert loaded.keys_count == 10
    assert loaded.dhr == _key(1, 2, 3)
    assert loaded.dhs.private_key == _key(1, 1, 1)
    assert loaded.dhs.public_key == _key(2, 2, 2)
    assert loaded.step == 11
    assert loaded.pn == 12
    assert loaded.recv_ch == Chain(_key(5, 5, 5), 5)
    assert loaded.send_ch == Chain(_key(6, 6, 6), 6)
    assert loaded == state


def test_saved_state_layout_size(store):
    SessionStorage(store).save(b"s", State.default(bytes(32)))
    assert len(store.fetch_encrypted_session(b"s")) == 212


def test_load_missing_session(store):
    with pytest.raises(SessionNotFoundError):
        SessionStorage(store).load(b"missing")


def test_encrypt_decrypt(service):
    initiator, receiver = _pair(service)
    encrypted = service.encrypt(initiator, "Hello from initiator")
    assert service.decrypt(receiver, encrypted) == "Hello from initiator"


def test_out_of_order_messages(service):
    initiator, receiver = _pair(service)
    encrypted = service.encrypt(initiator, "Hello from initiator")
    encrypted2 = service.encrypt(initiator, "Hello from initiator2")
    assert service.decrypt(receiver, encrypted2) == "Hello from initiator2"
    assert service.decrypt(receiver, encrypted) == "Hello from initiator"


def test_initiated_sessions(service):
    initiator, receiver = _pair(service, receiver_id="session")
    reply = service.session_info(initiator)
    assert reply.initiated is True
    assert reply.session_id == initiator
    reply = service.session_info(receiver)
    assert reply.initiated is False
    assert reply.session_id == receiver


def test_session_info(service):
    initiator, receiver = _pair(service, receiver_id="session")
    service.set_session_info(initiator, "initiator user data")
    service.set_session_info(receiver, "receiver user data")

    reply = service.session_info(initiator)
    assert reply.initiated is True
    assert reply.user_info == "initiator user data"

    reply = service.session_info(receiver)
    assert reply.initiated is False
    assert reply.user_info == "receiver user data"


def test_expired_sessions(service, store):
    expired = int(time.time()) - 10
    initiator, receiver = _pair(service, receiver_id="session", initiator_expiry=expired)
    store.delete_expired_sessions()
    with pytest.raises(SessionNotFoundError):
        service.set_session_info(initiator, "initiator user data")
    service.set_session_info(receiver, "receiver user data")
    assert service.session_info(receiver).user_info == "receiver user data"


def test_start_drops_expired_sessions(tmp_path):
    path = tmp_path / "ratchet.db"
    first = RatchetService.start(path)
    _pair(first, initiator_expiry=int(time.time()) - 10)
    first.stop()
    second = RatchetService.start(path)
    try:
        assert second.session_info("initiatorSession") is None
        assert second.session_info("receiverID").initiated is False
    finally:
        second.stop()


def test_unknown_session(service):
    assert service.session_info("nobody") is None
    with pytest.raises(SessionNotFoundError):
        service.encrypt("nobody", "hi")


def test_conversation_both_directions(service):
    initiator, receiver = _pair(service)
    assert service.decrypt(receiver, service.encrypt(initiator, "one")) == "one"
    assert service.decrypt(initiator, service.encrypt(receiver, "two")) == "two"
    assert service.decrypt(receiver, service.encrypt(initiator, "three")) == "three"
    assert service.decrypt(initiator, service.encrypt(receiver, "four")) == "four"


def test_message_numbers_in_header(service):
    initiator, _ = _pair(service)
    first = json.loads(service.encrypt(initiator, "a"))
    second = json.loads(service.encrypt(initiator, "b"))
    assert first["Header"]["N"] == 0
    assert second["Header"]["N"] == 1
    assert len(first["Header"]["DH"]) == 32


def test_tampered_message_rejected_and_state_kept(service):
    initiator, receiver = _pair(service)
    encrypted = service.encrypt(initiator, "payload")
    doc = json.loads(encrypted)
    data = bytearray(base64.b64decode(doc["Ciphertext"]))
    data[0] ^= 1
    doc["Ciphertext"] = base64.b64encode(bytes(data)).decode()
    with pytest.raises(ValueError):
        service.decrypt(receiver, json.dumps(doc))
    assert service.decrypt(receiver, encrypted) == "payload"


def test_replayed_message_rejected(service):
    initiator, receiver = _pair(service)
    encrypted = service.encrypt(initiator, "once")
    assert service.decrypt(receiver, encrypted) == "once"
    with pytest.raises(ValueError):
        service.decrypt(receiver, encrypted)


def test_malformed_message_rejected(service):
    _, receiver = _pair(service)
    with pytest.raises(ValueError):
        service.decrypt(receiver, '{"Header": {}}')


def test_bad_hex_secret_rejected(service):
    _, pub_key = service.new_session("init", DEFAULT_EXPIRY)
    with pytest.raises(ValueError):
        service.new_session_with_remote_key("recv", "zz", pub_key, DEFAULT_EXPIRY)


def test_skipped_keys_are_counted(service, store):
    initiator, receiver = _pair(service)
    messages = [service.encrypt(initiator, f"m{i}") for i in range(3)]
    assert service.decrypt(receiver, messages[2]) == "m2"
    pub = bytes(json.loads(messages[0])["Header"]["DH"])
    assert store.count_message_keys(pub) == 2
    assert SessionStorage(store).load(receiver.encode()).keys_count == 2