# breezcore

The storage and session core of a Lightning wallet node. It is a library; it
has no command-line program.

It provides:

- **A transactional key/value store** (`breezcore.kvstore.KVStore`). The store
  is made of nested buckets that iterate in byte order. Reads run inside
  `view()` and writes inside `update()`. An update is written to disk only when
  its block ends without an error. `walk` visits every bucket and value.
  `copy_store` copies one store into another and can leave out entries chosen by
  a skip function.
- **Node configuration** read from `breez.conf` in the working directory
  (`breezcore.config.load_config`, `get_config`).
- **The wallet database** (`breezcore.database.DB`, `open_db`). It holds
  payments (`breezcore.payments`), submarine swap addresses and redeemable
  hashes (`breezcore.funds`), account state, zero-conf invoices, peers, the
  tx-spent URL, Tor state, sync status, mismatched channels and the LNURL auth
  key.
- **Closed-channel lists** (`breezcore.closedchannels`). Numbered files of
  big-endian 64-bit channel ids are downloaded over HTTP and read back.
- **Double-ratchet encrypted sessions**
  (`breezcore.ratchet.RatchetService`). Their state is kept on disk in a
  `breezcore.ratchet_store.RatchetStore`.

## Installation

```
pip install breezcore
```

The only dependency is `cryptography`.

## Usage

### Wallet database

```python
from breezcore.database import open_db
from breezcore.payments import PaymentInfo
from breezcore.funds import SwapAddressInfo

db = open_db("breez.db")

db.add_account_payment(PaymentInfo(payment_hash="h1"), 1, 0)
db.add_account_payment(PaymentInfo(payment_hash="h2"), 0, 11)
last_time, settled_index = db.fetch_payments_sync_info()   # (11, 1)

db.save_swap_address_info(SwapAddressInfo(address="addr1", payment_hash=b"\x01\x02\x03"))

def add_confirmed(info):
    info.confirmed_amount = 100

found = db.update_swap_address_by_payment_hash(b"\x01\x02\x03", add_confirmed)   # True

db.set_last_synced_header_timestamp(100)
db.close()
```

`add_account_payment` returns whether a payment with that hash already
existed. It raises `ValueError` when the payment has no hash.
`add_channel_closed_payment` keeps one record per channel point. It moves the
record forward through `ChannelCloseStatus.WAITING`, `PENDING` and `CONFIRMED`,
and never moves it back. `get_peers(defaults)` and `get_tx_spent_url(default)`
each return a pair `(value, is_default)`. When a database is opened, a stored
peer list that holds only the old `bb1.breez.technology` peer is cleared.

### Encrypted sessions

```python
from breezcore.ratchet import RatchetService

service = RatchetService.start("sessions.db")
shared_secret, pub_key = service.new_session("initiator", expiry=2_000_000_000)
service.new_session_with_remote_key("receiver", shared_secret, pub_key, 2_000_000_000)

ciphertext = service.encrypt("initiator", "Hello from initiator")
assert service.decrypt("receiver", ciphertext) == "Hello from initiator"

service.set_session_info("receiver", "receiver user data")
details = service.session_info("receiver")   # initiated=False, user_info="receiver user data"
service.stop()
```

A message can still be decrypted after later messages from the same sender
have been read. The keys of skipped messages are kept in the store.
`RatchetService.start` removes every session whose expiry time has been
reached. `session_info` returns `None` for an unknown session.
`set_session_info` raises `SessionNotFoundError` for an unknown session.
Messages are exchanged as JSON strings. `decrypt` changes the stored session
only when decryption succeeds.

### Configuration

`load_config(working_dir)` parses `breez.conf`, an INI file of `key=value`
lines. Lines that start with `;` or `#` are comments. The options are:

- `breezserver`, `breezservernotls`, `lsptoken`, `swapperpubkey`, `network`,
  `grpckeepalive`, `bootstrap`, `closedchannelsurl`, `bugreporturl`,
  `bugreporturlsecret` and `txspenturl`. These may sit under
  `[Application Options]`.
- `peer` (which may be repeated), `assertfilterheader` and `disablerest`. These
  may sit under `[Job Options]`.

Options outside any section are matched against both sets. Boolean options
given without a value are true. An unknown option or section raises
`ValueError`. `get_config` loads the file on its first call. After that it
returns that first result, or raises that first error, for the rest of the
process.

### Closed-channel lists

`download_closed_channels(directory, base_url)` starts at the highest file
number already in the directory, at least 5655. It fetches
`base_url/<number>` until the server stops answering 200, and returns the
numbers it fetched. `file_to_import` finds the next file that has not been
imported; imported files carry a `.deleted` suffix. `read_channel_ids` reads the
ids in a file and raises `ValueError` when the file length is not a multiple
of 8.

## What this package does not do

- It does not run a Lightning node, sync the chain, or keep a channel graph.
  Closed-channel ids can be downloaded and read, but the package does not prune
  them from any graph. That step is left to the caller.
- The database creates buckets for reverse swaps and LNURL-pay data but has no
  methods to read or write them.
- `KVStore` files use this package's own format. They cannot be read by other
  database engines, and this package cannot read files from other engines.

## Running the tests

```
pip install -e .[test]
pytest
```