# peerswap

Support code for swaps between Lightning channels and on-chain Bitcoin or
Liquid funds: a transaction watcher, an elementsd-backed wallet, version
bookkeeping and cancellable timers. It also has a harness that starts
`bitcoind`, `elementsd` and `lightningd` on regtest for integration tests.
The package depends only on the standard library.

## Installation

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Modules

### `peerswap.txwatcher`

- `peerswap.txwatcher.watcher.BlockchainRpcTxWatcher(blockchain, required_confs, csv, poll_interval=1.0)`
  polls `blockchain.get_block_height()` every `poll_interval` seconds in a
  background thread. `start_watching_txs()` starts the thread and `stop()` ends it.
  - `add_wait_for_confirmation_tx(swap_id, tx_id, vout, starting_blockheight, script)`
    watches an output. The callback set with `add_confirmation_callback` is
    called with `(swap_id, tx_hex)` once the output has at least
    `required_confs` confirmations. If the output already has them when it is
    added, the callback runs at once on its own thread.
  - `add_wait_for_csv_tx(...)` watches an output until its confirmations
    reach the watcher's `csv`. Then the callback set with `add_csv_callback`
    is called with `swap_id`.
  - A swap is removed from the watch lists once its callback returns without
    raising. You can also remove swaps yourself with `tx_claimed(swaps)`.
  - `handle_confirmed_tx` and `handle_csv_tx` run one check pass by hand.
- `peerswap.txwatcher.rpc` provides `BitcoinBlockchainRpc` and
  `ElementsBlockchainRpc`. Each wraps any object with a `call(method, *args)`
  method, such as `RpcProxy` below. `get_tx_out` returns a `TxOutResp`, or
  `None` when the output is spent or unknown. `BlockchainRpc` is the protocol
  the watcher expects.

```python
from peerswap.txwatcher.watcher import BlockchainRpcTxWatcher

watcher = BlockchainRpcTxWatcher(blockchain, 2, 100, 1.0)
watcher.add_confirmation_callback(lambda swap_id, tx_hex: print(swap_id, tx_hex))
watcher.start_watching_txs()
watcher.add_wait_for_confirmation_tx("swap-id", "txid", 0, 0, None)
...
watcher.stop()
```

### `peerswap.wallet`

`ElementsRpcWallet(rpc_client, wallet_name)` makes sure the named wallet is
in use. It loads the wallet if it is not listed, and creates it if loading
fails with "Wallet file verification failed" or "not found". It then offers
these methods:

- `create_funded_transaction(prepared_tx)` returns the funded hex and the fee
  in sats.
- `finalize_transaction(raw_tx)` and `finalize_funded_transaction(raw_tx)`
  blind and sign the transaction and return the signed hex. They do not
  broadcast it.
- `get_balance()`, `get_address()` and `send_to_address(address, sats)`.

Helpers: `sats_to_amount_string` and `convert_btc`. Errors: `WalletError`
and `NotEnoughBalanceError`.

### `peerswap.version`

`VersionService(path).safe_upgrade(swap_service)` stores `VERSION` in an
sqlite database at `path`. If the stored version is different (or none is
stored) and `swap_service.has_active_swaps()` is true, it raises
`ActiveSwapsError` instead. `VersionStore` reads and writes the value
directly. `get_version` raises `VersionDoesNotExistError` when nothing has
been stored yet.

### `peerswap.timer`

`timed_callback(cancel, delay, callback)` waits `delay` seconds and then calls
`callback`, unless the `threading.Event` `cancel` is set first.
`TimeOutService(callback_factory).add_new_timeout(cancel, delay, *args)` does
the same on a background thread. The callback is built by
`callback_factory(*args)`.

### `peerswap.testframework`

The harness needs the daemon binaries on `PATH`.

- `config`: `read_config`, `write_config` and `TIMEOUT`. `TIMEOUT` is 60
  seconds, or 180 seconds when `SLOW_MACHINE=1` is set.
- `daemon`: `DaemonProcess` runs a command and captures its output.
  `has_log` and `wait_for_log` search that output. `LockedWriter` is the
  output buffer and has `text`, `filter` and `tail`.
- `waiting`: `wait_for`, `wait_for_balance_change` and
  `wait_for_channel_balance` (all raise `WaitTimeoutError`),
  `get_free_port`, `free_port`, `get_free_ports`, `generate_random_string`,
  `IdCounter`, `split_ln_addr` and `scid_from_lnd_chan_id`.
- `proxy`: `JsonRpcClient` and `RpcProxy` talk JSON-RPC over HTTP. An
  `RpcProxy` is configured from a daemon config file.
  `CLightningProxy` talks to lightningd over its unix socket. Failures
  raise `RpcError`.
- `elements`: `BitcoinNode` and `LiquidNode` regtest nodes, and
  `generate_to_liquid_wallet`.
- `clightning`: `CLightningNode`, the `LightningNode` protocol and
  `balance_channel_5050`.

## What it does not do

- It has no swap daemon, no swap protocol and no command-line program.
- The harness drives only `bitcoind`, `elementsd` and `lightningd`. There is
  no node class for other Lightning implementations. Of those,
  `scid_from_lnd_chan_id` is the only helper provided.