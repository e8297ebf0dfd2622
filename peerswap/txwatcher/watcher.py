"""Polls the chain and reports confirmed and csv-matured swap transactions."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any

from .rpc import BlockchainRpc, TxOutResp

__all__ = ["BlockchainRpcTxWatcher", "SwapTxInfo"]

log = logging.getLogger(__name__)

ConfirmationCallback = Callable[[str, str], Any]
CsvCallback = Callable[[str], Any]


@dataclass
class SwapTxInfo:
    """A swap output being watched."""

    tx_id: str
    tx_vout: int
    starting_block_height: int
    csv: int


class BlockchainRpcTxWatcher:
    """Calls back when watched outputs gain enough confirmations or pass the csv."""

    def __init__(
        self,
        blockchain: BlockchainRpc | None,
        required_confs: int,
        csv: int,
        poll_interval: float = 1.0,
    ) -> None:
        self.blockchain = blockchain
        self.required_confs = required_confs
        self.csv = csv
        self.poll_interval = poll_interval
        self._tx_callback: ConfirmationCallback | None = None
        self._csv_callback: CsvCallback | None = None
        self._tx_watch: dict[str, SwapTxInfo] = {}
        self._csv_watch: dict[str, SwapTxInfo] = {}
        self._lock = threading.RLock()
        self._stopped = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def watched_txs(self) -> dict[str, SwapTxInfo]:
        with self._lock:
            return dict(self._tx_watch)

    @property
    def watched_csv_txs(self) -> dict[str, SwapTxInfo]:
        with self._lock:
            return dict(self._csv_watch)

    def get_block_height(self) -> int:
        return int(self.blockchain.get_block_height())

    def start_watching_txs(self) -> None:
        """Start polling for new blocks in a background thread."""
        if self.blockchain is None:
            raise ValueError("missing blockchain rpc client")
        current = self.blockchain.get_block_height()
        self._stopped.clear()
        self._thread = threading.Thread(
            target=self._watch_blocks, args=(current,), daemon=True
        )
        self._thread.start()

    def stop(self) -> None:
        """Stop polling and wait for the polling thread to end."""
        self._stopped.set()
        if self._thread is not None:
            self._thread.join(timeout=max(5.0, 2 * self.poll_interval))
            self._thread = None

    def _watch_blocks(self, current: int) -> None:
        while not self._stopped.wait(self.poll_interval):
            try:
                next_block = self.blockchain.get_block_height()
            except Exception:
                log.exception("block watcher: GetBlockHeight failed")
                return
            if next_block > current:
                current = next_block
                self._on_new_block(current)

    def _on_new_block(self, blockheight: int) -> None:
        # Confirmation callbacks may block, so they run on their own thread.
        threading.Thread(
            target=self._handle_confirmed_logged, args=(blockheight,), daemon=True
        ).start()
        try:
            self.handle_csv_tx(blockheight)
        except Exception:
            log.exception("HandleCsvTx failed")

    def _handle_confirmed_logged(self, blockheight: int) -> None:
        try:
            self.handle_confirmed_tx(blockheight)
        except Exception as err:
            log.debug("HandleConfirmedTx: %s", err)

    def handle_confirmed_tx(self, blockheight: int) -> None:
        """Report every watched tx with enough confirmations and stop watching it."""
        with self._lock:
            items = list(self._tx_watch.items())
            callback = self._tx_callback
        claimed: list[str] = []
        try:
            for swap_id, info in items:
                try:
                    res = self.blockchain.get_tx_out(info.tx_id, info.tx_vout)
                except Exception as err:
                    log.info("Watchlist fetchtx err: %s", err)
                    continue
                if res is None:
                    continue
                if res.confirmations < self.required_confs:
                    log.debug("tx does not have enough confirmations")
                    continue
                if callback is None:
                    continue
                tx_hex = self.tx_hex_from_id(res, info.tx_id)
                try:
                    callback(swap_id, tx_hex)
                except Exception as err:
                    log.info("tx callback error %s", err)
                    continue
                claimed.append(swap_id)
        finally:
            self.tx_claimed(claimed)

    def handle_csv_tx(self, blockheight: int) -> None:
        """Report every watched tx whose csv has passed and stop watching it."""
        with self._lock:
            items = list(self._csv_watch.items())
            callback = self._csv_callback
        claimed: list[str] = []
        for swap_id, info in items:
            try:
                res = self.blockchain.get_tx_out(info.tx_id, info.tx_vout)
            except Exception as err:
                log.info("watchlist fetchtx err: %s", err)
                continue
            if res is None:
                continue
            if info.csv > res.confirmations:
                continue
            if callback is None:
                continue
            try:
                callback(swap_id)
            except Exception as err:
                log.info("tx callback error %s", err)
                continue
            claimed.append(swap_id)
        self.tx_claimed(claimed)

    def add_wait_for_confirmation_tx(
        self,
        swap_id: str,
        tx_id: str,
        vout: int,
        starting_blockheight: int,
        script: bytes | None = None,
    ) -> None:
        """Watch a tx; report it at once if it is already confirmed."""
        tx_hex = self.check_tx_confirmed(swap_id, tx_id, vout)
        if tx_hex is not None:
            with self._lock:
                callback = self._tx_callback
            if callback is not None:
                threading.Thread(
                    target=self._run_confirmation_callback,
                    args=(callback, swap_id, tx_hex),
                    daemon=True,
                ).start()
            return
        with self._lock:
            self._tx_watch[swap_id] = SwapTxInfo(
                tx_id=tx_id,
                tx_vout=vout,
                starting_block_height=starting_blockheight,
                csv=self.csv,
            )

    @staticmethod
    def _run_confirmation_callback(
        callback: ConfirmationCallback, swap_id: str, tx_hex: str
    ) -> None:
        try:
            callback(swap_id, tx_hex)
        except Exception as err:
            log.info("tx callback error %s", err)

    def check_tx_confirmed(self, swap_id: str, tx_id: str, vout: int) -> str | None:
        """Return the tx hex if it is confirmed and a callback is set, else None."""
        try:
            res = self.blockchain.get_tx_out(tx_id, vout)
        except Exception as err:
            log.info("watchlist fetchtx err: %s", err)
            return None
        if res is None:
            return None
        if res.confirmations < self.required_confs:
            log.info("tx does not have enough confirmations")
            return None
        with self._lock:
            if self._tx_callback is None:
                return None
        try:
            return self.tx_hex_from_id(res, tx_id)
        except Exception as err:
            log.info("watchlist txfrom hex err: %s", err)
            return None

    def add_wait_for_csv_tx(
        self,
        swap_id: str,
        tx_id: str,
        vout: int,
        starting_blockheight: int,
        script: bytes | None = None,
    ) -> None:
        """Watch a tx until its output can be spent through the csv path."""
        with self._lock:
            self._csv_watch[swap_id] = SwapTxInfo(
                tx_id=tx_id,
                tx_vout=vout,
                starting_block_height=starting_blockheight,
                csv=self.csv,
            )

    def tx_claimed(self, swaps: Iterable[str]) -> None:
        """Stop watching the given swaps."""
        with self._lock:
            for swap_id in swaps:
                self._tx_watch.pop(swap_id, None)
                self._csv_watch.pop(swap_id, None)

    def add_confirmation_callback(self, callback: ConfirmationCallback) -> None:
        with self._lock:
            self._tx_callback = callback

    def add_csv_callback(self, callback: CsvCallback) -> None:
        with self._lock:
            self._csv_callback = callback

    def tx_hex_from_id(self, resp: TxOutResp, tx_id: str) -> str:
        """Fetch the raw tx from the block it was confirmed in."""
        best_height = self.blockchain.get_block_height_by_hash(resp.best_block_hash)
        block_hash = self.blockchain.get_block_hash(best_height - resp.confirmations + 1)
        return self.blockchain.get_raw_transaction_with_block_hash(tx_id, block_hash)