"""Blockchain queries needed by the transaction watcher, over node JSON-RPC."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol

__all__ = [
    "BitcoinBlockchainRpc",
    "BlockchainRpc",
    "ElementsBlockchainRpc",
    "TxOutResp",
]


@dataclass(frozen=True)
class TxOutResp:
    """The parts of a ``gettxout`` answer the watcher uses."""

    best_block_hash: str
    confirmations: int
    value: float = 0.0
    coinbase: bool = False

    @classmethod
    def from_json(cls, raw: dict[str, Any]) -> TxOutResp:
        return cls(
            best_block_hash=str(raw.get("bestblock", "")),
            confirmations=int(raw.get("confirmations", 0)),
            value=float(raw.get("value", 0.0)),
            coinbase=bool(raw.get("coinbase", False)),
        )


class BlockchainRpc(Protocol):
    """Chain access the watcher depends on."""

    def get_block_height(self) -> int: ...

    def get_tx_out(self, txid: str, vout: int) -> TxOutResp | None: ...

    def get_block_hash(self, height: int) -> str: ...

    def get_raw_transaction_with_block_hash(self, tx_id: str, block_hash: str) -> str: ...

    def get_block_height_by_hash(self, blockhash: str) -> int: ...


class _Caller(Protocol):
    def call(self, method: str, *args: Any) -> Any: ...


class _JsonRpcBlockchain:
    _name = ""

    def __init__(self, client: _Caller) -> None:
        self._client = client

    def get_block_height(self) -> int:
        return int(self._client.call("getblockcount"))

    def get_tx_out(self, txid: str, vout: int) -> TxOutResp | None:
        """Return the unspent output, or None if it is spent or unknown."""
        raw = self._client.call("gettxout", txid, vout)
        if raw is None:
            return None
        return TxOutResp.from_json(raw)

    def get_block_height_by_hash(self, blockhash: str) -> int:
        header = self._client.call("getblockheader", blockhash)
        return int(header["height"])

    def get_block_hash(self, height: int) -> str:
        return self._client.call("getblockhash", height)

    def get_raw_transaction_with_block_hash(self, tx_id: str, block_hash: str) -> str:
        return self._client.call("getrawtransaction", tx_id, False, block_hash)

    def __str__(self) -> str:
        return self._name


class ElementsBlockchainRpc(_JsonRpcBlockchain):
    """Chain access through an elementsd node."""

    _name = "l-btc"

    def __init__(self, client: _Caller) -> None:
        super().__init__(client)

    def get_block_height(self) -> int:
        return super().get_block_height()

    def get_tx_out(self, txid: str, vout: int) -> TxOutResp | None:
        return super().get_tx_out(txid, vout)

    def get_block_height_by_hash(self, blockhash: str) -> int:
        return super().get_block_height_by_hash(blockhash)

    def get_block_hash(self, height: int) -> str:
        return super().get_block_hash(height)

    def get_raw_transaction_with_block_hash(self, tx_id: str, block_hash: str) -> str:
        return super().get_raw_transaction_with_block_hash(tx_id, block_hash)


class BitcoinBlockchainRpc(_JsonRpcBlockchain):
    """Chain access through a bitcoind node."""

    _name = "btc"

    def __init__(self, client: _Caller) -> None:
        super().__init__(client)

    def get_block_height(self) -> int:
        return super().get_block_height()

    def get_tx_out(self, txid: str, vout: int) -> TxOutResp | None:
        return super().get_tx_out(txid, vout)

    def get_block_height_by_hash(self, blockhash: str) -> int:
        return super().get_block_height_by_hash(blockhash)

    def get_block_hash(self, height: int) -> str:
        return super().get_block_hash(height)

    def get_raw_transaction_with_block_hash(self, tx_id: str, block_hash: str) -> str:
        return super().get_raw_transaction_with_block_hash(tx_id, block_hash)