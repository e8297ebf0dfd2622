"""A swap wallet backed by the wallet of an elementsd node."""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Protocol

__all__ = [
    "ElementsRpcWallet",
    "NotEnoughBalanceError",
    "WalletError",
    "convert_btc",
    "sats_to_amount_string",
]

_SATS_PER_BTC = 100_000_000
_CREATE_ON_LOAD_ERRORS = ("Wallet file verification failed", "not found")


class WalletError(Exception):
    """A wallet operation failed."""


class NotEnoughBalanceError(WalletError):
    """The wallet's outputs do not cover the requested amount."""

    def __init__(self, message: str = "Not enough balance on utxos") -> None:
        super().__init__(message)


class _RpcClient(Protocol):
    def get_new_address(self, addr_type: int) -> str: ...
    def send_to_address(self, address: str, amount: str) -> str: ...
    def get_balance(self) -> int: ...
    def load_wallet(self, filename: str) -> Any: ...
    def create_wallet(self, wallet_name: str) -> Any: ...
    def set_rpc_wallet(self, wallet_name: str) -> None: ...
    def list_wallets(self) -> list[str]: ...
    def fund_raw_tx(self, tx_hex: str) -> dict[str, Any]: ...
    def blind_raw_transaction(self, tx_hex: str) -> str: ...
    def sign_raw_transaction_with_wallet(self, tx_hex: str) -> dict[str, Any]: ...
    def send_raw_tx(self, tx_hex: str) -> str: ...


def sats_to_amount_string(sats: int) -> str:
    """Return ``sats`` as a BTC amount with six decimals."""
    return f"{sats / _SATS_PER_BTC:f}"


def convert_btc(amount: float | str | Decimal) -> int:
    """Convert a BTC amount into sats, rounding half away from zero."""
    sats = Decimal(str(amount)) * _SATS_PER_BTC
    return int(sats.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def _tx_hex(prepared_tx: Any) -> str:
    if isinstance(prepared_tx, str):
        return prepared_tx
    if isinstance(prepared_tx, (bytes, bytearray)):
        return bytes(prepared_tx).hex()
    return prepared_tx.to_hex()


def _field(result: Any, key: str, what: str) -> Any:
    if not isinstance(result, dict) or key not in result:
        raise WalletError(f"{what}: missing {key!r} in {result!r}")
    return result[key]


class ElementsRpcWallet:
    """Uses a named elementsd wallet, loading or creating it on construction."""

    def __init__(self, rpc_client: _RpcClient, wallet_name: str) -> None:
        self.wallet_name = wallet_name
        self._rpc = rpc_client
        self._setup_wallet()

    def _setup_wallet(self) -> None:
        if self.wallet_name not in self._rpc.list_wallets():
            try:
                self._rpc.load_wallet(self.wallet_name)
            except Exception as err:
                if not any(text in str(err) for text in _CREATE_ON_LOAD_ERRORS):
                    raise
                self._rpc.create_wallet(self.wallet_name)
        self._rpc.set_rpc_wallet(self.wallet_name)

    def finalize_transaction(self, raw_tx: str) -> str:
        """Blind and sign ``raw_tx``; return the signed transaction hex."""
        blinded = self._rpc.blind_raw_transaction(raw_tx)
        signed = self._rpc.sign_raw_transaction_with_wallet(blinded)
        return _field(signed, "hex", "signrawtransactionwithwallet")

    def create_funded_transaction(self, prepared_tx: Any) -> tuple[str, int]:
        """Add inputs paying for ``prepared_tx``; return the funded hex and fee in sats."""
        funded = self._rpc.fund_raw_tx(_tx_hex(prepared_tx))
        tx_string = _field(funded, "hex", "fundrawtransaction")
        fee = _field(funded, "fee", "fundrawtransaction")
        return tx_string, convert_btc(fee)

    def finalize_funded_transaction(self, raw_tx: str) -> str:
        """Finalize a funded transaction and return its hex."""
        return self.finalize_transaction(raw_tx)

    def get_balance(self) -> int:
        """Return the balance in sats."""
        return int(self._rpc.get_balance())

    def get_address(self) -> str:
        """Return a new blech32 address."""
        return self._rpc.get_new_address(0)

    def send_to_address(self, address: str, amount: int) -> str:
        """Send ``amount`` sats to ``address`` and return the txid."""
        return self._rpc.send_to_address(address, sats_to_amount_string(amount))