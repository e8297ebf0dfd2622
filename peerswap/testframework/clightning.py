"""A c-lightning regtest node driven through its unix socket."""

from __future__ import annotations

import os
import re
import secrets
import time
from pathlib import Path
from typing import Any, Protocol

from .config import TIMEOUT, read_config
from .daemon import DaemonProcess
from .elements import BitcoinNode
from .proxy import CLightningProxy, RpcError
from .waiting import (
    generate_random_string,
    get_free_port,
    split_ln_addr,
    wait_for,
)

__all__ = ["CLightningNode", "LightningNode", "balance_channel_5050"]


class LightningNode(Protocol):
    """What the integration helpers need from any lightning implementation."""

    def address(self) -> str:
        """Return ``pubkey@host:port``."""

    def id(self) -> str:
        """Return the node's public key."""

    def get_btc_balance_sat(self) -> int:
        """Return the total amount of sats in the node's wallet."""

    def get_channel_balance_sat(self, scid: str) -> int:
        """Return the local balance of the channel ``scid`` (``100x0x1`` style)."""

    def get_scid(self, peer: LightningNode) -> str:
        """Return the short channel id of the channel with ``peer``."""

    def connect(self, peer: LightningNode, wait_for_connection: bool) -> None:
        """Connect to ``peer``, optionally waiting until both sides agree."""

    def fund_wallet(self, sats: int, mine_block: bool) -> str:
        """Send ``sats`` to a fresh wallet address and return the address."""

    def open_channel(
        self,
        peer: LightningNode,
        capacity: int,
        connect: bool,
        confirm: bool,
        wait_for_channel_active: bool,
    ) -> str:
        """Open a channel to ``peer`` and return its short channel id."""

    def is_block_height_synced(self) -> bool:
        """Return whether the node has caught up with the chain."""

    def is_channel_active(self, scid: str) -> bool:
        """Return whether the channel ``scid`` is usable."""

    def is_connected(self, peer: LightningNode) -> bool:
        """Return whether ``peer`` is connected."""

    def add_invoice(self, amt_sat: int, desc: str, label: str) -> str:
        """Create an invoice and return its payment request."""

    def pay_invoice(self, payreq: str) -> None:
        """Pay the payment request ``payreq``."""


_START_RETRIES = 11
_START_RETRY_DELAY = 0.5


def _seed_from_path(path: str) -> bytes:
    """Derive a 32 byte hsm secret from the last 32 non-slash bytes of ``path``."""
    joined = "".join(re.findall(r"[^/]+", path)).encode()
    if len(joined) < 32:
        raise ValueError(f"path {path} is too short to derive a seed from")
    return joined[-32:]


def _random_label() -> str:
    return secrets.token_hex(5)


class CLightningNode:
    """A lightningd regtest daemon with an RPC proxy on its unix socket."""

    def __init__(
        self, test_dir: str | os.PathLike[str], bitcoin: BitcoinNode, node_id: int
    ) -> None:
        port = get_free_port()

        data_dir = Path(test_dir) / f"clightning-{generate_random_string(5)}"
        network_dir = data_dir / "regtest"
        network_dir.mkdir(parents=True, exist_ok=True)

        bitcoin_conf = read_config(bitcoin.config_file)
        for key in ("rpcpassword", "rpcuser", "rpcport"):
            if key not in bitcoin_conf:
                raise ValueError(f"bitcoin {key} not found in config {bitcoin.config_file}")

        cmd_line = [
            "lightningd",
            f"--lightning-dir={data_dir}",
            "--log-level=debug",
            f"--addr=127.0.0.1:{port}",
            "--allow-deprecated-apis=true",
            "--network=regtest",
            "--ignore-fee-limits=true",
            f"--bitcoin-rpcuser={bitcoin_conf['rpcuser']}",
            f"--bitcoin-rpcpassword={bitcoin_conf['rpcpassword']}",
            f"--bitcoin-rpcport={bitcoin_conf['rpcport']}",
            f"--bitcoin-datadir={bitcoin.data_dir}",
        ]

        self.proxy = CLightningProxy("lightning-rpc", network_dir)
        (network_dir / "hsm_secret").write_bytes(_seed_from_path(str(data_dir)))

        self.daemon = DaemonProcess(cmd_line, f"clightning-{node_id}")
        self.data_dir = str(data_dir)
        self.port = port
        self.info: dict[str, Any] = {}
        self.bitcoin = bitcoin

    def _rpc(self, method: str, **kwargs: Any) -> Any:
        return self.proxy.call(method, **kwargs)

    def run(self, wait_for_ready: bool, wait_for_bitcoin_synced: bool) -> None:
        """Start lightningd, connect the proxy and optionally wait for chain sync."""
        self.daemon.run()
        if wait_for_ready:
            self.daemon.wait_for_log("Server started with public key", 60.0)

        last_error: Exception | None = None
        for _ in range(_START_RETRIES):
            try:
                self.proxy.start_proxy()
            except ConnectionError as err:
                last_error = err
                time.sleep(_START_RETRY_DELAY)
            else:
                break
        else:
            raise ConnectionError(f"to many retries: {last_error}") from last_error

        self.info = self._rpc("getinfo")

        if wait_for_bitcoin_synced:
            wait_for(self._is_synced, TIMEOUT)

    def _is_synced(self) -> bool:
        try:
            info = self._rpc("getinfo")
            height_synced = self.is_block_height_synced()
        except (RpcError, OSError):
            return False
        return (
            not info.get("warning_bitcoind_sync")
            and not info.get("warning_lightningd_sync")
            and height_synced
        )

    def stop(self) -> None:
        """Ask lightningd to stop and wait until it has shut down."""
        try:
            self._rpc("stop")
        except (RpcError, OSError):
            pass
        self.daemon.wait_for_log("hsmd: Shutting down", TIMEOUT)

    def shutdown(self) -> None:
        """Stop the node and remove its rpc socket."""
        try:
            self.stop()
        except TimeoutError:
            pass
        os.remove(self.proxy.socket_path)

    def id(self) -> str:
        return self.info["id"]

    def address(self) -> str:
        return f"{self.id()}@127.0.0.1:{self.port}"

    def get_btc_balance_sat(self) -> int:
        funds = self._rpc("listfunds")
        return sum(int(output["value"]) for output in funds.get("outputs", []))

    def _channels(self) -> list[dict[str, Any]]:
        return self._rpc("listfunds").get("channels", [])

    def get_channel_balance_sat(self, scid: str) -> int:
        for channel in self._channels():
            if channel.get("short_channel_id") == scid:
                return int(channel["channel_sat"])
        raise LookupError(f"no channel found with scid {scid}")

    def get_scid(self, remote: LightningNode) -> str:
        remote_id = remote.id()
        for peer in self._rpc("listpeers").get("peers", []):
            if peer.get("id") == remote_id:
                channels = peer.get("channels")
                if channels:
                    return channels[0].get("short_channel_id", "")
                raise LookupError("no channel to peer")
        raise LookupError("peer not found")

    def connect(self, peer: LightningNode, wait_for_connection: bool) -> None:
        peer_id, host, port = split_ln_addr(peer.address())
        self._rpc("connect", id=peer_id, host=host, port=port)
        if wait_for_connection:
            wait_for(lambda: self.is_connected(peer) and peer.is_connected(self), TIMEOUT)

    def fund_wallet(self, sats: int, mine_block: bool) -> str:
        result = self._rpc("newaddr")
        address = result.get("bech32") or result.get("address")
        if not address:
            raise RpcError(f"newaddr returned no address: {result!r}")

        tx_id = self.bitcoin.call("sendtoaddress", address, sats / 10**8)
        if not isinstance(tx_id, str):
            raise RpcError(f"sendtoaddress: expected a txid, got {tx_id!r}")

        if mine_block:
            self.bitcoin.generate_blocks(1)
            self.daemon.wait_for_log(f"Owning output .* txid {tx_id} CONFIRMED", TIMEOUT)
        return address

    def open_channel(
        self,
        remote: LightningNode,
        capacity: int,
        connect: bool,
        confirm: bool,
        wait_for_active_channel: bool,
    ) -> str:
        self.fund_wallet(10 * capacity, True)

        if not self.is_connected(remote) and connect:
            self.connect(remote, True)

        funding = self._rpc("fundchannel", id=remote.id(), amount=capacity)
        funding_tx_id = funding["txid"]

        def in_mempool() -> bool:
            try:
                mempool = self.bitcoin.call("getrawmempool")
            except (RpcError, OSError):
                return False
            return isinstance(mempool, list) and funding_tx_id in mempool

        try:
            wait_for(in_mempool, TIMEOUT)
        except TimeoutError as err:
            raise TimeoutError(f"error waiting for tx in mempool: {err}") from err

        if wait_for_active_channel or confirm:
            self.bitcoin.generate_blocks(10)

        if wait_for_active_channel:

            def both_active() -> bool:
                scid = self.get_scid(remote)
                if not scid:
                    return False
                local_active = self.is_channel_active(scid)
                remote_active = remote.is_channel_active(scid)
                return local_active and remote_active

            try:
                wait_for(both_active, TIMEOUT)
            except TimeoutError as err:
                raise TimeoutError(f"error waiting for active channel: {err}") from err

        return self.get_scid(remote)

    def is_block_height_synced(self) -> bool:
        chain_height = float(self.bitcoin.call("getblockcount"))
        info = self._rpc("getinfo")
        return int(info["blockheight"]) >= int(chain_height)

    def is_channel_active(self, scid: str) -> bool:
        for channel in self._channels():
            if channel.get("short_channel_id") == scid:
                return channel.get("state") == "CHANNELD_NORMAL"
        return False

    def is_connected(self, remote: LightningNode) -> bool:
        remote_id = remote.id()
        for peer in self._rpc("listpeers").get("peers", []):
            if peer.get("id") == remote_id:
                return bool(peer.get("connected"))
        return False

    def add_invoice(self, amt_sat: int, desc: str, label: str = "") -> str:
        if not label:
            label = _random_label()
        invoice = self._rpc(
            "invoice", msatoshi=amt_sat * 1000, label=label, description=desc
        )
        return invoice["bolt11"]

    def pay_invoice(self, payreq: str) -> None:
        self._rpc("pay", bolt11=payreq)


def balance_channel_5050(node: CLightningNode, peer: CLightningNode, scid: str) -> None:
    """Move funds from ``peer`` to ``node`` until the channel is split evenly."""
    for channel in node._channels():
        if channel.get("short_channel_id") != scid:
            continue
        # Split into two invoices so that each payment succeeds.
        amount = (int(channel["channel_total_sat"]) // 2 - int(channel["channel_sat"])) // 2
        for _ in range(2):
            invoice = node._rpc(
                "invoice",
                msatoshi=amount * 1000,
                label=_random_label(),
                description="move-balance",
            )
            peer._rpc("pay", bolt11=invoice["bolt11"])

        def balanced() -> bool:
            for current in node._channels():
                if current.get("short_channel_id") == scid:
                    dt = float(current["channel_total_sat"]) / 2 - float(current["channel_sat"])
                    return -1.0 <= dt <= 1.0
            raise LookupError(f"channel not found {scid}")

        wait_for(balanced, TIMEOUT)
        return
    raise LookupError(f"channel not found {scid}")