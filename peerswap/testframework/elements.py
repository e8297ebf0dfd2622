"""Regtest bitcoind and elementsd nodes for integration setups."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

from .config import TIMEOUT, write_config
from .daemon import DaemonProcess
from .proxy import RpcError, RpcProxy
from .waiting import generate_random_string, get_free_port

__all__ = [
    "BTC_BURN",
    "LBTC_BURN",
    "BitcoinNode",
    "LiquidNode",
    "generate_to_liquid_wallet",
    "get_bitcoind_config",
    "get_liquidd_config",
]

# Addresses to generate to.
LBTC_BURN = "ert1qfkht0df45q00kzyayagw6vqhfhe8ve7z7wecm0xsrkgmyulewlzqumq3ep"
BTC_BURN = "2N61yGL5ZBy3yaiEM8312CuG78CBNQMWE4Y"


def get_bitcoind_config() -> dict[str, str]:
    return {
        "regtest": "1",
        "rpcuser": "rpcuser",
        "rpcpassword": "password",
        "fallbackfee": "0.00001",
    }


def get_liquidd_config() -> dict[str, str]:
    return {
        "listen": "1",
        "rpcuser": "rpcuser",
        "rpcpassword": "password",
        "fallbackfee": "0.00001",
        "initialfreecoins": "2100000000000000",
        "validatepegin": "0",
        "chain": "liquidregtest",
    }


def _distinct_port(*taken: int) -> int:
    port = get_free_port()
    while port in taken:
        port = get_free_port()
    return port


def _expect_str(value: Any, what: str) -> str:
    if not isinstance(value, str):
        raise RpcError(f"{what}: expected a string result, got {value!r}")
    return value


def _expect_dict(value: Any, what: str) -> dict[str, Any]:
    if not isinstance(value, dict):
        raise RpcError(f"{what}: expected an object result, got {value!r}")
    return value


class BitcoinNode:
    """A bitcoind regtest daemon together with its RPC client."""

    def __init__(self, test_dir: str | os.PathLike[str], node_id: int) -> None:
        rpc_port = get_free_port()
        zmq_block_port = _distinct_port(rpc_port)
        zmq_tx_port = _distinct_port(rpc_port, zmq_block_port)
        zmq_pub_raw_block = f"tcp://127.0.0.1:{zmq_block_port}"
        zmq_pub_raw_tx = f"tcp://127.0.0.1:{zmq_tx_port}"

        data_dir = Path(test_dir) / f"bitcoin-{generate_random_string(5)}"
        data_dir.mkdir(parents=True, exist_ok=True)

        cmd_line = [
            "bitcoind",
            f"-datadir={data_dir}",
            "-printtoconsole",
            "-server",
            "-logtimestamps",
            "-nolisten",
            "-txindex",
            "-nowallet",
            "-addresstype=bech32",
        ]

        config = get_bitcoind_config()
        config["zmqpubrawblock"] = zmq_pub_raw_block
        config["zmqpubrawtx"] = zmq_pub_raw_tx
        config_file = data_dir / "bitcoin.conf"
        write_config(config_file, config, {"rpcport": str(rpc_port)}, "regtest")

        self.daemon = DaemonProcess(cmd_line, f"bitcoind-{node_id}")
        self.proxy = RpcProxy(config_file)
        self.data_dir = str(data_dir)
        self.config_file = str(config_file)
        self.rpc_port = rpc_port
        self.rpc_user = config["rpcuser"]
        self.rpc_password = config["rpcpassword"]
        self.wallet_name = "lightningd-tests"
        self.zmq_pub_raw_block = zmq_pub_raw_block
        self.zmq_pub_raw_tx = zmq_pub_raw_tx

    @property
    def rpc_host(self) -> str:
        return self.proxy.rpc_host

    def call(self, method: str, *args: Any) -> Any:
        return self.proxy.call(method, *args)

    def run(self, generate_initial_blocks: bool = True) -> None:
        """Start bitcoind, open its wallet and mine to a spendable balance."""
        self.daemon.run()
        self.daemon.wait_for_log("Done loading", TIMEOUT)

        try:
            self.call("createwallet", self.wallet_name)
        except RpcError as err:
            raise RpcError(f"can not create wallet: {err}", err.code) from err
        try:
            self.call("loadwallet", self.wallet_name)
        except RpcError as err:
            raise RpcError(f"can not load wallet: {err}", err.code) from err

        info = _expect_dict(self.call("getblockchaininfo"), "getblockchaininfo")
        blocks = int(info.get("blocks", 0))
        if blocks < 101:
            self.generate_blocks(101 - blocks)

        wallet = _expect_dict(self.call("getwalletinfo"), "getwalletinfo")
        if float(wallet.get("balance", 0)) < 1:
            self.generate_blocks(1)

    def generate_blocks(self, blocks: int) -> None:
        """Mine ``blocks`` blocks to a fresh wallet address."""
        self.call("getrawmempool")
        address = _expect_str(self.call("getnewaddress"), "getnewaddress")
        self.call("generatetoaddress", blocks, address)


class LiquidNode:
    """An elementsd regtest daemon pegged to a bitcoind node."""

    def __init__(
        self, test_dir: str | os.PathLike[str], bitcoin: BitcoinNode, node_id: int
    ) -> None:
        rpc_port = get_free_port()
        port = _distinct_port(rpc_port)

        data_dir = Path(test_dir) / f"liquid-{generate_random_string(5)}"
        data_dir.mkdir(parents=True, exist_ok=True)

        cmd_line = ["elementsd", f"-datadir={data_dir}"]

        config = get_liquidd_config()
        bitcoind_config = get_bitcoind_config()
        config["mainchainrpcport"] = str(bitcoin.rpc_port)
        config["mainchainrpcuser"] = bitcoind_config["rpcuser"]
        config["mainchainrpcpassword"] = bitcoind_config["rpcpassword"]

        regtest_config = {"rpcport": str(rpc_port), "port": str(port)}
        config_file = data_dir / "elements.conf"
        write_config(config_file, config, regtest_config, config["chain"])

        self.daemon = DaemonProcess(cmd_line, f"elements-{node_id}")
        self.proxy = RpcProxy(config_file)
        self.bitcoin = bitcoin
        self.data_dir = str(data_dir)
        self.config_file = str(config_file)
        self.rpc_port = rpc_port
        self.port = port
        self.wallet_name = "liquidwallet"
        self.rpc_user = config["rpcuser"]
        self.rpc_password = config["rpcpassword"]
        self.network = config["chain"]

    def call(self, method: str, *args: Any) -> Any:
        return self.proxy.call(method, *args)

    def _wallet_url(self, wallet: str) -> str:
        return f"http://127.0.0.1:{self.rpc_port}/wallet/{wallet}"

    def run(self, generate_initial_blocks: bool = True) -> None:
        """Start elementsd, create its wallet and mine past block 100."""
        self.daemon.run()
        self.daemon.wait_for_log("Done loading", TIMEOUT)

        try:
            self.call("createwallet", self.wallet_name)
        except RpcError as err:
            raise RpcError(f"can not create wallet: {err}", err.code) from err

        self.proxy.update_service_url(self._wallet_url(self.wallet_name))

        # Rescan so that existing outputs show up in the new wallet.
        self.call("rescanblockchain")

        info = _expect_dict(self.call("getblockchaininfo"), "getblockchaininfo")
        blocks = int(info.get("blocks", 0))
        if blocks < 101:
            self.generate_blocks(101 - blocks)

    def generate_blocks(self, blocks: int) -> None:
        self.call("generatetoaddress", blocks, LBTC_BURN)

    def switch_wallet(self, wallet: str) -> None:
        """Load ``wallet`` and direct further calls to it."""
        self.call("loadwallet", wallet)
        self.proxy.update_service_url(self._wallet_url(wallet))


def generate_to_liquid_wallet(node: LiquidNode, wallet_name: str, amount: float) -> None:
    """Send ``amount`` L-BTC from the node's wallet to ``wallet_name`` and confirm it."""
    node.switch_wallet(wallet_name)
    address = _expect_str(node.call("getnewaddress"), "getnewaddress")
    node.switch_wallet(node.wallet_name)
    node.call("sendtoaddress", address, amount, "", "", False, False, 1, "UNSET")
    node.call("generatetoaddress", 6, LBTC_BURN)