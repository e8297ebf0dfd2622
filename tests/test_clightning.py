import json
import os
import shutil
import socket
import sys
import tempfile
import threading
from pathlib import Path

import pytest

from peerswap.testframework.clightning import CLightningNode, balance_channel_5050
from peerswap.testframework.config import write_config
from peerswap.testframework.proxy import RpcError

NODE_ID = "02" + "ab" * 32
PEER_ID = "03" + "cd" * 32


class FakeBitcoin:
    def __init__(self, base, with_password=True):
        self.data_dir = str(base / "bitcoin")
        os.makedirs(self.data_dir, exist_ok=True)
        self.config_file = os.path.join(self.data_dir, "bitcoin.conf")
        config = {"regtest": "1", "rpcuser": "rpcuser"}
        if with_password:
            config["rpcpassword"] = "password"
        write_config(self.config_file, config, {"rpcport": "18443"}, "regtest")
        self.calls = []
        self.block_count = 120
        self.generated = []

    def call(self, method, *args):
        self.calls.append((method, args))
        if method == "getblockcount":
            return self.block_count
        if method == "sendtoaddress":
            return "f" * 64
        if method == "getrawmempool":
            return []
        return None

    def generate_blocks(self, blocks):
        self.generated.append(blocks)


class FakeLightningd:
    def __init__(self, path, handlers):
        self.handlers = handlers
        self.requests = []
        self._stop = threading.Event()
        self._sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        self._sock.bind(path)
        self._sock.listen()
        self._sock.settimeout(0.1)
        self._thread = threading.Thread(target=self._serve, daemon=True)
        self._thread.start()

    def _serve(self):
        while not self._stop.is_set():
            try:
                conn, _ = self._sock.accept()
            except socket.timeout:
                continue
            except OSError:
                return
            with conn:
                conn.settimeout(5)
                buf = b""
                while True:
                    try:
                        chunk = conn.recv(65536)
                    except OSError:
                        break
                    if not chunk:
                        break
                    buf += chunk
                    try:
                        request = json.loads(buf)
                    except ValueError:
                        continue
                    conn.sendall(json.dumps(self._respond(request)).encode())
                    break

    def _respond(self, request):
        method = request["method"]
        params = request.get("params", {})
        self.requests.append((method, params))
        handler = self.handlers.get(method)
        if handler is None:
            return {"jsonrpc": "2.0", "id": request["id"],
                    "error": {"code": -32601, "message": f"unknown {method}"}}
        return {"jsonrpc": "2.0", "id": request["id"], "result": handler(params)}

    def methods(self, name):
        return [params for method, params in self.requests if method == name]

    def close(self):
        self._stop.set()
        self._thread.join(2)
        self._sock.close()


class FakePeer:
    def __init__(self, node_id=PEER_ID, address=None, connected=True):
        self._id = node_id
        self._address = address or f"{node_id}@127.0.0.1:9735"
        self.connected = connected

    def id(self):
        return self._id

    def address(self):
        return self._address

    def is_connected(self, other):
        return self.connected


@pytest.fixture
def workdir():
    base = "/tmp" if os.path.isdir("/tmp") else None
    path = tempfile.mkdtemp(prefix="peerswap-cln-", dir=base)
    yield Path(path)
    shutil.rmtree(path, ignore_errors=True)


@pytest.fixture
def bitcoin(workdir):
    return FakeBitcoin(workdir)


def default_handlers(node_id):
    return {
        "getinfo": lambda p: {"id": node_id, "blockheight": 120},
        "listfunds": lambda p: {"outputs": [], "channels": []},
        "listpeers": lambda p: {"peers": []},
    }


@pytest.fixture
def started(workdir, bitcoin):
    created = []

    def start(node_id=NODE_ID):
        node = CLightningNode(str(workdir), bitcoin, len(created) + 1)
        server = FakeLightningd(node.proxy.socket_path, default_handlers(node_id))
        node.daemon.cmd_line = [sys.executable, "-c", "pass"]
        created.append((node, server))
        node.run(False, False)
        return node, server

    yield start
    for node, server in created:
        node.daemon.kill()
        server.close()


def test_constructor_writes_seed_from_data_dir(workdir, bitcoin):
    node = CLightningNode(str(workdir), bitcoin, 1)
    seed = (Path(node.data_dir) / "regtest" / "hsm_secret").read_bytes()
    assert len(seed) == 32
    assert node.data_dir.replace("/", "").encode().endswith(seed)


def test_constructor_builds_command_line(workdir, bitcoin):
    node = CLightningNode(str(workdir), bitcoin, 7)
    cmd = node.daemon.cmd_line
    assert cmd[0] == "lightningd"
    assert f"--lightning-dir={node.data_dir}" in cmd
    assert "--network=regtest" in cmd
    assert "--bitcoin-rpcuser=rpcuser" in cmd
    assert "--bitcoin-rpcport=18443" in cmd
    assert f"--addr=127.0.0.1:{node.port}" in cmd
    assert node.daemon.prefix() == "clightning-7"


def test_constructor_requires_bitcoin_password(workdir):
    bitcoin = FakeBitcoin(workdir, with_password=False)
    with pytest.raises(ValueError, match="rpcpassword"):
        CLightningNode(str(workdir), bitcoin, 1)


def test_run_caches_info_and_address(started):
    node, _ = started()
    assert node.id() == NODE_ID
    assert node.address() == f"{NODE_ID}@127.0.0.1:{node.port}"


def test_run_waits_for_bitcoin_sync(workdir, bitcoin):
    node = CLightningNode(str(workdir), bitcoin, 1)
    server = FakeLightningd(node.proxy.socket_path, default_handlers(NODE_ID))
    node.daemon.cmd_line = [sys.executable, "-c", "pass"]
    try:
        node.run(False, True)
        assert node.is_block_height_synced() is True
        bitcoin.block_count = 121
        assert node.is_block_height_synced() is False
    finally:
        node.daemon.kill()
        server.close()


def test_btc_balance_sums_outputs(started):
    node, server = started()
    server.handlers["listfunds"] = lambda p: {
        "outputs": [{"value": 1500}, {"value": 2500}], "channels": []}
    assert node.get_btc_balance_sat() == 4000


def test_channel_balance_and_activity(started):
    node, server = started()
    server.handlers["listfunds"] = lambda p: {"outputs": [], "channels": [
        {"short_channel_id": "103x1x0", "channel_sat": 700, "state": "CHANNELD_NORMAL"},
        {"short_channel_id": "104x1x0", "channel_sat": 300, "state": "CHANNELD_AWAITING_LOCKIN"},
    ]}
    assert node.get_channel_balance_sat("103x1x0") == 700
    assert node.is_channel_active("103x1x0") is True
    assert node.is_channel_active("104x1x0") is False
    assert node.is_channel_active("999x1x0") is False
    with pytest.raises(LookupError):
        node.get_channel_balance_sat("999x1x0")


def test_get_scid_and_connection_state(started):
    node, server = started()
    other = FakePeer("03" + "ef" * 32)
    server.handlers["listpeers"] = lambda p: {"peers": [
        {"id": PEER_ID, "connected": True, "channels": [{"short_channel_id": "103x1x0"}]},
        {"id": other.id(), "connected": False, "channels": []},
    ]}
    assert node.get_scid(FakePeer()) == "103x1x0"
    assert node.is_connected(FakePeer()) is True
    assert node.is_connected(other) is False
    with pytest.raises(LookupError, match="no channel"):
        node.get_scid(other)
    with pytest.raises(LookupError, match="peer not found"):
        node.get_scid(FakePeer("02" + "00" * 32))


def test_connect_sends_split_address(started):
    node, server = started()
    server.handlers["connect"] = lambda p: {"id": p["id"]}
    node.connect(FakePeer(address=f"{PEER_ID}@127.0.0.1:19846"), False)
    assert server.methods("connect") == [{"id": PEER_ID, "host": "127.0.0.1", "port": 19846}]


def test_add_invoice_and_pay(started):
    node, server = started()
    server.handlers["invoice"] = lambda p: {"bolt11": "lnbcrt-" + p["label"]}
    server.handlers["pay"] = lambda p: {"status": "complete"}

    payreq = node.add_invoice(1000, "shift balance", "fixed")
    assert payreq == "lnbcrt-fixed"
    node.add_invoice(1000, "shift balance", "")
    first, second = server.methods("invoice")
    assert first["msatoshi"] == 1000 * 1000
    assert first["description"] == "shift balance"
    assert second["label"]

    node.pay_invoice(payreq)
    assert server.methods("pay") == [{"bolt11": payreq}]


def test_fund_wallet_sends_to_new_address(started, bitcoin):
    node, server = started()
    server.handlers["newaddr"] = lambda p: {"bech32": "bcrt1qplaceholder"}
    address = node.fund_wallet(1_000_000, False)
    assert address == "bcrt1qplaceholder"
    assert ("sendtoaddress", ("bcrt1qplaceholder", 0.01)) in bitcoin.calls
    assert bitcoin.generated == []


def test_rpc_error_propagates(started):
    node, server = started()
    del server.handlers["listfunds"]
    with pytest.raises(RpcError, match="unknown listfunds"):
        node.get_btc_balance_sat()


def test_balance_channel_5050(started):
    node, node_server = started()
    peer, peer_server = started(PEER_ID)
    state = {"sat": 100_000}

    node_server.handlers["listfunds"] = lambda p: {"outputs": [], "channels": [
        {"short_channel_id": "103x1x0", "channel_sat": state["sat"],
         "channel_total_sat": 1_000_000}]}
    node_server.handlers["invoice"] = lambda p: {"bolt11": "lnbcrt-" + p["label"]}

    def pay(params):
        state["sat"] += 200_000
        return {"status": "complete"}

    peer_server.handlers["pay"] = pay

    balance_channel_5050(node, peer, "103x1x0")

    invoices = node_server.methods("invoice")
    paid = [p["bolt11"] for p in peer_server.methods("pay")]
    assert len(invoices) == 2
    assert paid == ["lnbcrt-" + inv["label"] for inv in invoices]
    assert all(inv["description"] == "move-balance" for inv in invoices)
    assert node.get_channel_balance_sat("103x1x0") * 2 == 1_000_000

    with pytest.raises(LookupError, match="channel not found"):
        balance_channel_5050(node, peer, "999x9x9")