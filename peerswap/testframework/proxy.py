"""JSON-RPC clients for chain daemons (HTTP) and c-lightning (unix socket)."""

from __future__ import annotations

import base64
import itertools
import json
import os
import socket
import urllib.error
import urllib.request
from collections.abc import Mapping
from typing import Any

from .config import TIMEOUT, read_config

__all__ = ["CLightningProxy", "JsonRpcClient", "RpcError", "RpcProxy"]


class RpcError(Exception):
    """A JSON-RPC call failed, either in transport or on the server."""

    def __init__(self, message: str, code: int | None = None, data: Any = None) -> None:
        super().__init__(message)
        self.code = code
        self.data = data


def _params(args: tuple[Any, ...]) -> Any:
    """Build the params member: none, a single list/dict as is, or the arguments."""
    if not args:
        return None
    if len(args) == 1 and isinstance(args[0], (list, tuple, dict)):
        single = args[0]
        return list(single) if isinstance(single, tuple) else single
    return list(args)


class JsonRpcClient:
    """A minimal JSON-RPC 2.0 client over HTTP POST."""

    def __init__(self, url: str, headers: Mapping[str, str] | None = None) -> None:
        self.url = url
        self.headers = dict(headers or {})
        self.timeout = TIMEOUT
        self._ids = itertools.count()

    def call(self, method: str, *args: Any) -> Any:
        """Call ``method`` with positional ``args`` and return its result."""
        request: dict[str, Any] = {"jsonrpc": "2.0", "method": method, "id": next(self._ids)}
        params = _params(args)
        if params is not None:
            request["params"] = params
        http_request = urllib.request.Request(
            self.url,
            data=json.dumps(request).encode(),
            method="POST",
            headers={
                "Content-Type": "application/json",
                "Accept": "application/json",
                **self.headers,
            },
        )
        try:
            with urllib.request.urlopen(http_request, timeout=self.timeout) as resp:
                status = resp.status
                payload = resp.read()
        except urllib.error.HTTPError as err:
            status = err.code
            payload = err.read()
        except (urllib.error.URLError, OSError) as err:
            reason = getattr(err, "reason", err)
            raise RpcError(f"rpc call {method}() on {self.url}: {reason}") from err

        try:
            response = json.loads(payload)
        except ValueError as err:
            raise RpcError(
                f"rpc call {method}() on {self.url} status code: {status}. "
                "could not decode body to rpc response"
            ) from err
        if not isinstance(response, dict):
            raise RpcError(f"rpc call {method}() on {self.url}: unexpected response")

        error = response.get("error")
        if error:
            if isinstance(error, dict):
                raise RpcError(
                    str(error.get("message", "")), code=error.get("code"), data=error.get("data")
                )
            raise RpcError(str(error))
        if status >= 400:
            raise RpcError(f"rpc call {method}() on {self.url} status code: {status}")
        return response.get("result")


class RpcProxy:
    """A JSON-RPC client configured from a daemon configuration file."""

    def __init__(self, config_file: str | os.PathLike[str]) -> None:
        conf = read_config(config_file)

        if "rpcport" not in conf:
            raise ValueError(f"rpcport not found in config {config_file}")
        try:
            rpc_port = int(conf["rpcport"])
        except ValueError as err:
            raise ValueError(f"could not convert string to int {conf['rpcport']!r}") from err

        rpc_host = conf.get("rpchost", "localhost")

        if "rpcpassword" not in conf:
            raise ValueError(f"rpcpassword not found in config {config_file}")
        if "rpcuser" not in conf:
            raise ValueError(f"rpcuser not found in config {config_file}")

        auth_pair = f"{conf['rpcuser']}:{conf['rpcpassword']}".encode()
        encoded = base64.urlsafe_b64encode(auth_pair).rstrip(b"=").decode()

        self.rpc_host = rpc_host
        self.rpc_port = rpc_port
        self.config_file = os.fspath(config_file)
        self.service_url = f"http://{rpc_host}:{rpc_port}"
        self.auth_header = f"Basic {encoded}"
        self.rpc = JsonRpcClient(self.service_url, {"Authorization": self.auth_header})

    def call(self, method: str, *args: Any) -> Any:
        return self.rpc.call(method, *args)

    def update_service_url(self, url: str) -> None:
        """Point the client at ``url``, keeping the credentials."""
        self.service_url = url
        self.rpc = JsonRpcClient(url, {"Authorization": self.auth_header})


class CLightningProxy:
    """A JSON-RPC client talking to lightningd through its unix socket."""

    def __init__(self, socket_file_name: str, data_dir: str | os.PathLike[str]) -> None:
        self.socket_file_name = socket_file_name
        self.data_dir = os.fspath(data_dir)
        self.timeout = TIMEOUT
        self._started = False
        self._ids = itertools.count()

    @property
    def socket_path(self) -> str:
        return os.path.join(self.data_dir, self.socket_file_name)

    def _connect(self) -> socket.socket:
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        sock.settimeout(self.timeout)
        try:
            sock.connect(self.socket_path)
        except OSError as err:
            sock.close()
            raise ConnectionError(f"can not connect to {self.socket_path}: {err}") from err
        return sock

    def start_proxy(self) -> None:
        """Check that the socket accepts connections; raise ConnectionError if not."""
        with self._connect():
            pass
        self._started = True

    @staticmethod
    def _read_response(sock: socket.socket) -> Any:
        decoder = json.JSONDecoder()
        buf = b""
        while True:
            chunk = sock.recv(65536)
            if not chunk:
                raise RpcError("connection closed before a full response was read")
            buf += chunk
            try:
                text = buf.decode("utf-8").lstrip()
            except UnicodeDecodeError:
                continue
            try:
                value, _ = decoder.raw_decode(text)
            except json.JSONDecodeError:
                continue
            return value

    def call(self, method: str, **kwargs: Any) -> Any:
        """Call ``method`` with named parameters and return its result."""
        if not self._started:
            raise RuntimeError("proxy not started")
        request = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": kwargs}
        with self._connect() as sock:
            sock.sendall(json.dumps(request).encode())
            response = self._read_response(sock)
        if not isinstance(response, dict):
            raise RpcError(f"unexpected response to {method}")
        error = response.get("error")
        if error:
            if isinstance(error, dict):
                raise RpcError(
                    str(error.get("message", "")), code=error.get("code"), data=error.get("data")
                )
            raise RpcError(str(error))
        return response.get("result")