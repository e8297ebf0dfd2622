"""Polling helpers, port allocation and small utilities for integration setups."""

from __future__ import annotations

import contextlib
import itertools
import secrets
import socket
import threading
import time
from collections.abc import Callable
from typing import Protocol

__all__ = [
    "IdCounter",
    "WaitTimeoutError",
    "free_port",
    "generate_random_string",
    "get_free_port",
    "get_free_ports",
    "scid_from_lnd_chan_id",
    "split_ln_addr",
    "wait_for",
    "wait_for_balance_change",
    "wait_for_channel_balance",
]

_POLL_INTERVAL = 0.1
_LETTERS = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz-"


class WaitTimeoutError(TimeoutError):
    """A polled condition did not become true in time."""


class _ChannelBalanceNode(Protocol):
    def get_channel_balance_sat(self, scid: str) -> int: ...


def wait_for(condition: Callable[[], bool], timeout: float) -> None:
    """Poll ``condition`` every 100ms until it is true.

    Exceptions raised by ``condition`` end the wait and propagate.
    """
    deadline = time.monotonic() + timeout
    while True:
        if time.monotonic() >= deadline:
            raise WaitTimeoutError(f"WaitFor reached timeout with {condition!r}")
        if condition():
            return
        time.sleep(_POLL_INTERVAL)


def wait_for_balance_change(
    node: _ChannelBalanceNode, scid: str, before: int, timeout: float
) -> None:
    """Wait until the channel balance differs from ``before``."""
    try:
        wait_for(lambda: node.get_channel_balance_sat(scid) != before, timeout)
    except WaitTimeoutError as err:
        raise WaitTimeoutError(f"expected balance change from: {before}") from err


def wait_for_channel_balance(
    node: _ChannelBalanceNode,
    scid: str,
    expected: float,
    delta: float,
    timeout: float,
) -> float:
    """Wait until the channel balance is within ``delta`` of ``expected``; return it."""
    actual = 0

    def close_enough() -> bool:
        nonlocal actual
        actual = node.get_channel_balance_sat(scid)
        return abs(float(expected) - float(actual)) <= delta

    try:
        wait_for(close_enough, timeout)
    except WaitTimeoutError as err:
        raise WaitTimeoutError(f"expected: {int(expected)}, got: {int(actual)}") from err
    return float(actual)


_used_ports: set[int] = set()
_used_ports_lock = threading.Lock()


def _bind_ephemeral() -> socket.socket:
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        sock.bind(("localhost", 0))
        sock.listen()
    except OSError:
        sock.close()
        raise
    return sock


def get_free_port() -> int:
    """Return a free local TCP port not handed out before by this process."""
    for _ in range(10):
        with _bind_ephemeral() as sock:
            port = sock.getsockname()[1]
        with _used_ports_lock:
            if port not in _used_ports:
                _used_ports.add(port)
                return port
    raise RuntimeError("could not find a free port in 10 tries")


def free_port(port: int) -> None:
    """Release a port obtained from :func:`get_free_port`."""
    with _used_ports_lock:
        _used_ports.discard(port)


def get_free_ports(n: int) -> list[int]:
    """Return ``n`` distinct free ports, held open together while choosing."""
    with contextlib.ExitStack() as stack:
        sockets = [stack.enter_context(_bind_ephemeral()) for _ in range(n)]
        return [sock.getsockname()[1] for sock in sockets]


def generate_random_string(n: int) -> str:
    """Return ``n`` random characters from letters, digits and ``-``."""
    return "".join(secrets.choice(_LETTERS) for _ in range(n))


class IdCounter:
    """Hands out increasing integer ids starting at 1, thread-safely."""

    def __init__(self) -> None:
        self._counter = itertools.count(1)
        self._lock = threading.Lock()

    def next_id(self) -> int:
        with self._lock:
            return next(self._counter)


def split_ln_addr(addr: str) -> tuple[str, str, int]:
    """Split ``pubkey@host:port`` into its parts."""
    parts = addr.split("@")
    if len(parts) != 2:
        raise ValueError(f"can not split addr `@` {addr}")
    host_port = parts[1].split(":")
    if len(host_port) != 2:
        raise ValueError(f"can not split addr `:` {addr}")
    try:
        port = int(host_port[1])
    except ValueError as err:
        raise ValueError(f"invalid port in addr {addr}") from err
    return parts[0], host_port[0], port


def scid_from_lnd_chan_id(chan_id: int) -> str:
    """Convert a 64-bit channel id into ``block x txindex x output`` form."""
    block_height = (chan_id >> 40) & 0xFFFFFF
    tx_index = (chan_id >> 16) & 0xFFFFFF
    tx_position = chan_id & 0xFFFF
    return f"{block_height}x{tx_index}x{tx_position}"