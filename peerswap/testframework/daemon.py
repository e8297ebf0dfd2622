"""Managed daemon processes whose output is captured for log inspection."""

from __future__ import annotations

import re
import subprocess
import threading
import time
from collections.abc import Iterable, Iterator
from typing import IO

__all__ = ["DaemonProcess", "LockedWriter"]


def _scan_lines(data: bytes) -> Iterator[bytes]:
    """Yield lines the way a line scanner does: no newline, no trailing CR."""
    if not data:
        return
    pieces = data.split(b"\n")
    if pieces[-1] == b"":
        pieces.pop()
    for piece in pieces:
        yield piece[:-1] if piece.endswith(b"\r") else piece


class LockedWriter:
    """A thread-safe output sink that prefixes every write."""

    def __init__(self, prefix: str | bytes) -> None:
        self._prefix = prefix.encode() if isinstance(prefix, str) else bytes(prefix)
        self._buf = bytearray()
        self._lock = threading.RLock()

    def write(self, data: str | bytes) -> int:
        """Append ``data`` preceded by the prefix; return the size of ``data``."""
        chunk = data.encode() if isinstance(data, str) else bytes(data)
        with self._lock:
            self._buf += self._prefix
            self._buf += chunk
        return len(chunk)

    def text(self) -> str:
        """Return everything written so far as text."""
        with self._lock:
            return self._buf.decode("utf-8", errors="replace")

    def _matching_lines(self, regex: str) -> list[bytes] | None:
        try:
            pattern = re.compile(regex.encode())
        except re.error:
            return None
        with self._lock:
            data = bytes(self._buf)
        return [line for line in _scan_lines(data) if pattern.search(line)]

    def filter(self, regex: str) -> bytes:
        """Return the lines matching ``regex``, each ended by a newline."""
        lines = self._matching_lines(regex)
        if not lines:
            return b""
        return b"".join(line + b"\n" for line in lines)

    def tail(self, n: int, regex: str) -> str:
        """Return the last ``n`` lines matching ``regex`` (all if ``n`` is out of range)."""
        lines = self._matching_lines(regex)
        if lines is None:
            return ""
        if 0 < n <= len(lines):
            lines = lines[-n:]
        return "\n".join(line.decode("utf-8", errors="replace") for line in lines)


class DaemonProcess:
    """A command line that can be started, inspected through its logs and killed."""

    def __init__(self, cmdline: Iterable[str], prefix: str) -> None:
        self.cmd_line: list[str] = list(cmdline)
        self.process: subprocess.Popen[bytes] | None = None
        self.stdout = LockedWriter(f"{prefix}: ")
        self.stderr = LockedWriter(f"{prefix}: ")
        self._prefix = prefix
        self._running = False
        self._pumps: list[threading.Thread] = []

    @property
    def running(self) -> bool:
        return self._running

    def append_cmd_line(self, options: Iterable[str] | None) -> None:
        if options is not None:
            self.cmd_line.extend(options)

    def with_cmd(self, cmd: str) -> None:
        """Replace the executable, keeping the arguments."""
        self.cmd_line = [cmd, *self.cmd_line[1:]]

    def run(self) -> None:
        """Start the process; a start failure is recorded on stderr."""
        try:
            process = subprocess.Popen(
                self.cmd_line,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except OSError as err:
            self.stderr.write(f"error starting cmd {err}\n")
            return
        self.process = process
        self._pumps = [
            self._start_pump(process.stdout, self.stdout),
            self._start_pump(process.stderr, self.stderr),
        ]
        self._running = True

    @staticmethod
    def _start_pump(pipe: IO[bytes] | None, sink: LockedWriter) -> threading.Thread:
        def pump() -> None:
            if pipe is None:
                return
            with pipe:
                for chunk in iter(lambda: pipe.read1(4096), b""):
                    sink.write(chunk)

        thread = threading.Thread(target=pump, daemon=True)
        thread.start()
        return thread

    def kill(self) -> None:
        if self._running and self.process is not None:
            self.process.kill()
            self.process.wait()
            self._running = False

    def has_log(self, regex: str) -> bool:
        """Return whether a line of stdout matches ``regex``."""
        pattern = re.compile(regex)
        return any(pattern.search(line) for line in self.stdout.text().splitlines())

    def wait_for_log(self, regex: str, timeout: float) -> None:
        """Poll stdout until ``regex`` matches; raise TimeoutError after ``timeout`` seconds."""
        deadline = time.monotonic() + timeout
        while True:
            if time.monotonic() >= deadline:
                raise TimeoutError(f"timeout reached while waiting for `{regex}` in logs")
            if self.has_log(regex):
                return
            time.sleep(0.1)

    def prefix(self) -> str:
        return self._prefix