"""Persisted software version and safe upgrades between versions."""

from __future__ import annotations

import contextlib
import os
import sqlite3
from collections.abc import Iterator
from typing import Protocol

__all__ = [
    "VERSION",
    "ActiveSwapsError",
    "VersionDoesNotExistError",
    "VersionService",
    "VersionStore",
]

VERSION = "v0.2"

_VERSION_KEY = "version"


class VersionDoesNotExistError(LookupError):
    """No version has been stored yet."""

    def __init__(self) -> None:
        super().__init__("does not exist")


class ActiveSwapsError(Exception):
    """An upgrade was refused because swaps are still running."""

    def __init__(self, version: str) -> None:
        super().__init__(
            "Can't upgrade because of active swaps. "
            f"Please downgrade peerswap to version {version}"
        )
        self.version = version


class ActiveSwapGetter(Protocol):
    def has_active_swaps(self) -> bool:
        """Return whether any swap is still in progress."""


class VersionStore:
    """Keeps the stored version in a small sqlite database."""

    def __init__(self, path: str | os.PathLike[str]) -> None:
        self.path = os.fspath(path)
        with self._transaction() as conn:
            conn.execute(
                "CREATE TABLE IF NOT EXISTS version (key TEXT PRIMARY KEY, value TEXT NOT NULL)"
            )

    @contextlib.contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with contextlib.closing(sqlite3.connect(self.path)) as conn:
            with conn:
                yield conn

    def get_version(self) -> str:
        """Return the stored version; raise VersionDoesNotExistError if none."""
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT value FROM version WHERE key = ?", (_VERSION_KEY,)
            ).fetchone()
        if row is None:
            raise VersionDoesNotExistError()
        return row[0]

    def set_version(self, version: str) -> None:
        with self._transaction() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO version (key, value) VALUES (?, ?)",
                (_VERSION_KEY, version),
            )


class VersionService:
    """Upgrades the stored version only while no swaps are active."""

    def __init__(self, path: str | os.PathLike[str]) -> None:
        self.version_store = VersionStore(path)

    def safe_upgrade(self, swap_service: ActiveSwapGetter) -> None:
        """Store the current version; raise ActiveSwapsError if swaps are running."""
        try:
            current: str | None = self.version_store.get_version()
        except VersionDoesNotExistError:
            current = None

        if current == VERSION:
            return

        if swap_service.has_active_swaps():
            raise ActiveSwapsError(current or "")

        self.version_store.set_version(VERSION)