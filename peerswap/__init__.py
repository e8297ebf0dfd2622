"""Swap transaction watching, an elementsd wallet, version bookkeeping, timers and a regtest harness."""

__version__ = "0.2.0"