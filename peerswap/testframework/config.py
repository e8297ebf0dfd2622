"""Reading and writing of simple ``key=value`` daemon configuration files."""

from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path

__all__ = ["TIMEOUT", "default_timeout", "read_config", "write_config"]


def default_timeout() -> float:
    """Return the default wait timeout in seconds, longer on slow machines."""
    if os.environ.get("SLOW_MACHINE") == "1":
        return 180.0
    return 60.0


TIMEOUT = default_timeout()


def write_config(
    filename: str | os.PathLike[str],
    config: Mapping[str, str],
    regtest_config: Mapping[str, str] | None,
    section_name: str,
) -> None:
    """Write ``config`` as ``key=value`` lines, followed by an optional section."""
    lines = [f"{key}={value}\n" for key, value in config.items()]
    if regtest_config is not None:
        lines.append(f"[{section_name}]\n")
        lines.extend(f"{key}={value}\n" for key, value in regtest_config.items())
    Path(filename).write_text("".join(lines), encoding="utf-8")


def read_config(filename: str | os.PathLike[str]) -> dict[str, str]:
    """Read a ``key=value`` file, skipping comments and lines without ``=``.

    Only the text between the first and the second ``=`` is kept as the value.
    """
    conf: dict[str, str] = {}
    with open(filename, encoding="utf-8") as handle:
        for raw in handle:
            line = raw.rstrip("\n").rstrip("\r")
            if "#" in line or "=" not in line:
                continue
            parts = line.split("=")
            conf[parts[0]] = parts[1]
    return conf