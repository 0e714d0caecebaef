"""Loading of ``key=value`` node configuration files."""

from __future__ import annotations

import os


def trim_spaces(text: str) -> str:
    """Strip leading and trailing space characters.

    A string made only of spaces is returned unchanged.
    """
    return text.strip(" ") or text


class RpcConfig:
    """Key/value settings read from a configuration file.

    Lines are ``key=value``; lines starting with ``#`` and lines without
    ``=`` are ignored. When a key appears more than once, the first
    occurrence wins.
    """

    def __init__(self) -> None:
        self._entries: dict[str, str] = {}

    def load_file(self, path: str | os.PathLike[str]) -> None:
        """Read settings from ``path``; raise ``FileNotFoundError`` if it is missing."""
        with open(path, encoding="utf-8", newline="") as handle:
            for raw_line in handle:
                line = trim_spaces(raw_line)
                if not line or line.startswith("#"):
                    continue
                key, sep, rest = line.partition("=")
                if not sep:
                    continue
                value = rest.split("\n", 1)[0]
                self._entries.setdefault(trim_spaces(key), trim_spaces(value))

    def load(self, key: str) -> str:
        """Return the value stored for ``key``, or an empty string."""
        return self._entries.get(key, "")