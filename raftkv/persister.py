"""File-backed storage for a Raft node's state and the service snapshot."""

from __future__ import annotations

import logging
import os
import threading
from pathlib import Path

logger = logging.getLogger(__name__)


class Persister:
    """Keeps the Raft state and the snapshot of node ``me`` in two files.

    The files are ``raftstatePersist<me>.txt`` and ``snapshotPersist<me>.txt``
    inside ``directory``. Both are emptied when the persister is created.
    """

    def __init__(self, me: int, directory: str | os.PathLike[str] = ".") -> None:
        base = Path(directory)
        self.raft_state_path = base / f"raftstatePersist{me}.txt"
        self.snapshot_path = base / f"snapshotPersist{me}.txt"
        self._lock = threading.Lock()
        self._raft_state_size = 0
        for path in (self.raft_state_path, self.snapshot_path):
            try:
                self._write(path, "")
            except OSError:
                logger.error("persister: cannot open %s", path)
                raise

    @staticmethod
    def _write(path: Path, data: str) -> None:
        with open(path, "w", encoding="utf-8", newline="") as handle:
            handle.write(data)

    @staticmethod
    def _read(path: Path) -> str:
        try:
            with open(path, encoding="utf-8", newline="") as handle:
                return handle.read()
        except FileNotFoundError:
            return ""

    def save(self, raft_state: str, snapshot: str) -> None:
        """Replace both the Raft state and the snapshot.

        The tracked Raft state size is reset to zero, as only
        :meth:`save_raft_state` accounts for the size of what it writes.
        """
        with self._lock:
            self._raft_state_size = 0
            self._write(self.raft_state_path, raft_state)
            self._write(self.snapshot_path, snapshot)

    def read_snapshot(self) -> str:
        """Return the stored snapshot, or an empty string if there is none."""
        with self._lock:
            return self._read(self.snapshot_path)

    def save_raft_state(self, data: str) -> None:
        """Replace the Raft state with ``data``."""
        with self._lock:
            self._write(self.raft_state_path, data)
            self._raft_state_size = len(data.encode("utf-8"))

    def raft_state_size(self) -> int:
        """Return the size in bytes of the last state written by :meth:`save_raft_state`."""
        with self._lock:
            return self._raft_state_size

    def read_raft_state(self) -> str:
        """Return the stored Raft state, or an empty string if there is none."""
        with self._lock:
            return self._read(self.raft_state_path)