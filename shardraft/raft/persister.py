"""Storage for a Raft peer's persistent state and the service snapshot."""

from __future__ import annotations

import threading


def _as_bytes(data: bytes | bytearray | memoryview | None) -> bytes:
    return b"" if data is None else bytes(data)


class Persister:
    """Holds Raft state and the service snapshot, always saved together.

    The stored values are immutable bytes, so every read hands out data
    that later saves cannot change.
    """

    def __init__(self, raftstate: bytes | None = b"", snapshot: bytes | None = b"") -> None:
        self._lock = threading.Lock()
        self._raftstate = _as_bytes(raftstate)
        self._snapshot = _as_bytes(snapshot)

    def copy(self) -> Persister:
        """Return a new persister holding the same state and snapshot."""
        with self._lock:
            return Persister(self._raftstate, self._snapshot)

    def read_raft_state(self) -> bytes:
        with self._lock:
            return self._raftstate

    def raft_state_size(self) -> int:
        with self._lock:
            return len(self._raftstate)

    def save(self, raftstate: bytes | None, snapshot: bytes | None) -> None:
        """Store Raft state and snapshot as a single atomic action."""
        with self._lock:
            self._raftstate = _as_bytes(raftstate)
            self._snapshot = _as_bytes(snapshot)

    def read_snapshot(self) -> bytes:
        with self._lock:
            return self._snapshot

    def snapshot_size(self) -> int:
        with self._lock:
            return len(self._snapshot)